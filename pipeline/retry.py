"""Backoff retry for single provider attempts.

Error handling:
  - 429 (rate limit), 503 / UNAVAILABLE / overloaded, gateway errors (502/504)
    and network-level failures (connection refused, timeout, DNS, "fetch failed")
    ARE retried with exponential backoff.
  - 401/403 are NOT retried. A wrong key will not fix itself.
  - Anything else is fatal unless it is explicitly classified as transient.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
from openai import APIConnectionError, APITimeoutError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

import config
from pipeline.errors import CinematicError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = {429, 502, 503, 504}
_FATAL_STATUS = {401, 403}

# Lower-cased substrings that mark a transient failure in an otherwise opaque message.
_TRANSIENT_MARKERS = (
    "overloaded",
    "unavailable",
    "resource_exhausted",
    "rate limit",
    "fetch failed",
    "econnrefused",
    "etimedout",
    "enotfound",
    "connection refused",
    "connection reset",
    "timed out",
    "name or service not known",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Per-attempt retry policy; delays are in seconds."""

    max_retries: int = 3
    initial_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_retries=config.RETRY_MAX_RETRIES,
            initial_delay=config.RETRY_INITIAL_DELAY_SECONDS,
            backoff_multiplier=config.RETRY_BACKOFF_MULTIPLIER,
            max_delay=config.RETRY_MAX_DELAY_SECONDS,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (``attempt`` is zero-based)."""
        return min(self.initial_delay * self.backoff_multiplier ** attempt, self.max_delay)


DEFAULT_POLICY = RetryPolicy()


def error_status(exc: BaseException) -> int | None:
    """Pull an HTTP-like status code out of whatever shape the error has."""
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    inner = getattr(exc, "error", None)
    if isinstance(inner, dict):
        code = inner.get("code")
        if isinstance(code, int):
            return code
    return None


def _error_status_text(exc: BaseException) -> str:
    value = getattr(exc, "status", None)
    if isinstance(value, str):
        return value
    inner = getattr(exc, "error", None)
    if isinstance(inner, dict) and isinstance(inner.get("status"), str):
        return inner["status"]
    return ""


def is_transient_error(exc: BaseException) -> bool:
    """Return True if the error is transient and worth retrying.

    We retry on:
      - Rate limits (429) and overload (503, UNAVAILABLE, "overloaded")
      - Connection / timeout / DNS errors from httpx, the OpenAI SDK or the socket layer
    We do NOT retry on:
      - 401/403 auth errors (key is wrong)
      - Anything already classified as fatal by an adapter
    """
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, CinematicError):
        return False

    status = error_status(exc)
    if status in _FATAL_STATUS:
        return False
    if status in _RETRYABLE_STATUS:
        return True
    if _error_status_text(exc).upper() == "UNAVAILABLE":
        return True

    if isinstance(exc, (APIConnectionError, APITimeoutError, httpx.TransportError)):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError, socket.timeout, socket.gaierror)):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class BackoffRetrier:
    """Run one async operation, retrying transient failures with exponential backoff.

    Keeps no state between ``execute`` calls. ``sleep`` is injectable so tests
    can record delays instead of waiting.
    """

    def __init__(
        self,
        policy: RetryPolicy = DEFAULT_POLICY,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.policy = policy
        self._sleep = sleep or asyncio.sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        is_retryable: Callable[[BaseException], bool] = is_transient_error,
        label: str = "",
    ) -> T:
        policy = self.policy
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_retryable),
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=wait_exponential(
                multiplier=policy.initial_delay,
                exp_base=policy.backoff_multiplier,
                max=policy.max_delay,
            ),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await operation()
        except Exception as exc:
            logger.warning(
                "Giving up on %s after %d attempt(s): %s",
                label or "operation",
                retrying.statistics.get("attempt_number", 1),
                exc,
            )
            raise

