"""Fallback chain — try ordered (provider, model) candidates, first success wins.

Each candidate's attempt runs inside the BackoffRetrier, so transient
failures are retried against the same candidate before the chain looks at
the outcome. The chain itself never retries a candidate and never runs two
candidates at once.

Advance / abort policy:
  - ``Success``              → return immediately.
  - ``UnsupportedCandidate`` → model/endpoint not available here; try the next one.
  - ``RetryableFailure``     → retries exhausted; advancing is up to ``should_advance``.
  - ``FatalFailure``         → abort unless ``should_advance`` says otherwise.
The default ``should_advance`` only advances on ``UnsupportedCandidate``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

from pipeline.errors import (
    AggregateExhaustionError,
    ConfigurationError,
    UnsupportedCandidateError,
)
from pipeline.retry import BackoffRetrier, is_transient_error

logger = logging.getLogger(__name__)

P = TypeVar("P")


@dataclass(frozen=True)
class Candidate(Generic[P]):
    """One (provider, model) pairing eligible for an operation.

    ``adapter`` is whatever object knows how to call that provider; the chain
    never looks inside it.
    """

    provider: str
    model: str
    adapter: P | None = None

    @property
    def label(self) -> str:
        return f"{self.provider}/{self.model}" if self.model else self.provider


@dataclass(frozen=True)
class Success:
    candidate: Candidate[Any]
    payload: Any
    usage: Any = None


@dataclass(frozen=True)
class RetryableFailure:
    candidate: Candidate[Any]
    error: BaseException


@dataclass(frozen=True)
class FatalFailure:
    candidate: Candidate[Any]
    error: BaseException


@dataclass(frozen=True)
class UnsupportedCandidate:
    candidate: Candidate[Any]
    error: BaseException


AttemptOutcome = Union[Success, RetryableFailure, FatalFailure, UnsupportedCandidate]
Failure = Union[RetryableFailure, FatalFailure, UnsupportedCandidate]


def classify_failure(candidate: Candidate[Any], exc: BaseException) -> Failure:
    """Turn the exception that escaped the retrier into a tagged outcome."""
    if isinstance(exc, UnsupportedCandidateError):
        return UnsupportedCandidate(candidate, exc)
    if is_transient_error(exc):
        return RetryableFailure(candidate, exc)
    return FatalFailure(candidate, exc)


def advance_on_unsupported(outcome: Failure) -> bool:
    return isinstance(outcome, UnsupportedCandidate)


class _FailureSignal(Exception):
    """Carries a failure outcome returned (not raised) by an attempt through the retrier."""

    def __init__(self, outcome: Failure):
        self.outcome = outcome
        super().__init__(str(outcome.error))


def _retry_signal_or_transient(exc: BaseException) -> bool:
    if isinstance(exc, _FailureSignal):
        return isinstance(exc.outcome, RetryableFailure)
    return is_transient_error(exc)


@dataclass
class FallbackChain:
    """Run one logical operation across an ordered candidate list."""

    retrier: BackoffRetrier = field(default_factory=BackoffRetrier)
    should_advance: Callable[[Failure], bool] = advance_on_unsupported
    operation: str = "operation"

    async def run(
        self,
        candidates: list[Candidate[Any]],
        attempt: Callable[[Candidate[Any]], Awaitable[AttemptOutcome]],
    ) -> Success:
        """Return the first ``Success``.

        ``attempt`` may return any AttemptOutcome or raise; raised exceptions
        are classified with ``classify_failure``.
        """
        if not candidates:
            raise ConfigurationError(f"No provider is configured for {self.operation}.")

        attempted: list[str] = []
        last: Failure | None = None

        for index, candidate in enumerate(candidates):
            attempted.append(candidate.label)
            logger.info(
                "%s: attempting candidate %d/%d (%s)",
                self.operation, index + 1, len(candidates), candidate.label,
            )

            async def _once(candidate: Candidate[Any] = candidate) -> Success:
                outcome = await attempt(candidate)
                if isinstance(outcome, Success):
                    return outcome
                raise _FailureSignal(outcome)

            try:
                outcome = await self.retrier.execute(
                    _once,
                    is_retryable=_retry_signal_or_transient,
                    label=f"{self.operation} via {candidate.label}",
                )
            except _FailureSignal as signal:
                last = signal.outcome
            except Exception as exc:
                last = classify_failure(candidate, exc)
            else:
                logger.info("%s: succeeded with %s", self.operation, candidate.label)
                return outcome

            if not self.should_advance(last):
                logger.warning(
                    "%s: aborting chain at %s (%s): %s",
                    self.operation, candidate.label, type(last).__name__, last.error,
                )
                raise last.error

            if index + 1 < len(candidates):
                logger.warning(
                    "%s: %s failed (%s), advancing to %s",
                    self.operation, candidate.label, type(last).__name__, candidates[index + 1].label,
                )

        assert last is not None
        error = last.error
        detail = getattr(error, "message", None) or str(error)
        raise AggregateExhaustionError(
            f"All providers failed for {self.operation} (tried {', '.join(attempted)}). "
            f"Last error: {detail}",
            last_error=error,
            attempted=attempted,
            retryable=isinstance(last, RetryableFailure),
            provider=last.candidate.provider,
            model=last.candidate.model,
        )

