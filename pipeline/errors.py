"""Error taxonomy for the provider orchestration layer.

Every failure that leaves an adapter is one of these classes. The `kind`
string is stable and travels all the way to the HTTP layer, so the UI can
tell "try again later" (retryable) apart from a permanent rejection.
"""

from __future__ import annotations

from typing import Any

_BODY_PREVIEW_CHARS = 500


def truncate(text: Any, limit: int = _BODY_PREVIEW_CHARS) -> str:
    value = str(text or "")
    if len(value) > limit:
        return value[:limit] + "..."
    return value


class CinematicError(Exception):
    """Base error with a human-readable message and provider context."""

    kind = "error"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        model: str = "",
        status_code: int | None = None,
        cause: BaseException | None = None,
    ):
        self.message = message
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.cause = cause
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.message,
            "kind": self.kind,
            "retryable": self.retryable,
        }
        if self.status_code is not None:
            payload["status"] = self.status_code
        return payload


class ConfigurationError(CinematicError):
    """A required credential or endpoint is missing. Raised before any network call."""

    kind = "configuration"


class ProviderError(CinematicError):
    """The provider definitively rejected the request (auth, bad request, ...)."""

    kind = "provider"

    def __init__(self, message: str, *, body: str = "", **kwargs: Any):
        self.body = truncate(body)
        super().__init__(message, **kwargs)


class TransientProviderError(ProviderError):
    """Rate limit, overload or network failure. Worth retrying."""

    kind = "transient"
    retryable = True


class UnsupportedCandidateError(ProviderError):
    """The requested model/endpoint does not exist on this provider."""

    kind = "unsupported"


class ContentRejectionError(CinematicError):
    """The provider answered but produced nothing usable (no image, no audio)."""

    kind = "content_rejected"


class ParseError(CinematicError):
    """Structured output could not be recovered from model text."""

    kind = "parse"

    def __init__(self, message: str, *, preview: str = "", **kwargs: Any):
        self.preview = truncate(preview)
        super().__init__(message, **kwargs)


class AggregateExhaustionError(CinematicError):
    """Every candidate of a fallback chain failed."""

    kind = "exhausted"

    def __init__(
        self,
        message: str,
        *,
        last_error: BaseException | None = None,
        attempted: list[str] | None = None,
        retryable: bool | None = None,
        **kwargs: Any,
    ):
        self.last_error = last_error
        self.attempted = list(attempted or [])
        if retryable is None:
            retryable = bool(getattr(last_error, "retryable", False))
        self.retryable = retryable
        if last_error is not None:
            kwargs.setdefault("cause", last_error)
            kwargs.setdefault("status_code", getattr(last_error, "status_code", None))
        super().__init__(message, **kwargs)
