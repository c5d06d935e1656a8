"""
MosaicMatch — Error taxonomy and classification

Every failure caught by the gateway, aggregator, pipeline or synchronizer is
run through :func:`classify_error`, which decides two things:

- whether the failure is *retryable* (transport failures, 5xx, 429, 408 and
  anything unrecognised) or *fatal* (other 4xx, malformed payloads, missing
  identity);
- which sanitized, user-facing message should be shown.  Raw exception text
  is only ever logged.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Optional

import httpx
from google.api_core.exceptions import GoogleAPICallError
from pydantic import ValidationError

ERROR_MESSAGES: dict[str, str] = {
    "RATE_LIMITED": "You've made too many requests. Please try again later.",
    "SERVICE_UNAVAILABLE": (
        "The matching service is temporarily unavailable. Please try again later."
    ),
    "INSUFFICIENT_DATA": (
        "We need more data to find good matches for you. "
        "Continue using the app and sharing conversations."
    ),
    "AUTHENTICATION_FAILED": "Authentication failed. Please sign in again.",
    "DEFAULT": "Something went wrong. Please try again later.",
}

_RETRYABLE_STATUS_CODES = frozenset({408, 429})

_IMPLIED_ERROR_CODES: dict[int, str] = {
    401: "AUTHENTICATION_FAILED",
    403: "AUTHENTICATION_FAILED",
    429: "RATE_LIMITED",
    503: "SERVICE_UNAVAILABLE",
}


class MosaicMatchError(Exception):
    """Base class for every error raised by the MosaicMatch core."""


class MatchServiceError(MosaicMatchError):
    """Structured backend failure carrying an HTTP-style status code."""

    def __init__(
        self,
        message: str,
        status_code: int,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    def __repr__(self) -> str:
        return (
            f"MatchServiceError({str(self)!r}, status_code={self.status_code}, "
            f"error_code={self.error_code!r})"
        )


class MalformedPayloadError(MosaicMatchError, ValueError):
    """A record or backend payload could not be decoded into the expected shape."""


class IdentityUnavailableError(MosaicMatchError):
    """No valid user session is available for the requested operation."""

    error_code = "AUTHENTICATION_FAILED"


class NoTraitsExtracted(MosaicMatchError):
    """Raised when not a single source yielded usable traits."""

    error_code = "INSUFFICIENT_DATA"


class EmbeddingSubmissionError(MosaicMatchError):
    """The merged trait set could not be submitted for embedding."""


class PipelineStepError(MosaicMatchError):
    """A named pipeline step failed; ``step`` is safe to show to the user."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step


_FATAL_TYPES: tuple[type[BaseException], ...] = (
    MalformedPayloadError,
    IdentityUnavailableError,
    NoTraitsExtracted,
    EmbeddingSubmissionError,
    ValidationError,
    json.JSONDecodeError,
)

_TRANSPORT_TYPES: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    asyncio.TimeoutError,
    TimeoutError,
    OSError,
)


@dataclass(frozen=True)
class ErrorClassification:
    retryable: bool
    user_message: str
    status_code: Optional[int] = None
    error_code: Optional[str] = None


def _status_code_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, MatchServiceError):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    if isinstance(exc, GoogleAPICallError):
        # Cloud Storage and other Google SDK errors carry the HTTP status in `code`.
        return exc.code if isinstance(exc.code, int) else None
    code = getattr(exc, "status_code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        return code
    return None


def _error_code_of(exc: BaseException, status_code: Optional[int]) -> Optional[str]:
    code = getattr(exc, "error_code", None)
    if isinstance(code, str) and code:
        return code
    if status_code is not None:
        return _IMPLIED_ERROR_CODES.get(status_code)
    return None


def is_retryable_error(exc: BaseException) -> bool:
    """Return True if the failure is worth retrying.

    Structured errors are judged by status code: >=500, 429 and 408 are
    retryable, any other 4xx is not.  Transport failures without a status
    code are retryable.  Unknown errors default to retryable so that a
    transient glitch is never mistaken for permanent data loss.
    """
    status_code = _status_code_of(exc)
    if status_code is not None:
        return status_code >= 500 or status_code in _RETRYABLE_STATUS_CODES
    if isinstance(exc, _TRANSPORT_TYPES):
        return True
    if isinstance(exc, _FATAL_TYPES):
        return False
    return True


def get_user_friendly_message(exc: BaseException) -> str:
    """Map a failure to a static, user-facing message."""
    code = _error_code_of(exc, _status_code_of(exc))
    if code and code in ERROR_MESSAGES:
        return ERROR_MESSAGES[code]
    return ERROR_MESSAGES["DEFAULT"]


def classify_error(exc: BaseException) -> ErrorClassification:
    status_code = _status_code_of(exc)
    return ErrorClassification(
        retryable=is_retryable_error(exc),
        user_message=get_user_friendly_message(exc),
        status_code=status_code,
        error_code=_error_code_of(exc, status_code),
    )


def error_from_response(response: httpx.Response) -> MatchServiceError:
    """Convert a non-2xx backend response into a :class:`MatchServiceError`.

    The body's ``message`` (or ``error``) and ``errorCode`` are used when the
    body is JSON; otherwise a generic message built from the status line.
    """
    message = f"API Error: {response.status_code} {response.reason_phrase}"
    error_code: Optional[str] = None

    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or message
        error_code = body.get("errorCode") or None

    return MatchServiceError(str(message), response.status_code, error_code)
