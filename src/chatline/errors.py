"""Error taxonomy and its mapping to HTTP status codes.

Every failure the service reports belongs to exactly one ``ErrorKind``. Each kind
has one exception class; ``status_code_for`` is the only place kinds are turned
into transport-level status codes.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    RATE_LIMITED = "RATE_LIMITED"
    DATABASE_ERROR = "DATABASE_ERROR"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"


class UpstreamCategory(str, Enum):
    """Completion provider failure categories."""

    CREDENTIALS = "credentials"
    QUOTA = "quota"
    CONTENT_POLICY = "content_policy"
    UNAVAILABLE = "unavailable"


class ChatlineError(Exception):
    """Base class for all reported failures."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    default_code: str = "ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(ChatlineError):
    kind = ErrorKind.VALIDATION_ERROR
    default_code = "VALIDATION_ERROR"


class NotFoundError(ChatlineError):
    """Missing or not owned by the caller; the two are deliberately indistinguishable."""

    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"


class UnauthenticatedError(ChatlineError):
    kind = ErrorKind.UNAUTHENTICATED
    default_code = "UNAUTHENTICATED"


class RateLimitedError(ChatlineError):
    kind = ErrorKind.RATE_LIMITED
    default_code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class DatabaseError(ChatlineError):
    kind = ErrorKind.DATABASE_ERROR
    default_code = "DATABASE_ERROR"


class UpstreamError(ChatlineError):
    kind = ErrorKind.UPSTREAM_ERROR
    default_code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str,
        category: UpstreamCategory = UpstreamCategory.UNAVAILABLE,
        **kwargs,
    ):
        super().__init__(message, code=kwargs.pop("code", f"UPSTREAM_{category.name}"), **kwargs)
        self.category = category


def field_errors(errors: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Flatten pydantic error dicts into field/message pairs."""
    return [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in errors
    ]


# Checked in order; first match wins
_UPSTREAM_PATTERNS: list[tuple[UpstreamCategory, tuple[str, ...]]] = [
    (UpstreamCategory.CREDENTIALS, ("api key", "api_key", "authentication", "unauthorized", "invalid_api_key")),
    (UpstreamCategory.QUOTA, ("quota", "rate limit", "rate_limit", "too many requests")),
    (UpstreamCategory.CONTENT_POLICY, ("content policy", "content_filter", "safety", "disallowed")),
]

_UPSTREAM_STATUS: dict[int, UpstreamCategory] = {
    401: UpstreamCategory.CREDENTIALS,
    403: UpstreamCategory.QUOTA,
    429: UpstreamCategory.QUOTA,
}


def classify_upstream_error(message: str, status: int | None = None) -> UpstreamCategory:
    """Pick a category for a provider failure by sniffing its message.

    The provider offers no structured error contract, so the message text wins
    and the HTTP status is only consulted when no pattern matches.
    """
    lowered = (message or "").lower()
    for category, patterns in _UPSTREAM_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return category
    if status is not None and status in _UPSTREAM_STATUS:
        return _UPSTREAM_STATUS[status]
    return UpstreamCategory.UNAVAILABLE


def status_code_for(error: ChatlineError) -> int:
    """Map an error to its HTTP status code."""
    kind = error.kind
    if kind is ErrorKind.VALIDATION_ERROR:
        return 400
    if kind is ErrorKind.NOT_FOUND:
        return 404
    if kind is ErrorKind.UNAUTHENTICATED:
        return 401
    if kind is ErrorKind.RATE_LIMITED:
        return 429
    if kind is ErrorKind.DATABASE_ERROR:
        return 500
    if kind is ErrorKind.UPSTREAM_ERROR:
        category = getattr(error, "category", UpstreamCategory.UNAVAILABLE)
        if category is UpstreamCategory.CREDENTIALS:
            return 401
        if category is UpstreamCategory.QUOTA:
            return 429
        if category is UpstreamCategory.CONTENT_POLICY:
            return 400
        return 500
    raise AssertionError(f"Unhandled error kind: {kind}")
