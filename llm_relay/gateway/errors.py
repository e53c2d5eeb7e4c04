"""Error taxonomy for the relay.

Every failure is a RelayError tagged with an ErrorKind. Whether a kind may be
retried, and for how many attempts, is decided by a single table
(RETRY_POLICY) that must cover every kind; the module refuses to import if a
kind is missing from it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Tag for every error the relay can produce or receive."""

    # Admission
    QUOTA_EXCEEDED = "quota_exceeded"
    CONFIG_NOT_FOUND = "config_not_found"
    CONFIG_INACTIVE = "config_inactive"

    # Provider call
    AUTHENTICATION_ERROR = "authentication_error"
    PERMISSION_ERROR = "permission_error"
    INVALID_REQUEST = "invalid_request"
    CONTENT_FILTERED = "content_filtered"
    RATE_LIMIT = "rate_limit"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    MODEL_NOT_AVAILABLE = "model_not_available"
    UNKNOWN_ERROR = "unknown_error"

    # Synthetic
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"
    PROCESSING_ERROR = "processing_error"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry rule for one error kind.

    retryable: whether the error is transient at all.
    max_attempt: retry only while the failed attempt number is below this
        (None = no per-kind cap, the engine's max_attempts still applies).
    """

    retryable: bool
    max_attempt: int | None = None

    def allows(self, attempt: int) -> bool:
        if not self.retryable:
            return False
        return self.max_attempt is None or attempt < self.max_attempt


RETRY_POLICY: dict[ErrorKind, RetryPolicy] = {
    ErrorKind.QUOTA_EXCEEDED: RetryPolicy(retryable=True, max_attempt=2),
    ErrorKind.CONFIG_NOT_FOUND: RetryPolicy(retryable=False),
    ErrorKind.CONFIG_INACTIVE: RetryPolicy(retryable=False),
    ErrorKind.AUTHENTICATION_ERROR: RetryPolicy(retryable=False),
    ErrorKind.PERMISSION_ERROR: RetryPolicy(retryable=False),
    ErrorKind.INVALID_REQUEST: RetryPolicy(retryable=False),
    ErrorKind.CONTENT_FILTERED: RetryPolicy(retryable=False),
    ErrorKind.RATE_LIMIT: RetryPolicy(retryable=True),
    ErrorKind.NETWORK_ERROR: RetryPolicy(retryable=True),
    ErrorKind.TIMEOUT: RetryPolicy(retryable=True, max_attempt=3),
    ErrorKind.SERVER_ERROR: RetryPolicy(retryable=True, max_attempt=3),
    ErrorKind.MODEL_NOT_AVAILABLE: RetryPolicy(retryable=False),
    ErrorKind.UNKNOWN_ERROR: RetryPolicy(retryable=True),
    # Breaker short-circuits are never retried inside the engine (max_attempt=0),
    # but the queue may requeue the item for a later tick.
    ErrorKind.CIRCUIT_OPEN: RetryPolicy(retryable=True, max_attempt=0),
    ErrorKind.CANCELLED: RetryPolicy(retryable=False),
    ErrorKind.PROCESSING_ERROR: RetryPolicy(retryable=False),
}

_missing = set(ErrorKind) - set(RETRY_POLICY)
if _missing:
    raise RuntimeError(f"RETRY_POLICY has no entry for: {sorted(k.value for k in _missing)}")


def policy_for(kind: ErrorKind) -> RetryPolicy:
    return RETRY_POLICY[kind]


class RelayError(Exception):
    """Base error carrying a kind, a human message and arbitrary context."""

    default_kind: ErrorKind = ErrorKind.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        kind: ErrorKind | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.kind = kind or self.default_kind
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    @property
    def retryable(self) -> bool:
        return RETRY_POLICY[self.kind].retryable

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for storage/API."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": _jsonable(self.context),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> RelayError:
        kind = ErrorKind(data.get("kind", ErrorKind.UNKNOWN_ERROR.value))
        return RelayError(data.get("message", ""), kind=kind, context=data.get("context") or {})

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class ProviderError(RelayError):
    """Raised by provider adapters for a failed call."""


class CircuitOpenError(RelayError):
    """Raised without contacting the provider while the breaker is open."""

    default_kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, message: str = "Circuit breaker is open - requests temporarily blocked", **context: Any):
        super().__init__(message, context=context)


class AdmissionError(RelayError):
    """Raised synchronously by enqueue; no queue item is created."""


class QuotaExceededError(AdmissionError):
    default_kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, window: str, limit: int, current_usage: int, requested: int = 1, account_id: int | None = None):
        super().__init__(
            f"{window.capitalize()} limit exceeded ({current_usage}/{limit})",
            context={
                "account_id": account_id,
                "window": window,
                "limit": limit,
                "current_usage": current_usage,
                "requested": requested,
            },
        )
        self.window = window
        self.limit = limit
        self.current_usage = current_usage
        self.requested = requested

    @property
    def retryable(self) -> bool:
        # Admission refusals are final for the caller; the call-level
        # quota_exceeded policy only applies to provider responses.
        return False


class ConfigNotFoundError(AdmissionError):
    default_kind = ErrorKind.CONFIG_NOT_FOUND

    def __init__(self, config_id: int):
        super().__init__("Provider configuration not found", context={"config_id": config_id})


class ConfigInactiveError(AdmissionError):
    default_kind = ErrorKind.CONFIG_INACTIVE

    def __init__(self, config_id: int):
        super().__init__("Provider configuration is inactive", context={"config_id": config_id})


def normalize_error(exc: BaseException) -> RelayError:
    """Wrap an arbitrary exception into a RelayError."""
    if isinstance(exc, RelayError):
        return exc
    if isinstance(exc, TimeoutError):
        return ProviderError("Request timeout", kind=ErrorKind.TIMEOUT, context={"original_error": str(exc)})
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if status == 429:
        return ProviderError("Rate limit exceeded", kind=ErrorKind.RATE_LIMIT, context={"original_error": str(exc)})
    if isinstance(status, int) and status >= 500:
        return ProviderError("Server error", kind=ErrorKind.SERVER_ERROR, context={"original_error": str(exc)})
    return RelayError(str(exc) or type(exc).__name__, kind=ErrorKind.UNKNOWN_ERROR, context={"type": type(exc).__name__})


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
