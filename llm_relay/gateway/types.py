"""Core types and DTOs for the relay gateway."""

from __future__ import annotations

import json
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from llm_relay.gateway.errors import ErrorKind, RelayError

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class QueueItemStatus(str, Enum):
    """Status of a queue item through its lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FallbackMode(str, Enum):
    """How the strategy list for a request is built."""

    FORCED = "forced"  # single provider, no fallback
    AUTO = "auto"  # configured provider first, then every other registered provider


# ---------------------------------------------------------------------------
# Provider request / response envelope
# ---------------------------------------------------------------------------


@dataclass
class ProviderRequest:
    """Uniform request envelope handed to every provider adapter."""

    messages: list[dict[str, str]] = field(default_factory=list)
    model: str = ""  # empty = adapter default
    temperature: float = 0.7
    max_tokens: int = 2048
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "messages": self.messages,
                "model": self.model,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
                "metadata": self.metadata,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> ProviderRequest:
        return cls.from_dict(json.loads(raw))

    @classmethod
    def from_dict(cls, data: dict) -> ProviderRequest:
        return cls(
            messages=list(data.get("messages") or []),
            model=data.get("model") or "",
            temperature=float(data.get("temperature", 0.7)),
            max_tokens=int(data.get("max_tokens", 2048)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ProviderResponse:
    """Uniform response envelope returned by every provider adapter."""

    content: str = ""
    provider: str = ""
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    latency_ms: int = 0
    finish_reason: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "provider": self.provider,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "latency_ms": self.latency_ms,
            "finish_reason": self.finish_reason,
        }


ProviderCall = Callable[[ProviderRequest], Awaitable[ProviderResponse]]


@dataclass
class QueueRequest:
    """One entry of an enqueue batch."""

    request: ProviderRequest
    content_id: str = ""
    priority: int = 0


# ---------------------------------------------------------------------------
# Provider strategy: immutable configuration of one fallback step
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderStrategy:
    """How to reach one provider. The ordered list of these is the fallback chain."""

    name: str
    model: str
    call: ProviderCall = field(compare=False, repr=False)
    priority: int = 0  # lower = tried earlier in auto mode
    credential_source: str = ""  # e.g. "config:12" or "env:OPENAI_API_KEY"

    @property
    def governor_key(self) -> str:
        return self.name


# ---------------------------------------------------------------------------
# Retry strategy & results
# ---------------------------------------------------------------------------


_DEFAULT_RETRYABLE = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMIT,
        ErrorKind.NETWORK_ERROR,
        ErrorKind.SERVER_ERROR,
    }
)


@dataclass(frozen=True)
class RetryStrategy:
    """Retry budget and backoff parameters for one engine."""

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    retryable_errors: frozenset[ErrorKind] = _DEFAULT_RETRYABLE

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


def default_retry_strategy() -> RetryStrategy:
    return RetryStrategy()


def aggressive_retry_strategy() -> RetryStrategy:
    return RetryStrategy(
        max_retries=5,
        base_delay_ms=500,
        max_delay_ms=60_000,
        backoff_multiplier=1.5,
        retryable_errors=_DEFAULT_RETRYABLE | {ErrorKind.QUOTA_EXCEEDED},
    )


def conservative_retry_strategy() -> RetryStrategy:
    return RetryStrategy(
        max_retries=2,
        base_delay_ms=2000,
        max_delay_ms=15_000,
        backoff_multiplier=2.0,
        retryable_errors=frozenset({ErrorKind.TIMEOUT, ErrorKind.NETWORK_ERROR, ErrorKind.SERVER_ERROR}),
    )


@dataclass
class AttemptRecord:
    """One try inside a single engine call."""

    attempt: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    delay_ms: int = 0  # sleep chosen after this attempt (0 if none)
    error: RelayError | None = None
    success: bool = False


@dataclass
class RetryResult:
    """Outcome of RetryEngine.execute_with_retry."""

    success: bool
    response: ProviderResponse | None = None
    error: RelayError | None = None
    attempts: int = 0
    total_time_ms: int = 0
    history: list[AttemptRecord] = field(default_factory=list)
    provider: str = ""

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


def new_queue_id() -> str:
    return f"queue_{uuid.uuid4().hex}"
