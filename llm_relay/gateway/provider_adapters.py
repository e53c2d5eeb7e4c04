"""Provider adapters: OpenAI-compatible chat completions over httpx.

Each adapter turns a ProviderRequest into an HTTP call, and either returns a
ProviderResponse or raises a ProviderError tagged with the matching kind:

  - httpx timeout            → timeout
  - connection/transport     → network_error
  - 400 / 422                → invalid_request
  - 401                      → authentication_error
  - 402                      → quota_exceeded
  - 403                      → permission_error
  - 404                      → model_not_available
  - 429                      → rate_limit
  - 5xx                      → server_error
  - finish_reason filtered   → content_filtered

Known providers (GLM, OpenAI, DeepSeek) all speak the same wire format;
only base URL, default model and pricing differ.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

from llm_relay.gateway.errors import ErrorKind, ProviderError
from llm_relay.gateway.types import ProviderRequest, ProviderResponse, ProviderStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of a known provider."""

    name: str
    base_url: str
    default_model: str
    priority: int  # fallback order in auto mode, lower first
    api_key_setting: str  # Settings attribute holding the fallback credential
    base_url_setting: str


PROVIDER_REGISTRY: dict[str, ProviderSpec] = {
    "glm": ProviderSpec(
        name="glm",
        base_url="https://open.bigmodel.cn/api/paas/v4",
        default_model="glm-4-flash",
        priority=0,
        api_key_setting="glm_api_key",
        base_url_setting="glm_base_url",
    ),
    "deepseek": ProviderSpec(
        name="deepseek",
        base_url="https://api.deepseek.com/v1",
        default_model="deepseek-chat",
        priority=1,
        api_key_setting="deepseek_api_key",
        base_url_setting="deepseek_base_url",
    ),
    "openai": ProviderSpec(
        name="openai",
        base_url="https://api.openai.com/v1",
        default_model="gpt-4o-mini",
        priority=2,
        api_key_setting="openai_api_key",
        base_url_setting="openai_base_url",
    ),
}

# Pricing per 1K tokens (USD)
_PRICING: dict[str, dict[str, float]] = {
    "glm-4-flash": {"input": 0.0, "output": 0.0},
    "glm-4-air": {"input": 0.00014, "output": 0.00014},
    "glm-4-plus": {"input": 0.007, "output": 0.007},
    "deepseek-chat": {"input": 0.00027, "output": 0.0011},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-4o": {"input": 0.0025, "output": 0.01},
}
_DEFAULT_PRICING = {"input": 0.0001, "output": 0.0002}

_FILTERED_FINISH_REASONS = {"content_filter", "sensitive"}


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Cost in USD for one call."""
    pricing = _PRICING.get(model, _DEFAULT_PRICING)
    cost = (prompt_tokens / 1000) * pricing["input"] + (completion_tokens / 1000) * pricing["output"]
    return round(cost, 8)


_STATUS_KINDS: dict[int, tuple[ErrorKind, str]] = {
    400: (ErrorKind.INVALID_REQUEST, "Invalid request"),
    401: (ErrorKind.AUTHENTICATION_ERROR, "Authentication failed"),
    402: (ErrorKind.QUOTA_EXCEEDED, "Provider quota exceeded"),
    403: (ErrorKind.PERMISSION_ERROR, "Permission denied"),
    404: (ErrorKind.MODEL_NOT_AVAILABLE, "Model not available"),
    422: (ErrorKind.INVALID_REQUEST, "Invalid request"),
    429: (ErrorKind.RATE_LIMIT, "Rate limit exceeded"),
}


def error_for_status(provider: str, status_code: int, body: str = "") -> ProviderError:
    """Map a non-2xx HTTP status to a tagged ProviderError."""
    if status_code >= 500:
        kind, message = ErrorKind.SERVER_ERROR, "Service unavailable" if status_code == 503 else "Server error"
    else:
        kind, message = _STATUS_KINDS.get(status_code, (ErrorKind.UNKNOWN_ERROR, "Unexpected response"))
    return ProviderError(
        f"{message} from {provider} (HTTP {status_code})",
        kind=kind,
        context={"provider": provider, "status_code": status_code, "body": body[:500]},
    )


class OpenAICompatibleAdapter:
    """Chat-completions adapter for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        provider: str,
        api_key: str,
        base_url: str,
        default_model: str,
        timeout: float = 60.0,
    ):
        self.provider = provider
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout = timeout

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        model = request.model or self.default_model
        payload = {
            "model": model,
            "messages": request.messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        start = time.monotonic()

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.api_url,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"Request to {self.provider} timed out after {self.timeout:.0f}s",
                kind=ErrorKind.TIMEOUT,
                context={"provider": self.provider, "original_error": str(e)},
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"Network error calling {self.provider}: {e}",
                kind=ErrorKind.NETWORK_ERROR,
                context={"provider": self.provider},
            ) from e

        latency_ms = int((time.monotonic() - start) * 1000)

        if resp.status_code >= 400:
            raise error_for_status(self.provider, resp.status_code, resp.text)

        try:
            data = resp.json()
            choice = data["choices"][0]
            finish_reason = choice.get("finish_reason") or ""
            content = (choice.get("message") or {}).get("content") or ""
            usage = data.get("usage") or {}
            prompt_tokens = int(usage.get("prompt_tokens", 0))
            completion_tokens = int(usage.get("completion_tokens", 0))
            total_tokens = int(usage.get("total_tokens", prompt_tokens + completion_tokens))
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProviderError(
                f"Malformed response from {self.provider}",
                kind=ErrorKind.SERVER_ERROR,
                context={"provider": self.provider, "body": resp.text[:500]},
            ) from e

        if finish_reason in _FILTERED_FINISH_REASONS:
            raise ProviderError(
                f"Content filtered by {self.provider}",
                kind=ErrorKind.CONTENT_FILTERED,
                context={"provider": self.provider, "finish_reason": finish_reason},
            )

        return ProviderResponse(
            content=content,
            provider=self.provider,
            model=data.get("model", model),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            latency_ms=latency_ms,
            finish_reason=finish_reason,
            raw=data,
        )


def get_adapter(
    provider: str,
    api_key: str,
    model: str = "",
    base_url: str | None = None,
    timeout: float = 60.0,
) -> OpenAICompatibleAdapter:
    """Build an adapter for a registered provider."""
    spec = PROVIDER_REGISTRY.get(provider)
    if spec is None:
        raise ValueError(f"No adapter for provider: {provider}")
    return OpenAICompatibleAdapter(
        provider=provider,
        api_key=api_key,
        base_url=base_url or spec.base_url,
        default_model=model or spec.default_model,
        timeout=timeout,
    )


def build_strategy(
    provider: str,
    api_key: str,
    model: str = "",
    base_url: str | None = None,
    timeout: float = 60.0,
    credential_source: str = "",
) -> ProviderStrategy:
    """Wrap an adapter into an immutable ProviderStrategy."""
    adapter = get_adapter(provider, api_key, model=model, base_url=base_url, timeout=timeout)
    return ProviderStrategy(
        name=provider,
        model=adapter.default_model,
        call=adapter.send,
        priority=PROVIDER_REGISTRY[provider].priority,
        credential_source=credential_source,
    )
