"""Provider fallback chain.

Strategies are tried in order; each runs through its own RetryEngine (and so
its own circuit breaker), optionally under a ConcurrencyGovernor permit for
the provider. The first success is returned as-is; when every strategy fails
the last strategy's error is surfaced.

Usage:
    chain = FallbackChain(governor=ConcurrencyGovernor({"glm": 1}))
    strategies = build_strategies(config)
    result = await chain.execute(request, strategies)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from llm_relay.core.config import Settings, settings
from llm_relay.core.metrics import FALLBACKS
from llm_relay.gateway.circuit_breaker import CircuitBreakerState
from llm_relay.gateway.concurrency import ConcurrencyGovernor
from llm_relay.gateway.errors import ErrorKind, RelayError
from llm_relay.gateway.provider_adapters import PROVIDER_REGISTRY, build_strategy
from llm_relay.gateway.retry import RetryEngine
from llm_relay.gateway.types import (
    FallbackMode,
    ProviderRequest,
    ProviderStrategy,
    RetryResult,
    RetryStrategy,
)

logger = logging.getLogger(__name__)


class FallbackChain:
    """Runs a request across an ordered list of provider strategies."""

    def __init__(
        self,
        governor: ConcurrencyGovernor | None = None,
        strategy: RetryStrategy | None = None,
        failure_threshold: int | None = None,
        recovery_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.governor = governor
        self.retry_strategy = strategy or RetryStrategy(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )
        self.failure_threshold = failure_threshold or settings.breaker_failure_threshold
        self.recovery_timeout = recovery_timeout or settings.breaker_recovery_timeout_seconds
        self._clock = clock
        self._sleep = sleep
        self._engines: dict[str, RetryEngine] = {}

    def engine_for(self, name: str) -> RetryEngine:
        """The engine (and breaker) shared by every call to strategy `name`."""
        if name not in self._engines:
            self._engines[name] = RetryEngine(
                name=name,
                strategy=self.retry_strategy,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                clock=self._clock,
                sleep=self._sleep,
            )
        return self._engines[name]

    async def execute(
        self,
        request: ProviderRequest,
        strategies: list[ProviderStrategy],
        max_attempts: int | None = None,
    ) -> RetryResult:
        if not strategies:
            return RetryResult(
                success=False,
                error=RelayError("No provider strategies available", kind=ErrorKind.MODEL_NOT_AVAILABLE),
            )

        result: RetryResult | None = None
        for index, strategy in enumerate(strategies):
            result = await self._run_strategy(strategy, request, max_attempts)
            if result.success:
                if index > 0:
                    logger.info("Request served by fallback provider %s (step %d)", strategy.name, index + 1)
                return result

            logger.warning(
                "Strategy %s failed after %d attempt(s): %s",
                strategy.name,
                result.attempts,
                result.error,
            )
            if index < len(strategies) - 1:
                FALLBACKS.labels(from_provider=strategy.name).inc()

        return result

    async def _run_strategy(
        self,
        strategy: ProviderStrategy,
        request: ProviderRequest,
        max_attempts: int | None,
    ) -> RetryResult:
        engine = self.engine_for(strategy.name)
        if strategy.model and request.model != strategy.model:
            request = ProviderRequest(
                messages=request.messages,
                model=strategy.model,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                metadata=request.metadata,
            )

        async def call():
            return await strategy.call(request)

        if self.governor is None:
            return await engine.execute_with_retry(call, max_attempts=max_attempts)
        async with self.governor.slot(strategy.governor_key):
            return await engine.execute_with_retry(call, max_attempts=max_attempts)

    def get_breaker_states(self) -> dict[str, CircuitBreakerState]:
        return {name: engine.get_circuit_breaker_state() for name, engine in self._engines.items()}

    def get_retry_statistics(self) -> dict[str, dict]:
        return {name: engine.get_retry_statistics() for name, engine in self._engines.items()}


def build_strategies(config, cfg: Settings | None = None) -> list[ProviderStrategy]:
    """Build the ordered strategy list for a ProviderConfig.

    forced: only the configured provider.
    auto: the configured provider first, then every other registered provider
    that has a credential in settings, in registry priority order.
    """
    cfg = cfg or settings
    if config.provider not in PROVIDER_REGISTRY:
        raise RelayError(
            f"Unknown provider: {config.provider}",
            kind=ErrorKind.MODEL_NOT_AVAILABLE,
            context={"config_id": config.id, "provider": config.provider},
        )
    primary = build_strategy(
        config.provider,
        api_key=config.api_key or getattr(cfg, PROVIDER_REGISTRY[config.provider].api_key_setting),
        model=config.model,
        base_url=config.base_url or getattr(cfg, PROVIDER_REGISTRY[config.provider].base_url_setting),
        timeout=config.timeout_seconds,
        credential_source=f"config:{config.id}",
    )
    strategies = [primary]
    if config.fallback_mode == FallbackMode.FORCED.value:
        return strategies

    others = sorted(
        (spec for name, spec in PROVIDER_REGISTRY.items() if name != config.provider),
        key=lambda spec: spec.priority,
    )
    for spec in others:
        api_key = getattr(cfg, spec.api_key_setting)
        if not api_key:
            continue
        strategies.append(
            build_strategy(
                spec.name,
                api_key=api_key,
                base_url=getattr(cfg, spec.base_url_setting),
                timeout=config.timeout_seconds,
                credential_source=f"env:{spec.api_key_setting.upper()}",
            )
        )
    return strategies


def default_strategies(cfg: Settings | None = None) -> list[ProviderStrategy]:
    """Every registered provider with a credential in settings, in priority order."""
    cfg = cfg or settings
    strategies = []
    for spec in sorted(PROVIDER_REGISTRY.values(), key=lambda s: s.priority):
        api_key = getattr(cfg, spec.api_key_setting)
        if api_key:
            strategies.append(
                build_strategy(
                    spec.name,
                    api_key=api_key,
                    base_url=getattr(cfg, spec.base_url_setting),
                    credential_source=f"env:{spec.api_key_setting.upper()}",
                )
            )
    return strategies
