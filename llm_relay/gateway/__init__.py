"""LLM request relay gateway.

Async infrastructure for dispatching queued requests to LLM providers with:
  - Queue admission (per-account daily/monthly quota) and a dispatch ticker
  - Concurrency Governor (permits per provider key)
  - Retry Engine with exponential backoff and a circuit breaker
  - Provider Fallback Chain (forced or auto mode)
  - Strict Serialization Controller for push-delivered messages
"""
