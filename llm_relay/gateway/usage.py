"""Usage ledger: call logs (quota source) and usage/cost records."""

from __future__ import annotations

import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from llm_relay.gateway.errors import RelayError
from llm_relay.gateway.provider_adapters import calculate_cost
from llm_relay.gateway.types import ProviderResponse
from llm_relay.models.queue_item import QueueItem
from llm_relay.models.usage import CallLog, UsageRecord

logger = logging.getLogger(__name__)


class UsageLedger:
    """Writes one CallLog per dispatch outcome and a UsageRecord per success.

    Rows are added to the caller's session; committing is the caller's job so
    the ledger entry lands in the same transaction as the item write-back.
    """

    def record_success(
        self,
        session: AsyncSession,
        item: QueueItem,
        response: ProviderResponse,
        processing_time_ms: int,
        retry_count: int,
    ) -> UsageRecord:
        cost = calculate_cost(response.model, response.prompt_tokens, response.completion_tokens)
        usage = UsageRecord(
            account_id=item.account_id,
            provider_config_id=item.provider_config_id,
            provider=response.provider,
            model=response.model,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            total_tokens=response.total_tokens,
            latency_ms=processing_time_ms,
            cost_usd=cost,
        )
        session.add(usage)
        session.add(
            CallLog(
                account_id=item.account_id,
                provider_config_id=item.provider_config_id,
                queue_item_id=item.id,
                content_id=item.content_id,
                provider=response.provider,
                status="success",
                prompt_tokens=response.prompt_tokens,
                completion_tokens=response.completion_tokens,
                total_tokens=response.total_tokens,
                processing_time_ms=processing_time_ms,
                retry_count=retry_count,
            )
        )
        logger.debug(
            "Usage recorded for %s: %d tokens, $%.6f",
            item.id,
            response.total_tokens,
            cost,
            extra={"queue_id": item.id, "account_id": item.account_id, "provider": response.provider},
        )
        return usage

    def record_failure(
        self,
        session: AsyncSession,
        item: QueueItem,
        error: RelayError,
        processing_time_ms: int,
        provider: str | None = None,
        retry_count: int = 0,
    ) -> None:
        session.add(
            CallLog(
                account_id=item.account_id,
                provider_config_id=item.provider_config_id,
                queue_item_id=item.id,
                content_id=item.content_id,
                provider=provider or error.context.get("provider"),
                status="failed",
                processing_time_ms=processing_time_ms,
                retry_count=retry_count,
                error=json.dumps(error.to_dict(), ensure_ascii=False),
            )
        )
