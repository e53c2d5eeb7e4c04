"""Queue admission, cancellation and status endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from llm_relay.core.dependencies import get_fallback_chain, get_queue_manager, get_serial_controller
from llm_relay.gateway.fallback import FallbackChain
from llm_relay.gateway.queue_manager import RequestQueueManager
from llm_relay.gateway.serial_controller import StrictSerialController
from llm_relay.gateway.types import ProviderRequest, QueueRequest
from llm_relay.schemas.queue import (
    CancelResponse,
    EnqueueBatchRequest,
    EnqueueBatchResponse,
    EnqueueRequest,
    EnqueueResponse,
    ProviderRequestIn,
    QueueStatusResponse,
    UserQueueStatusResponse,
)

router = APIRouter(prefix="/queue", tags=["queue"])


def _to_provider_request(body: ProviderRequestIn) -> ProviderRequest:
    return ProviderRequest.from_dict(body.model_dump())


# ── Admission ────────────────────────────────────────────────────


@router.post("/accounts/{account_id}/requests", response_model=EnqueueResponse, status_code=202)
async def enqueue_request(
    account_id: int,
    body: EnqueueRequest,
    manager: RequestQueueManager = Depends(get_queue_manager),
):
    queue_id = await manager.enqueue(
        account_id,
        body.config_id,
        _to_provider_request(body.request),
        content_id=body.content_id,
        priority=body.priority,
    )
    return EnqueueResponse(queue_id=queue_id)


@router.post("/accounts/{account_id}/batches", response_model=EnqueueBatchResponse, status_code=202)
async def enqueue_batch(
    account_id: int,
    body: EnqueueBatchRequest,
    manager: RequestQueueManager = Depends(get_queue_manager),
):
    entries = [
        QueueRequest(request=_to_provider_request(e.request), content_id=e.content_id, priority=e.priority)
        for e in body.requests
    ]
    queue_ids = await manager.enqueue_batch(account_id, body.config_id, entries)
    return EnqueueBatchResponse(queue_ids=queue_ids, count=len(queue_ids))


@router.delete("/accounts/{account_id}/requests/{queue_id}", response_model=CancelResponse)
async def cancel_request(
    account_id: int,
    queue_id: str,
    manager: RequestQueueManager = Depends(get_queue_manager),
):
    cancelled = await manager.cancel_request(queue_id, account_id)
    if not cancelled:
        raise HTTPException(status_code=409, detail="Request is not pending or does not belong to this account")
    return CancelResponse(queue_id=queue_id, cancelled=True)


# ── Status ───────────────────────────────────────────────────────


@router.get("/status", response_model=QueueStatusResponse)
async def queue_status(manager: RequestQueueManager = Depends(get_queue_manager)):
    return await manager.get_queue_status()


@router.get("/accounts/{account_id}/status", response_model=QueueStatusResponse)
async def account_queue_status(account_id: int, manager: RequestQueueManager = Depends(get_queue_manager)):
    return await manager.get_queue_status(account_id)


@router.get("/accounts/{account_id}/items", response_model=UserQueueStatusResponse)
async def account_queue_items(account_id: int, manager: RequestQueueManager = Depends(get_queue_manager)):
    return await manager.get_user_queue_status(account_id)


@router.get("/breakers")
async def breaker_states(chain: FallbackChain = Depends(get_fallback_chain)):
    return {name: state.to_dict() for name, state in chain.get_breaker_states().items()}


@router.get("/retry-stats")
async def retry_statistics(chain: FallbackChain = Depends(get_fallback_chain)):
    return chain.get_retry_statistics()


# ── Strict serialization controller ──────────────────────────────


@router.get("/serial/status")
async def serial_status(controller: StrictSerialController = Depends(get_serial_controller)):
    return controller.get_processing_status()


@router.get("/serial/stats")
async def serial_stats(controller: StrictSerialController = Depends(get_serial_controller)):
    return controller.get_stats()


@router.get("/serial/health")
async def serial_health(controller: StrictSerialController = Depends(get_serial_controller)):
    return controller.get_health_status()
