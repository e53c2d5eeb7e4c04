from datetime import datetime

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    role: str = Field(pattern=r"^(system|user|assistant)$")
    content: str = Field(min_length=1)


class ProviderRequestIn(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    model: str = ""
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: int = Field(2048, ge=1, le=32768)
    metadata: dict = {}


class EnqueueRequest(BaseModel):
    config_id: int
    request: ProviderRequestIn
    content_id: str = Field("", max_length=255)
    priority: int = 0


class BatchEntry(BaseModel):
    request: ProviderRequestIn
    content_id: str = Field("", max_length=255)
    priority: int = 0


class EnqueueBatchRequest(BaseModel):
    config_id: int
    requests: list[BatchEntry] = Field(min_length=1, max_length=500)


class EnqueueResponse(BaseModel):
    queue_id: str


class EnqueueBatchResponse(BaseModel):
    queue_ids: list[str]
    count: int


class CancelResponse(BaseModel):
    queue_id: str
    cancelled: bool


class QueueStatusResponse(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    total: int
    success_rate: float
    avg_wait_time_ms: float
    avg_processing_time_ms: float


class QueueItemResponse(BaseModel):
    id: str
    account_id: int
    provider_config_id: int
    content_id: str
    priority: int
    status: str
    retry_count: int
    max_retries: int
    created_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    error: str | None
    response: str | None


class UserQueueStatusResponse(BaseModel):
    pending: list[QueueItemResponse]
    processing: list[QueueItemResponse]
    recent_completed: list[QueueItemResponse]
    recent_failed: list[QueueItemResponse]
