from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from llm_relay.db.base import Base


class QueueItem(Base):
    """A single LLM request waiting for (or done with) dispatch."""

    __tablename__ = "queue_items"
    __table_args__ = (
        Index("ix_queue_items_dispatch", "status", "priority", "created_at"),
        Index("ix_queue_items_account_status", "account_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    provider_config_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    content_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    request_payload: Mapped[str] = mapped_column(Text, nullable=False)  # JSON-serialized ProviderRequest
    priority: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | processing | completed | failed
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    error: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON-serialized RelayError
    response: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON-serialized ProviderResponse

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for the API."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "provider_config_id": self.provider_config_id,
            "content_id": self.content_id,
            "priority": self.priority,
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "response": self.response,
        }
