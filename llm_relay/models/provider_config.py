from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from llm_relay.db.base import Base


class ProviderConfig(Base):
    """Account-owned configuration for reaching an LLM provider.

    Also carries the account's quota limits and the retry budget applied
    to every queue item admitted under this configuration.
    """

    __tablename__ = "provider_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)  # glm | openai | deepseek
    model: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    api_key: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    base_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Call parameters
    timeout_seconds: Mapped[float] = mapped_column(Float, default=60.0)
    max_tokens: Mapped[int] = mapped_column(Integer, default=2048)
    temperature: Mapped[float] = mapped_column(Float, default=0.7)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)

    # Strategy selection: forced = this provider only, auto = full fallback chain
    fallback_mode: Mapped[str] = mapped_column(String(10), default="auto")

    # Quota (None = unlimited)
    daily_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    monthly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
