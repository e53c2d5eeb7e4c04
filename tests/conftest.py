import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

# The app module builds its engine at import time; point it at SQLite before importing.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RUN_DISPATCHER_IN_APP", "false")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from llm_relay.core.config import settings  # noqa: E402

settings.app_env = "development"
settings.sentry_dsn = ""

from llm_relay.db.base import Base  # noqa: E402
from llm_relay.db.postgres import get_db  # noqa: E402
from llm_relay.gateway.fallback import FallbackChain  # noqa: E402
from llm_relay.gateway.queue_manager import RequestQueueManager  # noqa: E402
from llm_relay.gateway.queue_store import QueueStore  # noqa: E402
from llm_relay.gateway.serial_controller import SerialControllerConfig, StrictSerialController  # noqa: E402
from llm_relay.gateway.types import ProviderResponse, ProviderStrategy, RetryStrategy  # noqa: E402
from llm_relay.main import app  # noqa: E402
from llm_relay.models import ProviderConfig  # noqa: E402


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite file database per test, tables created from the models.

    NullPool gives every session its own connection, so concurrent dispatch
    writes behave like separate database clients.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}", echo=False, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def provider_config(db: AsyncSession) -> ProviderConfig:
    config = ProviderConfig(
        account_id=1,
        provider="glm",
        model="glm-4-flash",
        api_key="test-key",
        max_retries=3,
        fallback_mode="forced",
        daily_limit=100,
        monthly_limit=1000,
        is_active=True,
    )
    db.add(config)
    await db.commit()
    return config


def make_strategy(name: str = "glm", call=None, priority: int = 0) -> ProviderStrategy:
    """ProviderStrategy whose call is an AsyncMock returning a canned response."""
    if call is None:
        call = AsyncMock(
            return_value=ProviderResponse(
                content="Hello world",
                provider=name,
                model=f"{name}-model",
                prompt_tokens=10,
                completion_tokens=20,
                total_tokens=30,
            )
        )
    return ProviderStrategy(name=name, model=f"{name}-model", call=call, priority=priority)


@pytest.fixture
def fast_chain() -> FallbackChain:
    """Chain without backoff sleeps and without a governor."""
    return FallbackChain(
        strategy=RetryStrategy(max_retries=2, base_delay_ms=1, max_delay_ms=1),
        failure_threshold=5,
        recovery_timeout=60,
        sleep=AsyncMock(),
    )


@pytest.fixture
def strategy() -> ProviderStrategy:
    return make_strategy()


@pytest.fixture
def queue_manager(session_factory, fast_chain, strategy) -> RequestQueueManager:
    return RequestQueueManager(
        QueueStore(session_factory),
        fast_chain,
        batch_size=10,
        dispatch_interval=0.01,
        strategies_for=lambda config: [strategy],
    )


@pytest.fixture
async def client(session_factory, queue_manager) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.queue_manager = queue_manager
    app.state.serial_controller = StrictSerialController(
        AsyncMock(),
        SerialControllerConfig(poll_interval_seconds=0.01, processing_timeout_seconds=5),
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def strategy_factory():
    """Access to make_strategy from test modules."""
    return make_strategy
