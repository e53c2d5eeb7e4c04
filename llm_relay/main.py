import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from llm_relay.api.v1.router import api_v1_router
from llm_relay.core.config import settings, validate_settings_for_production
from llm_relay.core.logging import setup_logging
from llm_relay.core.metrics import PrometheusMiddleware, metrics_response
from llm_relay.core.sentry import init_sentry
from llm_relay.db.postgres import async_session_factory, engine, get_db
from llm_relay.gateway.errors import AdmissionError, ConfigInactiveError, ConfigNotFoundError, QuotaExceededError
from llm_relay.gateway.runtime import build_chain, build_queue_manager, build_serial_controller

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting LLM relay...")

    chain = build_chain()
    app.state.queue_manager = build_queue_manager(async_session_factory, chain)
    app.state.serial_controller = build_serial_controller(chain)
    if settings.run_dispatcher_in_app:
        await app.state.queue_manager.start()

    yield

    # Shutdown
    await app.state.queue_manager.stop()
    await engine.dispose()
    logger.info("LLM relay shut down")


app = FastAPI(
    title="LLM Relay",
    description="Queued, quota-gated LLM request relay with retries, circuit breakers and provider fallback",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


_ADMISSION_STATUS = {
    QuotaExceededError: 429,
    ConfigNotFoundError: 404,
    ConfigInactiveError: 409,
}


@app.exception_handler(AdmissionError)
async def _admission_error_handler(request: Request, exc: AdmissionError):
    status = _ADMISSION_STATUS.get(type(exc), 400)
    return JSONResponse(status_code=status, content={"detail": exc.message, "error": exc.to_dict()})


# Log unhandled exceptions with traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


app.add_middleware(PrometheusMiddleware)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    manager = getattr(app.state, "queue_manager", None)
    return {
        "status": "ok",
        "postgres": True,
        "dispatcher_running": bool(manager and manager.running),
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
