from fastapi import APIRouter

from llm_relay.api.v1.queue import router as queue_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(queue_router)
