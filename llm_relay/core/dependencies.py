"""FastAPI dependencies resolving the relay components held on app.state."""

from fastapi import Request

from llm_relay.gateway.fallback import FallbackChain
from llm_relay.gateway.queue_manager import RequestQueueManager
from llm_relay.gateway.serial_controller import StrictSerialController


def get_queue_manager(request: Request) -> RequestQueueManager:
    return request.app.state.queue_manager


def get_fallback_chain(request: Request) -> FallbackChain:
    return request.app.state.queue_manager.chain


def get_serial_controller(request: Request) -> StrictSerialController:
    return request.app.state.serial_controller
