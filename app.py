import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from constants import HUB_BACKEND
from hub.collaborators import InMemoryAuthorizer, InMemoryIdentityService, InMemoryMessageStore
from hub.coordinator import Hub
from hub.errors import CloseReason, MalformedEnvelope
from logging_config import get_logger, setup_logging
from routers.conversations import conversations_router

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def build_hub(backend_name: str = HUB_BACKEND) -> Hub:
    """Create a hub wired to the configured collaborators."""
    if backend_name == "memory":
        logger.warning("Using in-memory collaborators: every join is allowed and nothing survives a restart")
        return Hub(InMemoryIdentityService(), InMemoryAuthorizer(open_conversations=True), InMemoryMessageStore())

    from backend import RedisAuthorizer, RedisIdentityService, RedisMessageStore, redis_backend

    redis_backend.ping()
    return Hub(RedisIdentityService(redis_backend), RedisAuthorizer(redis_backend), RedisMessageStore(redis_backend))


async def websocket_endpoint(websocket: WebSocket):
    """One read loop per connection. Everything after accept goes through the hub."""
    hub: Hub = websocket.app.state.hub
    await websocket.accept()
    connection_id = await hub.register(websocket)
    client = websocket.client.host if websocket.client else "unknown"
    logger.info(f"WebSocket connection {connection_id} accepted from {client}")

    reason = CloseReason.CLIENT_DISCONNECT
    frame_count = 0
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            frame_count += 1
            logger.debug(f"Received frame #{frame_count} on connection {connection_id}")
            if message.get("text") is not None:
                await hub.handle_frame(connection_id, message["text"])
            else:
                await hub.reject_frame(connection_id, MalformedEnvelope("Binary frames are not supported"))
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection_id}")
    except Exception as e:
        logger.error(f"Error receiving from connection {connection_id}: {e}", exc_info=True)
        reason = CloseReason.TRANSPORT_ERROR
    finally:
        await hub.close(connection_id, reason)


def create_app(hub: Optional[Hub] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.hub = hub or build_hub()
        await app.state.hub.start()
        yield
        await app.state.hub.stop()

    app = FastAPI(lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(conversations_router)
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
