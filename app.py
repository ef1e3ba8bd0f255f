from contextlib import asynccontextmanager
from typing import Optional
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from routers.channel import channel_router
from backend import RedisDeliveryChannel, RedisRoomStore, create_redis_client
from coordinator import SignalingCoordinator
from identity import UserIdGenerator
from logging_config import get_logger, setup_logging

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def build_coordinator() -> SignalingCoordinator:
    """Wire the Redis-backed store and channel into a coordinator. Called once per process."""
    redis_client = create_redis_client()
    pubsub_client = create_redis_client()
    return SignalingCoordinator(
        store=RedisRoomStore(redis_client),
        channel=RedisDeliveryChannel(redis_client, pubsub_client),
        user_id_generator=UserIdGenerator(),
    )


def create_app(coordinator: Optional[SignalingCoordinator] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "coordinator", None) is None:
            app.state.coordinator = build_coordinator()
        logger.info("Signaling coordinator ready")
        yield

    app = FastAPI(lifespan=lifespan)
    app.state.coordinator = coordinator

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins
        allow_credentials=True,
        allow_methods=["*"],  # Allow all HTTP methods
        allow_headers=["*"],  # Allow all headers
    )

    app.include_router(rooms_router)
    app.include_router(channel_router)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
