"""Grouple Chat Application.

This is the main entry point for the Grouple booking chat service.
Customers chat with the staff of the restaurant they booked, one room per
booking, while the main Grouple API handles bookings, restaurants and
accounts.

Modules:
    - chat: WebSocket booking chat rooms, authorization and history
    - bookings: read access to booking and restaurant records
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from grouple_chat.bookings import BookingStore
from grouple_chat.chat.authorization import AuthorizationResolver
from grouple_chat.chat.manager import ChatCoordinator
from grouple_chat.chat.message_store import ChatMessageStore
from grouple_chat.chat.router import router as chat_router
from grouple_chat.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    booking_store = BookingStore(db_path=config.database.bookings_path)
    message_store = ChatMessageStore(db_path=config.database.chat_path)
    resolver = AuthorizationResolver(
        booking_store,
        allow_unverified=config.chat.allow_unverified_connections,
    )
    coordinator = ChatCoordinator(
        resolver,
        message_store,
        max_message_length=config.chat.max_message_length,
    )

    if config.chat.preload_authorizations:
        await resolver.preload()
    else:
        logger.info("Authorization preload disabled; bookings resolve on first use")

    if config.chat.preload_history:
        await coordinator.preload_history()

    app.state.booking_store = booking_store
    app.state.message_store = message_store
    app.state.chat_coordinator = coordinator
    logger.info(
        f"Chat service initialized at ws://{config.server.host}:{config.server.port}/ws/chat"
    )

    yield  # Application runs here

    # Shutdown
    message_store.close()
    booking_store.close()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Grouple Chat API",
    description="Real-time chat between customers and restaurants about bookings",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok", "service": "grouple-chat"}
