"""Chatdesk Backend Application.

This is the main entry point for the storefront's customer support chat
service. Customers open a support room from the shop; agents pick rooms up
from their dashboard and answer in real time.

Modules:
    - chat: WebSocket support channel, room/message persistence, presence
    - auth: bearer token verification for the chat channel
    - users: directory of storefront users (existence, role, display name)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatdesk.chat.gateway import build_gateway, get_gateway, set_gateway
from chatdesk.chat.router import router as chat_router
from chatdesk.config import get_config
from chatdesk.users.service import UserRecord

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-connection chatter from the server stack.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "websockets.protocol",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatdesk.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    gateway = build_gateway(config)
    set_gateway(gateway)
    logger.info(f"Chat gateway ready: database={config.database.path}")

    for seed in config.chat.seed_users:
        gateway.users.upsert_user(UserRecord(**seed.model_dump()))
    if config.chat.seed_users:
        logger.info(f"Seeded {len(config.chat.seed_users)} user(s) from settings")

    yield  # Application runs here

    # Shutdown
    gateway.store.close()
    gateway.users.close()
    set_gateway(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chatdesk API",
    description="Real-time customer support chat for the storefront",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the number of users currently connected.
    """
    return {"status": "ok", "onlineUsers": len(get_gateway().registry.online_users())}
