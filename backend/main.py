"""
Parley - Chat assistant backend
FastAPI app with a tool-calling turn loop
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import runtime_config
from errors import register_exception_handlers
from logging_config import setup_logging
from routers import chat

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown events"""
    # Redis backs the long-term memory store
    from services.redis_client import get_redis, close_redis

    redis = await get_redis()
    health = await redis.health_check()
    if health.get("status") == "connected":
        logger.info(f"Redis connected (latency: {health.get('latency_ms', '?')}ms)")
    else:
        logger.warning("Redis unavailable, memory store uses in-memory fallback (memories won't persist)")

    # PostgreSQL backs the chat store
    from services.database import get_database, close_database
    from services.chat_store import get_chat_store

    db = await get_database()
    await get_chat_store()
    if not db.available:
        logger.warning("PostgreSQL unavailable, chats are kept in memory (history won't persist)")

    logger.info(f"Parley ready (default model: {runtime_config.default_model})")

    yield

    # Shutdown
    await close_redis()
    logger.info("Redis connection closed")
    await close_database()
    logger.info("PostgreSQL connection closed")
    logger.info("Parley signing off")


app = FastAPI(
    title="Parley",
    description="Chat assistant with tools, citations and edit/regenerate",
    version="1.0.0",
    lifespan=lifespan,
)

register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in runtime_config.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Chat-Sources"],
)

app.include_router(chat.router, tags=["chat"])


@app.get("/health")
async def health():
    """Health check - pings Redis and PostgreSQL."""
    from services.redis_client import get_redis
    from services.database import get_database

    redis = await get_redis()
    redis_health = await redis.health_check()
    db = await get_database()
    db_health = await db.health_check()

    checks = {
        "redis": redis_health.get("status", "unknown"),
        "postgres": db_health.get("status", "unknown"),
    }
    all_ok = all(v == "connected" for v in checks.values())
    return {
        "status": "healthy" if all_ok else "degraded",
        "service": "parley",
        "checks": checks,
    }
