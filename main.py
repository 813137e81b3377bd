"""
MateRoom Backend Application Entry Point.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from materoom.core.config import settings
from materoom.core.database import engine
from materoom.core.middleware import SessionMiddleware
from materoom.chat.gateway import chat_gateway
from materoom.router.endpoints import api_router
import logging
import uvicorn

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting application...")

    from materoom.session import init_redis, close_redis
    init_redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        session_ttl=settings.SESSION_TTL
    )
    logger.info("Redis connection initialized")

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection OK")

        # Auto-create tables in debug mode (use Alembic migrations in production)
        if settings.DEBUG:
            from materoom.core.database import Base
            from materoom.model import User, Conversation, Message  # noqa: F401
            Base.metadata.create_all(bind=engine)
            logger.info("Database tables created (DEBUG mode)")
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {e}")

    yield

    logger.info("Shutting down...")
    chat_gateway.clear()
    close_redis()
    engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    lifespan=lifespan,
)

# Session middleware
app.add_middleware(SessionMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(api_router)


@app.get("/health")
async def health():
    registry = chat_gateway.registry
    return {
        "status": "ok",
        "online_sessions": len(registry),
        "online_users": len(registry.online_user_ids()),
    }


@app.get("/")
async def root():
    return {"message": "Welcome to the MateRoom API!"}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
