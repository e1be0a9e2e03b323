from contextlib import asynccontextmanager
import logging
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute
from prometheus_fastapi_instrumentator import Instrumentator, metrics
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session
from redis import Redis
from redis import asyncio as aioredis

from core.config import get_settings
from core.logging_config import setup_logging
from dependencies import get_engine, log_requests, setup_error_handlers
from routers import chat_router
from services.chat import ChatService
from services.notifications import RedisNotificationDispatcher

# Initialize settings and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


def create_db_and_tables(engine: Engine):
    SQLModel.metadata.create_all(engine)

def custom_generate_unique_id(route: APIRoute):
    return f"{route.tags[0] if route.tags else ''}-{route.name}"

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect Redis for rate limiting and notifications, close it on shutdown"""
    notification_client = None
    if app.state.use_redis:
        try:
            app.state.redis = aioredis.from_url(
                settings.REDIS_URL, encoding="utf8", decode_responses=True
            )
            await app.state.redis.ping()
            logger.info("Successfully connected to Redis")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {str(e)}")
            raise
        if app.state.chat_service.dispatcher is None:
            notification_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)
            app.state.chat_service.dispatcher = RedisNotificationDispatcher(
                notification_client, settings.NOTIFICATION_QUEUE
            )
    try:
        yield
    finally:
        if app.state.redis is not None:
            await app.state.redis.close()
            app.state.redis = None
        if notification_client is not None:
            notification_client.close()

def create_application(
    engine: Engine | None = None,
    chat_service: ChatService | None = None,
    use_redis: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title=settings.APP_NAME,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        docs_url=settings.DOCS_URL,
        redoc_url=settings.REDOC_URL,
        openapi_url=settings.OPENAPI_URL,
        openapi_tags=settings.OPENAPI_TAGS,
        contact=settings.CONTACT,
        license_info=settings.LICENSE_INFO,
        lifespan=lifespan,
        generate_unique_id_function=custom_generate_unique_id,
    )

    # Store is created once and shared by every request
    app.state.engine = engine if engine is not None else get_engine()
    app.state.chat_service = chat_service or ChatService(app.state.engine)
    app.state.use_redis = use_redis
    app.state.redis = None

    # Add middleware
    app.middleware("http")(log_requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add error handlers
    setup_error_handlers(app)

    Instrumentator().instrument(app)\
        .add(metrics.request_size())\
        .add(metrics.response_size())\
        .add(metrics.latency(buckets=[0.1, 0.5, 1.0, 2.0, 3.0, 4.0, 5.0]))\
        .add(metrics.requests(should_include_handler=True))\
        .expose(app, include_in_schema=True, should_gzip=True)

    # Include routers
    app.include_router(chat_router, prefix="/chat", tags=["chat"])

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Health check endpoint for monitoring"""
        try:
            with Session(request.app.state.engine) as session:
                session.execute(text("SELECT 1"))

            if request.app.state.redis is not None:
                await request.app.state.redis.ping()

            return {
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc),
                "version": settings.APP_VERSION
            }
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}")
            raise HTTPException(
                status_code=503,
                detail="Service unavailable"
            )

    return app

def main():
    """Create the database tables"""
    create_db_and_tables(get_engine())
    logger.info("Database tables created")

if __name__ == "__main__":
    main()
