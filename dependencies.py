from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Annotated
from uuid import uuid4
import logging
from time import time

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlmodel import create_engine
from jwt.exceptions import InvalidTokenError
import jwt

from core.config import get_settings
from core.exceptions import ChatError
from services.chat import ChatService

settings = get_settings()
logger = logging.getLogger(__name__)


@lru_cache()
def get_engine() -> Engine:
    return create_engine(settings.DATABASE_URL, echo=settings.DB_ECHO, pool_pre_ping=True)

def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service

ChatServiceDep = Annotated[ChatService, Depends(get_chat_service)]

# Identity: tokens are issued by the auth service, we only verify them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta else timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

async def get_current_user_id(
    request: Request,
    bearer: Annotated[str | None, Depends(oauth2_scheme)],
) -> int:
    credentials_exception = HTTPException(
        status_code=401,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    token = bearer or request.cookies.get("access_token")
    if not token:
        raise credentials_exception
    token = token.replace("Bearer ", "")
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            raise credentials_exception
        return int(subject)
    except (InvalidTokenError, ValueError):
        raise credentials_exception

CurrentUserId = Annotated[int, Depends(get_current_user_id)]

# Rate limiting dependency
def rate_limit(key_prefix: str, limit: int, window: int = 60):
    async def dependency(request: Request, user_id: CurrentUserId):
        redis = request.app.state.redis
        if redis is None:
            return
        try:
            key = f"rate_limit:{key_prefix}:{user_id}:{int(time() // window)}"
            requests = await redis.incr(key)
            if requests == 1:
                await redis.expire(key, window)
        except Exception as e:
            # Redis trouble must not block messaging
            logger.error(f"Rate limit error: {str(e)}")
            return

        if requests > limit:
            raise HTTPException(status_code=429, detail="Too many requests")

    return dependency

# Middleware
async def log_requests(request: Request, call_next):
    start_time = time()
    response = await call_next(request)
    process_time = time() - start_time

    logger.info(
        f"Path: {request.url.path} | "
        f"Method: {request.method} | "
        f"Status: {response.status_code} | "
        f"Process Time: {process_time:.2f}s"
    )
    return response

# Error handlers
def setup_error_handlers(app):
    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        logger.info(
            f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.detail}"
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error": type(exc).__name__},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        error_id = str(uuid4())
        logger.error(
            f"Unhandled error {error_id}: {str(exc)}",
            exc_info=True,
            extra={
                "path": request.url.path,
                "method": request.method,
                "error_id": error_id,
            },
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "An unexpected error occurred", "error_id": error_id},
        )
