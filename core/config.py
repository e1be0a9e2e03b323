from pydantic_settings import BaseSettings
from functools import lru_cache
from pathlib import Path


class Settings(BaseSettings):
    # App
    APP_NAME: str = "Chatrooms API"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = """
    Messaging API for direct and group conversations.

    ## Features
    * Direct chatrooms (one per pair of users) and admin-managed groups
    * Cursor-paginated message history and shared media
    * Per-participant read state and unread badges
    * Membership changes with preserved join history

    ## Rate Limits
    * Messages: 30 messages per minute
    """
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"
    OPENAPI_TAGS: list[dict] = [
        {
            "name": "chat",
            "description": "Chatrooms, membership, messages and read state"
        },
        {
            "name": "health",
            "description": "Service health checks"
        }
    ]
    CONTACT: dict = {"name": "Chatrooms team"}
    LICENSE_INFO: dict = {
        "name": "MIT",
        "url": "https://opensource.org/licenses/MIT",
        "identifier": "MIT",
    }

    # CORS
    CORS_ALLOWED_ORIGINS: list[str] = ["http://localhost:5173", "http://localhost"]

    # Database
    DB_USER: str = "postgres"
    DB_PASS: str = "postgres"
    DB_NAME: str = "chatrooms"
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_ECHO: bool = False
    TEST_DATABASE_URL: str = "sqlite://"

    @property
    def DATABASE_URL(self) -> str:
        return f"postgresql://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # JWT
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Redis
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # Rate Limiting
    MESSAGES_PER_MINUTE: int = 30

    # Chat
    MAX_MESSAGE_LENGTH: int = 1000
    MESSAGES_PAGE_MAX: int = 100
    MEDIA_PAGE_MAX: int = 50
    CHATROOMS_PAGE_MAX: int = 50
    CONFLICT_RETRY_ATTEMPTS: int = 3

    # Notifications
    NOTIFICATION_QUEUE: str = "chat:notifications"
    NOTIFICATION_PREVIEW_LENGTH: int = 100

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"  # console | json

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    # Project root holds the .env file
    root_dir = Path(__file__).resolve().parent.parent
    return Settings(_env_file=root_dir / ".env")
