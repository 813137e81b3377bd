"""
Application settings.
DB credentials may be loaded from AWS Secrets Manager at startup.
"""
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # AWS
    AWS_REGION: str = "ap-south-1"

    # Database. DATABASE_URL wins; else built from DB_* parts.
    DATABASE_URL: Optional[str] = None
    DB_HOST: Optional[str] = None
    DB_PORT: int = 5432
    DB_NAME: Optional[str] = None
    DB_USER: Optional[str] = None
    DB_PASS: Optional[str] = None
    DB_SECRET_NAME: Optional[str] = None  # e.g. materoom/db

    # Redis (bearer sessions issued by the auth service)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    SESSION_TTL: int = 604800  # 7 days in seconds

    # Chat
    CHAT_MESSAGE_MAX_LENGTH: int = 10_000
    CHAT_PREVIEW_LENGTH: int = 200

    # Optional
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    PROJECT_NAME: str = "MateRoom API"
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if self.DB_HOST:
            return (
                f"postgresql+psycopg2://{self.DB_USER}:{self.DB_PASS}"
                f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            )
        return "sqlite:///./materoom.db"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()

# Only hit Secrets Manager when DB creds aren't already provided via
# environment variables (e.g. in Docker / local dev).
if not settings.DATABASE_URL and not settings.DB_HOST and settings.DB_SECRET_NAME:
    from materoom.aws.secrets import get_secret

    _db_secret = get_secret(settings.DB_SECRET_NAME, region_name=settings.AWS_REGION)
    settings.DB_HOST = _db_secret["host"]
    settings.DB_PORT = int(_db_secret.get("port", 5432))
    settings.DB_NAME = _db_secret["database"]
    settings.DB_USER = _db_secret["username"]
    settings.DB_PASS = _db_secret["password"]
