"""Application configuration using Pydantic Settings"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # App
    app_name: str = "Market Chat API"
    debug: bool = False
    cors_origins: str = "*"

    # Database
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "marketchat"

    # Security
    jwt_secret: str
    jwt_algorithm: str = "HS256"

    # Realtime
    redis_url: Optional[str] = None  # enables cross-instance broadcast
    redis_channel: str = "market_chat:broadcast"
    handshake_timeout_seconds: float = 10.0
    outbox_size: int = 256

    # Chat
    attachment_max_bytes: int = 5 * 1024 * 1024
    attachment_max_count: int = 3
    default_page_size: int = 50

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def cors_origin_list(self) -> list:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
