from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Conecta API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")
    log_level: str = Field(default="INFO", env="LOG_LEVEL", description="Root log level")
    server_host: str = Field(default="0.0.0.0", env="SERVER_HOST", description="Interface uvicorn binds to")
    server_port: int = Field(default=8000, env="SERVER_PORT", description="Port uvicorn listens on")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    database_dsn: str | None = Field(
        default=None,
        env="DATABASE_DSN",
        description="Full SQLAlchemy URL; overrides the DB_* settings when present",
    )
    database_user: str = Field(default="conecta", env="DB_USER")
    database_password: str = Field(default="conecta", env="DB_PASSWORD")
    database_host: str = Field(default="db", env="DB_HOST")
    database_port: int = Field(default=3306, env="DB_PORT")
    database_name: str = Field(default="conecta", env="DB_NAME")

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    chat_history_default_limit: int = Field(default=50, env="CHAT_HISTORY_DEFAULT_LIMIT")
    chat_history_max_limit: int = Field(default=100, env="CHAT_HISTORY_MAX_LIMIT")
    chat_message_max_length: int = Field(default=1000, env="CHAT_MESSAGE_MAX_LENGTH")

    realtime_typing_ttl_seconds: float = Field(
        default=5.0,
        env="REALTIME_TYPING_TTL_SECONDS",
        description="Seconds of inactivity after which a typing indicator is cleared.",
    )
    realtime_allow_anonymous: bool = Field(
        default=False,
        env="REALTIME_ALLOW_ANONYMOUS",
        description="Accept sessions without credential as read only anonymous sessions.",
    )
    realtime_auth_timeout_seconds: float = Field(
        default=20.0,
        env="REALTIME_AUTH_TIMEOUT_SECONDS",
        description="Close sockets that do not authenticate within this window.",
    )
    websocket_keepalive_timeout_seconds: float = Field(
        default=30.0, env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS"
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25.0, env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS"
    )
    polling_default_window_seconds: int = Field(
        default=60,
        env="POLLING_DEFAULT_WINDOW_SECONDS",
        description="Look-back window used when a poll request carries no 'since'.",
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        if self.database_dsn:
            return self.database_dsn
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
