"""Service configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings

SQLITE_DRIVER = "sqlite+aiosqlite"


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # REST API
    port: int = 8080
    env: str = "development"
    log_level: str = "INFO"
    rate_limit_per_minute: int = 100
    cors_origins: list[str] = []

    # Auth
    app_bearer_token: str = ""

    # Storage
    database_url: str = "./data/memo.db"

    # Tool protocol server
    mcp_host: str = "0.0.0.0"
    mcp_port: int = 9090
    mcp_session_idle_timeout: float = 900.0  # seconds

    @property
    def sqlalchemy_url(self) -> str:
        """DATABASE_URL normalised to an async SQLAlchemy URL."""
        return resolve_database_url(self.database_url)


def resolve_database_url(url: str) -> str:
    """Map the accepted DATABASE_URL spellings onto an async SQLAlchemy URL.

    Accepts full SQLAlchemy URLs, ``file:`` URLs, bare file paths and
    ``:memory:``.  An empty value selects an in-memory database.
    """
    if not url or url.startswith(":memory:"):
        return f"{SQLITE_DRIVER}://"
    if url.startswith("file:"):
        path = url[len("file:"):]
        if path.startswith("//"):
            path = path[2:]
        return f"{SQLITE_DRIVER}:///{path}"
    if "://" in url:
        if url.startswith("sqlite://"):
            return SQLITE_DRIVER + url[len("sqlite"):]
        if url.startswith(("postgres://", "postgresql://")):
            return "postgresql+asyncpg://" + url.split("://", 1)[1]
        return url
    return f"{SQLITE_DRIVER}:///{Path(url)}"


settings = Settings()
