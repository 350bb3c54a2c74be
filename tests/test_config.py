"""Unit tests for memo.config."""

import pytest

from memo.config import Settings, resolve_database_url


class TestResolveDatabaseUrl:
    @pytest.mark.parametrize("url", ["", ":memory:"])
    def test_in_memory(self, url):
        assert resolve_database_url(url) == "sqlite+aiosqlite://"

    def test_relative_path(self):
        assert resolve_database_url("./data/memo.db") == "sqlite+aiosqlite:///data/memo.db"

    def test_absolute_path(self):
        assert resolve_database_url("/var/lib/memo.db") == "sqlite+aiosqlite:////var/lib/memo.db"

    def test_file_url(self):
        assert resolve_database_url("file:./data/memo.db") == "sqlite+aiosqlite:///./data/memo.db"

    def test_sqlite_url_gets_async_driver(self):
        assert resolve_database_url("sqlite:///notes.db") == "sqlite+aiosqlite:///notes.db"

    @pytest.mark.parametrize("scheme", ["postgres", "postgresql"])
    def test_postgres_gets_asyncpg(self, scheme):
        url = f"{scheme}://memo:secret@db:5432/memo"
        assert resolve_database_url(url) == "postgresql+asyncpg://memo:secret@db:5432/memo"

    def test_explicit_driver_untouched(self):
        url = "postgresql+asyncpg://memo@db/memo"
        assert resolve_database_url(url) == url


class TestSettings:
    def test_defaults(self, monkeypatch):
        for var in ("PORT", "MCP_PORT", "DATABASE_URL", "APP_BEARER_TOKEN", "RATE_LIMIT_PER_MINUTE"):
            monkeypatch.delenv(var, raising=False)
        s = Settings(_env_file=None)
        assert s.port == 8080
        assert s.mcp_port == 9090
        assert s.rate_limit_per_minute == 100
        assert s.app_bearer_token == ""
        assert s.sqlalchemy_url == "sqlite+aiosqlite:///data/memo.db"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", ":memory:")
        monkeypatch.setenv("MCP_PORT", "9999")
        monkeypatch.setenv("CORS_ORIGINS", '["https://chat.example"]')
        s = Settings(_env_file=None)
        assert s.sqlalchemy_url == "sqlite+aiosqlite://"
        assert s.mcp_port == 9999
        assert s.cors_origins == ["https://chat.example"]
