from __future__ import annotations
from typing import Literal
from pydantic import BaseModel
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

__version__ = "0.1.0"


class Settings(BaseModel, strict=True, frozen=True):
    host: str = "0.0.0.0"
    port: int = 12345
    db_path: str = "database.sqlite"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    # arguments for `create_async_engine`, for example {"echo": True}
    engine: dict[str, bool | int] = {}

    def db_url(self) -> URL:
        # sqlite URI filename, so the database is never opened for writing
        return URL.create(
            "sqlite+aiosqlite",
            database=f"file:{self.db_path}",
            query={"mode": "ro", "uri": "true"},
        )

    def create_engine(self) -> AsyncEngine:
        """
        Every checkout opens a new read-only connection (no pool).

        Notice: dispose engine after usage
        """
        return create_async_engine(
            self.db_url(), poolclass=NullPool, **self.engine
        )


def get_settings(path: str | None = None) -> Settings:
    import os

    if path is None:
        path = os.getenv("SIMPLELDAP_SETTINGS_PATH", "settings_ldap.json")
    try:
        with open(path) as f:
            return Settings.model_validate_json(f.read())
    except FileNotFoundError:
        return Settings()
