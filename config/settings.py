"""Pydantic Settings — typed configuration with .env auto-loading."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Streaming configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Block parser ─────────────────────────────────────────
    text_buffer_limit: int = 64 * 1024  # Soft cap: trimmed from the front
    json_buffer_limit: int = 64 * 1024  # Hard cap: overflow raises
    text_trim_ratio: float = 0.75  # Fraction of the text cap kept after a trim

    # ── Streamer ─────────────────────────────────────────────
    default_target: Literal["messages", "state"] = "messages"

    # ── Event processor ──────────────────────────────────────
    # None = unbounded reorder buffer (a missing seq stalls forever)
    reorder_buffer_limit: int | None = None

    # ── Logging ──────────────────────────────────────────────
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Singleton accessor for streaming settings."""
    return Settings()


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install a root handler at ``level`` (defaults to ``Settings.log_level``).

    Library modules only log through ``logging.getLogger(__name__)``; an
    embedding application calls this once at startup.
    """
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format=LOG_FORMAT,
    )
