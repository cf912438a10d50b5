"""Configuration loaded from environment variables.

Uses ``pydantic-settings`` for env-var loading, type coercion and ``.env``
file support.  Only the entry points (CLI, ASGI factory) read ``settings``;
everything below them receives an explicit :class:`BrokerOptions` record so
that the handshake store never consults process-wide state on its own.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

VERSION = "0.1.0"

# Environment variable consulted by resolve_dir() when no explicit dir is given.
HITL_DIR_ENV = "HITL_DIR"
DEFAULT_HITL_DIR = ".hitl"


class Settings(BaseSettings):
    """Process settings, sourced from environment / ``.env`` file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- handshake store --
    HITL_DIR: str = ""

    # -- HTTP broker service --
    HITL_HOST: str = "0.0.0.0"
    HITL_PORT: int = Field(default=7842, ge=1, le=65535)
    HITL_TOKEN: str = ""

    # -- logging --
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # -- operator loops (milliseconds) --
    WATCH_POLL_MS: int = 1000
    CONNECT_POLL_MS: int = 1200
    RUNTIME_POLL_MS: int = 1200
    RUNTIME_EVENTS_LIMIT: int = 200
    RUNTIME_TOKEN: str = ""


settings = Settings()


@dataclass(frozen=True)
class BrokerOptions:
    """Explicit configuration record for the file handshake store.

    ``dir`` wins over ``env[HITL_DIR]``, which wins over ``.hitl``.
    Relative paths are resolved against ``cwd``.
    """

    dir: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: str = field(default_factory=os.getcwd)

    @classmethod
    def from_settings(cls, dir: str | None = None, source: Settings | None = None) -> "BrokerOptions":
        """Build options for an entry point: explicit *dir*, else ``HITL_DIR`` from settings."""
        source = source or settings
        env = {HITL_DIR_ENV: source.HITL_DIR} if source.HITL_DIR else {}
        return cls(dir=(dir or None), env=env)
