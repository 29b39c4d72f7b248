"""Environment-driven settings for the document store.

Manifesto:
    Connection strings and pool limits belong to the deployment, not the
    code.  ``DocStoreSettings`` reads them from ``SQLJSON_*`` environment
    variables or a ``.env`` file and validates them once at startup.

Examples:
    >>> from sqljson.settings import DocStoreSettings
    >>> settings = DocStoreSettings(dsn="sqlite:///docs.db", table_prefix="app_")
    >>> settings.max_open_conns
    100

Tags:
    settings, configuration, pydantic, environment, sqljson
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logging import configure_logging


class DocStoreSettings(BaseSettings):
    """Settings for ``ConnectionManager`` and ``DocumentStore``.

    Fields
    ──────
    dsn                 : Database URL or SQLite file path
    table_prefix        : Prepended to every collection name
    max_open_conns      : Upper bound of pooled connections
    max_idle_conns      : Connections kept open while idle
    retry_step_seconds  : Delay added per failed connection attempt
    retry_max_seconds   : Cap on the delay between attempts
    log_level           : structlog level
    log_json            : JSON output (None = auto-detect from tty)
    """

    model_config = SettingsConfigDict(
        env_prefix="SQLJSON_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Backend ──────────────────────────────────────────────────
    dsn: str = "sqlite:///sqljson.db"
    table_prefix: str = ""

    # ── Pool ─────────────────────────────────────────────────────
    max_open_conns: int = Field(default=100, ge=1)
    max_idle_conns: int = Field(default=10, ge=0)

    # ── Connection retry ─────────────────────────────────────────
    retry_step_seconds: float = Field(default=1.0, gt=0)
    retry_max_seconds: float = Field(default=60.0, gt=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    @model_validator(mode="after")
    def _check_limits(self) -> "DocStoreSettings":
        if self.max_idle_conns > self.max_open_conns:
            raise ValueError("max_idle_conns must not exceed max_open_conns")
        if self.retry_step_seconds > self.retry_max_seconds:
            raise ValueError("retry_step_seconds must not exceed retry_max_seconds")
        return self

    def apply_logging(self) -> None:
        """Configure structlog from ``log_level`` and ``log_json``."""
        configure_logging(level=self.log_level, json_format=self.log_json)
