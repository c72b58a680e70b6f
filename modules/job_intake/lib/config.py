from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from .utils import getenv_str


# -----------------------------
# Exceptions
# -----------------------------
class ConfigError(ValueError):
    """Raised when provided kwargs/env cannot form a valid Settings."""


# -----------------------------
# Models
# -----------------------------
@dataclass
class Settings:
    """
    Canonical configuration for job intake and webhook sync.

    Every field can come from kwargs (scheduler/CLI) or from the environment:

        sqlite_path         JOB_INTAKE_DB               /app/local/state/job_intake.db
        webhook_url         JOB_INTAKE_WEBHOOK_URL      (unset: forwarding disabled)
        webhook_timeout     JOB_INTAKE_WEBHOOK_TIMEOUT  10.0 seconds
        cursor_key          JOB_INTAKE_CURSOR_KEY       webhook_sync
        batch_max_items     JOB_INTAKE_BATCH_MAX        100
        sync_lease_seconds  JOB_INTAKE_SYNC_LEASE       900

    kwargs win over the environment.
    """

    sqlite_path: str = "/app/local/state/job_intake.db"
    webhook_url: str | None = None
    webhook_timeout: float = 10.0
    cursor_key: str = "webhook_sync"
    batch_max_items: int = 100
    sync_lease_seconds: int = 900

    @property
    def forwarding_enabled(self) -> bool:
        return bool(self.webhook_url)

    # ------------- constructors -------------
    @classmethod
    def from_env_and_kwargs(cls, kwargs: Mapping[str, Any] | None = None) -> Settings:
        kw = dict(kwargs or {})

        def pick(key: str, env: str, default: Any) -> Any:
            v = kw.get(key)
            if v is None or (isinstance(v, str) and not v.strip()):
                v = getenv_str(env)
            if v is None or (isinstance(v, str) and not v.strip()):
                return default
            return v

        webhook_url = pick("webhook_url", "JOB_INTAKE_WEBHOOK_URL", None)

        try:
            webhook_timeout = float(pick("webhook_timeout", "JOB_INTAKE_WEBHOOK_TIMEOUT", 10.0))
            batch_max_items = int(pick("batch_max_items", "JOB_INTAKE_BATCH_MAX", 100))
            sync_lease_seconds = int(pick("sync_lease_seconds", "JOB_INTAKE_SYNC_LEASE", 900))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        settings = cls(
            sqlite_path=str(pick("sqlite_path", "JOB_INTAKE_DB", cls.sqlite_path)).strip(),
            webhook_url=str(webhook_url).strip() if webhook_url else None,
            webhook_timeout=webhook_timeout,
            cursor_key=str(pick("cursor_key", "JOB_INTAKE_CURSOR_KEY", cls.cursor_key)).strip(),
            batch_max_items=batch_max_items,
            sync_lease_seconds=sync_lease_seconds,
        )
        _validate_settings(settings)
        return settings


# -----------------------------
# Helpers
# -----------------------------
def _validate_settings(s: Settings) -> None:
    if not s.sqlite_path:
        raise ConfigError("'sqlite_path' cannot be empty.")
    if not s.cursor_key:
        raise ConfigError("'cursor_key' cannot be empty.")
    if s.webhook_timeout <= 0:
        raise ConfigError("'webhook_timeout' must be > 0.")
    if s.batch_max_items < 1:
        raise ConfigError("'batch_max_items' must be >= 1.")
    if s.sync_lease_seconds < 1:
        raise ConfigError("'sync_lease_seconds' must be >= 1.")
    if s.webhook_url:
        parts = urlsplit(s.webhook_url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ConfigError(f"'webhook_url' must be an http(s) URL (got {s.webhook_url!r}).")
