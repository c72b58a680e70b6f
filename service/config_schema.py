# service/config_schema.py
"""
Service config: where jobs and the shared intake settings come from.

    {
      "timezone": "UTC",
      "intake": {"sqlite_path": "...", "webhook_url_env": "N8N_WEBHOOK_URL"},
      "jobs": [
        {"id": "webhook-sync", "module": "modules.job_intake",
         "trigger": {"interval": {"minutes": 15}}, "kwargs": {"op": "sync"}}
      ]
    }

JSON or YAML (by extension). `intake.<field>_env` names an environment
variable that holds the value, so the webhook URL never lives in the file.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

import yaml

from modules.job_intake.lib.config import ConfigError as SettingsError
from modules.job_intake.lib.config import Settings
from modules.job_intake.main import OPS as INTAKE_OPS

logger = logging.getLogger(__name__)

INTAKE_MODULE = "modules.job_intake"
INTAKE_FIELDS = frozenset({
    "sqlite_path",
    "webhook_url",
    "webhook_timeout",
    "cursor_key",
    "batch_max_items",
    "sync_lease_seconds",
})


class ConfigError(ValueError):
    """The service config cannot be read or is malformed."""


def load_config(path: str | None = None) -> dict[str, Any]:
    """
    Read the config from `path`, else $CONFIG_PATH, else use an empty default.
    The result has `jobs` (each with an `id`), `timezone` and a resolved `intake` block.
    """
    source = path or os.environ.get("CONFIG_PATH")
    if source:
        raw = _read_file(source)
    else:
        logger.info("No config path given; running with no jobs.")
        raw = {}

    jobs = raw.get("jobs")
    if jobs is None:
        jobs = []
    if not isinstance(jobs, list):
        raise ConfigError("'jobs' must be a list.")

    tz = raw.get("timezone")
    return {
        **raw,
        "timezone": tz.strip() if isinstance(tz, str) and tz.strip() else os.environ.get("TZ", "UTC"),
        "intake": _resolve_env_refs(raw.get("intake") or {}),
        "jobs": [_with_id(job, idx) for idx, job in enumerate(jobs)],
    }


def validate(cfg: dict[str, Any]) -> None:
    """Raise ConfigError describing the first problem found."""
    if not isinstance(cfg, dict):
        raise ConfigError("Config must be a mapping.")
    if not isinstance(cfg.get("jobs"), list):
        raise ConfigError("'jobs' must be a list.")
    if cfg.get("timezone") is not None and not isinstance(cfg["timezone"], str):
        raise ConfigError("'timezone' must be a string.")

    _check_intake(cfg.get("intake", {}))

    ids: set[str] = set()
    for idx, job in enumerate(cfg["jobs"]):
        job_id = _check_job(job, idx)
        if job_id in ids:
            raise ConfigError(f"Job id {job_id!r} is used more than once.")
        ids.add(job_id)


def intake_settings(cfg: dict[str, Any] | None) -> dict[str, Any]:
    """The intake block as Settings kwargs; empty values fall through to env/defaults."""
    block = (cfg or {}).get("intake") or {}
    return {k: v for k, v in block.items() if k in INTAKE_FIELDS and v not in (None, "")}


def job_kwargs(cfg: dict[str, Any] | None, job: dict[str, Any]) -> dict[str, Any]:
    """
    Kwargs for one run of `job`. Jobs for modules.job_intake get the intake block
    underneath their own kwargs; a job key wins whether set directly or as `<key>_env`.
    """
    own = dict(job.get("kwargs") or {})
    if str(job.get("module") or "").strip() != INTAKE_MODULE:
        return own
    overridden = {k[: -len("_env")] if k.endswith("_env") else k for k in own}
    shared = {k: v for k, v in intake_settings(cfg).items() if k not in overridden}
    return {**shared, **own}


# ---- checks -----------------------------------------------------------------


def _check_intake(block: Any) -> None:
    if not isinstance(block, dict):
        raise ConfigError("'intake' must be a mapping.")
    unknown = set(block) - INTAKE_FIELDS
    if unknown:
        raise ConfigError(f"'intake' has unknown field(s): {sorted(unknown)}")
    try:
        Settings.from_env_and_kwargs(intake_settings({"intake": block}))
    except SettingsError as e:
        raise ConfigError(f"'intake': {e}") from e


def _check_job(job: Any, idx: int) -> str:
    if not isinstance(job, dict):
        raise ConfigError(f"Job #{idx} must be a mapping.")
    module = job.get("module")
    if not isinstance(module, str) or not module.strip():
        raise ConfigError(f"Job #{idx} needs a 'module' (dotted import path).")
    job_id = job.get("id") or _with_id(job, idx)["id"]

    _check_trigger(job_id, job.get("trigger"))

    kwargs = job.get("kwargs", {})
    if not isinstance(kwargs, dict):
        raise ConfigError(f"Job {job_id!r}: 'kwargs' must be a mapping.")
    if module.strip() == INTAKE_MODULE and "op" in kwargs and kwargs["op"] not in INTAKE_OPS:
        raise ConfigError(f"Job {job_id!r}: op {kwargs['op']!r} is not one of {', '.join(INTAKE_OPS)}.")

    if "timeout_sec" in job:
        _non_negative_int(job_id, "timeout_sec", job["timeout_sec"], minimum=0)
    if "max_instances" in job:
        _non_negative_int(job_id, "max_instances", job["max_instances"], minimum=1)
    if not isinstance(job.get("summary", ""), str):
        raise ConfigError(f"Job {job_id!r}: 'summary' must be a string.")
    return job_id


def _check_trigger(job_id: str, trigger: Any) -> None:
    if not isinstance(trigger, dict):
        raise ConfigError(f"Job {job_id!r}: 'trigger' must be a mapping.")
    kinds = [k for k in ("interval", "cron") if k in trigger]
    if len(kinds) != 1:
        raise ConfigError(f"Job {job_id!r}: trigger needs exactly one of 'interval' or 'cron'.")
    if kinds[0] == "cron":
        if not isinstance(trigger["cron"], (str, dict)):
            raise ConfigError(f"Job {job_id!r}: 'cron' must be a crontab string or a mapping.")
        return
    if not isinstance(trigger["interval"], dict):
        raise ConfigError(f"Job {job_id!r}: 'interval' must be a mapping of time fields.")
    for name, value in trigger["interval"].items():
        _non_negative_int(job_id, f"interval.{name}", value, minimum=0)


def _non_negative_int(job_id: str, name: str, value: Any, *, minimum: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Job {job_id!r}: {name!r} is not an integer ({value!r}).") from e
    if n < minimum:
        raise ConfigError(f"Job {job_id!r}: {name!r} must be at least {minimum} (got {n}).")
    return n


# ---- loading ----------------------------------------------------------------


def _with_id(job: Any, idx: int) -> dict[str, Any]:
    if not isinstance(job, dict):
        raise ConfigError(f"Job #{idx} must be a mapping.")
    out = dict(job)
    for key in ("id", "name", "module"):
        value = job.get(key)
        if isinstance(value, str) and value.strip():
            out["id"] = value.strip()
            return out
    out["id"] = f"job_{idx}"
    return out


def _resolve_env_refs(block: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in block.items():
        if key.endswith("_env") and isinstance(value, str):
            out[key[: -len("_env")]] = os.getenv(value.strip(), "")
        else:
            out[key] = value
    return out


def _read_file(path: str) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    is_yaml = path.lower().endswith((".yml", ".yaml"))
    try:
        data = (yaml.safe_load(text) or {}) if is_yaml else json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot parse config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must hold a mapping at the top level.")
    return data
