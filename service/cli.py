# service/cli.py
"""
Command-line entrypoints for the job intake service.

Domain commands print a JSON envelope with a "success" flag and exit 0 on
success, 1 otherwise, 2 when the intake settings are invalid:

    ingest FILE|-          one job (object) or a batch (array or {"jobs": [...]})
    list / stats / delete ID
    sync / sync-status / sync-failures / redeliver

Service commands:

    run MODULE [--kwargs k=v ...]   one ad-hoc run through the runner
    serve                           APScheduler loop until SIGINT/SIGTERM
    list-jobs / validate-config     inspect the service config
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from modules.job_intake.lib import api
from modules.job_intake.lib.config import ConfigError as SettingsError
from modules.job_intake.lib.config import Settings
from service import config_schema as _config_schema
from service import logging_utils as L
from service import runner as _runner
from service import scheduler as _scheduler

LOG = logging.getLogger("service.cli")


def _ensure_logging() -> None:
    if logging.getLogger().handlers:
        return
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _split_kwargs(pairs: Iterable[str]) -> dict[str, str]:
    # values stay strings; runner._coerce_kwargs types them
    out: dict[str, str] = {}
    for item in pairs:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"--kwargs expects key=value, got {item!r}")
        out[key.strip()] = value.strip()
    return out


def _print_rows(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
    widths = [max(len(h), *(len(r[i]) for r in rows)) for i, h in enumerate(headers)]
    line = "  ".join("{:<%d}" % w for w in widths)
    print(line.format(*headers))
    print(line.format(*("-" * w for w in widths)))
    for row in rows:
        print(line.format(*row))


def _describe_trigger(trigger: Any) -> str:
    if isinstance(trigger, dict) and isinstance(trigger.get("interval"), dict):
        return "every " + " ".join(f"{v}{k[0]}" for k, v in trigger["interval"].items() if k != "jitter")
    if isinstance(trigger, dict) and "cron" in trigger:
        cron = trigger["cron"]
        return f"cron {cron}" if isinstance(cron, str) else "cron " + json.dumps(cron, sort_keys=True)
    return json.dumps(trigger, default=str)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _settings(args: argparse.Namespace) -> Settings:
    """Settings from config 'intake' block + env, with --db taking precedence."""
    cfg = _config_schema.load_config(args.config)
    kw = _config_schema.intake_settings(cfg)
    if getattr(args, "db", None):
        kw["sqlite_path"] = args.db
    return Settings.from_env_and_kwargs(kw)


def _emit(envelope: dict[str, Any]) -> int:
    print(json.dumps(envelope, indent=2, ensure_ascii=False, default=str))
    return 0 if envelope.get("success") else 1


def _domain(handler):
    """Wrap a domain subcommand: build settings, run, print the envelope."""

    def _wrapped(args: argparse.Namespace) -> int:
        try:
            settings = _settings(args)
        except (SettingsError, _config_schema.ConfigError) as e:
            print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
            return 2
        try:
            return _emit(handler(settings, args))
        except KeyboardInterrupt:
            return 130

    return _wrapped


def _read_payload(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    with open(path, encoding="utf-8") as f:
        return json.load(f)


# ------------------------------ Subcommands ----------------------------------
def _ingest(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    try:
        payload = _read_payload(args.file)
    except (OSError, json.JSONDecodeError) as e:
        return {"success": False, "error": "Invalid input", "message": str(e)}
    if isinstance(payload, list) or (isinstance(payload, dict) and "jobs" in payload):
        return api.submit_batch(settings, payload)
    return api.submit_job(settings, payload)


def _list(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    return api.list_jobs(
        settings,
        source=args.source,
        company=args.company,
        search=args.search,
        limit=args.limit,
        offset=args.offset,
        sort=args.sort,
    )


def _stats(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    return api.job_stats(settings)


def _delete(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    return api.delete_job(settings, args.id)


def _sync(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    return api.trigger_sync(settings, source=args.source, since=args.since)


def _sync_status(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    return api.sync_status(settings)


def _sync_failures(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    return api.delivery_failures(settings, limit=args.limit)


def _redeliver(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    return api.redeliver(settings, limit=args.limit)


def cmd_validate_config(args: argparse.Namespace) -> int:
    try:
        cfg = _config_schema.load_config(args.config)
        _config_schema.validate(cfg)
    except _config_schema.ConfigError as e:
        LOG.error("Config rejected: %s", e)
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1
    print(f"OK: {len(cfg['jobs'])} job(s), timezone {cfg['timezone']}.")
    return 0


def cmd_list_jobs(args: argparse.Namespace) -> int:
    try:
        jobs = _config_schema.load_config(args.config)["jobs"]
    except _config_schema.ConfigError as e:
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1
    if not jobs:
        print("No jobs configured.")
        return 0
    rows = [
        (
            str(j["id"]),
            str(j.get("module", "")),
            str((j.get("kwargs") or {}).get("op", "")),
            _describe_trigger(j.get("trigger")),
            str(j.get("summary") or ""),
        )
        for j in jobs
    ]
    _print_rows(("JOB", "MODULE", "OP", "TRIGGER", "SUMMARY"), rows)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    try:
        cfg = _config_schema.load_config(args.config)
    except _config_schema.ConfigError as e:
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1
    kwargs = _config_schema.job_kwargs(cfg, {"module": args.module, "kwargs": _split_kwargs(args.kwargs or [])})
    t0 = time.monotonic()
    try:
        meta, _ = _runner.run_module_once(module=args.module, kwargs=kwargs, trigger_type="adhoc")
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        print(f"FAILURE: {type(e).__name__}: {e}", file=sys.stderr)
        L.write_error_log({
            "ts": _utc_now(),
            "where": "cli.run",
            "module": args.module,
            "kwargs": kwargs,
            "error": repr(e),
            "duration_ms": int((time.monotonic() - t0) * 1000),
        })
        return 1

    print(f"DONE: {(meta or {}).get('message', 'OK')}")
    if meta:
        print(json.dumps(meta, indent=2, ensure_ascii=False, default=str))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    stop = threading.Event()

    def _on_signal(signum, _frame):
        LOG.info("Signal %s received; shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        sched = _scheduler.start(config_path=args.config)
    except _config_schema.ConfigError as e:
        LOG.error("serve: %s", e)
        return 1

    L.write_activity_log({"ts": _utc_now(), "event": "serve_start", "jobs": sched.job_ids()})
    try:
        while not stop.wait(timeout=1.0):
            pass
    finally:
        sched.stop()
        sched.join(timeout=10.0)
        L.write_activity_log({"ts": _utc_now(), "event": "serve_stop"})
    return 0


# ------------------------------- Argparse ------------------------------------
def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="job-intake",
        description="Job intake and webhook sync tools",
    )
    p.add_argument(
        "--config",
        help="Path to config file (fallbacks to CONFIG_PATH env or an empty default).",
    )
    p.add_argument("--db", help="SQLite path override (else intake.sqlite_path / JOB_INTAKE_DB).")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("ingest", help="Submit one job (object) or a batch (array) from a JSON file.")
    sp.add_argument("file", help="JSON file path, or '-' for stdin.")
    sp.set_defaults(func=_domain(_ingest))

    sp = sub.add_parser("list", help="List stored jobs.")
    sp.add_argument("--source")
    sp.add_argument("--company", help="Case-insensitive substring.")
    sp.add_argument("--search", help="Free text across company/title/skills.")
    sp.add_argument("--limit", type=int, default=50)
    sp.add_argument("--offset", type=int, default=0)
    sp.add_argument("--sort", default="-scraped_at")
    sp.set_defaults(func=_domain(_list))

    sp = sub.add_parser("stats", help="Per-source counts and latest ingestion time.")
    sp.set_defaults(func=_domain(_stats))

    sp = sub.add_parser("delete", help="Delete one job by id.")
    sp.add_argument("id")
    sp.set_defaults(func=_domain(_delete))

    sp = sub.add_parser("sync", help="Forward jobs newer than the cursor to the webhook.")
    sp.add_argument("--source")
    sp.add_argument("--since", help="ISO-8601 lower bound override.")
    sp.set_defaults(func=_domain(_sync))

    sp = sub.add_parser("sync-status", help="Show cursor state and pending count.")
    sp.set_defaults(func=_domain(_sync_status))

    sp = sub.add_parser("sync-failures", help="List forwards that failed during sync passes.")
    sp.add_argument("--limit", type=int, default=100)
    sp.set_defaults(func=_domain(_sync_failures))

    sp = sub.add_parser("redeliver", help="Retry failed forwards recorded by sync passes.")
    sp.add_argument("--limit", type=int, default=100)
    sp.set_defaults(func=_domain(_redeliver))

    sp = sub.add_parser("run", help="Execute a module ad-hoc via runner.run_module_once().")
    sp.add_argument("module", help="Module path to run (e.g., modules.job_intake).")
    sp.add_argument(
        "--kwargs",
        metavar="k=v",
        nargs="*",
        help="Module kwargs; values are typed by the runner (JSON, booleans, numbers).",
    )
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("serve", help="Run the scheduler loop.")
    sp.set_defaults(func=cmd_serve)

    sp = sub.add_parser("list-jobs", help="Print all scheduled jobs from config.")
    sp.set_defaults(func=cmd_list_jobs)

    sp = sub.add_parser("validate-config", help="Verify configuration correctness.")
    sp.set_defaults(func=cmd_validate_config)

    return p


# --------------------------------- Main --------------------------------------
def main(argv: Iterable[str] | None = None) -> int:
    _ensure_logging()
    parser = _build_parser()
    args = parser.parse_args(args=list(argv) if argv is not None else None)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
