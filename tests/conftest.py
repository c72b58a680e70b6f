# tests/conftest.py
import json
import os
import tempfile

import pytest
from freezegun import freeze_time

from modules.job_intake.lib.config import Settings
from modules.job_intake.lib.forwarder import ForwardOutcome, ForwardResult, WebhookForwarder

WEBHOOK = "https://hooks.example.test/jobs"


# ---------------------------------------------------------------------
# Tests marked "live" POST to a real webhook; opt in with --live or RUN_LIVE_TESTS=1
# ---------------------------------------------------------------------
def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Also run tests that POST to a real webhook (JOB_INTAKE_LIVE_WEBHOOK).",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "live: POSTs to the webhook named by JOB_INTAKE_LIVE_WEBHOOK (skipped by default).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_live = config.getoption("--live") or os.getenv("RUN_LIVE_TESTS") == "1"
    if run_live:
        return
    skip_live = pytest.mark.skip(reason="needs --live or RUN_LIVE_TESTS=1")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------
# Every test gets its own log dir and a clean JOB_INTAKE_* environment
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _env_defaults(monkeypatch):
    tmp_logs = tempfile.mkdtemp(prefix="ji-pytest-logs-")
    monkeypatch.setenv("LOG_DIR", tmp_logs)
    monkeypatch.setenv("ACTIVITY_LOG_PREFIX", "activity-test")
    monkeypatch.setenv("ERROR_LOG_PREFIX", "error-test")

    for name in (
        "CONFIG_PATH",
        "JOB_INTAKE_DB",
        "JOB_INTAKE_WEBHOOK_URL",
        "JOB_INTAKE_WEBHOOK_TIMEOUT",
        "JOB_INTAKE_CURSOR_KEY",
        "JOB_INTAKE_BATCH_MAX",
        "JOB_INTAKE_SYNC_LEASE",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def frozen_utc():
    with freeze_time("2025-01-01T00:00:00Z"):
        yield


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "job_intake.db")


@pytest.fixture
def settings(db_path):
    """Fresh per-test Settings with a webhook configured (delivery is stubbed)."""
    return Settings.from_env_and_kwargs({"sqlite_path": db_path, "webhook_url": WEBHOOK})


@pytest.fixture
def offline_settings(db_path):
    """Fresh per-test Settings with forwarding disabled."""
    return Settings.from_env_and_kwargs({"sqlite_path": db_path})


class StubForwarder(WebhookForwarder):
    """Records every forwarded posting; URLs in `fail_urls` come back FAILED."""

    def __init__(self, fail_urls=(), url=WEBHOOK):
        super().__init__(url=url)
        self.fail_urls = set(fail_urls)
        self.sent = []

    def forward(self, posting):
        if not self.configured:
            return super().forward(posting)
        self.sent.append(posting)
        if posting["job_url"] in self.fail_urls:
            return ForwardResult(ForwardOutcome.FAILED, status_code=503, error="HTTP 503")
        return ForwardResult(ForwardOutcome.DELIVERED, status_code=200)

    @property
    def sent_urls(self):
        return [p["job_url"] for p in self.sent]


@pytest.fixture
def stub_forwarder():
    return StubForwarder()


@pytest.fixture
def forwarder_factory():
    """Build StubForwarders with chosen failing URLs (or url=None for unconfigured)."""
    return StubForwarder


@pytest.fixture
def make_job():
    """Factory for raw candidate records with sensible defaults."""

    def _make(n=1, **overrides):
        job = {
            "company": f"Acme {n}",
            "title": "Engineer",
            "source": "wellfound",
            "job_url": f"https://jobs.example.com/{n}",
            "skills": ["python", "sql"],
        }
        job.update(overrides)
        return job

    return _make


@pytest.fixture
def write_config(tmp_path, monkeypatch, db_path):
    """Write a minimal service config and point CONFIG_PATH at it."""

    def _write(**extra):
        cfg = {
            "timezone": "UTC",
            "intake": {"sqlite_path": db_path},
            "jobs": [
                {
                    "id": "webhook-sync",
                    "module": "modules.job_intake",
                    "trigger": {"interval": {"minutes": 15}},
                    "kwargs": {"op": "sync"},
                    "summary": "pytest config",
                }
            ],
        }
        cfg.update(extra)
        p = tmp_path / "config.json"
        p.write_text(json.dumps(cfg), encoding="utf-8")
        monkeypatch.setenv("CONFIG_PATH", str(p))
        return p

    return _write


@pytest.fixture
def activity_records():
    """Read back the structured activity records written so far today."""
    from service import logging_utils

    def _read():
        path = logging_utils.get_activity_log_path()
        if not os.path.exists(path):
            return []
        with open(path, encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]

    return _read
