"""
Best-effort webhook delivery of single postings.

A forward is one POST of the posting as JSON. The outcome is always returned as
a ForwardResult value; transport errors and non-2xx responses are folded into
FAILED so that callers (ingestion, sync passes) never see an exception from here.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

import requests

from . import logging_bridge
from .http_client import HttpClient


class ForwardOutcome(enum.Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"


@dataclass(frozen=True)
class ForwardResult:
    outcome: ForwardOutcome
    status_code: int | None = None
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.outcome is ForwardOutcome.DELIVERED

    def as_flag(self) -> bool | None:
        """True / False for an attempted delivery, None when no endpoint is configured."""
        if self.outcome is ForwardOutcome.NOT_APPLICABLE:
            return None
        return self.delivered


NOT_APPLICABLE = ForwardResult(ForwardOutcome.NOT_APPLICABLE)


class WebhookForwarder:
    """
    Deliver postings to one configured endpoint.

    Args:
        url: target endpoint; None/empty disables forwarding (NOT_APPLICABLE).
        timeout: per-call bound in seconds.
        client: optional HttpClient to share (tests inject one).
    """

    def __init__(self, url: str | None = None, timeout: float = 10.0, client: HttpClient | None = None):
        self.url = (url or "").strip() or None
        self.timeout = float(timeout)
        self._client = client

    @property
    def configured(self) -> bool:
        return self.url is not None

    @classmethod
    def from_settings(cls, settings: Any) -> WebhookForwarder:
        return cls(url=settings.webhook_url, timeout=settings.webhook_timeout)

    def forward(self, posting: dict[str, Any]) -> ForwardResult:
        if not self.url:
            return NOT_APPLICABLE

        if self._client is None:
            self._client = HttpClient(timeout=self.timeout)

        try:
            resp = self._client.post_json(self.url, posting, timeout=self.timeout)
        except requests.RequestException as e:
            return self._failed(posting, None, repr(e))

        if 200 <= resp.status_code < 300:
            return ForwardResult(ForwardOutcome.DELIVERED, status_code=resp.status_code)
        return self._failed(posting, resp.status_code, f"HTTP {resp.status_code}")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def _failed(self, posting: dict[str, Any], status_code: int | None, err: str) -> ForwardResult:
        logging_bridge.error({
            "component": "job_intake.forwarder",
            "op": "forward",
            "job_url": posting.get("job_url"),
            "status_code": status_code,
            "error": err,
        })
        return ForwardResult(ForwardOutcome.FAILED, status_code=status_code, error=err)
