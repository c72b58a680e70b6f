# job_intake/http_client.py
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

LOG = logging.getLogger(__name__)

USER_AGENT = "JobIntake/0.1 (+https://example.invalid)"


class HttpClient:
    """
    requests.Session for posting JSON to webhook endpoints.

    `connect_retries` only covers failures before the request is sent; a POST
    that reached the server is never replayed, so a slow receiver cannot get
    the same posting twice from one forward.
    """

    def __init__(self, timeout: float = 10.0, connect_retries: int = 0, user_agent: str = USER_AGENT):
        self.timeout = float(timeout)
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": user_agent,
            "Accept": "application/json, */*;q=0.5",
        })
        retry = Retry(
            total=None,
            connect=int(connect_retries),
            read=0,
            status=0,
            other=0,
            backoff_factor=0.25,
            allowed_methods=None,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry, pool_connections=2, pool_maxsize=4)
        for scheme in ("http://", "https://"):
            self.session.mount(scheme, adapter)

    def post_json(
        self,
        url: str,
        payload: Any,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> requests.Response:
        """POST `payload` as JSON; the caller inspects the status code."""
        return self.session.post(url, json=payload, headers=dict(headers or {}), timeout=timeout or self.timeout)

    def close(self) -> None:
        try:
            self.session.close()
        except requests.RequestException:
            LOG.debug("session close failed", exc_info=True)
