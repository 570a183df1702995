"""HTTP access to a published distribution root, with bounded retries."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

import httpx
from tenacity import RetryError, Retrying

from dexsync.config import DEFAULT_BASE_URL, MANIFEST_FILENAME, VERSION_FILENAME, RetryConfig
from dexsync.errors import TransientNetworkError
from dexsync.utils.retry import RETRYABLE_EXCEPTIONS, checked_get, http_retrying

LOGGER = logging.getLogger(__name__)


class HttpFetcher:
    """Fetches manifest, version record and payload files.

    Transport errors, timeouts, 429 and 5xx responses are retried with capped
    exponential backoff; once the budget is spent ``TransientNetworkError`` is
    raised.  Other HTTP errors propagate immediately.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        client: httpx.Client | None = None,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.retry = retry or RetryConfig()
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=self.retry.timeout)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _policy(self) -> Retrying:
        return http_retrying(self.retry, sleep=self._sleep, logger=LOGGER)

    def _get_once(self, url: str) -> httpx.Response:
        return checked_get(self.client, url, timeout=self.retry.timeout)

    def fetch_bytes(self, path: str) -> bytes:
        url = self.url_for(path)
        policy = self._policy()
        try:
            response = policy(self._get_once, url)
        except (*RETRYABLE_EXCEPTIONS, RetryError) as exc:
            attempts = policy.statistics.get("attempt_number", self.retry.max_attempts)
            raise TransientNetworkError(
                f"Giving up on {url} after {attempts} attempts: {exc}", url=url, attempts=attempts
            ) from exc
        return response.content

    def fetch_json(self, path: str) -> Any:
        return json.loads(self.fetch_bytes(path))

    def fetch_version_record(self) -> Any:
        return self.fetch_json(VERSION_FILENAME)

    def fetch_manifest(self) -> Any:
        return self.fetch_json(MANIFEST_FILENAME)
