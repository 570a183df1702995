"""Tenacity retry policies shared by the crawler and the sync client."""

from __future__ import annotations

import logging
from typing import Callable

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dexsync.config import RetryConfig

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class RetryableStatusError(Exception):
    """A response status worth retrying (rate limited or server error)."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code} for {response.request.url}")
        self.response = response


RETRYABLE_EXCEPTIONS = (httpx.TransportError, RetryableStatusError)


def http_retrying(
    config: RetryConfig, *, sleep: Callable[[float], None], logger: logging.Logger
) -> Retrying:
    """Capped exponential backoff over transport errors, 429 and 5xx."""
    return Retrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.base_delay,
            exp_base=config.multiplier,
            max=config.max_delay,
        ),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )


def checked_get(client: httpx.Client, url: str, *, timeout: float, **kwargs) -> httpx.Response:
    response = client.get(url, timeout=timeout, **kwargs)
    if response.status_code in RETRYABLE_STATUS:
        raise RetryableStatusError(response)
    response.raise_for_status()
    return response
