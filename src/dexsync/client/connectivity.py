"""Online/offline detection for the sync client."""

from __future__ import annotations

import logging
import time
from typing import Callable

import httpx

LOGGER = logging.getLogger(__name__)

Probe = Callable[[], bool]


def http_probe(client: httpx.Client, url: str, *, timeout: float = 5.0) -> Probe:
    """Probe that is online when ``url`` answers at all (any status)."""

    def probe() -> bool:
        try:
            client.get(url, timeout=timeout)
        except httpx.TransportError as exc:
            LOGGER.debug("Connectivity probe to %s failed: %s", url, exc)
            return False
        return True

    return probe


class ConnectivityMonitor:
    def __init__(
        self,
        probe: Probe | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._probe = probe or (lambda: True)
        self._sleep = sleep
        self.was_offline = False

    def is_online(self) -> bool:
        return bool(self._probe())

    def wait_until_online(self, poll_interval: float = 5.0, max_wait: float | None = None) -> bool:
        """Block until the probe succeeds; False if ``max_wait`` ran out first."""
        waited = 0.0
        announced = False
        while not self.is_online():
            if not announced:
                LOGGER.warning("Offline; sync suspended until connectivity returns")
                announced = True
                self.was_offline = True
            if max_wait is not None and waited >= max_wait:
                return False
            self._sleep(poll_interval)
            waited += poll_interval
        if announced:
            LOGGER.info("Back online; resuming sync")
        return True
