"""Executes crawl plans against external sources.

Site-specific extraction lives behind the ``SourceFetcher`` protocol; this
module only handles scheduling, per-source throttling and failure isolation.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Protocol, Tuple
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import httpx

from dexsync.config import RetryConfig, SourceConfig
from dexsync.errors import CrawlDisallowedError, SourceUnavailableError, TransientNetworkError
from dexsync.models import normalize_species_id, pad_species_id
from dexsync.pipeline.planner import CrawlPlan, source_page_id
from dexsync.pipeline.throttle import CircuitBreaker, RateLimiter
from dexsync.utils.hashing import ContentHasher
from dexsync.utils.retry import RETRYABLE_EXCEPTIONS, checked_get, http_retrying

LOGGER = logging.getLogger(__name__)

USER_AGENT = "dexsync-crawler/0.1"
ROBOTS_TTL = 24 * 60 * 60.0


class SourceFetcher(Protocol):
    name: str

    def fetch(self, species_id: str) -> Dict[str, Any]:
        """Return the extracted data for one species from this source."""
        ...


class RobotsPolicy:
    """robots.txt checks, cached per origin for ``ttl`` seconds.

    A 404 caches "no rules". Other failures allow the request without
    caching, so the next page retries the lookup.
    """

    def __init__(
        self,
        client: httpx.Client,
        *,
        user_agent: str = USER_AGENT,
        ttl: float = ROBOTS_TTL,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.user_agent = user_agent
        self.ttl = ttl
        self.timeout = timeout
        self._clock = clock
        self._cache: Dict[str, Tuple[RobotFileParser | None, float]] = {}

    def _load(self, origin: str) -> Tuple[RobotFileParser | None, bool]:
        robots_url = f"{origin}/robots.txt"
        try:
            response = self.client.get(
                robots_url, timeout=self.timeout, headers={"User-Agent": self.user_agent}
            )
        except httpx.TransportError as exc:
            LOGGER.warning("Could not fetch %s (%s); assuming allowed", robots_url, exc)
            return None, False

        if response.status_code == 200:
            parser = RobotFileParser(robots_url)
            parser.parse(response.text.splitlines())
            parser.modified()
            return parser, True
        if response.status_code == 404:
            LOGGER.debug("No robots.txt at %s", origin)
            return None, True
        LOGGER.warning("robots.txt for %s returned HTTP %d; assuming allowed", origin, response.status_code)
        return None, False

    def allowed(self, url: str) -> bool:
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}"
        now = self._clock()
        cached = self._cache.get(origin)
        if cached is not None and now - cached[1] < self.ttl:
            parser = cached[0]
        else:
            parser, cacheable = self._load(origin)
            if cacheable:
                self._cache[origin] = (parser, now)
        return parser is None or parser.can_fetch(self.user_agent, url)


class HttpSourceFetcher:
    """Fetches a page per species from a URL template.

    The template may reference ``{id}``, ``{padded_id}`` and ``{name}``.
    Requests honour robots.txt and retry transport errors, 429 and 5xx.
    """

    def __init__(
        self,
        config: SourceConfig,
        client: httpx.Client,
        *,
        species_names: Mapping[str, str] | None = None,
        retry: RetryConfig | None = None,
        robots: RobotsPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = config.name
        self.url_template = config.url_template
        self.client = client
        self.species_names = dict(species_names or {})
        self.retry = retry or RetryConfig()
        self.robots = robots if robots is not None else RobotsPolicy(client)
        self._sleep = sleep

    def url_for(self, species_id: str) -> str:
        species_id = normalize_species_id(species_id)
        name = self.species_names.get(species_id, f"pokemon-{species_id}")
        return self.url_template.format(id=species_id, padded_id=pad_species_id(species_id), name=name)

    def fetch(self, species_id: str) -> Dict[str, Any]:
        url = self.url_for(species_id)
        if not self.robots.allowed(url):
            raise CrawlDisallowedError(url)

        policy = http_retrying(self.retry, sleep=self._sleep, logger=LOGGER)
        try:
            response = policy(
                checked_get,
                self.client,
                url,
                timeout=self.retry.timeout,
                headers={"User-Agent": self.robots.user_agent},
            )
        except RETRYABLE_EXCEPTIONS as exc:
            attempts = policy.statistics.get("attempt_number", self.retry.max_attempts)
            raise TransientNetworkError(
                f"Giving up on {url} after {attempts} attempts: {exc}", url=url, attempts=attempts
            ) from exc
        return {"url": url, "content": response.text}


@dataclass(slots=True)
class CrawlError:
    source: str
    species_id: str
    message: str


@dataclass(slots=True)
class CrawlResult:
    pages: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errors: List[CrawlError] = field(default_factory=list)
    unavailable_sources: List[str] = field(default_factory=list)

    def add(self, species_id: str, source: str, data: Any) -> None:
        self.pages.setdefault(species_id, {})[source] = data

    def fingerprints(self, hasher: ContentHasher) -> Dict[str, str]:
        return {
            source_page_id(species_id, source): hasher.source_digest(data)
            for species_id, sources in self.pages.items()
            for source, data in sources.items()
        }


class CrawlCoordinator:
    """Runs each source's tasks through its rate limiter and circuit breaker."""

    def __init__(
        self,
        fetchers: Mapping[str, SourceFetcher],
        *,
        limiters: Mapping[str, RateLimiter] | None = None,
        breakers: Mapping[str, CircuitBreaker] | None = None,
    ) -> None:
        self.fetchers = dict(fetchers)
        self.limiters = dict(limiters or {})
        self.breakers = dict(breakers or {})

    @classmethod
    def from_config(
        cls, sources: list[SourceConfig], fetchers: Mapping[str, SourceFetcher]
    ) -> "CrawlCoordinator":
        return cls(
            fetchers,
            limiters={s.name: RateLimiter(s.rate_limit) for s in sources},
            breakers={s.name: CircuitBreaker(s.name, s.circuit_breaker) for s in sources},
        )

    def crawl(self, plan: CrawlPlan) -> CrawlResult:
        result = CrawlResult()
        for source, source_plan in plan.sources.items():
            fetcher = self.fetchers.get(source)
            if fetcher is None:
                LOGGER.info("No fetcher registered for %s; skipping", source)
                continue
            if not source_plan.tasks:
                continue

            LOGGER.info("Crawling %s: %d tasks", source, len(source_plan.tasks))
            try:
                self._crawl_source(source, fetcher, source_plan.tasks, result)
            except SourceUnavailableError as exc:
                LOGGER.warning("%s; skipping remaining tasks (retry in %.0fs)", exc, exc.retry_after)
                result.unavailable_sources.append(source)

        if result.errors:
            LOGGER.warning("Crawling completed with %d errors", len(result.errors))
        return result

    def _crawl_source(
        self, source: str, fetcher: SourceFetcher, tasks: list[str], result: CrawlResult
    ) -> None:
        limiter = self.limiters.get(source)
        breaker = self.breakers.get(source)
        for species_id in tasks:
            if breaker is not None:
                breaker.check()
            if limiter is not None:
                limiter.acquire()
            try:
                data = fetcher.fetch(species_id)
            except CrawlDisallowedError as exc:
                LOGGER.warning("Skipping %s for %s: %s", source, species_id, exc)
                result.errors.append(CrawlError(source, species_id, str(exc)))
                continue
            except Exception as exc:
                if breaker is not None:
                    breaker.record_failure()
                LOGGER.error("Failed to crawl %s for %s: %s", source, species_id, exc)
                result.errors.append(CrawlError(source, species_id, str(exc)))
                continue
            if breaker is not None:
                breaker.record_success()
            result.add(species_id, source, data)
