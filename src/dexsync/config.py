"""Application configuration defaults."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BASE_URL = "http://localhost:8080"
MANIFEST_FILENAME = "tidbit_manifest.json"
VERSION_FILENAME = "version.json"


@dataclass(slots=True)
class RetryConfig:
    """Capped exponential backoff: ``min(base_delay * multiplier**n, max_delay)``."""

    max_attempts: int = 3
    base_delay: float = 1.2
    multiplier: float = 2.0
    max_delay: float = 30.0
    timeout: float = 30.0


@dataclass(slots=True)
class RateLimitConfig:
    requests_per_second: float = 10.0
    requests_per_minute: int = 1000
    burst_limit: int = 50


@dataclass(slots=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_successes: int = 3


@dataclass(slots=True)
class SourceConfig:
    name: str
    url_template: str = ""
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)


def default_sources() -> list[SourceConfig]:
    return [
        SourceConfig(
            name="bulbapedia",
            url_template="https://bulbapedia.bulbagarden.net/wiki/{name}_(Pok%C3%A9mon)",
            rate_limit=RateLimitConfig(requests_per_second=1, requests_per_minute=60, burst_limit=5),
        ),
        SourceConfig(
            name="serebii",
            url_template="https://www.serebii.net/pokedex/{padded_id}.shtml",
            rate_limit=RateLimitConfig(requests_per_second=2, requests_per_minute=120, burst_limit=10),
        ),
        SourceConfig(
            name="smogon",
            url_template="https://www.smogon.com/dex/sv/pokemon/{name}/",
            rate_limit=RateLimitConfig(requests_per_second=1, requests_per_minute=60, burst_limit=5),
        ),
    ]


@dataclass(slots=True)
class AppConfig:
    registry_path: Path = Path("data/registry.json")
    output_dir: Path = Path("data/output")
    db_path: Path = Path("data/dexsync.db")
    base_url: str = DEFAULT_BASE_URL
    chunk_size: int = 100
    integrity_retries: int = 3
    retry: RetryConfig = field(default_factory=RetryConfig)
    sources: list[SourceConfig] = field(default_factory=default_sources)

    def source_names(self) -> list[str]:
        return [source.name for source in self.sources]

    def resolve_registry_path(self, base_dir: Path | None = None) -> Path:
        return _resolve(self.registry_path, base_dir)

    def resolve_output_dir(self, base_dir: Path | None = None) -> Path:
        return _resolve(self.output_dir, base_dir)

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        return _resolve(self.db_path, base_dir)


def _resolve(path: Path, base_dir: Path | None) -> Path:
    if Path(path).is_absolute() or base_dir is None:
        return Path(path)
    return base_dir / path
