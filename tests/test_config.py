"""Tests for application configuration."""

from __future__ import annotations

from pathlib import Path

from dexsync.config import AppConfig, RetryConfig, SourceConfig, default_sources


class TestAppConfig:
    """Test AppConfig dataclass."""

    def test_default_config(self) -> None:
        """Should create config with default values."""
        config = AppConfig()

        assert config.db_path == Path("data/dexsync.db")
        assert config.registry_path == Path("data/registry.json")
        assert config.output_dir == Path("data/output")
        assert config.chunk_size == 100
        assert config.integrity_retries == 3

    def test_default_sources(self) -> None:
        """Should configure the three wiki sources in crawl order."""
        assert AppConfig().source_names() == ["bulbapedia", "serebii", "smogon"]

    def test_custom_sources(self) -> None:
        """Should honour an explicit source list."""
        config = AppConfig(sources=[SourceConfig(name="pokeapi")])

        assert config.source_names() == ["pokeapi"]

    def test_sources_are_not_shared(self) -> None:
        """Each config gets its own source list."""
        first = AppConfig()
        first.sources.pop()

        assert len(AppConfig().sources) == len(default_sources())

    def test_resolve_paths_absolute(self) -> None:
        """Should return absolute paths as-is."""
        config = AppConfig(db_path=Path("/absolute/local.db"), output_dir=Path("/srv/dist"))

        assert config.resolve_db_path(Path("/ignored")) == Path("/absolute/local.db")
        assert config.resolve_output_dir(Path("/ignored")) == Path("/srv/dist")

    def test_resolve_paths_relative_no_base(self) -> None:
        """Should return relative path when no base_dir provided."""
        config = AppConfig(registry_path=Path("relative/registry.json"))

        assert config.resolve_registry_path(base_dir=None) == Path("relative/registry.json")

    def test_resolve_default_paths_with_base(self) -> None:
        """Should resolve default paths against base_dir."""
        config = AppConfig()
        base = Path("/project")

        assert config.resolve_db_path(base) == Path("/project/data/dexsync.db")
        assert config.resolve_registry_path(base) == Path("/project/data/registry.json")
        assert config.resolve_output_dir(base) == Path("/project/data/output")


class TestRetryConfig:
    """Test RetryConfig defaults."""

    def test_defaults(self) -> None:
        """Should default to three attempts with capped backoff."""
        retry = RetryConfig()

        assert retry.max_attempts == 3
        assert retry.base_delay == 1.2
        assert retry.multiplier == 2.0
        assert retry.max_delay == 30.0

    def test_source_rate_limits(self) -> None:
        """Bulbapedia should be the most conservative source."""
        limits = {source.name: source.rate_limit for source in default_sources()}

        assert limits["bulbapedia"].requests_per_second == 1
        assert limits["serebii"].burst_limit == 10
