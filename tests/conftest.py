"""Shared fixtures for dexsync tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Iterable

import pytest

from dexsync.pipeline.manifest import ManifestBuilder
from dexsync.pipeline.registry import SourceRegistry
from dexsync.pipeline.runner import PipelineRunner

GENERATED_AT = "2024-01-01T00:00:00.000Z"


def species_data(
    titles: Iterable[str],
    *,
    content: str = "Bulbasaur is a Grass/Poison type.",
    generated_at: str = GENERATED_AT,
) -> Dict[str, Any]:
    """Enriched data for one species as produced by the enrichment stage."""
    return {
        "sources": {"bulbapedia": {"url": "https://example.test/page", "content": content}},
        "tidbits": [
            {
                "title": title,
                "body": f"{title} body",
                "sourceRefs": ["bulbapedia"],
                "generatedAt": generated_at,
                "qualityScore": {"overall": 0.9},
            }
            for title in titles
        ],
    }


def dataset(count: int, *, start: int = 1) -> Dict[str, Dict[str, Any]]:
    return {
        str(number): species_data([f"Fact {number}"], content=f"Species {number} page")
        for number in range(start, start + count)
    }


@pytest.fixture
def registry_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "registry.json"


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "dist"


@pytest.fixture
def make_runner(registry_path: Path, output_dir: Path) -> Callable[..., PipelineRunner]:
    """Build a fresh runner (fresh in-memory registry) over the same files."""

    def factory(**kwargs: Any) -> PipelineRunner:
        return PipelineRunner(
            SourceRegistry(registry_path),
            ManifestBuilder(output_dir),
            sources=["bulbapedia"],
            **kwargs,
        )

    return factory
