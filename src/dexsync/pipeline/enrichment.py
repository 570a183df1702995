"""Enrichment seam and its cache.

The language-model enrichment itself is an external collaborator
(``Enricher``).  ``CachingEnricher`` owns an explicit ``EnrichmentCache``
keyed on a digest of the normalized inputs; fields that enrichment itself
produces (tidbits, generation times, scores) never take part in the key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Protocol

from dexsync.models import normalize_species_id
from dexsync.utils.hashing import ContentHasher

LOGGER = logging.getLogger(__name__)

GENERATED_FIELDS = frozenset({"tidbits", "generatedAt", "qualityScore", "quality", "tidbitId"})


class Enricher(Protocol):
    def enrich(self, species_id: str, sources: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """Return raw tidbit dicts (``title``, ``body``, ``sourceRefs``, ...)."""
        ...


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class EnrichmentCache:
    def __init__(self) -> None:
        self._entries: Dict[str, List[Dict[str, Any]]] = {}
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> List[Dict[str, Any]] | None:
        cached = self._entries.get(key)
        if cached is None:
            self.stats.misses += 1
            return None
        self.stats.hits += 1
        return [dict(item) for item in cached]

    def put(self, key: str, tidbits: List[Dict[str, Any]]) -> None:
        self._entries[key] = [dict(item) for item in tidbits]

    def clear(self) -> None:
        self._entries.clear()
        self.stats = CacheStats()


@dataclass(slots=True)
class EnrichmentOutcome:
    enriched: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)


class CachingEnricher:
    def __init__(
        self,
        enricher: Enricher,
        *,
        cache: EnrichmentCache | None = None,
        hasher: ContentHasher | None = None,
    ) -> None:
        self.enricher = enricher
        self.cache = cache if cache is not None else EnrichmentCache()
        self.hasher = hasher or ContentHasher()

    def cache_key(self, species_id: str, sources: Mapping[str, Any]) -> str:
        digest = self.hasher.cache_key(sources, exclude=GENERATED_FIELDS)
        return f"{normalize_species_id(species_id)}-{digest}"

    def enrich_one(self, species_id: str, sources: Mapping[str, Any]) -> List[Dict[str, Any]]:
        key = self.cache_key(species_id, sources)
        cached = self.cache.get(key)
        if cached is not None:
            LOGGER.debug("Enrichment cache hit for %s", species_id)
            return cached
        tidbits = list(self.enricher.enrich(species_id, sources))
        self.cache.put(key, tidbits)
        return tidbits

    def enrich_batch(self, pages: Mapping[str, Mapping[str, Any]]) -> EnrichmentOutcome:
        """Enrich every species; one species failing never aborts the batch."""
        outcome = EnrichmentOutcome()
        for species_id, sources in pages.items():
            try:
                tidbits = self.enrich_one(species_id, sources)
            except Exception as exc:
                LOGGER.error("Failed to enrich species %s: %s", species_id, exc)
                outcome.failed[species_id] = str(exc)
                continue
            outcome.enriched[species_id] = {"sources": dict(sources), "tidbits": tidbits}
        LOGGER.info(
            "Enriched %d species (%d failed, cache hit rate %.0f%%)",
            len(outcome.enriched),
            len(outcome.failed),
            self.cache.stats.hit_rate * 100,
        )
        return outcome
