"""Species indexing: diff enriched data against the registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from dexsync.errors import EntityProcessingError
from dexsync.models import (
    RegistryEntry,
    SourcePage,
    SpeciesManifestEntry,
    Tidbit,
    TidbitPayload,
    normalize_species_id,
    pad_species_id,
    tidbit_file_path,
)
from dexsync.pipeline.planner import CrawlPlan, source_page_id
from dexsync.pipeline.registry import SourceRegistry, now_iso
from dexsync.utils.hashing import ContentHasher
from dexsync.utils.text import slugify

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexingResult:
    manifest_species: Dict[str, SpeciesManifestEntry] = field(default_factory=dict)
    registry_species: Dict[str, RegistryEntry] = field(default_factory=dict)
    registry_source_pages: Dict[str, SourcePage] = field(default_factory=dict)
    tidbit_payloads: Dict[str, TidbitPayload] = field(default_factory=dict)
    new_tidbit_ids: List[str] = field(default_factory=list)
    removed_tidbit_ids: List[str] = field(default_factory=list)
    changed_species: List[str] = field(default_factory=list)
    failed_species: Dict[str, str] = field(default_factory=dict)
    total_tidbits: int = 0
    new_source_page_count: int = 0
    crawl_plan: CrawlPlan | None = None

    @property
    def species_count(self) -> int:
        return len(self.manifest_species)

    @property
    def has_changes(self) -> bool:
        return bool(self.changed_species)


@dataclass(slots=True)
class _SpeciesFragment:
    padded_id: str
    manifest_entry: SpeciesManifestEntry
    registry_entry: RegistryEntry
    pages: List[SourcePage]
    new_pages: int
    payload: TidbitPayload
    added: List[str]
    removed: List[str]
    changed: bool


class SpeciesIndexer:
    """Assigns revisions and emits manifest, registry and payload fragments."""

    def __init__(self, registry: SourceRegistry, *, hasher: ContentHasher | None = None) -> None:
        self.registry = registry
        self.hasher = hasher or ContentHasher()

    def index_enriched_data(
        self,
        enriched: Mapping[str, Mapping[str, Any]],
        crawl_plan: CrawlPlan | None = None,
    ) -> IndexingResult:
        result = IndexingResult(crawl_plan=crawl_plan)

        for raw_id, data in enriched.items():
            species_id = normalize_species_id(raw_id)
            if crawl_plan is not None and not crawl_plan.includes(species_id):
                LOGGER.debug("Species %s not in crawl plan; not indexed", species_id)
                continue
            try:
                fragment = self._index_single(species_id, data)
            except Exception as exc:
                LOGGER.error("Failed to index species %s: %s", species_id, exc)
                result.failed_species[species_id] = str(exc)
                continue

            result.manifest_species[fragment.padded_id] = fragment.manifest_entry
            result.registry_species[species_id] = fragment.registry_entry
            for page in fragment.pages:
                result.registry_source_pages[page.source_page_id] = page
            result.tidbit_payloads[fragment.padded_id] = fragment.payload
            result.new_tidbit_ids.extend(fragment.added)
            result.removed_tidbit_ids.extend(fragment.removed)
            result.total_tidbits += len(fragment.payload.tidbits)
            result.new_source_page_count += fragment.new_pages
            if fragment.changed:
                result.changed_species.append(fragment.padded_id)

        LOGGER.info(
            "Indexed %d species: %d changed, %d new tidbits, %d removed, %d failed",
            result.species_count,
            len(result.changed_species),
            len(result.new_tidbit_ids),
            len(result.removed_tidbit_ids),
            len(result.failed_species),
        )
        return result

    def _index_single(self, species_id: str, data: Mapping[str, Any]) -> _SpeciesFragment:
        if not isinstance(data, Mapping):
            raise EntityProcessingError(
                f"Enriched data for {species_id} must be a mapping", species_id=species_id
            )
        padded_id = pad_species_id(species_id)
        timestamp = now_iso()
        tidbits = self.prepare_tidbits(species_id, data.get("tidbits") or [], timestamp)
        existing = self.registry.get_entity(species_id)

        current_ids = [tidbit.tidbit_id for tidbit in tidbits]
        previous_ids = list(existing.tidbit_ids) if existing else []
        previous_set = set(previous_ids)
        current_set = set(current_ids)
        added = [tid for tid in current_ids if tid not in previous_set]
        removed = [tid for tid in previous_ids if tid not in current_set]

        if existing is None:
            revision, last_updated, changed = 1, timestamp, True
        elif added or removed:
            revision, last_updated, changed = existing.tidbit_revision + 1, timestamp, True
        else:
            revision, last_updated, changed = (
                existing.tidbit_revision,
                existing.last_updated_at or timestamp,
                False,
            )

        pages, new_pages = self.build_source_pages(species_id, data.get("sources") or {}, timestamp)
        merged_pages = dict(existing.source_pages) if existing else {}
        merged_pages.update({page.source_page_id: page for page in pages})

        tidbit_file = tidbit_file_path(padded_id, revision)
        return _SpeciesFragment(
            padded_id=padded_id,
            manifest_entry=SpeciesManifestEntry(
                tidbit_revision=revision,
                last_updated=last_updated,
                tidbit_ids=current_ids,
                source_pages=[merged_pages[key] for key in sorted(merged_pages)],
                tidbit_file=tidbit_file,
            ),
            registry_entry=RegistryEntry(
                tidbit_revision=revision,
                tidbit_ids=current_ids,
                source_pages=merged_pages,
                last_updated_at=last_updated,
            ),
            pages=pages,
            new_pages=new_pages,
            payload=TidbitPayload(species_id=species_id, tidbit_revision=revision, tidbits=tidbits),
            added=added,
            removed=removed,
            changed=changed,
        )

    def prepare_tidbits(
        self, species_id: str, raw_tidbits: List[Mapping[str, Any]], timestamp: str
    ) -> List[Tidbit]:
        prepared: List[Tidbit] = []
        seen: set[str] = set()
        for raw in raw_tidbits:
            if not isinstance(raw, Mapping):
                raise EntityProcessingError(
                    f"Tidbit for {species_id} is not an object: {raw!r}", species_id=species_id
                )
            generated_at = raw.get("generatedAt") or timestamp
            tidbit_id = raw.get("tidbitId") or self.generate_tidbit_id(
                species_id, raw.get("title") or "", generated_at
            )
            if tidbit_id in seen:
                LOGGER.debug("Dropping duplicate tidbit %s for %s", tidbit_id, species_id)
                continue
            seen.add(tidbit_id)
            prepared.append(
                Tidbit(
                    tidbit_id=tidbit_id,
                    title=raw.get("title") or "",
                    body=raw.get("body") or "",
                    source_refs=list(raw.get("sourceRefs") or []),
                    generated_at=generated_at,
                    quality_score=dict(raw.get("qualityScore") or raw.get("quality") or {}),
                )
            )
        return prepared

    @staticmethod
    def generate_tidbit_id(species_id: str, title: str, generated_at: str) -> str:
        base = slugify(title) or "tidbit"
        return f"{pad_species_id(species_id)}-{generated_at}-{base}"

    def build_source_pages(
        self, species_id: str, sources: Mapping[str, Any], timestamp: str
    ) -> tuple[List[SourcePage], int]:
        pages: List[SourcePage] = []
        new_pages = 0
        for source_name, source_data in sources.items():
            page_id = source_page_id(species_id, source_name)
            known = self.registry.get_source_page(page_id)
            if known is None:
                new_pages += 1
            pages.append(
                SourcePage(
                    source_page_id=page_id,
                    hash=self.hasher.source_digest(source_data),
                    last_crawled_at=timestamp,
                    first_seen_at=known.first_seen_at if known else timestamp,
                )
            )
        return pages, new_pages
