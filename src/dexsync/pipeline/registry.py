"""Durable record of observed source pages and species revisions."""

from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, Tuple

from dexsync.errors import RegistryCorruptionError, RegistryLockedError
from dexsync.models import RegistryEntry, SourcePage, normalize_species_id
from dexsync.utils.files import atomic_write_json

if TYPE_CHECKING:
    from dexsync.pipeline.indexer import IndexingResult

LOGGER = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SourceRegistry:
    """JSON-file registry; ``save()`` is the only point where a run becomes durable."""

    def __init__(self, registry_path: Path, *, allow_reset: bool = False) -> None:
        self.registry_path = Path(registry_path)
        self.allow_reset = allow_reset
        self.species: Dict[str, RegistryEntry] = {}
        self.source_pages: Dict[str, SourcePage] = {}
        self.loaded = False

    @property
    def lock_path(self) -> Path:
        return self.registry_path.with_name(self.registry_path.name + ".lock")

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold an exclusive lock file for the duration of a pipeline run."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as exc:
            raise RegistryLockedError(
                f"Registry {self.registry_path} is locked by another run ({self.lock_path})"
            ) from exc
        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
            os.close(fd)
            yield
        finally:
            self.lock_path.unlink(missing_ok=True)

    def load(self) -> None:
        """Read durable state; a missing file means an empty registry."""
        self.species = {}
        self.source_pages = {}
        try:
            raw = self.registry_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            LOGGER.info("No registry at %s, starting empty", self.registry_path)
            self.loaded = True
            return

        try:
            state = json.loads(raw)
            species = {
                normalize_species_id(species_id): RegistryEntry.from_dict(entry)
                for species_id, entry in (state.get("species") or {}).items()
            }
            pages = {
                page_id: SourcePage.from_dict(page, source_page_id=page_id)
                for page_id, page in (state.get("sourcePages") or {}).items()
            }
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            if not self.allow_reset:
                raise RegistryCorruptionError(
                    f"Registry {self.registry_path} is unreadable: {exc}"
                ) from exc
            LOGGER.warning(
                "Registry %s is unreadable (%s); continuing EMPTY by operator override",
                self.registry_path,
                exc,
            )
            species, pages = {}, {}

        self.species = species
        self.source_pages = pages
        self.loaded = True
        LOGGER.debug(
            "Loaded registry: %d species, %d source pages", len(species), len(pages)
        )

    def get_entity(self, species_id: str) -> RegistryEntry | None:
        return self.species.get(normalize_species_id(species_id))

    def get_source_page(self, page_id: str) -> SourcePage | None:
        return self.source_pages.get(page_id)

    def species_ids(self) -> list[str]:
        return sorted(self.species, key=lambda key: (not key.isdigit(), key.zfill(8)))

    def entries(self) -> Iterator[Tuple[str, RegistryEntry]]:
        """Registry entries in species id order."""
        for species_id in self.species_ids():
            yield species_id, self.species[species_id]

    def apply_updates(self, result: "IndexingResult") -> None:
        """Merge an indexing batch into memory; nothing is durable until ``save()``."""
        for species_id, entry in result.registry_species.items():
            if not entry.last_updated_at:
                entry.last_updated_at = now_iso()
            self.species[normalize_species_id(species_id)] = entry

        for page_id, page in result.registry_source_pages.items():
            existing = self.source_pages.get(page_id)
            first_seen = (existing.first_seen_at if existing else None) or page.first_seen_at or now_iso()
            self.source_pages[page_id] = SourcePage(
                source_page_id=page_id,
                hash=page.hash,
                last_crawled_at=page.last_crawled_at or now_iso(),
                first_seen_at=first_seen,
            )

    def to_dict(self) -> dict:
        return {
            "species": {key: entry.to_dict() for key, entry in sorted(self.species.items())},
            "sourcePages": {
                page_id: {
                    "hash": page.hash,
                    "lastCrawledAt": page.last_crawled_at,
                    "firstSeenAt": page.first_seen_at,
                }
                for page_id, page in sorted(self.source_pages.items())
            },
        }

    def save(self) -> None:
        atomic_write_json(self.registry_path, self.to_dict())
        LOGGER.info(
            "Registry saved: %d species, %d source pages",
            len(self.species),
            len(self.source_pages),
        )
