"""Crawl planning against the registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Sequence

from dexsync.models import normalize_species_id
from dexsync.pipeline.registry import SourceRegistry

LOGGER = logging.getLogger(__name__)


def source_page_id(species_id: str, source: str) -> str:
    return f"{normalize_species_id(species_id)}-{source}"


@dataclass(slots=True)
class SourcePlan:
    tasks: List[str] = field(default_factory=list)
    force: bool = False


@dataclass(slots=True)
class CrawlPlan:
    sources: Dict[str, SourcePlan] = field(default_factory=dict)
    new_pages: List[str] = field(default_factory=list)
    changed_pages: List[str] = field(default_factory=list)
    skipped_pages: List[str] = field(default_factory=list)
    force: bool = False

    @property
    def total_pages(self) -> int:
        return sum(len(plan.tasks) for plan in self.sources.values())

    @property
    def is_empty(self) -> bool:
        return self.total_pages == 0

    def targets(self) -> list[str]:
        seen: dict[str, None] = {}
        for plan in self.sources.values():
            for task in plan.tasks:
                seen.setdefault(task, None)
        return list(seen)

    def includes(self, species_id: str) -> bool:
        species_id = normalize_species_id(species_id)
        return any(species_id in plan.tasks for plan in self.sources.values())


class CrawlPlanner:
    """Restricts crawling to new, changed, or forced targets."""

    def __init__(self, registry: SourceRegistry, sources: Sequence[str]) -> None:
        self.registry = registry
        self.sources = list(sources)

    def build_plan(
        self,
        targets: Iterable[str | int],
        *,
        force: bool = False,
        fingerprints: Mapping[str, str] | None = None,
    ) -> CrawlPlan:
        """Build a per-source plan.

        ``fingerprints`` maps source page ids to the digest of their current
        normalized content, when known.  A target is excluded only when every
        one of its source pages is known to the registry and its fingerprint
        equals the registry hash.  With ``force`` every target is crawled.
        """
        species = list(dict.fromkeys(normalize_species_id(t) for t in targets))
        fingerprints = fingerprints or {}
        plan = CrawlPlan(
            sources={name: SourcePlan(force=force) for name in self.sources},
            force=force,
        )

        for species_id in species:
            new: list[str] = []
            changed: list[str] = []
            unchanged: list[str] = []
            for source in self.sources:
                page_id = source_page_id(species_id, source)
                known = self.registry.get_source_page(page_id)
                if known is None:
                    new.append(page_id)
                elif force or fingerprints.get(page_id) != known.hash:
                    # an unknown fingerprint counts as changed
                    changed.append(page_id)
                else:
                    unchanged.append(page_id)

            if not new and not changed:
                plan.skipped_pages.extend(unchanged)
                LOGGER.debug("Skipping %s: all source pages unchanged", species_id)
                continue

            # enrichment needs every source of a target, not only the changed ones
            for source in self.sources:
                plan.sources[source].tasks.append(species_id)
            plan.new_pages.extend(new)
            plan.changed_pages.extend(changed)

        LOGGER.info(
            "Crawl plan: %d pages (%d new, %d changed, %d skipped)%s",
            plan.total_pages,
            len(plan.new_pages),
            len(plan.changed_pages),
            len(plan.skipped_pages),
            " [forced]" if force else "",
        )
        return plan
