"""End-to-end publishing pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping

from dexsync.models import Manifest, VersionRecord, normalize_species_id, pad_species_id, tidbit_file_path
from dexsync.pipeline.crawler import CrawlCoordinator, CrawlResult
from dexsync.pipeline.enrichment import CachingEnricher
from dexsync.pipeline.indexer import IndexingResult, SpeciesIndexer
from dexsync.pipeline.manifest import ManifestBuilder, next_dataset_version
from dexsync.pipeline.planner import CrawlPlan, CrawlPlanner, source_page_id
from dexsync.pipeline.registry import SourceRegistry
from dexsync.utils.hashing import ContentHasher

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineOutcome:
    published: bool = False
    message: str = ""
    plan: CrawlPlan | None = None
    result: IndexingResult | None = None
    manifest: Manifest | None = None
    version_record: VersionRecord | None = None
    failed_species: Dict[str, str] = field(default_factory=dict)


class PipelineRunner:
    """Plan, crawl, enrich, index, publish, then commit the registry.

    The registry is saved last; a run that fails earlier leaves no durable
    trace in it and can simply be retried.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        builder: ManifestBuilder,
        *,
        sources: Iterable[str],
        coordinator: CrawlCoordinator | None = None,
        enricher: CachingEnricher | None = None,
        hasher: ContentHasher | None = None,
    ) -> None:
        self.registry = registry
        self.builder = builder
        self.hasher = hasher or ContentHasher()
        self.planner = CrawlPlanner(registry, list(sources))
        self.indexer = SpeciesIndexer(registry, hasher=self.hasher)
        self.coordinator = coordinator
        self.enricher = enricher

    def run(self, targets: Iterable[str | int], *, force: bool = False, dry_run: bool = False) -> PipelineOutcome:
        if self.coordinator is None or self.enricher is None:
            raise ValueError("run() needs a crawl coordinator and an enricher")
        targets = [normalize_species_id(t) for t in targets]

        with self.registry.lock():
            self.registry.load()
            crawl_plan = self.planner.build_plan(targets, force=force)
            if crawl_plan.is_empty:
                return self._short_circuit(crawl_plan, "No targets to crawl. Dataset unchanged.")

            crawled = self.coordinator.crawl(crawl_plan)
            plan = self.planner.build_plan(
                targets, force=force, fingerprints=crawled.fingerprints(self.hasher)
            )
            if plan.is_empty:
                return self._short_circuit(plan, "All source pages unchanged. Dataset unchanged.")

            outcome = self.enricher.enrich_batch(self._pages_for(plan, crawled))
            published = self._publish(outcome.enriched, plan, dry_run=dry_run)
            published.failed_species.update(outcome.failed)
            return published

    def publish_enriched(
        self,
        enriched: Mapping[str, Mapping[str, Any]],
        *,
        targets: Iterable[str | int] | None = None,
        force: bool = False,
        dry_run: bool = False,
    ) -> PipelineOutcome:
        """Index and publish already-enriched data (crawl and enrichment ran elsewhere)."""
        enriched = {normalize_species_id(key): value for key, value in enriched.items()}
        wanted = [normalize_species_id(t) for t in targets] if targets else list(enriched)

        with self.registry.lock():
            self.registry.load()
            fingerprints = {
                source_page_id(species_id, source): self.hasher.source_digest(data)
                for species_id, entry in enriched.items()
                for source, data in (entry.get("sources") or {}).items()
            }
            present = sorted(
                {source for entry in enriched.values() for source in (entry.get("sources") or {})}
            )
            planner = CrawlPlanner(self.registry, present or self.planner.sources)
            plan = planner.build_plan(wanted, force=force, fingerprints=fingerprints)
            if plan.is_empty:
                return self._short_circuit(plan, "No new or changed source pages. Dataset unchanged.")
            return self._publish(enriched, plan, dry_run=dry_run)

    def _pages_for(self, plan: CrawlPlan, crawled: CrawlResult) -> Dict[str, Dict[str, Any]]:
        return {
            species_id: crawled.pages[species_id]
            for species_id in plan.targets()
            if species_id in crawled.pages
        }

    def _short_circuit(self, plan: CrawlPlan, message: str) -> PipelineOutcome:
        LOGGER.warning(message)
        return PipelineOutcome(published=False, message=message, plan=plan)

    def _publish(
        self, enriched: Mapping[str, Mapping[str, Any]], plan: CrawlPlan, *, dry_run: bool
    ) -> PipelineOutcome:
        result = self.indexer.index_enriched_data(enriched, plan)
        if result.species_count == 0:
            return PipelineOutcome(
                message="No species indexed successfully. Nothing published.",
                plan=plan,
                result=result,
                failed_species=dict(result.failed_species),
            )

        carried = {
            species_id: entry
            for species_id, entry in self.registry.entries()
            if pad_species_id(species_id) not in result.manifest_species
        }
        previous = self.builder.load_version_record()
        dataset_version = next_dataset_version(previous.version if previous else None, result)

        if dry_run:
            manifest = self.builder.build(result, dataset_version, carried=carried)
            LOGGER.info("Dry run: would publish dataset %s", dataset_version)
            return PipelineOutcome(
                message=f"Dry run: dataset {dataset_version} not published.",
                plan=plan,
                result=result,
                manifest=manifest,
                failed_species=dict(result.failed_species),
            )

        files = self.builder.persist_tidbit_payloads(
            result.tidbit_payloads, overwrite=result.changed_species
        )
        files.update(
            self.builder.describe_payloads(
                tidbit_file_path(pad_species_id(species_id), entry.tidbit_revision)
                for species_id, entry in carried.items()
            )
        )
        manifest = self.builder.build(result, dataset_version, carried=carried, digests=files)
        record = self.builder.build_version_record(
            dataset_version, (files[entry.tidbit_file] for entry in manifest.species.values())
        )
        self.builder.persist_manifest(manifest)
        self.builder.persist_version_record(record)

        self.registry.apply_updates(result)
        self.registry.save()

        LOGGER.info("Pipeline completed: dataset %s published", dataset_version)
        return PipelineOutcome(
            published=True,
            message=f"Published dataset {dataset_version}.",
            plan=plan,
            result=result,
            manifest=manifest,
            version_record=record,
            failed_species=dict(result.failed_species),
        )
