"""Chunked, checkpointed, resumable dataset synchronization."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Sequence

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from dexsync.client.connectivity import ConnectivityMonitor
from dexsync.client.fetcher import HttpFetcher
from dexsync.client.store import CHECKPOINT_KEY, LocalStore
from dexsync.client.version import MigrationOutcome, VersionManager
from dexsync.config import RetryConfig
from dexsync.errors import (
    IntegrityMismatchError,
    ManifestInvalidError,
    MigrationMissingError,
    SyncFailure,
)
from dexsync.models import (
    Manifest,
    SpeciesManifestEntry,
    SyncCheckpoint,
    TidbitPayload,
    TidbitRecord,
    VersionRecord,
)

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, float], None]


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING_MANIFEST = "fetching-manifest"
    PLANNING = "planning"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    COMMITTING = "committing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(slots=True)
class SyncReport:
    version: str | None = None
    manifest_version: str | None = None
    up_to_date: bool = False
    completed: bool = False
    stopped: bool = False
    total_entities: int = 0
    total_chunks: int = 0
    start_chunk: int = 0
    downloaded: int = 0
    skipped: int = 0
    removed: int = 0
    duration_ms: int = 0
    migration: MigrationOutcome | None = None
    message: str = ""


def chunk_entities(entity_ids: Sequence[str], size: int) -> List[List[str]]:
    if size < 1:
        raise ValueError("Chunk size must be at least 1")
    return [list(entity_ids[start : start + size]) for start in range(0, len(entity_ids), size)]


@dataclass(slots=True)
class _RemoteDataset:
    record: VersionRecord
    manifest: Manifest
    expected_hashes: dict[str, str]


class SyncEngine:
    """Pulls a published dataset into a ``LocalStore``.

    Chunks are processed strictly in order.  A chunk's records and its
    checkpoint are committed in one transaction, so after a failure the next
    attempt resumes at ``checkpoint.chunk_index + 1`` without re-downloading
    anything already committed.  The local version record only changes once
    every chunk is in.
    """

    def __init__(
        self,
        store: LocalStore,
        fetcher: HttpFetcher,
        *,
        versions: VersionManager | None = None,
        connectivity: ConnectivityMonitor | None = None,
        chunk_size: int = 100,
        integrity_retries: int = 3,
        poll_interval: float = 5.0,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("Chunk size must be at least 1")
        self.store = store
        self.fetcher = fetcher
        self.versions = versions or VersionManager(store)
        self.connectivity = connectivity or ConnectivityMonitor()
        self.chunk_size = chunk_size
        self.integrity_retries = max(1, integrity_retries)
        self.poll_interval = poll_interval
        self.retry = retry or RetryConfig()
        self._sleep = sleep
        self.state = SyncState.IDLE
        self.last_state = SyncState.IDLE
        self._callbacks: List[ProgressCallback] = []
        self._stop_requested = False
        self._running = False

    def on_progress(self, callback: ProgressCallback) -> None:
        self._callbacks.append(callback)

    def request_stop(self) -> None:
        """Stop after the chunk currently in flight."""
        self._stop_requested = True

    def _emit_progress(self, current: int, total: int) -> None:
        percentage = 100.0 if total == 0 else round(current / total * 100, 1)
        for callback in self._callbacks:
            try:
                callback(current, total, percentage)
            except Exception:
                LOGGER.exception("Progress callback failed")

    def sync(self, *, force: bool = False) -> SyncReport:
        if self._running:
            LOGGER.info("Sync already in progress")
            return SyncReport(message="Sync already in progress")

        self._running = True
        self._stop_requested = False
        started = time.monotonic()
        try:
            report = self._sync(force=force, started=started)
        except SyncFailure:
            self.state = SyncState.ERROR
            raise
        finally:
            self._running = False
            self.last_state = self.state
            self.state = SyncState.IDLE
        return report

    def _sync(self, *, force: bool, started: float) -> SyncReport:
        self.versions.initialize()
        self.connectivity.wait_until_online(self.poll_interval)

        self.state = SyncState.FETCHING_MANIFEST
        try:
            remote = self._fetch_remote()
        except Exception as exc:
            raise SyncFailure("Could not load dataset manifest", chunk_index=None, cause=exc) from exc

        report = SyncReport(
            version=remote.record.version,
            manifest_version=remote.manifest.manifest_version,
        )

        self.state = SyncState.PLANNING
        entity_ids = sorted(remote.manifest.species)
        chunks = chunk_entities(entity_ids, self.chunk_size)
        report.total_entities = len(entity_ids)
        report.total_chunks = len(chunks)

        checkpoint = None if force else self._load_checkpoint(remote.manifest)
        if checkpoint is None and not force and not self.versions.check_for_update(remote.record):
            report.up_to_date = True
            report.message = f"Already at dataset {remote.record.version}"
            LOGGER.info(report.message)
            self.state = SyncState.COMPLETE
            return report

        try:
            self.versions.ensure_migration_available(self.versions.current_version, remote.record.version)
        except MigrationMissingError as exc:
            raise SyncFailure("Cannot upgrade local data", chunk_index=None, cause=exc) from exc

        report.start_chunk = 0 if checkpoint is None else checkpoint.chunk_index + 1
        if report.start_chunk:
            LOGGER.info("Resuming sync at chunk %d of %d", report.start_chunk, len(chunks))

        for index in range(report.start_chunk, len(chunks)):
            if self._stop_requested:
                report.stopped = True
                report.message = f"Stopped before chunk {index}"
                LOGGER.info(report.message)
                self.state = SyncState.IDLE
                return report
            if not self.connectivity.is_online():
                self.connectivity.wait_until_online(self.poll_interval)
            try:
                self._sync_chunk(index, chunks[index], remote, report, force=force)
            except Exception as exc:
                raise SyncFailure("Sync attempt failed", chunk_index=index, cause=exc) from exc
            self._emit_progress(index + 1, len(chunks))

        try:
            self._complete(remote, report, started)
        except Exception as exc:
            raise SyncFailure("Could not finalize sync", chunk_index=None, cause=exc) from exc
        if not chunks:
            self._emit_progress(0, 0)
        return report

    def _fetch_remote(self) -> _RemoteDataset:
        record_data = self.fetcher.fetch_version_record()
        result = self.versions.validate_manifest(record_data)
        if not result.valid:
            raise ManifestInvalidError("Version record failed validation", errors=result.errors)

        manifest_data = self.fetcher.fetch_manifest()
        result = self.versions.validate_tidbit_manifest(manifest_data)
        if not result.valid:
            raise ManifestInvalidError("Tidbit manifest failed validation", errors=result.errors)

        record = VersionRecord.from_dict(record_data)
        manifest = Manifest.from_dict(manifest_data)
        if manifest.dataset_version != record.version:
            raise ManifestInvalidError(
                f"Manifest dataset {manifest.dataset_version} does not match version record "
                f"{record.version} (publish in progress?)"
            )

        declared = record.file_index()
        expected: dict[str, str] = {}
        missing: List[str] = []
        for padded_id, entry in manifest.species.items():
            described = declared.get(entry.tidbit_file)
            digest = described.hash if described is not None else entry.tidbit_hash
            if digest is None:
                missing.append(f"{padded_id}: no hash declared for {entry.tidbit_file}")
            else:
                expected[padded_id] = digest
        if missing:
            raise ManifestInvalidError("Manifest references undeclared files", errors=missing)
        return _RemoteDataset(record=record, manifest=manifest, expected_hashes=expected)

    def _load_checkpoint(self, manifest: Manifest) -> SyncCheckpoint | None:
        raw = self.store.get_meta(CHECKPOINT_KEY)
        if raw is None:
            return None
        checkpoint = SyncCheckpoint.from_dict(raw)
        if checkpoint.manifest_version != manifest.manifest_version:
            LOGGER.info(
                "Discarding checkpoint for manifest %s; remote is now %s",
                checkpoint.manifest_version,
                manifest.manifest_version,
            )
            return None
        return checkpoint

    def _sync_chunk(
        self,
        index: int,
        chunk: Iterable[str],
        remote: _RemoteDataset,
        report: SyncReport,
        *,
        force: bool,
    ) -> None:
        records: List[TidbitRecord] = []
        for padded_id in chunk:
            entry = remote.manifest.species[padded_id]
            expected = remote.expected_hashes[padded_id]
            if not force and self.store.get_revision(padded_id) == (entry.tidbit_revision, expected):
                report.skipped += 1
                continue
            records.append(self._download_entity(padded_id, entry, expected, remote))

        self.state = SyncState.COMMITTING
        tx = self.store.transaction()
        for record in records:
            tx.put_record(record)
        tx.set_meta(
            CHECKPOINT_KEY,
            SyncCheckpoint(
                chunk_index=index,
                timestamp=int(time.time() * 1000),
                manifest_version=remote.manifest.manifest_version,
            ).to_dict(),
        )
        receipt = tx.commit()
        report.downloaded += len(records)
        LOGGER.debug("Chunk %d committed (%d operations)", index, receipt.operations)

    def _download_entity(
        self,
        padded_id: str,
        entry: SpeciesManifestEntry,
        expected: str,
        remote: _RemoteDataset,
    ) -> TidbitRecord:
        actual = ""
        for attempt in range(1, self.integrity_retries + 1):
            self.state = SyncState.DOWNLOADING
            data = self.fetcher.fetch_bytes(entry.tidbit_file)
            self.state = SyncState.VERIFYING
            if self.versions.verify_integrity(data, expected):
                payload = TidbitPayload.from_dict(json.loads(data))
                return TidbitRecord(
                    species_id=padded_id,
                    tidbit_revision=entry.tidbit_revision,
                    tidbits=payload.tidbits,
                    payload_hash=expected,
                    manifest_version=remote.manifest.manifest_version,
                    dataset_version=remote.record.version,
                )
            actual = self.versions.compute_hash(data)
            LOGGER.warning(
                "Integrity mismatch for %s (attempt %d/%d)", entry.tidbit_file, attempt, self.integrity_retries
            )
        raise IntegrityMismatchError(
            f"{entry.tidbit_file} failed verification {self.integrity_retries} times",
            expected=expected,
            actual=actual,
            attempts=self.integrity_retries,
        )

    def _complete(self, remote: _RemoteDataset, report: SyncReport, started: float) -> None:
        self.state = SyncState.COMMITTING
        stale = sorted(set(self.store.species_ids()) - set(remote.manifest.species))
        duration_ms = int((time.monotonic() - started) * 1000)

        tx = self.store.transaction()
        try:
            for species_id in stale:
                tx.delete_record(species_id)
            report.migration = self.versions.migrate_data(
                self.versions.current_version, remote.record.version, tx
            )
            updated = self.versions.record_sync(
                tx, remote.record.version, report.total_entities, duration_ms
            )
            tx.delete_meta(CHECKPOINT_KEY)
            tx.commit()
        except BaseException:
            tx.rollback()
            raise

        self.versions.record = updated
        report.removed = len(stale)
        report.duration_ms = duration_ms
        report.completed = True
        report.message = f"Synced dataset {remote.record.version}"
        self.state = SyncState.COMPLETE
        LOGGER.info(
            "Sync complete: dataset %s, %d downloaded, %d skipped, %d removed",
            remote.record.version,
            report.downloaded,
            report.skipped,
            report.removed,
        )

    def sync_until_complete(self, max_attempts: int = 3, *, force: bool = False) -> SyncReport:
        """Retry whole sync attempts; each retry resumes from the last checkpoint."""

        def retryable(exc: BaseException) -> bool:
            return isinstance(exc, SyncFailure) and not isinstance(exc.cause, MigrationMissingError)

        policy = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(
                multiplier=self.retry.base_delay,
                exp_base=self.retry.multiplier,
                max=self.retry.max_delay,
            ),
            retry=retry_if_exception(retryable),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        return policy(self.sync, force=force)
