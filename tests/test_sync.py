"""Tests for SyncEngine against a served distribution root."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import dataset, species_data
from dexsync.client.connectivity import ConnectivityMonitor
from dexsync.client.fetcher import HttpFetcher
from dexsync.client.store import CHECKPOINT_KEY, LocalStore
from dexsync.client.sync import SyncEngine, SyncState, chunk_entities
from dexsync.client.version import MigrationOutcome, MigrationRegistry, VersionManager
from dexsync.config import RetryConfig
from dexsync.errors import (
    IntegrityMismatchError,
    ManifestInvalidError,
    MigrationMissingError,
    SyncFailure,
    TransientNetworkError,
)
from dexsync.models import Tidbit, TidbitRecord
from dexsync.pipeline.manifest import ManifestBuilder
from dexsync.pipeline.registry import SourceRegistry
from dexsync.pipeline.runner import PipelineRunner
from dexsync.web.app import create_app


def _publish(root: Path, registry: Path, enriched) -> None:
    runner = PipelineRunner(SourceRegistry(registry), ManifestBuilder(root), sources=["bulbapedia"])
    assert runner.publish_enriched(enriched).published


@pytest.fixture(scope="module")
def large_root(tmp_path_factory) -> Path:
    """A published dataset of 250 species (three chunks of 100)."""
    base = tmp_path_factory.mktemp("large")
    _publish(base / "dist", base / "registry.json", dataset(250))
    return base / "dist"


@pytest.fixture
def small_root(tmp_path: Path) -> Path:
    _publish(tmp_path / "dist", tmp_path / "registry.json", dataset(5))
    return tmp_path / "dist"


@pytest.fixture
def store(tmp_path: Path):
    store = LocalStore(tmp_path / "client.db")
    yield store
    store.close()


class ServerFetcher(HttpFetcher):
    """HttpFetcher over a TestClient that counts payload downloads and injects faults."""

    def __init__(self, root: Path, *, fail_at: int | None = None, corrupt: dict[str, int] | None = None) -> None:
        super().__init__(
            "http://testserver",
            client=TestClient(create_app(root)),
            retry=RetryConfig(max_attempts=1),
            sleep=lambda seconds: None,
        )
        self.payload_calls: list[str] = []
        self.fail_at = fail_at
        self.corrupt = dict(corrupt or {})

    def fetch_bytes(self, path: str) -> bytes:
        if not path.startswith("species/"):
            return super().fetch_bytes(path)
        self.payload_calls.append(path)
        if self.fail_at is not None and len(self.payload_calls) == self.fail_at:
            raise TransientNetworkError("connection reset", url=path, attempts=1)
        data = super().fetch_bytes(path)
        if self.corrupt.get(path, 0) > 0:
            self.corrupt[path] -= 1
            return data + b" "
        return data


def _engine(store: LocalStore, fetcher: HttpFetcher, **kwargs) -> SyncEngine:
    kwargs.setdefault("sleep", lambda seconds: None)
    return SyncEngine(store, fetcher, chunk_size=100, **kwargs)


def test_chunk_entities() -> None:
    ids = [str(n) for n in range(250)]
    chunks = chunk_entities(ids, 100)
    assert [len(chunk) for chunk in chunks] == [100, 100, 50]
    assert sum(chunks, []) == ids
    assert chunk_entities([], 100) == []
    with pytest.raises(ValueError):
        chunk_entities(ids, 0)


class TestFullSync:
    """Tests for a complete sync from scratch."""

    def test_syncs_everything(self, large_root: Path, store: LocalStore) -> None:
        fetcher = ServerFetcher(large_root)
        engine = _engine(store, fetcher)
        progress = []
        engine.on_progress(lambda current, total, pct: progress.append((current, total, pct)))

        report = engine.sync()

        assert report.completed
        assert report.total_chunks == 3
        assert report.downloaded == 250
        assert len(fetcher.payload_calls) == 250
        assert progress == [(1, 3, 33.3), (2, 3, 66.7), (3, 3, 100.0)]
        assert store.count_records() == 250
        assert store.get_meta(CHECKPOINT_KEY) is None
        assert engine.last_state is SyncState.COMPLETE
        assert engine.state is SyncState.IDLE

        record = VersionManager(store).initialize()
        assert record.current_version == "1.0.0"
        assert len(record.version_history) == 1
        assert record.version_history[0].total_entities == 250

        stored = store.get_record("0042")
        assert stored.tidbit_revision == 1
        assert stored.tidbits[0].title == "Fact 42"

    def test_second_sync_is_up_to_date(self, large_root: Path, store: LocalStore) -> None:
        _engine(store, ServerFetcher(large_root)).sync()
        fetcher = ServerFetcher(large_root)
        report = _engine(store, fetcher).sync()
        assert report.up_to_date
        assert fetcher.payload_calls == []

    def test_failing_progress_callback_does_not_abort(self, small_root: Path, store: LocalStore) -> None:
        engine = _engine(store, ServerFetcher(small_root))
        engine.on_progress(lambda *args: 1 / 0)
        assert engine.sync().completed


class TestResume:
    """Tests for checkpointed resume."""

    def test_crash_after_first_chunk_resumes_at_second(self, large_root: Path, store: LocalStore) -> None:
        with pytest.raises(SyncFailure) as excinfo:
            _engine(store, ServerFetcher(large_root, fail_at=101)).sync()

        failure = excinfo.value
        assert failure.chunk_index == 1
        assert failure.cause_class == "TransientNetworkError"
        assert "chunk 1" in str(failure)
        assert store.get_meta(CHECKPOINT_KEY)["chunkIndex"] == 0
        assert store.count_records() == 100
        assert VersionManager(store).initialize().current_version is None

        fetcher = ServerFetcher(large_root)
        report = _engine(store, fetcher).sync()
        assert report.start_chunk == 1
        assert report.downloaded == 150
        assert len(fetcher.payload_calls) == 150
        assert store.count_records() == 250
        assert store.get_meta(CHECKPOINT_KEY) is None

    def test_checkpoint_for_other_manifest_is_discarded(self, small_root: Path, store: LocalStore) -> None:
        with store.transaction() as tx:
            tx.set_meta(CHECKPOINT_KEY, {"chunkIndex": 3, "timestamp": 0, "manifestVersion": "stale"})
        report = _engine(store, ServerFetcher(small_root)).sync()
        assert report.start_chunk == 0
        assert report.downloaded == 5

    def test_request_stop_after_current_chunk(self, large_root: Path, store: LocalStore) -> None:
        engine = _engine(store, ServerFetcher(large_root))
        engine.on_progress(lambda current, total, pct: engine.request_stop())
        report = engine.sync()

        assert report.stopped
        assert not report.completed
        assert store.count_records() == 100
        assert store.get_meta(CHECKPOINT_KEY)["chunkIndex"] == 0

        report = _engine(store, ServerFetcher(large_root)).sync()
        assert report.completed
        assert report.downloaded == 150

    def test_sync_until_complete_retries_from_checkpoint(self, large_root: Path, store: LocalStore) -> None:
        fetcher = ServerFetcher(large_root, fail_at=150)
        sleeps: list[float] = []
        engine = _engine(store, fetcher, sleep=sleeps.append)

        report = engine.sync_until_complete(3)

        assert report.completed
        assert report.start_chunk == 1
        assert len(sleeps) == 1
        # first attempt: 149 downloads plus the faulting call; second: chunks 1 and 2
        assert len(fetcher.payload_calls) == 149 + 1 + 150
        assert store.count_records() == 250


class TestIntegrity:
    """Tests for integrity verification during download."""

    def test_transient_mismatch_is_retried(self, small_root: Path, store: LocalStore) -> None:
        path = "species/0003/tidbits.v1.json"
        fetcher = ServerFetcher(small_root, corrupt={path: 2})
        report = _engine(store, fetcher).sync()
        assert report.completed
        assert fetcher.payload_calls.count(path) == 3

    def test_persistent_mismatch_fails_without_checkpoint(self, small_root: Path, store: LocalStore) -> None:
        path = "species/0003/tidbits.v1.json"
        fetcher = ServerFetcher(small_root, corrupt={path: 99})
        with pytest.raises(SyncFailure) as excinfo:
            _engine(store, fetcher).sync()

        assert excinfo.value.chunk_index == 0
        assert isinstance(excinfo.value.cause, IntegrityMismatchError)
        assert excinfo.value.cause.attempts == 3
        assert fetcher.payload_calls.count(path) == 3
        assert store.get_meta(CHECKPOINT_KEY) is None
        assert store.count_records() == 0


class TestManifestChecks:
    """Tests for manifest validation before download."""

    def test_invalid_version_record_aborts_before_download(self, small_root: Path, store: LocalStore) -> None:
        version_path = small_root / "version.json"
        record = json.loads(version_path.read_text(encoding="utf-8"))
        record["files"][0]["hash"] = "NOT-A-HASH"
        version_path.write_text(json.dumps(record), encoding="utf-8")

        fetcher = ServerFetcher(small_root)
        with pytest.raises(SyncFailure) as excinfo:
            _engine(store, fetcher).sync()
        assert excinfo.value.chunk_index is None
        assert isinstance(excinfo.value.cause, ManifestInvalidError)
        assert excinfo.value.cause.errors
        assert fetcher.payload_calls == []

    def test_version_mismatch_is_rejected(self, small_root: Path, store: LocalStore) -> None:
        version_path = small_root / "version.json"
        record = json.loads(version_path.read_text(encoding="utf-8"))
        record["version"] = "9.9.9"
        version_path.write_text(json.dumps(record), encoding="utf-8")

        with pytest.raises(SyncFailure) as excinfo:
            _engine(store, ServerFetcher(small_root)).sync()
        assert isinstance(excinfo.value.cause, ManifestInvalidError)

    def test_missing_manifest(self, tmp_path: Path, store: LocalStore) -> None:
        (tmp_path / "empty").mkdir()
        with pytest.raises(SyncFailure) as excinfo:
            _engine(store, ServerFetcher(tmp_path / "empty")).sync()
        assert excinfo.value.chunk_index is None


class TestIncremental:
    """Tests for syncing a later dataset version."""

    def test_only_changed_species_downloaded(self, tmp_path: Path, store: LocalStore) -> None:
        root, registry = tmp_path / "dist", tmp_path / "registry.json"
        _publish(root, registry, dataset(5))
        _engine(store, ServerFetcher(root)).sync()

        _publish(root, registry, {"2": species_data(["Fact 2", "New fact"], content="revised")})
        fetcher = ServerFetcher(root)
        report = _engine(store, fetcher).sync()

        assert report.completed
        assert report.version == "1.1.0"
        assert fetcher.payload_calls == ["species/0002/tidbits.v2.json"]
        assert report.skipped == 4
        assert store.get_revision("0002")[0] == 2
        history = VersionManager(store).initialize().version_history
        assert [entry.version for entry in history] == ["1.0.0", "1.1.0"]

    def test_species_absent_from_manifest_are_removed(self, small_root: Path, store: LocalStore) -> None:
        with store.transaction() as tx:
            tx.put_record(
                TidbitRecord("0999", 1, [Tidbit("x", "x", "x", [], "t")], "c" * 64, "old", "0.1.0")
            )
        report = _engine(store, ServerFetcher(small_root)).sync()
        assert report.removed == 1
        assert store.get_record("0999") is None
        assert store.count_records() == 5


class TestConnectivityAndMigrations:
    """Tests for offline handling and migrations."""

    def test_waits_for_connectivity(self, small_root: Path, store: LocalStore) -> None:
        states = [False, False]
        sleeps: list[float] = []
        monitor = ConnectivityMonitor(lambda: states.pop(0) if states else True, sleep=sleeps.append)
        report = _engine(store, ServerFetcher(small_root), connectivity=monitor, poll_interval=3.0).sync()
        assert report.completed
        assert sleeps == [3.0, 3.0]

    def test_goes_offline_between_chunks(self, large_root: Path, store: LocalStore) -> None:
        """Losing the network mid-sync suspends and resumes at the next chunk."""
        fetcher = ServerFetcher(large_root)
        offline_polls = [2]
        checkpoints: list[int] = []

        def online() -> bool:
            if len(fetcher.payload_calls) == 100 and offline_polls[0] > 0:
                offline_polls[0] -= 1
                checkpoints.append(store.get_meta(CHECKPOINT_KEY)["chunkIndex"])
                return False
            return True

        sleeps: list[float] = []
        monitor = ConnectivityMonitor(online, sleep=sleeps.append)
        report = _engine(store, fetcher, connectivity=monitor, poll_interval=3.0).sync()

        assert report.completed
        assert monitor.was_offline
        assert sleeps == [3.0]
        assert checkpoints == [0, 0]
        assert len(fetcher.payload_calls) == 250
        assert len(set(fetcher.payload_calls)) == 250
        assert store.count_records() == 250

    def test_missing_major_migration_is_fatal(self, small_root: Path, store: LocalStore) -> None:
        manager = VersionManager(store)
        old = TidbitRecord("0001", 7, [Tidbit("old", "Old", "old", [], "t")], "d" * 64, "M0", "0.9.0")
        with store.transaction() as tx:
            tx.put_record(old)
            manager.record_sync(tx, "0.9.0", 1, 1)

        fetcher = ServerFetcher(small_root)
        engine = _engine(store, fetcher)
        with pytest.raises(SyncFailure) as excinfo:
            engine.sync_until_complete(3)
        assert isinstance(excinfo.value.cause, MigrationMissingError)
        assert VersionManager(store).initialize().current_version == "0.9.0"
        assert fetcher.payload_calls == []
        assert store.count_records() == 1
        assert store.get_revision("0001") == (7, "d" * 64)
        assert store.get_record("0001").dataset_version == "0.9.0"
        assert store.get_meta(CHECKPOINT_KEY) is None

    def test_registered_major_migration_runs_at_completion(self, small_root: Path, store: LocalStore) -> None:
        with store.transaction() as tx:
            VersionManager(store).record_sync(tx, "0.9.0", 1, 1)
        migrations = MigrationRegistry()
        migrations.register("0.9.0", "1.0.0", lambda tx, local: tx.set_meta("schema", 1))

        engine = _engine(store, ServerFetcher(small_root), versions=VersionManager(store, migrations=migrations))
        report = engine.sync()

        assert report.completed
        assert report.migration is MigrationOutcome.APPLIED
        assert store.get_meta("schema") == 1
        assert store.count_records() == 5
