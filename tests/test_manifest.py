"""Tests for ManifestBuilder."""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path

import pytest

from conftest import species_data
from dexsync.models import VersionFile
from dexsync.pipeline.indexer import IndexingResult, SpeciesIndexer
from dexsync.pipeline.manifest import ManifestBuilder, next_dataset_version
from dexsync.pipeline.registry import SourceRegistry


@pytest.fixture
def result(tmp_path: Path) -> IndexingResult:
    registry = SourceRegistry(tmp_path / "registry.json")
    return SpeciesIndexer(registry).index_enriched_data(
        {"1": species_data(["Overgrow"]), "4": species_data(["Blaze", "Tail flame"])}
    )


class TestNextDatasetVersion:
    """Tests for next_dataset_version."""

    def test_first_publish(self) -> None:
        assert next_dataset_version(None, IndexingResult()) == "1.0.0"

    def test_minor_bump_on_tidbit_changes(self) -> None:
        assert next_dataset_version("1.2.3", IndexingResult(new_tidbit_ids=["x"])) == "1.3.0"
        assert next_dataset_version("1.2.3", IndexingResult(removed_tidbit_ids=["x"])) == "1.3.0"

    def test_patch_bump_otherwise(self) -> None:
        assert next_dataset_version("1.2.3", IndexingResult()) == "1.2.4"

    def test_malformed_previous_moves_forward(self) -> None:
        """A salvageable malformed version never goes backwards."""
        assert next_dataset_version("v2.3.1", IndexingResult()) == "2.4.0"
        assert next_dataset_version("1.4", IndexingResult(new_tidbit_ids=["x"])) == "1.5.0"

    def test_unusable_previous_restarts(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.ERROR, logger="dexsync.pipeline.manifest"):
            assert next_dataset_version("banana", IndexingResult()) == "1.0.0"
        assert "will not pick this dataset up" in caplog.text


class TestBuild:
    """Tests for ManifestBuilder.build."""

    def test_summary_and_species(self, tmp_path: Path, result: IndexingResult) -> None:
        manifest = ManifestBuilder(tmp_path).build(result, "1.0.0")
        assert sorted(manifest.species) == ["0001", "0004"]
        assert manifest.summary["totalPokemon"] == 2
        assert manifest.summary["totalTidbits"] == 3
        assert manifest.dataset_version == "1.0.0"
        assert manifest.new_tidbits == result.new_tidbit_ids

    def test_digests_annotate_entries(self, tmp_path: Path, result: IndexingResult) -> None:
        digests = {"species/0001/tidbits.v1.json": VersionFile("species/0001/tidbits.v1.json", 10, "a" * 64)}
        manifest = ManifestBuilder(tmp_path).build(result, "1.0.0", digests=digests)
        assert manifest.species["0001"].tidbit_hash == "a" * 64
        assert manifest.species["0001"].tidbit_size == 10
        assert manifest.species["0004"].tidbit_hash is None

    def test_serialized_species_sorted(self, tmp_path: Path, result: IndexingResult) -> None:
        data = ManifestBuilder(tmp_path).build(result, "1.0.0").to_dict()
        assert list(data["species"]) == ["0001", "0004"]
        assert data["species"]["0001"]["tidbitFile"] == "species/0001/tidbits.v1.json"


class TestPersist:
    """Tests for persisting payloads, manifest and version record."""

    def test_payload_files_and_digests(self, tmp_path: Path, result: IndexingResult) -> None:
        builder = ManifestBuilder(tmp_path)
        files = builder.persist_tidbit_payloads(result.tidbit_payloads)

        path = tmp_path / "species" / "0004" / "tidbits.v1.json"
        assert path.exists()
        assert files["species/0004/tidbits.v1.json"].hash == hashlib.sha256(path.read_bytes()).hexdigest()
        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["tidbitRevision"] == 1
        assert len(payload["tidbits"]) == 2

    def test_existing_revision_files_are_not_rewritten(self, tmp_path: Path, result: IndexingResult) -> None:
        builder = ManifestBuilder(tmp_path)
        path = tmp_path / "species" / "0001" / "tidbits.v1.json"
        path.parent.mkdir(parents=True)
        path.write_bytes(b'{"published": true}\n')

        files = builder.persist_tidbit_payloads(result.tidbit_payloads)
        assert path.read_bytes() == b'{"published": true}\n'
        assert files["species/0001/tidbits.v1.json"].hash == hashlib.sha256(path.read_bytes()).hexdigest()

    def test_uncommitted_revision_files_are_replaced(self, tmp_path: Path, result: IndexingResult) -> None:
        builder = ManifestBuilder(tmp_path)
        path = tmp_path / "species" / "0001" / "tidbits.v1.json"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"leftover")

        builder.persist_tidbit_payloads(result.tidbit_payloads, overwrite=["0001"])
        assert json.loads(path.read_text(encoding="utf-8"))["speciesId"] == "1"

    def test_manifest_and_version_round_trip(self, tmp_path: Path, result: IndexingResult) -> None:
        builder = ManifestBuilder(tmp_path)
        files = builder.persist_tidbit_payloads(result.tidbit_payloads)
        manifest = builder.build(result, "1.0.0", digests=files)
        record = builder.build_version_record("1.0.0", files.values())
        builder.persist_manifest(manifest)
        builder.persist_version_record(record)

        loaded = builder.load_manifest()
        assert loaded.manifest_version == manifest.manifest_version
        assert loaded.species["0004"].tidbit_hash == files["species/0004/tidbits.v1.json"].hash
        loaded_record = builder.load_version_record()
        assert loaded_record.version == "1.0.0"
        assert [item.path for item in loaded_record.files] == sorted(files)
        assert loaded_record.total_size == sum(item.size for item in files.values())

    def test_load_missing(self, tmp_path: Path) -> None:
        builder = ManifestBuilder(tmp_path)
        assert builder.load_manifest() is None
        assert builder.load_version_record() is None


class TestVerifyDistribution:
    """Tests for verify_distribution."""

    def _publish(self, builder: ManifestBuilder, result: IndexingResult) -> None:
        files = builder.persist_tidbit_payloads(result.tidbit_payloads)
        builder.persist_manifest(builder.build(result, "1.0.0", digests=files))
        builder.persist_version_record(builder.build_version_record("1.0.0", files.values()))

    def test_consistent(self, tmp_path: Path, result: IndexingResult) -> None:
        builder = ManifestBuilder(tmp_path)
        self._publish(builder, result)
        assert builder.verify_distribution() == []

    def test_missing_manifest(self, tmp_path: Path) -> None:
        problems = ManifestBuilder(tmp_path).verify_distribution()
        assert len(problems) == 1
        assert "Manifest not found" in problems[0]

    def test_tampered_and_missing_files(self, tmp_path: Path, result: IndexingResult) -> None:
        builder = ManifestBuilder(tmp_path)
        self._publish(builder, result)
        (tmp_path / "species" / "0001" / "tidbits.v1.json").write_text("tampered")
        (tmp_path / "species" / "0004" / "tidbits.v1.json").unlink()

        problems = builder.verify_distribution()
        assert problems == [
            "0001: hash mismatch for species/0001/tidbits.v1.json",
            "0004: missing species/0004/tidbits.v1.json",
        ]
