"""Manifest assembly and publication to the distribution root.

Publication order is payloads, then the manifest, then the version record.
Each file is replaced atomically, so a reader that sees a manifest can always
fetch every payload it references, and a new version record only appears once
everything it lists is in place.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from pathlib import Path
from typing import Dict, Iterable, List, Mapping

from dexsync.config import MANIFEST_FILENAME, VERSION_FILENAME
from dexsync.errors import VersionFormatError
from dexsync.models import (
    Manifest,
    RegistryEntry,
    SpeciesManifestEntry,
    TidbitPayload,
    VersionFile,
    VersionRecord,
    pad_species_id,
    tidbit_file_path,
)
from dexsync.pipeline.indexer import IndexingResult
from dexsync.pipeline.registry import now_iso
from dexsync.utils.files import atomic_write_bytes, atomic_write_json, dump_json_bytes, read_json
from dexsync.utils.hashing import ContentHasher
from dexsync.utils.semver import bump, salvage_version

LOGGER = logging.getLogger(__name__)

INITIAL_DATASET_VERSION = "1.0.0"


def next_dataset_version(previous: str | None, result: IndexingResult) -> str:
    """Minor bump when tidbits were added or removed, patch bump otherwise."""
    if not previous:
        return INITIAL_DATASET_VERSION
    part = "minor" if result.new_tidbit_ids or result.removed_tidbit_ids else "patch"
    try:
        return bump(previous, part)
    except VersionFormatError:
        pass

    salvaged = salvage_version(previous)
    if salvaged is None:
        LOGGER.error(
            "Previous dataset version %r is unusable; restarting at %s. "
            "Clients already past %s will not pick this dataset up.",
            previous,
            INITIAL_DATASET_VERSION,
            INITIAL_DATASET_VERSION,
        )
        return INITIAL_DATASET_VERSION
    version = bump(salvaged, "minor")
    LOGGER.warning("Previous dataset version %r is malformed; continuing from %s", previous, version)
    return version


def entry_from_registry(padded_id: str, entry: RegistryEntry) -> SpeciesManifestEntry:
    return SpeciesManifestEntry(
        tidbit_revision=entry.tidbit_revision,
        last_updated=entry.last_updated_at,
        tidbit_ids=list(entry.tidbit_ids),
        source_pages=[entry.source_pages[key] for key in sorted(entry.source_pages)],
        tidbit_file=tidbit_file_path(padded_id, entry.tidbit_revision),
    )


class ManifestBuilder:
    def __init__(self, output_dir: Path, *, hasher: ContentHasher | None = None) -> None:
        self.output_dir = Path(output_dir)
        self.hasher = hasher or ContentHasher()

    @property
    def manifest_path(self) -> Path:
        return self.output_dir / MANIFEST_FILENAME

    @property
    def version_path(self) -> Path:
        return self.output_dir / VERSION_FILENAME

    def build(
        self,
        result: IndexingResult,
        dataset_version: str,
        *,
        carried: Mapping[str, RegistryEntry] | None = None,
        digests: Mapping[str, VersionFile] | None = None,
    ) -> Manifest:
        """Assemble the manifest for this run.

        ``carried`` holds registry entries of species that were not part of
        this batch; they are listed unchanged so the manifest always covers
        the whole dataset.
        """
        manifest_version = now_iso()
        species: Dict[str, SpeciesManifestEntry] = {}
        for species_id, entry in (carried or {}).items():
            padded_id = pad_species_id(species_id)
            species[padded_id] = entry_from_registry(padded_id, entry)
        species.update(result.manifest_species)

        if digests:
            for padded_id, entry in list(species.items()):
                described = digests.get(entry.tidbit_file)
                if described is not None:
                    species[padded_id] = dataclasses.replace(
                        entry, tidbit_hash=described.hash, tidbit_size=described.size
                    )

        return Manifest(
            manifest_version=manifest_version,
            dataset_version=dataset_version,
            summary={
                "totalPokemon": len(species),
                "totalTidbits": sum(len(entry.tidbit_ids) for entry in species.values()),
                "newPages": result.new_source_page_count,
                "generatedAt": manifest_version,
            },
            species=species,
            new_tidbits=list(result.new_tidbit_ids),
            removed_tidbits=list(result.removed_tidbit_ids),
        )

    def persist_tidbit_payloads(
        self,
        payloads: Mapping[str, TidbitPayload],
        *,
        overwrite: Iterable[str] = (),
    ) -> Dict[str, VersionFile]:
        """Write payload files and describe what is on disk afterwards.

        Revision files are write-once.  An existing file is only replaced for
        species listed in ``overwrite`` (revisions the registry has not
        committed yet, i.e. leftovers of an interrupted run).
        """
        replaceable = set(overwrite)
        written: Dict[str, VersionFile] = {}
        for padded_id, payload in payloads.items():
            relative = tidbit_file_path(padded_id, payload.tidbit_revision)
            path = self.output_dir / relative
            data = dump_json_bytes(payload.to_dict())
            if path.exists():
                existing = path.read_bytes()
                if existing != data and padded_id in replaceable:
                    LOGGER.warning("Replacing uncommitted payload %s", relative)
                    atomic_write_bytes(path, data)
                else:
                    data = existing
            else:
                atomic_write_bytes(path, data)
            written[relative] = VersionFile(
                path=relative, size=len(data), hash=self.hasher.digest_bytes(data)
            )
        LOGGER.info("Persisted %d tidbit payloads", len(written))
        return written

    def describe_payloads(self, relative_paths: Iterable[str]) -> Dict[str, VersionFile]:
        """Digest already-published payload files; a missing file raises."""
        described: Dict[str, VersionFile] = {}
        for relative in relative_paths:
            data = (self.output_dir / relative).read_bytes()
            described[relative] = VersionFile(
                path=relative, size=len(data), hash=self.hasher.digest_bytes(data)
            )
        return described

    def build_version_record(
        self, dataset_version: str, files: Iterable[VersionFile]
    ) -> VersionRecord:
        ordered: List[VersionFile] = sorted(files, key=lambda item: item.path)
        return VersionRecord(
            version=dataset_version,
            timestamp=int(time.time() * 1000),
            files=ordered,
            total_size=sum(item.size for item in ordered),
        )

    def persist_version_record(self, record: VersionRecord) -> None:
        atomic_write_json(self.version_path, record.to_dict())

    def persist_manifest(self, manifest: Manifest) -> None:
        atomic_write_json(self.manifest_path, manifest.to_dict())
        LOGGER.info(
            "Published manifest %s (dataset %s, %d species)",
            manifest.manifest_version,
            manifest.dataset_version,
            len(manifest.species),
        )

    def load_manifest(self) -> Manifest | None:
        if not self.manifest_path.exists():
            return None
        return Manifest.from_dict(read_json(self.manifest_path))

    def load_version_record(self) -> VersionRecord | None:
        if not self.version_path.exists():
            return None
        return VersionRecord.from_dict(read_json(self.version_path))

    def verify_distribution(self) -> List[str]:
        """Check that every manifest entry points at an existing, hash-stable file."""
        manifest = self.load_manifest()
        if manifest is None:
            return [f"Manifest not found at {self.manifest_path}"]
        record = self.load_version_record()
        declared = record.file_index() if record else {}

        problems: List[str] = []
        for padded_id, entry in sorted(manifest.species.items()):
            path = self.output_dir / entry.tidbit_file
            if not path.exists():
                problems.append(f"{padded_id}: missing {entry.tidbit_file}")
                continue
            actual = self.hasher.digest_bytes(path.read_bytes())
            expected = [entry.tidbit_hash]
            if entry.tidbit_file in declared:
                expected.append(declared[entry.tidbit_file].hash)
            for value in expected:
                if value is not None and value != actual:
                    problems.append(f"{padded_id}: hash mismatch for {entry.tidbit_file}")
                    break
        return problems
