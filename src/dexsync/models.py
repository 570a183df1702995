"""Core dexsync data models.

Field names are snake_case in Python; ``to_dict``/``from_dict`` convert to
and from the camelCase names used in the published JSON documents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping


def normalize_species_id(raw_id: Any) -> str:
    """Return the canonical registry key for a species id (``"007"`` -> ``"7"``)."""
    text = str(raw_id).strip()
    if text.isdigit():
        return str(int(text))
    return text


def pad_species_id(raw_id: Any) -> str:
    """Return the 4-digit zero padded id used in published paths."""
    return normalize_species_id(raw_id).zfill(4)


def tidbit_file_path(padded_id: str, revision: int) -> str:
    return f"species/{padded_id}/tidbits.v{revision}.json"


@dataclass(slots=True)
class SourcePage:
    """A single crawled page, keyed by ``{speciesId}-{sourceName}``."""

    source_page_id: str
    hash: str
    last_crawled_at: str
    first_seen_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourcePageId": self.source_page_id,
            "hash": self.hash,
            "lastCrawledAt": self.last_crawled_at,
            "firstSeenAt": self.first_seen_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, source_page_id: str | None = None) -> "SourcePage":
        return cls(
            source_page_id=source_page_id or data["sourcePageId"],
            hash=data["hash"],
            last_crawled_at=data.get("lastCrawledAt", ""),
            first_seen_at=data.get("firstSeenAt", data.get("lastCrawledAt", "")),
        )


@dataclass(slots=True)
class RegistryEntry:
    """Registry state for one species."""

    tidbit_revision: int
    tidbit_ids: List[str]
    source_pages: Dict[str, SourcePage]
    last_updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tidbitRevision": self.tidbit_revision,
            "tidbitIds": list(self.tidbit_ids),
            "sourcePages": {
                page_id: {
                    "hash": page.hash,
                    "lastCrawledAt": page.last_crawled_at,
                    "firstSeenAt": page.first_seen_at,
                }
                for page_id, page in self.source_pages.items()
            },
            "lastUpdatedAt": self.last_updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RegistryEntry":
        pages = {
            page_id: SourcePage.from_dict(page, source_page_id=page_id)
            for page_id, page in (data.get("sourcePages") or {}).items()
        }
        return cls(
            tidbit_revision=int(data["tidbitRevision"]),
            tidbit_ids=list(data.get("tidbitIds") or []),
            source_pages=pages,
            last_updated_at=data.get("lastUpdatedAt", ""),
        )


@dataclass(slots=True)
class Tidbit:
    """One generated content item. Never mutated after publication."""

    tidbit_id: str
    title: str
    body: str
    source_refs: List[str]
    generated_at: str
    quality_score: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tidbitId": self.tidbit_id,
            "title": self.title,
            "body": self.body,
            "sourceRefs": list(self.source_refs),
            "generatedAt": self.generated_at,
            "qualityScore": dict(self.quality_score),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Tidbit":
        return cls(
            tidbit_id=data["tidbitId"],
            title=data.get("title", ""),
            body=data.get("body", ""),
            source_refs=list(data.get("sourceRefs") or []),
            generated_at=data.get("generatedAt", ""),
            quality_score=dict(data.get("qualityScore") or {}),
        )


@dataclass(slots=True)
class TidbitPayload:
    """Contents of ``species/{paddedId}/tidbits.v{N}.json``."""

    species_id: str
    tidbit_revision: int
    tidbits: List[Tidbit]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "speciesId": self.species_id,
            "tidbitRevision": self.tidbit_revision,
            "tidbits": [tidbit.to_dict() for tidbit in self.tidbits],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TidbitPayload":
        return cls(
            species_id=str(data["speciesId"]),
            tidbit_revision=int(data["tidbitRevision"]),
            tidbits=[Tidbit.from_dict(item) for item in data.get("tidbits") or []],
        )


@dataclass(slots=True)
class SpeciesManifestEntry:
    tidbit_revision: int
    last_updated: str
    tidbit_ids: List[str]
    source_pages: List[SourcePage]
    tidbit_file: str
    tidbit_hash: str | None = None
    tidbit_size: int | None = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "tidbitRevision": self.tidbit_revision,
            "lastUpdated": self.last_updated,
            "tidbitIds": list(self.tidbit_ids),
            "sourcePages": [page.to_dict() for page in self.source_pages],
            "tidbitFile": self.tidbit_file,
        }
        if self.tidbit_hash is not None:
            data["tidbitHash"] = self.tidbit_hash
        if self.tidbit_size is not None:
            data["tidbitSize"] = self.tidbit_size
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SpeciesManifestEntry":
        return cls(
            tidbit_revision=int(data["tidbitRevision"]),
            last_updated=data.get("lastUpdated", ""),
            tidbit_ids=list(data.get("tidbitIds") or []),
            source_pages=[SourcePage.from_dict(page) for page in data.get("sourcePages") or []],
            tidbit_file=data["tidbitFile"],
            tidbit_hash=data.get("tidbitHash"),
            tidbit_size=data.get("tidbitSize"),
        )


@dataclass(slots=True)
class Manifest:
    """The published index of every species revision."""

    manifest_version: str
    dataset_version: str
    summary: Dict[str, Any]
    species: Dict[str, SpeciesManifestEntry]
    new_tidbits: List[str] = field(default_factory=list)
    removed_tidbits: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "manifestVersion": self.manifest_version,
            "datasetVersion": self.dataset_version,
            "summary": dict(self.summary),
            "species": {
                padded_id: entry.to_dict() for padded_id, entry in sorted(self.species.items())
            },
            "newTidbits": list(self.new_tidbits),
            "removedTidbits": list(self.removed_tidbits),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Manifest":
        return cls(
            manifest_version=data["manifestVersion"],
            dataset_version=data["datasetVersion"],
            summary=dict(data.get("summary") or {}),
            species={
                padded_id: SpeciesManifestEntry.from_dict(entry)
                for padded_id, entry in (data.get("species") or {}).items()
            },
            new_tidbits=list(data.get("newTidbits") or []),
            removed_tidbits=list(data.get("removedTidbits") or []),
        )


@dataclass(slots=True)
class VersionFile:
    path: str
    size: int
    hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "size": self.size, "hash": self.hash}


@dataclass(slots=True)
class VersionRecord:
    """Version endpoint document used for update checks."""

    version: str
    timestamp: int
    files: List[VersionFile]
    total_size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "files": [item.to_dict() for item in self.files],
            "totalSize": self.total_size,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VersionRecord":
        return cls(
            version=data["version"],
            timestamp=int(data["timestamp"]),
            files=[
                VersionFile(path=item["path"], size=int(item["size"]), hash=item["hash"])
                for item in data["files"]
            ],
            total_size=int(data["totalSize"]),
        )

    def file_index(self) -> Dict[str, VersionFile]:
        return {item.path: item for item in self.files}


@dataclass(slots=True)
class SyncCheckpoint:
    chunk_index: int
    timestamp: int
    manifest_version: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunkIndex": self.chunk_index,
            "timestamp": self.timestamp,
            "manifestVersion": self.manifest_version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SyncCheckpoint":
        return cls(
            chunk_index=int(data["chunkIndex"]),
            timestamp=int(data.get("timestamp", 0)),
            manifest_version=data.get("manifestVersion"),
        )


@dataclass(slots=True)
class VersionHistoryEntry:
    version: str
    timestamp: int
    total_entities: int
    sync_duration_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "totalEntities": self.total_entities,
            "syncDurationMs": self.sync_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VersionHistoryEntry":
        return cls(
            version=data["version"],
            timestamp=int(data.get("timestamp", 0)),
            total_entities=int(data.get("totalEntities", 0)),
            sync_duration_ms=int(data.get("syncDurationMs", 0)),
        )


@dataclass(slots=True)
class LocalVersionRecord:
    current_version: str | None = None
    version_history: List[VersionHistoryEntry] = field(default_factory=list)


@dataclass(slots=True)
class TidbitRecord:
    """A species payload as committed to the client's local store."""

    species_id: str
    tidbit_revision: int
    tidbits: List[Tidbit]
    payload_hash: str
    manifest_version: str
    dataset_version: str
