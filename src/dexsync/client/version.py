"""Client-side dataset versioning, validation, integrity checks and migrations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from dexsync.client.store import (
    CURRENT_VERSION_KEY,
    VERSION_HISTORY_KEY,
    LocalStore,
    StoreTransaction,
)
from dexsync.errors import MigrationMissingError, VersionFormatError
from dexsync.models import LocalVersionRecord, VersionHistoryEntry, VersionRecord
from dexsync.utils.hashing import ContentHasher, validate_hash
from dexsync.utils import semver

LOGGER = logging.getLogger(__name__)


class VersionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADED = "loaded"
    UP_TO_DATE = "up-to-date"
    UPDATE_AVAILABLE = "update-available"


class _FileModel(BaseModel):
    path: str = Field(min_length=1)
    size: int = Field(ge=0)
    hash: str

    @field_validator("hash")
    @classmethod
    def _check_hash(cls, value: str) -> str:
        if not validate_hash(value):
            raise ValueError("must be a 64-character lowercase hex SHA-256 digest")
        return value


class _VersionRecordModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: str
    timestamp: int
    files: List[_FileModel]
    total_size: int = Field(alias="totalSize", ge=0)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        semver.parse_version(value)
        return value


class _SpeciesEntryModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tidbit_revision: int = Field(alias="tidbitRevision", ge=1)
    tidbit_file: str = Field(alias="tidbitFile", min_length=1)
    tidbit_ids: List[str] = Field(alias="tidbitIds", default_factory=list)
    tidbit_hash: str | None = Field(alias="tidbitHash", default=None)

    @field_validator("tidbit_hash")
    @classmethod
    def _check_hash(cls, value: str | None) -> str | None:
        if value is not None and not validate_hash(value):
            raise ValueError("must be a 64-character lowercase hex SHA-256 digest")
        return value


class _TidbitManifestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    manifest_version: str = Field(alias="manifestVersion", min_length=1)
    dataset_version: str = Field(alias="datasetVersion")
    species: Dict[str, _SpeciesEntryModel]


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def _errors_from(exc: ValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "<root>"
        messages.append(f"{location}: {error['msg']}")
    return messages


Migration = Callable[[StoreTransaction, LocalStore], None]


class _NoOp:
    def __repr__(self) -> str:
        return "NO_OP"


NO_OP = _NoOp()


class MigrationOutcome(str, Enum):
    NOT_NEEDED = "not-needed"
    NO_OP = "no-op"
    APPLIED = "applied"


def migration_key(from_version: str, to_version: str) -> str:
    return f"{from_version}_to_{to_version}"


class MigrationRegistry:
    """Typed table of ``"{from}_to_{to}"`` migrations.

    Registering ``NO_OP`` records that a version pair was checked and needs
    no structural change, which is different from having no entry at all.
    """

    def __init__(self) -> None:
        self._migrations: Dict[str, Migration | _NoOp] = {}

    def register(self, from_version: str, to_version: str, migration: Migration | _NoOp) -> None:
        semver.parse_version(from_version)
        semver.parse_version(to_version)
        self._migrations[migration_key(from_version, to_version)] = migration

    def lookup(self, from_version: str, to_version: str) -> Migration | _NoOp | None:
        return self._migrations.get(migration_key(from_version, to_version))

    def __contains__(self, key: str) -> bool:
        return key in self._migrations

    def __len__(self) -> int:
        return len(self._migrations)


def requires_migration(from_version: str, to_version: str) -> bool:
    """A structural change is signalled by a change of major version."""
    return semver.parse_version(from_version)[0] != semver.parse_version(to_version)[0]


class VersionManager:
    """Tracks the locally committed dataset version."""

    def __init__(
        self,
        store: LocalStore,
        *,
        migrations: MigrationRegistry | None = None,
        hasher: ContentHasher | None = None,
    ) -> None:
        self.store = store
        self.migrations = migrations or MigrationRegistry()
        self.hasher = hasher or ContentHasher()
        self.state = VersionState.UNINITIALIZED
        self.record = LocalVersionRecord()

    @property
    def current_version(self) -> str | None:
        return self.record.current_version

    def initialize(self) -> LocalVersionRecord:
        history = self.store.get_meta(VERSION_HISTORY_KEY, default=[]) or []
        self.record = LocalVersionRecord(
            current_version=self.store.get_meta(CURRENT_VERSION_KEY),
            version_history=[VersionHistoryEntry.from_dict(item) for item in history],
        )
        self.state = VersionState.LOADED
        LOGGER.debug("Local dataset version: %s", self.record.current_version or "none")
        return self.record

    @staticmethod
    def compare_versions(a: str, b: str) -> int:
        return semver.compare_versions(a, b)

    def check_for_update(self, remote: VersionRecord | str) -> bool:
        if self.state is VersionState.UNINITIALIZED:
            self.initialize()
        remote_version = remote.version if isinstance(remote, VersionRecord) else remote
        current = self.current_version

        if current is None:
            available = True
        else:
            try:
                available = self.compare_versions(current, remote_version) < 0
            except VersionFormatError as exc:
                LOGGER.warning("Cannot compare %r with %r (%s); assuming update", current, remote_version, exc)
                available = True

        self.state = VersionState.UPDATE_AVAILABLE if available else VersionState.UP_TO_DATE
        return available

    def validate_manifest(self, data: Any) -> ValidationResult:
        """Structural check of a version record (``version.json``)."""
        return self._validate(_VersionRecordModel, data)

    def validate_tidbit_manifest(self, data: Any) -> ValidationResult:
        return self._validate(_TidbitManifestModel, data)

    @staticmethod
    def _validate(model: type[BaseModel], data: Any) -> ValidationResult:
        if not isinstance(data, Mapping):
            return ValidationResult(valid=False, errors=["<root>: expected a JSON object"])
        try:
            model.model_validate(dict(data))
        except ValidationError as exc:
            return ValidationResult(valid=False, errors=_errors_from(exc))
        return ValidationResult(valid=True)

    def compute_hash(self, data: Any) -> str:
        if isinstance(data, (bytes, bytearray, memoryview)):
            return self.hasher.digest_bytes(bytes(data))
        return self.hasher.digest(data)

    def verify_integrity(self, data: Any, expected_hash: str) -> bool:
        if not validate_hash(expected_hash):
            LOGGER.error("Refusing to verify against malformed hash %r", expected_hash)
            return False
        return self.compute_hash(data) == expected_hash

    def ensure_migration_available(self, from_version: str | None, to_version: str) -> None:
        """Raise ``MigrationMissingError`` if a required migration is not registered."""
        if from_version is None or from_version == to_version:
            return
        if self.migrations.lookup(from_version, to_version) is None and requires_migration(
            from_version, to_version
        ):
            raise MigrationMissingError(from_version, to_version)

    def migrate_data(
        self, from_version: str | None, to_version: str, tx: StoreTransaction
    ) -> MigrationOutcome:
        """Stage the migration for ``from_version -> to_version`` into ``tx``."""
        if from_version is None or from_version == to_version:
            return MigrationOutcome.NOT_NEEDED

        migration = self.migrations.lookup(from_version, to_version)
        if migration is None:
            if requires_migration(from_version, to_version):
                raise MigrationMissingError(from_version, to_version)
            LOGGER.info("No migration needed for %s -> %s", from_version, to_version)
            return MigrationOutcome.NOT_NEEDED
        if migration is NO_OP:
            LOGGER.info("Migration %s is a no-op", migration_key(from_version, to_version))
            return MigrationOutcome.NO_OP

        LOGGER.info("Running migration %s", migration_key(from_version, to_version))
        migration(tx, self.store)
        return MigrationOutcome.APPLIED

    def record_sync(
        self,
        tx: StoreTransaction,
        version: str,
        total_entities: int,
        duration_ms: int,
    ) -> LocalVersionRecord:
        """Stage the new current version and history entry; applied on commit."""
        entry = VersionHistoryEntry(
            version=version,
            timestamp=int(time.time() * 1000),
            total_entities=total_entities,
            sync_duration_ms=duration_ms,
        )
        history = list(self.record.version_history) + [entry]
        tx.set_meta(CURRENT_VERSION_KEY, version)
        tx.set_meta(VERSION_HISTORY_KEY, [item.to_dict() for item in history])
        return LocalVersionRecord(current_version=version, version_history=history)
