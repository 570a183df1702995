"""Exception hierarchy shared by the publishing pipeline and the sync client.

Failures fall into two scopes.  Entity-scoped errors (one species failing to
enrich or index, one source being unavailable) are caught and logged by the
batch that owns them.  Batch-scoped errors (an invalid manifest, an unreadable
registry, an exhausted retry budget) abort the current run or sync attempt and
leave previously committed state untouched.
"""

from __future__ import annotations

__all__ = [
    "DexSyncError",
    "TransientNetworkError",
    "IntegrityMismatchError",
    "ManifestInvalidError",
    "RegistryCorruptionError",
    "RegistryLockedError",
    "EntityProcessingError",
    "SourceUnavailableError",
    "CrawlDisallowedError",
    "VersionFormatError",
    "MigrationMissingError",
    "SyncFailure",
]


class DexSyncError(RuntimeError):
    """Base exception for pipeline and sync failures."""


class TransientNetworkError(DexSyncError):
    """Raised when a network operation keeps failing after all retries."""

    def __init__(self, message: str, *, url: str | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class IntegrityMismatchError(DexSyncError):
    """Raised when downloaded content does not match its declared hash."""

    def __init__(self, message: str, *, expected: str, actual: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual
        self.attempts = attempts


class ManifestInvalidError(DexSyncError):
    """Raised when a manifest or version record fails structural validation."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class RegistryCorruptionError(DexSyncError):
    """Raised when the durable registry exists but cannot be read."""


class RegistryLockedError(DexSyncError):
    """Raised when another pipeline run holds the registry lock."""


class EntityProcessingError(DexSyncError):
    """Raised when a single species cannot be enriched or indexed."""

    def __init__(self, message: str, *, species_id: str) -> None:
        super().__init__(message)
        self.species_id = species_id


class SourceUnavailableError(DexSyncError):
    """Raised when a source's circuit breaker is open."""

    def __init__(self, source: str, *, retry_after: float = 0.0) -> None:
        super().__init__(f"Source '{source}' is unavailable (circuit open)")
        self.source = source
        self.retry_after = retry_after


class CrawlDisallowedError(DexSyncError):
    """Raised when robots.txt forbids fetching a page."""

    def __init__(self, url: str) -> None:
        super().__init__(f"robots.txt disallows {url}")
        self.url = url


class VersionFormatError(DexSyncError, ValueError):
    """Raised when a version string is not MAJOR.MINOR.PATCH."""


class MigrationMissingError(DexSyncError):
    """Raised when a structural migration is required but none is registered."""

    def __init__(self, from_version: str, to_version: str) -> None:
        super().__init__(
            f"No migration registered for {from_version} -> {to_version}, "
            "but the dataset schema changed"
        )
        self.from_version = from_version
        self.to_version = to_version


class SyncFailure(DexSyncError):
    """A sync attempt failed; the last committed checkpoint is left intact."""

    def __init__(self, message: str, *, chunk_index: int | None, cause: BaseException) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index
        self.cause = cause

    @property
    def cause_class(self) -> str:
        return type(self.cause).__name__

    def __str__(self) -> str:
        where = "before download" if self.chunk_index is None else f"at chunk {self.chunk_index}"
        return f"{self.args[0]} ({where}, cause: {self.cause_class}: {self.cause})"
