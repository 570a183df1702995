"""Stable content digests shared by the indexer and the integrity checks.

Digests are SHA-256 over canonical JSON: keys sorted, no insignificant
whitespace, UTF-8.  Two semantically identical objects therefore hash the
same regardless of key order.

Source pages are normalized before hashing so that re-crawling an unchanged
page yields the same digest.  The policy is deliberately narrow: keys that
only describe the fetch itself (``VOLATILE_KEYS``) are dropped at any depth,
and inside strings embedded ISO-8601 timestamps and HTML comments are removed
and whitespace is collapsed.  Everything else, including numbers and list
order, counts as content.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Mapping

from dexsync.utils.text import strip_volatile_text

VOLATILE_KEYS = frozenset(
    {
        "timestamp",
        "fetchedAt",
        "crawledAt",
        "lastCrawledAt",
        "headers",
        "etag",
        "requestId",
        "status",
        "size",
    }
)

_SHA256_HEX = re.compile(r"^[a-f0-9]{64}$")


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def validate_hash(value: Any) -> bool:
    """True only for a lowercase hex SHA-256 digest."""
    return isinstance(value, str) and bool(_SHA256_HEX.match(value))


class ContentHasher:
    """Computes digests over (optionally normalized) payloads."""

    def __init__(self, volatile_keys: frozenset[str] = VOLATILE_KEYS) -> None:
        self.volatile_keys = volatile_keys

    @staticmethod
    def digest_bytes(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def digest(self, obj: Any) -> str:
        """Digest of ``obj`` as-is (key order independent)."""
        return self.digest_bytes(canonical_json(obj).encode("utf-8"))

    def normalize_source(self, data: Any) -> Any:
        if isinstance(data, Mapping):
            return {
                str(key): self.normalize_source(value)
                for key, value in data.items()
                if key not in self.volatile_keys
            }
        if isinstance(data, (list, tuple)):
            return [self.normalize_source(item) for item in data]
        if isinstance(data, str):
            return strip_volatile_text(data)
        return data

    def source_digest(self, data: Any) -> str:
        """Digest used to decide whether a source page materially changed."""
        return self.digest(self.normalize_source(data))

    def cache_key(self, fields: Mapping[str, Any], *, exclude: frozenset[str] = frozenset()) -> str:
        """Digest of ``fields`` ignoring ``exclude`` keys at any depth."""
        return self.digest(self.normalize_source(_without(fields, exclude)))


def _without(data: Any, exclude: frozenset[str]) -> Any:
    if isinstance(data, Mapping):
        return {key: _without(value, exclude) for key, value in data.items() if key not in exclude}
    if isinstance(data, (list, tuple)):
        return [_without(item, exclude) for item in data]
    return data
