"""Text helpers for normalizing crawled content and building identifiers."""

from __future__ import annotations

import re

_WHITESPACE = re.compile(r"\s+")
_NON_SLUG = re.compile(r"[^a-z0-9]+")
_HTML_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_ISO_TIMESTAMP = re.compile(
    r"\b\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?\b"
)


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def strip_volatile_text(text: str) -> str:
    """Remove embedded timestamps and HTML comments, then collapse whitespace.

    Pages routinely embed render times and cache-buster comments that change
    on every fetch without the article itself changing.
    """
    text = _HTML_COMMENT.sub(" ", text)
    text = _ISO_TIMESTAMP.sub(" ", text)
    return collapse_whitespace(text)


def slugify(text: str, *, max_length: int = 32) -> str:
    slug = _NON_SLUG.sub("-", text.lower()).strip("-")
    return slug[:max_length]
