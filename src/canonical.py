"""
Manifest canonicalization.

Produces a deterministic serialization of a manifest document so that two
manifests fetched from different sources compare equal when they differ only
in object key order. Array order is preserved.
"""

import hashlib
import json
from typing import Any


def _normalize(value: Any) -> Any:
    """Coerce a document into plain JSON types with string keys."""
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def canonicalize(doc: Any) -> str:
    """
    Return the canonical form of a manifest document.

    Object keys are sorted recursively and the result is serialized as
    compact JSON.

    Args:
        doc: Any JSON-like document (``None`` is allowed).

    Returns:
        A string that is identical for semantically identical documents.
    """
    return json.dumps(
        _normalize(doc),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def content_equal(a: Any, b: Any) -> bool:
    """Check whether two manifests have the same content."""
    return canonicalize(a) == canonicalize(b)


def manifest_hash(doc: Any) -> str:
    """Calculate a SHA-256 hash of a manifest for change detection."""
    return hashlib.sha256(canonicalize(doc).encode("utf-8")).hexdigest()
