"""Record fingerprints.

fingerprint = sha256( canonical_json(immutable fields) )

Canonical JSON sorts keys at every nesting level, so two records built with
their fields in different orders hash identically. The record's own
`fingerprint` field is never part of the hashed projection.
"""

from __future__ import annotations

from typing import Any, Mapping

from .crypto import canonical_bytes, sha256_hex


def fingerprint_fields(fields: Mapping[str, Any]) -> str:
    """Fingerprint an already-projected mapping of immutable fields."""
    return sha256_hex(canonical_bytes(fields))


def fingerprint(record: Any) -> str:
    """Fingerprint an InteractionRecord (or any object exposing `immutable_fields()`).

    Plain mappings are hashed as-is, minus any top-level `fingerprint` key.
    """
    if hasattr(record, "immutable_fields"):
        return fingerprint_fields(record.immutable_fields())
    if isinstance(record, Mapping):
        return fingerprint_fields({k: v for k, v in record.items() if k != "fingerprint"})
    raise TypeError(f"cannot fingerprint {type(record).__name__}")
