"""
Metalayer Core Cryptography Module

Canonical JSON encoding plus Ed25519 key handling.

Canonical JSON is the single byte representation used for every digest and
signature in the core: record fingerprints, signed executor requests, ledger
idempotency keys and audit log entries. Ed25519 is used to sign outbound
executor requests and to verify attestation proofs returned by the executor.
"""

import hashlib
import json
import math
import os
import unicodedata
import warnings
from dataclasses import dataclass
from datetime import datetime, timezone
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey, Ed25519PublicKey
)

from .errors import (
    InputError,
    core_error,
    MLC_E_CANON_NON_JSON,
    MLC_E_CANON_DEPTH,
    MLC_E_CANON_NONFINITE,
    MLC_E_CANON_KEY_TYPE,
    MLC_E_CANON_KEY_COLLISION,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if not s:
            return None
        # Accept RFC 3339 'Z' suffix.
        if s.endswith('Z'):
            s = s[:-1] + '+00:00'
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (TypeError, ValueError):
        return None


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# Canonical JSON:
# - keys sorted at every nesting level
# - no insignificant whitespace, UTF-8 output
# - strings and keys normalized to NFC
# - NaN/Infinity rejected (strict JSON)
# - bounded nesting depth
_CANON_MAX_DEPTH = 64
_CANON_UNICODE_NORM = "NFC"


def _canon_path_key(k: str) -> str:
    ks = k.replace("\\", "\\\\").replace("'", "\\'")
    return f"['{ks}']"


def _canonicalize(obj: Any, *, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_MAX_DEPTH:
        raise core_error(MLC_E_CANON_DEPTH, "max nesting depth exceeded", cls=InputError, path=_path, max_depth=_CANON_MAX_DEPTH)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize(_CANON_UNICODE_NORM, obj)
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise core_error(MLC_E_CANON_NONFINITE, "non-finite float", cls=InputError, path=_path)
        return obj

    if isinstance(obj, Mapping):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise core_error(MLC_E_CANON_KEY_TYPE, "dict key must be str", cls=InputError, path=_path, got=type(k).__name__)
            nk = unicodedata.normalize(_CANON_UNICODE_NORM, k)
            if nk in out:
                raise core_error(MLC_E_CANON_KEY_COLLISION, "duplicate dict key after unicode normalization", cls=InputError, path=_path)
            out[nk] = _canonicalize(v, _path=_path + _canon_path_key(nk), _depth=_depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [
            _canonicalize(v, _path=f"{_path}[{i}]", _depth=_depth + 1)
            for i, v in enumerate(obj)
        ]

    if isinstance(obj, (set, frozenset)):
        # Sets have no order; sort their canonical encodings so equal sets agree.
        items = [_canonicalize(v, _path=f"{_path}{{}}", _depth=_depth + 1) for v in obj]
        return sorted(items, key=lambda x: json.dumps(x, sort_keys=True, ensure_ascii=False))

    raise core_error(MLC_E_CANON_NON_JSON, "non-JSON-serializable type", cls=InputError, path=_path, got=type(obj).__name__)


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON encoding.

    Raises InputError if the object contains a value that cannot be encoded
    deterministically (unknown types, non-finite floats, non-string keys).
    """
    normalized = _canonicalize(obj)
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonical_bytes(obj: Any) -> bytes:
    return canonical_json_dumps(obj).encode("utf-8")


def _safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for hash inputs.
    Prevents delimiter collision attacks.
    """
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 key pair for signing and verification.

    A verification-only key pair (no private bytes) is used for the
    executor's attestation key.
    """
    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        private_key = Ed25519PrivateKey.generate()
        return cls._from_private_key(private_key, key_id)

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        """Create key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private_key(Ed25519PrivateKey.from_private_bytes(seed), key_id)

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        """Create key pair with public key only (for verification)."""
        return cls(key_id=key_id, public_key_bytes=bytes.fromhex(public_key_hex))

    @classmethod
    def _from_private_key(cls, private_key: Ed25519PrivateKey, key_id: str) -> "Ed25519KeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        private_key = Ed25519PrivateKey.from_private_bytes(self.private_key_bytes)
        return private_key.sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            public_key = Ed25519PublicKey.from_public_bytes(self.public_key_bytes)
            public_key.verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False


def create_key_pair(key_id: str) -> Ed25519KeyPair:
    return Ed25519KeyPair.generate(key_id)


def load_signing_key_from_env(
    env_var: str = "METALAYER_SIGNING_KEY",
    key_id: str = "metalayer",
) -> Optional[Ed25519KeyPair]:
    """Load a signing key from a 64-hex-char (32-byte) seed in `env_var`.

    Returns None if not configured or invalid.
    """
    key_hex = (os.environ.get(env_var) or "").strip()
    if not key_hex:
        return None
    try:
        if len(key_hex) != 64:
            raise ValueError(f"Key must be 64 hex chars (32 bytes), got {len(key_hex)}")
        return Ed25519KeyPair.from_seed(bytes.fromhex(key_hex), key_id)
    except ValueError as e:
        warnings.warn(f"Failed to load signing key from {env_var}: {e}")
        return None
