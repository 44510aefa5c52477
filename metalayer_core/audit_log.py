"""Tamper-evident append-only decision audit log.

Implements a JSONL log where each record includes:
- prev_hash: entry_hash of the previous record (hex)
- event_hash: SHA256 of canonical event JSON (hex)
- entry_hash: SHA256(prev_hash || event_hash || ts) (hex)
- signature_b64: Ed25519 signature over the canonical payload

The policy engine appends one event per decision, carrying the full
evaluation input, so a reviewer can later see exactly what a decision was
based on and detect after-the-fact edits.
"""

from __future__ import annotations

import base64
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .crypto import Ed25519KeyPair, _iso, _now_utc, _safe_hash_encode, canonical_json_dumps, sha256_hex
from .signing import Signer, coerce_signer

AUDIT_VERSION = "MLC_AUDIT_V1"
GENESIS_HASH = "0" * 64


@dataclass
class AuditLogRecord:
    version: str
    ts_utc: str
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str
    key_id: str
    signature_b64: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "ts_utc": self.ts_utc,
                "prev_hash": self.prev_hash,
                "event": self.event,
                "event_hash": self.event_hash,
                "entry_hash": self.entry_hash,
                "key_id": self.key_id,
                "signature_b64": self.signature_b64,
            },
            sort_keys=True,
            ensure_ascii=False,
        )


class TamperEvidentAuditLog:
    """Append-only tamper-evident audit log."""

    def __init__(self, path: str, signer: Any):
        self.path = str(path)
        self.signer: Signer = coerce_signer(signer)
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH

        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        if p.exists() and p.stat().st_size > 0:
            try:
                rec = json.loads(self._read_last_line(p))
                self._last_hash = str(rec.get("entry_hash", GENESIS_HASH))
            except ValueError:
                # Corrupt tail: keep genesis; verify_file reports the break.
                self._last_hash = GENESIS_HASH

    @staticmethod
    def _read_last_line(path: Path) -> str:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            if end == 0:
                return ""
            pos = max(0, end - 65536)
            f.seek(pos)
            lines = f.read(end - pos).splitlines()
            return lines[-1].decode("utf-8") if lines else ""

    def append_event(self, event: Mapping[str, Any], ts_utc: Optional[str] = None) -> AuditLogRecord:
        """Append an event and return the created record."""
        ts = ts_utc or _iso(_now_utc())
        event_json = canonical_json_dumps(event)
        event_hash = sha256_hex(event_json.encode("utf-8"))

        with self._lock:
            entry_hash = sha256_hex(_safe_hash_encode([self._last_hash, event_hash, ts]))
            payload = _safe_hash_encode([AUDIT_VERSION, ts, self._last_hash, event_hash, entry_hash])
            sig = self.signer.sign(payload)

            rec = AuditLogRecord(
                version=AUDIT_VERSION,
                ts_utc=ts,
                prev_hash=self._last_hash,
                event=json.loads(event_json),
                event_hash=event_hash,
                entry_hash=entry_hash,
                key_id=self.signer.key_id,
                signature_b64=base64.b64encode(sig).decode("ascii"),
            )

            with open(self.path, "a", encoding="utf-8") as f:
                f.write(rec.to_json() + "\n")

            self._last_hash = entry_hash
        return rec

    @staticmethod
    def verify_file(path: str, trusted_keys: Mapping[str, Ed25519KeyPair]) -> Tuple[bool, str, int]:
        """Verify an audit log file. Returns (ok, reason, count)."""
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        prev = GENESIS_HASH
        count = 0

        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    rec = json.loads(line)
                except ValueError:
                    return False, "PARSE_ERROR", count

                if rec.get("version") != AUDIT_VERSION:
                    return False, f"BAD_VERSION:{rec.get('version')}", count
                ts = str(rec.get("ts_utc"))
                prev_hash = str(rec.get("prev_hash"))
                if prev_hash != prev:
                    return False, "CHAIN_BROKEN", count

                event = rec.get("event")
                if not isinstance(event, dict):
                    return False, "BAD_EVENT", count

                event_hash = sha256_hex(canonical_json_dumps(event).encode("utf-8"))
                if event_hash != str(rec.get("event_hash")):
                    return False, "EVENT_HASH_MISMATCH", count

                expected_entry_hash = sha256_hex(_safe_hash_encode([prev_hash, event_hash, ts]))
                if expected_entry_hash != str(rec.get("entry_hash")):
                    return False, "ENTRY_HASH_MISMATCH", count

                key = trusted_keys.get(str(rec.get("key_id")))
                if key is None:
                    return False, "UNKNOWN_KEY", count
                try:
                    sig = base64.b64decode(str(rec.get("signature_b64")), validate=True)
                except ValueError:
                    return False, "BAD_SIGNATURE_ENCODING", count

                payload = _safe_hash_encode([AUDIT_VERSION, ts, prev_hash, event_hash, expected_entry_hash])
                if not key.verify(payload, sig):
                    return False, "INVALID_SIGNATURE", count

                prev = expected_entry_hash

        return True, "OK", count
