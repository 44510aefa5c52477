"""Ledger anchoring.

Submits a record's fingerprint (plus minimal non-sensitive metadata) to an
external append-only ledger and re-verifies it later.

Submission payload:
    {"fingerprint", "actor": <actor id>, "actionType", "timestamp", "metadata"}

Backends (`LedgerClient`):
  - HttpLedgerClient:  POST {base}/v1/anchors, GET {base}/v1/anchors/{ref}
  - FileLedgerClient:  local append-only JSONL, for development and tests
  - NullLedgerClient:  always unavailable; every receipt stays localOnly

`LedgerAnchor.anchor` never raises. On any failure the receipt is `localOnly`
with `failure_reason` in its metadata, and local storage remains the source of
truth. There is no retry loop here; `PipelineCoordinator.resume_pending`
re-attempts localOnly receipts out-of-band.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .crypto import _iso, _now_utc, canonical_bytes, sha256_hex
from .errors import (
    MetalayerError,
    RemoteServiceError,
    core_error,
    MLC_E_LEDGER_NOT_FOUND,
    MLC_E_LEDGER_REJECTED,
    MLC_E_LEDGER_UNAVAILABLE,
    MLC_E_REMOTE_TIMEOUT,
)
from .hashing import fingerprint
from .metrics import record_anchor
from .models import AnchorStatus, InteractionRecord, LedgerAnchorReceipt

logger = logging.getLogger("metalayer_core.ledger")

DEFAULT_LEDGER_TIMEOUT_SECONDS = 10.0


def anchor_payload(record: InteractionRecord) -> Dict[str, Any]:
    """The only data that leaves the process for anchoring."""
    return {
        "fingerprint": record.fingerprint,
        "actor": record.actor.id,
        "actionType": record.action_type,
        "timestamp": _iso(record.recorded_at),
        "metadata": {
            "recordId": record.record_id,
            "communityRef": record.community_ref,
            "allowed": record.decision.allowed,
        },
    }


def idempotency_key(payload: Dict[str, Any]) -> str:
    return sha256_hex(canonical_bytes(payload))


class LedgerClient(abc.ABC):
    """Transport to an append-only ledger. Calls are blocking."""

    @abc.abstractmethod
    def submit(self, payload: Dict[str, Any]) -> str:
        """Append `payload`; return its external reference. Raises RemoteServiceError."""
        raise NotImplementedError

    @abc.abstractmethod
    def fetch(self, external_ref: str) -> Optional[Dict[str, Any]]:
        """Return the stored payload, or None if the ledger has no such entry."""
        raise NotImplementedError

    @abc.abstractmethod
    def status(self) -> Dict[str, Any]:
        raise NotImplementedError


class NullLedgerClient(LedgerClient):
    """No ledger configured."""

    def submit(self, payload: Dict[str, Any]) -> str:
        raise core_error(MLC_E_LEDGER_UNAVAILABLE, "no ledger configured", cls=RemoteServiceError)

    def fetch(self, external_ref: str) -> Optional[Dict[str, Any]]:
        raise core_error(MLC_E_LEDGER_UNAVAILABLE, "no ledger configured", cls=RemoteServiceError)

    def status(self) -> Dict[str, Any]:
        return {"connected": False, "backend": "none"}


class FileLedgerClient(LedgerClient):
    """Append JSONL anchor entries to a local file.

    The external reference is the payload's idempotency key, so submitting
    the same payload twice yields the same reference and one line.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _entries(self) -> Iterable[Dict[str, Any]]:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield json.loads(line)

    def submit(self, payload: Dict[str, Any]) -> str:
        ref = idempotency_key(payload)
        with self._lock:
            if self.fetch(ref) is not None:
                return ref
            entry = {"ref": ref, "anchoredAt": _iso(_now_utc()), "payload": payload}
            line = json.dumps(entry, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")
        return ref

    def fetch(self, external_ref: str) -> Optional[Dict[str, Any]]:
        for entry in self._entries():
            if entry.get("ref") == external_ref:
                return entry.get("payload")
        return None

    def status(self) -> Dict[str, Any]:
        count = sum(1 for _ in self._entries())
        return {"connected": True, "backend": "file", "path": str(self.path), "entries": count}


class HttpLedgerClient(LedgerClient):
    """HTTP ledger backend.

    Sends an Idempotency-Key header (sha256 of the canonical payload); a 409
    Conflict carrying the existing reference is treated as success.
    """

    def __init__(self, base_url: str, *, api_key: Optional[str] = None, timeout_s: float = DEFAULT_LEDGER_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = float(timeout_s)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        h.update(extra or {})
        return h

    @staticmethod
    def _decode(body: bytes) -> Dict[str, Any]:
        try:
            decoded = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise core_error(MLC_E_LEDGER_REJECTED, "ledger response is not JSON", cls=RemoteServiceError) from e
        if not isinstance(decoded, dict):
            raise core_error(MLC_E_LEDGER_REJECTED, "ledger response is not an object", cls=RemoteServiceError)
        return decoded

    @staticmethod
    def _ref_from(decoded: Dict[str, Any]) -> str:
        ref = decoded.get("externalRef") or decoded.get("ref")
        if not isinstance(ref, str) or not ref:
            raise core_error(MLC_E_LEDGER_REJECTED, "ledger response missing externalRef", cls=RemoteServiceError)
        return ref

    def submit(self, payload: Dict[str, Any]) -> str:
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")
        req = urllib.request.Request(
            f"{self.base_url}/v1/anchors",
            data=body,
            headers=self._headers({"Idempotency-Key": idempotency_key(payload)}),
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                return self._ref_from(self._decode(resp.read()))
        except urllib.error.HTTPError as e:
            if e.code == 409:
                # Already anchored.
                return self._ref_from(self._decode(e.read()))
            raise core_error(
                MLC_E_LEDGER_REJECTED,
                f"ledger rejected submission: HTTP {e.code}",
                cls=RemoteServiceError,
                retryable=500 <= e.code < 600 or e.code in (408, 429),
                http_status=e.code,
            ) from e
        except (urllib.error.URLError, OSError) as e:
            raise core_error(
                MLC_E_LEDGER_UNAVAILABLE,
                f"ledger unreachable: {e}",
                cls=RemoteServiceError,
                retryable=True,
            ) from e

    def fetch(self, external_ref: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}/v1/anchors/{urllib.parse.quote(external_ref, safe='')}"
        req = urllib.request.Request(url, headers=self._headers(), method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                decoded = self._decode(resp.read())
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            raise core_error(
                MLC_E_LEDGER_UNAVAILABLE,
                f"ledger fetch failed: HTTP {e.code}",
                cls=RemoteServiceError,
                http_status=e.code,
            ) from e
        except (urllib.error.URLError, OSError) as e:
            raise core_error(MLC_E_LEDGER_UNAVAILABLE, f"ledger unreachable: {e}", cls=RemoteServiceError) from e
        # Either the payload itself or {"payload": {...}}.
        payload = decoded.get("payload", decoded)
        return payload if isinstance(payload, dict) else None

    def status(self) -> Dict[str, Any]:
        req = urllib.request.Request(f"{self.base_url}/v1/status", headers=self._headers(), method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                decoded = self._decode(resp.read())
        except (urllib.error.URLError, OSError) as e:
            raise core_error(MLC_E_LEDGER_UNAVAILABLE, f"ledger unreachable: {e}", cls=RemoteServiceError) from e
        return {"connected": True, "backend": "http", **decoded}


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    NO_EXTERNAL_RECORD = "no_external_record"
    LOCAL_ONLY = "local_only"


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    status: VerificationStatus
    expected_fingerprint: str
    ledger_fingerprint: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": self.verified,
            "status": self.status.value,
            "expectedFingerprint": self.expected_fingerprint,
            "ledgerFingerprint": self.ledger_fingerprint,
            "reason": self.reason,
        }


class LedgerAnchor:
    """Anchors record fingerprints and re-verifies them against the ledger."""

    def __init__(self, client: Optional[LedgerClient] = None, *, timeout_seconds: float = DEFAULT_LEDGER_TIMEOUT_SECONDS):
        self.client = client or NullLedgerClient()
        self.timeout_seconds = float(timeout_seconds)

    async def _call(self, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise core_error(
                MLC_E_REMOTE_TIMEOUT,
                f"ledger call timed out after {self.timeout_seconds:.1f}s",
                cls=RemoteServiceError,
                retryable=True,
            ) from e

    async def anchor(self, record: InteractionRecord) -> LedgerAnchorReceipt:
        """Anchor one record. Never raises; failures yield a localOnly receipt."""
        fp = record.fingerprint or fingerprint(record)
        payload = anchor_payload(record)
        payload["fingerprint"] = fp
        try:
            ref = await self._call(self.client.submit, payload)
        except MetalayerError as e:
            return self._local_only(record, fp, e.code, str(e))
        except Exception as e:
            return self._local_only(record, fp, MLC_E_LEDGER_UNAVAILABLE, f"{type(e).__name__}: {e}")

        record_anchor(AnchorStatus.CONFIRMED.value)
        return LedgerAnchorReceipt(
            record_id=record.record_id,
            fingerprint=fp,
            anchor_status=AnchorStatus.CONFIRMED,
            anchored_at=_now_utc(),
            external_ref=ref,
        )

    def _local_only(self, record: InteractionRecord, fp: str, code: str, reason: str) -> LedgerAnchorReceipt:
        logger.warning("Anchoring record %s failed (%s); keeping it localOnly", record.record_id, reason)
        record_anchor(AnchorStatus.LOCAL_ONLY.value)
        return LedgerAnchorReceipt(
            record_id=record.record_id,
            fingerprint=fp,
            anchor_status=AnchorStatus.LOCAL_ONLY,
            anchored_at=_now_utc(),
            metadata={"failure_reason": reason, "failure_code": code},
        )

    async def anchor_batch(self, records: List[InteractionRecord]) -> List[LedgerAnchorReceipt]:
        """Anchor records independently; receipts are returned in input order."""
        return list(await asyncio.gather(*(self.anchor(r) for r in records)))

    async def verify(
        self,
        receipt: LedgerAnchorReceipt,
        record: Optional[InteractionRecord] = None,
    ) -> VerificationResult:
        """Re-fetch the anchored entry and compare fingerprints.

        With `record`, the fingerprint is recomputed from its immutable fields,
        so any change to the record since anchoring is a mismatch.
        """
        expected = fingerprint(record) if record is not None else receipt.fingerprint

        if receipt.anchor_status != AnchorStatus.CONFIRMED or not receipt.external_ref:
            return VerificationResult(False, VerificationStatus.LOCAL_ONLY, expected, reason="record was never anchored")

        try:
            entry = await self._call(self.client.fetch, receipt.external_ref)
        except MetalayerError as e:
            return VerificationResult(False, VerificationStatus.NO_EXTERNAL_RECORD, expected, reason=str(e))
        except Exception as e:
            return VerificationResult(
                False, VerificationStatus.NO_EXTERNAL_RECORD, expected, reason=f"{type(e).__name__}: {e}"
            )

        if entry is None:
            return VerificationResult(
                False, VerificationStatus.NO_EXTERNAL_RECORD, expected, reason=MLC_E_LEDGER_NOT_FOUND
            )

        ledger_fp = entry.get("fingerprint")
        if ledger_fp == expected and ledger_fp == receipt.fingerprint:
            return VerificationResult(True, VerificationStatus.VERIFIED, expected, ledger_fingerprint=ledger_fp)

        logger.warning("Fingerprint mismatch for record %s (ledger ref %s)", receipt.record_id, receipt.external_ref)
        return VerificationResult(
            False, VerificationStatus.MISMATCH, expected,
            ledger_fingerprint=ledger_fp if isinstance(ledger_fp, str) else None,
            reason="fingerprint mismatch",
        )

    async def status(self) -> Dict[str, Any]:
        """Ledger connection check; never raises."""
        try:
            return await self._call(self.client.status)
        except Exception as e:
            return {"connected": False, "error": str(e)}
