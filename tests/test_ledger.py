import dataclasses
import json
import time
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler

import pytest

from metalayer_core.errors import MLC_E_LEDGER_REJECTED, MLC_E_LEDGER_UNAVAILABLE, MLC_E_REMOTE_TIMEOUT
from metalayer_core.ledger import (
    FileLedgerClient,
    HttpLedgerClient,
    LedgerAnchor,
    NullLedgerClient,
    VerificationStatus,
)
from metalayer_core.models import (
    Actor,
    AnchorStatus,
    DecisionSource,
    InteractionRecord,
    LedgerAnchorReceipt,
    PolicyDecision,
)


def _record(record_id="rec_1", content="hello"):
    return InteractionRecord.create(
        actor=Actor(id="u1", verification_state="verified"),
        action_type="send_message",
        community_ref="c1",
        decision=PolicyDecision(allowed=True, reason="ok", source=DecisionSource.REMOTE),
        execution=None,
        evaluation_input={"action": {"payload": {"content": content}}},
        recorded_at=datetime(2026, 1, 13, tzinfo=timezone.utc),
        record_id=record_id,
    )


@pytest.mark.asyncio
async def test_anchor_then_verify_round_trip(tmp_path):
    anchor = LedgerAnchor(FileLedgerClient(tmp_path / "anchors.jsonl"))
    rec = _record()

    receipt = await anchor.anchor(rec)
    assert receipt.anchor_status == AnchorStatus.CONFIRMED
    assert receipt.external_ref
    assert receipt.fingerprint == rec.fingerprint

    result = await anchor.verify(receipt, rec)
    assert result.verified is True
    assert result.status == VerificationStatus.VERIFIED


@pytest.mark.asyncio
async def test_mutated_record_fails_verification(tmp_path):
    anchor = LedgerAnchor(FileLedgerClient(tmp_path / "anchors.jsonl"))
    rec = _record()
    receipt = await anchor.anchor(rec)

    tampered = dataclasses.replace(rec, decision=PolicyDecision(allowed=False, reason="ok"))
    result = await anchor.verify(receipt, tampered)
    assert result.verified is False
    assert result.status == VerificationStatus.MISMATCH
    assert result.ledger_fingerprint == rec.fingerprint


@pytest.mark.asyncio
async def test_fetch_failure_is_not_reported_as_mismatch(memory_ledger):
    anchor = LedgerAnchor(memory_ledger)
    rec = _record()
    receipt = await anchor.anchor(rec)

    memory_ledger.fail_fetch = True
    result = await anchor.verify(receipt, rec)
    assert result.verified is False
    assert result.status == VerificationStatus.NO_EXTERNAL_RECORD


@pytest.mark.asyncio
async def test_unknown_reference_is_no_external_record(memory_ledger):
    anchor = LedgerAnchor(memory_ledger)
    rec = _record()
    receipt = LedgerAnchorReceipt(
        record_id=rec.record_id,
        fingerprint=rec.fingerprint,
        anchor_status=AnchorStatus.CONFIRMED,
        external_ref="tx_missing",
    )
    result = await anchor.verify(receipt, rec)
    assert result.status == VerificationStatus.NO_EXTERNAL_RECORD


@pytest.mark.asyncio
async def test_failed_submission_yields_local_only_receipt():
    anchor = LedgerAnchor(NullLedgerClient())
    rec = _record()
    receipt = await anchor.anchor(rec)
    assert receipt.anchor_status == AnchorStatus.LOCAL_ONLY
    assert receipt.external_ref is None
    assert receipt.metadata["failure_code"] == MLC_E_LEDGER_UNAVAILABLE
    assert receipt.metadata["failure_reason"]

    result = await anchor.verify(receipt, rec)
    assert result.status == VerificationStatus.LOCAL_ONLY
    assert result.verified is False


@pytest.mark.asyncio
async def test_slow_ledger_is_bounded_by_timeout():
    class _SlowLedger(NullLedgerClient):
        def submit(self, payload):
            time.sleep(0.5)
            return "tx_late"

    anchor = LedgerAnchor(_SlowLedger(), timeout_seconds=0.05)
    receipt = await anchor.anchor(_record())
    assert receipt.anchor_status == AnchorStatus.LOCAL_ONLY
    assert receipt.metadata["failure_code"] == MLC_E_REMOTE_TIMEOUT


@pytest.mark.asyncio
async def test_anchor_batch_is_independent_per_record(memory_ledger):
    records = [_record(f"rec_{i}", content=f"m{i}") for i in range(3)]
    memory_ledger.fail_fingerprints = {records[1].fingerprint}
    anchor = LedgerAnchor(memory_ledger)

    receipts = await anchor.anchor_batch(records)
    assert [r.record_id for r in receipts] == ["rec_0", "rec_1", "rec_2"]
    assert [r.anchor_status for r in receipts] == [
        AnchorStatus.CONFIRMED,
        AnchorStatus.LOCAL_ONLY,
        AnchorStatus.CONFIRMED,
    ]


def test_file_ledger_submit_is_idempotent(tmp_path):
    client = FileLedgerClient(tmp_path / "anchors.jsonl")
    payload = {"fingerprint": "a" * 64, "actor": "u1", "actionType": "send_message", "timestamp": "t", "metadata": {}}
    assert client.submit(payload) == client.submit(payload)
    assert client.status()["entries"] == 1
    assert client.fetch("nope") is None


@pytest.mark.asyncio
async def test_status_never_raises():
    assert (await LedgerAnchor(NullLedgerClient()).status())["connected"] is False
    status = await LedgerAnchor(HttpLedgerClient("http://127.0.0.1:9", timeout_s=0.5)).status()
    assert status["connected"] is False


class _LedgerHandler(BaseHTTPRequestHandler):
    entries = {}
    submissions = []
    post_status = 200

    def _reply(self, status, obj):
        raw = json.dumps(obj).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(raw)

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        payload = json.loads(self.rfile.read(length).decode("utf-8"))
        _LedgerHandler.submissions.append((self.path, payload, self.headers.get("Idempotency-Key")))
        if _LedgerHandler.post_status != 200:
            self._reply(_LedgerHandler.post_status, {"error": "unavailable"})
            return
        ref = f"tx_{len(_LedgerHandler.entries) + 1}"
        _LedgerHandler.entries[ref] = payload
        self._reply(200, {"externalRef": ref})

    def do_GET(self):  # noqa: N802
        if self.path == "/v1/status":
            self._reply(200, {"height": len(_LedgerHandler.entries)})
            return
        ref = self.path.rsplit("/", 1)[-1]
        if ref not in _LedgerHandler.entries:
            self._reply(404, {"error": "not found"})
            return
        self._reply(200, {"payload": _LedgerHandler.entries[ref]})

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.fixture
def ledger_url(start_stub):
    _LedgerHandler.entries = {}
    _LedgerHandler.submissions = []
    _LedgerHandler.post_status = 200
    return start_stub(_LedgerHandler)


@pytest.mark.asyncio
async def test_http_ledger_round_trip(ledger_url):
    anchor = LedgerAnchor(HttpLedgerClient(ledger_url, timeout_s=2))
    rec = _record()

    receipt = await anchor.anchor(rec)
    assert receipt.anchor_status == AnchorStatus.CONFIRMED
    assert receipt.external_ref == "tx_1"

    path, payload, idem = _LedgerHandler.submissions[0]
    assert path == "/v1/anchors"
    assert set(payload) == {"fingerprint", "actor", "actionType", "timestamp", "metadata"}
    assert payload["actor"] == "u1"
    assert payload["fingerprint"] == rec.fingerprint
    assert idem and len(idem) == 64

    assert (await anchor.verify(receipt, rec)).verified is True

    missing = dataclasses.replace(receipt, external_ref="tx_999")
    assert (await anchor.verify(missing, rec)).status == VerificationStatus.NO_EXTERNAL_RECORD

    status = await anchor.status()
    assert status["connected"] is True
    assert status["height"] == 1


@pytest.mark.asyncio
async def test_http_ledger_rejection_is_local_only(ledger_url):
    _LedgerHandler.post_status = 503
    anchor = LedgerAnchor(HttpLedgerClient(ledger_url, timeout_s=2))
    receipt = await anchor.anchor(_record())
    assert receipt.anchor_status == AnchorStatus.LOCAL_ONLY
    assert receipt.metadata["failure_code"] == MLC_E_LEDGER_REJECTED
    assert len(_LedgerHandler.submissions) == 1
