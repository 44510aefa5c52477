import asyncio
import sqlite3
import threading
from datetime import datetime

import pytest

from metalayer_core.errors import ExecutionError, InputError, MLC_E_EXECUTION_FAILED
from metalayer_core.hashing import fingerprint
from metalayer_core.ledger import FileLedgerClient, LedgerAnchor, VerificationStatus
from metalayer_core.models import ActionRequest, Actor, AnchorStatus, Community, DecisionSource, thaw
from metalayer_core.pdp import PolicyDecisionEngine
from metalayer_core.pipeline import PipelineCoordinator, PipelineState
from metalayer_core.store import SQLiteRecordStore


U1 = Actor(id="u1", verification_state="verified")
SCENARIO_COMMUNITY = Community(id="c1", ruleset={"maxPayloadLength": 10, "requiresVerifiedIdentity": True})


def _request(content="hello", actor=U1, action_type="send_message", community=SCENARIO_COMMUNITY, **kw):
    return ActionRequest(actor=actor, action_type=action_type, payload={"content": content}, community=community, **kw)


def _count(store, table):
    conn = sqlite3.connect(store.db_path)
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


@pytest.mark.asyncio
async def test_allowed_message_with_unreachable_ledger_is_local_only(make_coordinator, store, fake_executor):
    coord = make_coordinator(ledger=None)

    outcome = await coord.submit(_request("hello"), wait_for_anchor=True)

    assert outcome.record.decision.allowed is True
    assert outcome.record.decision.source == DecisionSource.FALLBACK
    assert outcome.record.execution.succeeded is True
    assert len(fake_executor.calls) == 1

    assert outcome.receipt.anchor_status == AnchorStatus.LOCAL_ONLY
    assert outcome.receipt.metadata["failure_reason"]
    assert outcome.states == [
        PipelineState.RECEIVED,
        PipelineState.POLICY_EVALUATED,
        PipelineState.EXECUTED,
        PipelineState.HASHED,
        PipelineState.ANCHORED,
        PipelineState.DONE,
    ]

    assert store.get_record(outcome.record.record_id) == outcome.record
    assert store.get_receipt(outcome.record.record_id).anchor_status == AnchorStatus.LOCAL_ONLY


@pytest.mark.asyncio
async def test_blocked_message_is_recorded_and_anchored_without_execution(make_coordinator, fake_executor, tmp_path):
    coord = make_coordinator(ledger=FileLedgerClient(tmp_path / "anchors.jsonl"))

    outcome = await coord.submit(_request("hello world"), wait_for_anchor=True)

    assert outcome.record.decision.allowed is False
    assert "length" in outcome.record.decision.reason.lower()
    assert outcome.record.execution is None
    assert fake_executor.calls == []
    assert PipelineState.EXECUTED not in outcome.states
    assert outcome.receipt.anchor_status == AnchorStatus.CONFIRMED

    result = await coord.verify_record(outcome.record.record_id)
    assert result.verified is True
    assert result.status == VerificationStatus.VERIFIED


@pytest.mark.asyncio
async def test_unverified_actor_is_blocked_by_fallback(make_coordinator):
    coord = make_coordinator()
    outcome = await coord.submit(_request("hi", actor=Actor(id="u2")), wait_for_anchor=True)
    assert outcome.record.decision.allowed is False
    assert "verification" in outcome.record.decision.reason.lower()


@pytest.mark.asyncio
async def test_remote_decision_is_recorded_with_its_input(make_coordinator, static_evaluator, store):
    ev = static_evaluator(decision={"allow": False, "reason": "remote block"})
    coord = make_coordinator(evaluator=ev)

    outcome = await coord.submit(_request("hello"), wait_for_anchor=True)
    assert outcome.record.decision.source == DecisionSource.REMOTE
    assert thaw(outcome.record.evaluation_input) == ev.calls[0]
    assert store.policy_stats("c1") == {"send_message": 1}


@pytest.mark.asyncio
async def test_every_request_yields_exactly_one_record_and_receipt(make_coordinator, store, memory_ledger, fake_executor):
    fake_executor.fail_types = {"vault_transaction"}
    coord = make_coordinator(ledger=memory_ledger)
    requests = [
        _request("hello"),
        _request("this is far too long"),
        _request("hi", actor=Actor(id="u2")),
        _request("", action_type="view_messages", community=None),
        _request("", action_type="create_post", community=None),
        _request("", action_type="vault_transaction", community=None),
    ]

    results = await asyncio.gather(*(coord.submit(r) for r in requests), return_exceptions=True)
    await coord.drain()

    assert isinstance(results[-1], ExecutionError)
    assert _count(store, "records") == len(requests)
    assert _count(store, "receipts") == len(requests)
    assert store.list_local_only() == []
    assert store.anchor_stats()["send_message"] == 3


@pytest.mark.asyncio
async def test_allowed_action_without_execution_requirement_skips_executor(make_coordinator, fake_executor):
    coord = make_coordinator()
    outcome = await coord.submit(_request("", action_type="create_post", community=None))
    assert outcome.record.decision.allowed is True
    assert outcome.record.execution is None
    assert fake_executor.calls == []
    await coord.drain()


@pytest.mark.asyncio
async def test_submit_returns_before_anchoring_completes(make_coordinator, store, memory_ledger):
    memory_ledger.gate = threading.Event()
    coord = make_coordinator(ledger=memory_ledger, anchor_timeout=5.0)

    outcome = await coord.submit(_request("hello"))
    assert outcome.receipt.anchor_status == AnchorStatus.LOCAL_ONLY
    assert outcome.receipt.metadata["pending"] is True
    assert store.get_receipt(outcome.record.record_id).metadata["pending"] is True
    assert outcome.states[-1] == PipelineState.HASHED

    memory_ledger.gate.set()
    receipt = await outcome.wait_anchored()
    assert receipt.anchor_status == AnchorStatus.CONFIRMED
    assert outcome.done
    assert store.get_receipt(outcome.record.record_id).anchor_status == AnchorStatus.CONFIRMED


@pytest.mark.asyncio
async def test_sensitive_execution_failure_is_recorded_then_raised(make_coordinator, store, fake_executor, memory_ledger):
    fake_executor.fail_types = {"send_message"}
    coord = make_coordinator(ledger=memory_ledger)

    with pytest.raises(ExecutionError) as ei:
        await coord.submit(_request("hello"), wait_for_anchor=True)
    assert ei.value.code == MLC_E_EXECUTION_FAILED

    outcome = ei.value.outcome
    assert outcome is not None
    record = store.get_record(outcome.record.record_id)
    assert record.decision.allowed is True
    assert record.execution.succeeded is False
    assert MLC_E_EXECUTION_FAILED in record.execution.error
    assert record.execution_failed is True
    assert store.get_receipt(record.record_id).anchor_status == AnchorStatus.CONFIRMED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_factory",
    [
        lambda: _request("hi", actor=Actor(id="")),
        lambda: _request("hi", action_type=""),
        lambda: ActionRequest(actor=U1, action_type="send_message", payload={"x": object()}),
        lambda: ActionRequest(actor=U1, action_type="send_message", payload=["not", "a", "mapping"]),
        lambda: _request("hi", requested_at=datetime(2026, 1, 13)),
        lambda: _request("hi", community=Community(id="c9", ruleset={"maxPayloadLength": -5})),
        lambda: _request("hi", context={"reputation": object()}),
        lambda: _request("hi", context={"metadata": "not an object"}),
    ],
)
async def test_invalid_requests_raise_input_error_and_leave_no_record(make_coordinator, store, fake_executor, request_factory):
    coord = make_coordinator()
    with pytest.raises(InputError):
        await coord.submit(request_factory())
    assert fake_executor.calls == []
    assert _count(store, "records") == 0


@pytest.mark.asyncio
async def test_set_valued_payload_is_executed_recorded_and_reloaded(make_coordinator, store, fake_executor):
    coord = make_coordinator()
    request = ActionRequest(
        actor=U1,
        action_type="send_message",
        payload={"content": "hi", "tags": {"b", "a"}},
        community=SCENARIO_COMMUNITY,
        context={"sessionId": "s1", "metadata": {"client": "web"}},
    )

    outcome = await coord.submit(request, wait_for_anchor=True)

    assert len(fake_executor.calls) == 1
    assert fake_executor.calls[0]["action"]["payload"]["tags"] == ["a", "b"]
    assert fake_executor.calls[0]["context"]["metadata"] == {"client": "web"}
    assert outcome.record.evaluation_input["action"]["payload"]["tags"] == ("a", "b")

    loaded = store.get_record(outcome.record.record_id)
    assert loaded == outcome.record
    assert fingerprint(loaded) == outcome.record.fingerprint
    assert _count(store, "receipts") == 1


@pytest.mark.asyncio
async def test_caller_cancellation_does_not_lose_the_record(make_coordinator, store, static_evaluator):
    slow = static_evaluator(decision={"allow": True}, delay=0.2)
    coord = make_coordinator(evaluator=slow)

    task = asyncio.ensure_future(coord.submit(_request("hello")))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await coord.drain()
    assert _count(store, "records") == 1
    assert _count(store, "receipts") == 1


@pytest.mark.asyncio
async def test_resume_pending_upgrades_local_only_receipts(make_coordinator, store, memory_ledger):
    memory_ledger.fail_submit = True
    coord = make_coordinator(ledger=memory_ledger)
    first = await coord.submit(_request("hello"), wait_for_anchor=True)
    second = await coord.submit(_request("hey"), wait_for_anchor=True)
    await coord.drain()
    assert len(store.list_local_only()) == 2

    memory_ledger.fail_submit = False
    receipts = await coord.resume_pending()
    assert {r.record_id for r in receipts} == {first.record.record_id, second.record.record_id}
    assert all(r.anchor_status == AnchorStatus.CONFIRMED for r in receipts)
    assert store.list_local_only() == []
    assert (await coord.verify_record(first.record.record_id)).verified is True


class _LockedReceiptsStore(SQLiteRecordStore):
    def _upsert_receipt(self, conn, receipt):
        raise sqlite3.OperationalError("database is locked")


@pytest.mark.asyncio
async def test_failed_first_persist_leaves_neither_record_nor_receipt(delegate, tmp_path):
    locked = _LockedReceiptsStore(str(tmp_path / "locked.db"))
    coord = PipelineCoordinator(PolicyDecisionEngine(), delegate, LedgerAnchor(), locked)

    with pytest.raises(sqlite3.OperationalError):
        await coord.submit(_request("hello"))

    assert _count(locked, "records") == 0
    assert _count(locked, "receipts") == 0
    assert coord._anchoring == {}
