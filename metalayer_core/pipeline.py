"""Pipeline Coordinator.

Drives one ActionRequest through

    received -> policy_evaluated -> (executed) -> hashed -> anchored -> done

and guarantees that every accepted request leaves exactly one
InteractionRecord and exactly one LedgerAnchorReceipt in the store.

- A block is a decision, not an error: it is recorded and anchored like any
  other record, with no execution result.
- The record is persisted together with an initial localOnly receipt
  (metadata `pending`) before `submit` returns. Anchoring then upgrades the
  receipt in a background task.
- A failed sensitive execution is recorded (execution.succeeded=False) and
  anchored, then ExecutionError is raised with `.outcome` attached.
- The per-request work runs in its own task, shielded from the caller's
  cancellation, so hashing and local persistence always complete.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .crypto import _iso, canonical_bytes
from .errors import ExecutionError, InputError, core_error, MLC_E_INPUT_INVALID
from .executor import Action, ExecutionContext, TrustedExecutionDelegate
from .ledger import LedgerAnchor, VerificationResult
from .metrics import observe_pipeline_latency
from .models import ActionRequest, AnchorStatus, ExecutionResult, InteractionRecord, LedgerAnchorReceipt
from .pdp import PolicyDecisionEngine
from .ruleset import merge_ruleset
from .store import RecordStore

logger = logging.getLogger("metalayer_core.pipeline")


class PipelineState(str, Enum):
    RECEIVED = "received"
    POLICY_EVALUATED = "policy_evaluated"
    EXECUTED = "executed"
    HASHED = "hashed"
    ANCHORED = "anchored"
    DONE = "done"


@dataclass
class PipelineOutcome:
    """Result of `submit`.

    `receipt` starts as the pending localOnly receipt and is replaced when the
    background anchoring finishes; `states` grows accordingly.
    """
    record: InteractionRecord
    receipt: LedgerAnchorReceipt
    states: List[PipelineState] = field(default_factory=list)
    anchor_task: Optional["asyncio.Task[None]"] = None

    @property
    def done(self) -> bool:
        return bool(self.states) and self.states[-1] == PipelineState.DONE

    async def wait_anchored(self) -> LedgerAnchorReceipt:
        if self.anchor_task is not None:
            await asyncio.shield(self.anchor_task)
        return self.receipt


def _input_error(message: str, **details: Any) -> InputError:
    return core_error(MLC_E_INPUT_INVALID, message, cls=InputError, **details)  # type: ignore[return-value]


def validate_request(request: Any) -> None:
    """Reject malformed requests before any record exists."""
    if not isinstance(request, ActionRequest):
        raise _input_error("request must be an ActionRequest")
    if not isinstance(request.actor.id, str) or not request.actor.id.strip():
        raise _input_error("actor id is required")
    if not isinstance(request.action_type, str) or not request.action_type.strip():
        raise _input_error("action type is required")
    if not isinstance(request.payload, Mapping):
        raise _input_error("payload must be an object")
    if not isinstance(request.context, Mapping):
        raise _input_error("context must be an object")
    if not isinstance(request.requested_at, datetime) or request.requested_at.tzinfo is None:
        raise _input_error("requested_at must be a timezone-aware datetime")
    if not isinstance(request.context.get("metadata", {}), Mapping):
        raise _input_error("context metadata must be an object")
    # Raises InputError (MLC_E_CANON_*) for values that cannot be recorded.
    canonical_bytes(request.payload)
    canonical_bytes(request.context)
    if request.community is not None:
        merge_ruleset(request.community.ruleset, request.community.kind)


class PipelineCoordinator:
    """Owns one instance of each collaborator, constructed once at startup."""

    def __init__(
        self,
        engine: PolicyDecisionEngine,
        delegate: Optional[TrustedExecutionDelegate],
        anchor: LedgerAnchor,
        store: RecordStore,
    ):
        self.engine = engine
        self.delegate = delegate
        self.anchor = anchor
        self.store = store
        self._requests: "set[asyncio.Task[PipelineOutcome]]" = set()
        self._anchoring: Dict[str, "asyncio.Task[None]"] = {}

    async def submit(self, request: ActionRequest, *, wait_for_anchor: bool = False) -> PipelineOutcome:
        validate_request(request)

        task = asyncio.ensure_future(self._process(request))
        self._requests.add(task)
        task.add_done_callback(self._requests.discard)

        try:
            outcome = await asyncio.shield(task)
        except ExecutionError as e:
            if wait_for_anchor and e.outcome is not None:
                await e.outcome.wait_anchored()
            raise
        if wait_for_anchor:
            await outcome.wait_anchored()
        return outcome

    async def _process(self, request: ActionRequest) -> PipelineOutcome:
        start = time.monotonic()
        states = [PipelineState.RECEIVED]

        decision, evaluation_input = await self.engine.evaluate_with_input(
            request.actor,
            request.action_type,
            request.community,
            request.payload,
            request.context,
            requested_at=_iso(request.requested_at),
        )
        states.append(PipelineState.POLICY_EVALUATED)

        execution: Optional[ExecutionResult] = None
        execution_error: Optional[ExecutionError] = None
        if decision.allowed and self.delegate is not None and self.delegate.requires_execution(request.action_type):
            execution, execution_error = await self._execute(request)
            states.append(PipelineState.EXECUTED)

        record = InteractionRecord.create(
            actor=request.actor,
            action_type=request.action_type,
            community_ref=request.community_ref,
            decision=decision,
            execution=execution,
            evaluation_input=evaluation_input,
        )
        states.append(PipelineState.HASHED)

        receipt = LedgerAnchorReceipt(
            record_id=record.record_id,
            fingerprint=record.fingerprint,
            anchor_status=AnchorStatus.LOCAL_ONLY,
            metadata={"pending": True},
        )
        await asyncio.to_thread(self.store.save_record_with_receipt, record, receipt)
        observe_pipeline_latency(time.monotonic() - start)

        outcome = PipelineOutcome(record=record, receipt=receipt, states=states)
        outcome.anchor_task = self._spawn_anchor(outcome)

        if execution_error is not None:
            execution_error.outcome = outcome
            raise execution_error
        return outcome

    async def _execute(self, request: ActionRequest):
        action = Action(type=request.action_type, payload=request.payload)
        context = ExecutionContext(
            community_id=request.community_ref,
            session_id=request.context.get("sessionId"),
            metadata=request.context.get("metadata") or {},
        )
        try:
            if self.delegate.is_sensitive(request.action_type):
                result = await self.delegate.execute_sensitive(action, request.actor, context)
            else:
                result = await self.delegate.execute(action, request.actor, context)
        except ExecutionError as e:
            return ExecutionResult(succeeded=False, error=str(e)), e
        return result, None

    def _spawn_anchor(self, outcome: PipelineOutcome) -> "asyncio.Task[None]":
        record_id = outcome.record.record_id
        task = asyncio.ensure_future(self._anchor(outcome))
        self._anchoring[record_id] = task
        task.add_done_callback(lambda _t: self._anchoring.pop(record_id, None))
        return task

    async def _anchor(self, outcome: PipelineOutcome) -> None:
        receipt = await self.anchor.anchor(outcome.record)
        try:
            await asyncio.to_thread(self.store.save_receipt, receipt)
        except Exception:
            # The pending localOnly receipt stays in place; resume_pending retries it.
            logger.exception("Failed to persist receipt for record %s", outcome.record.record_id)
            return
        outcome.receipt = receipt
        outcome.states.extend([PipelineState.ANCHORED, PipelineState.DONE])

    async def drain(self) -> None:
        """Wait for in-flight requests and background anchoring."""
        while self._requests or self._anchoring:
            pending = list(self._requests) + list(self._anchoring.values())
            await asyncio.gather(*pending, return_exceptions=True)

    async def resume_pending(self) -> List[LedgerAnchorReceipt]:
        """Re-attempt anchoring for every stored localOnly receipt not already in flight."""
        receipts = await asyncio.to_thread(self.store.list_local_only)
        records: List[InteractionRecord] = []
        for r in receipts:
            if r.record_id in self._anchoring:
                continue
            record = await asyncio.to_thread(self.store.get_record, r.record_id)
            if record is None:
                logger.warning("Receipt %s has no stored record; skipping", r.record_id)
                continue
            records.append(record)

        if not records:
            return []
        logger.info("Re-anchoring %d localOnly records", len(records))
        new_receipts = await self.anchor.anchor_batch(records)
        for receipt in new_receipts:
            await asyncio.to_thread(self.store.save_receipt, receipt)
        return new_receipts

    async def verify_record(self, record_id: str) -> Optional[VerificationResult]:
        """Verify a stored record against its anchor. None if the record is unknown."""
        record = await asyncio.to_thread(self.store.get_record, record_id)
        receipt = await asyncio.to_thread(self.store.get_receipt, record_id)
        if record is None or receipt is None:
            return None
        return await self.anchor.verify(receipt, record)
