"""Core data model.

All types here are frozen dataclasses. Mapping-valued fields are deep-copied
and frozen recursively on construction (read-only mappings, tuples for lists),
so no part of a value can be changed after it has been fingerprinted.

Timestamps are timezone-aware UTC datetimes in memory and ISO-8601 strings on
the wire and in storage.
"""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from .crypto import _iso, _now_utc, _parse_iso_utc, canonical_json_dumps
from .hashing import fingerprint


def _frozen_map(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return freeze(value or {})


def freeze(value: Any) -> Any:
    """Recursively wrap mappings read-only and turn lists into tuples.

    Sets become tuples in canonical order, so they survive a JSON round trip
    with the same fingerprint.
    """
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return tuple(sorted((freeze(v) for v in value), key=canonical_json_dumps))
    return value


def thaw(value: Any) -> Any:
    """Recursively turn read-only mappings back into plain dicts/lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return [thaw(v) for v in freeze(value)]
    return value


class VerificationState(str, Enum):
    VERIFIED = "verified"
    PENDING = "pending"
    UNVERIFIED = "unverified"


class DecisionSource(str, Enum):
    REMOTE = "remote"
    FALLBACK = "fallback"


class AnchorStatus(str, Enum):
    CONFIRMED = "confirmed"
    LOCAL_ONLY = "localOnly"


@dataclass(frozen=True)
class Actor:
    """Identity as supplied by the session collaborator. Never mutated here."""
    id: str
    verification_state: str = VerificationState.UNVERIFIED.value
    role: str = "member"

    @property
    def is_verified(self) -> bool:
        return self.verification_state == VerificationState.VERIFIED.value

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "verificationState": self.verification_state, "role": self.role}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Actor":
        return cls(
            id=str(d["id"]),
            verification_state=str(d.get("verificationState", VerificationState.UNVERIFIED.value)),
            role=str(d.get("role", "member")),
        )


@dataclass(frozen=True)
class Community:
    """A community reference: id, kind (template name) and its custom ruleset document."""
    id: str
    kind: Optional[str] = None
    ruleset: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "ruleset", _frozen_map(self.ruleset))


@dataclass(frozen=True)
class ActionRequest:
    actor: Actor
    action_type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    community: Optional[Community] = None
    requested_at: datetime = field(default_factory=_now_utc)
    # Opaque numeric hints from the caller (reputation, balance) plus
    # session metadata. The core never computes these.
    context: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.payload, Mapping):
            object.__setattr__(self, "payload", _frozen_map(self.payload))
        if isinstance(self.context, Mapping):
            object.__setattr__(self, "context", _frozen_map(self.context))

    @property
    def community_ref(self) -> Optional[str]:
        return self.community.id if self.community else None


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str
    restrictions: Tuple[str, ...] = ()
    source: DecisionSource = DecisionSource.REMOTE
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "restrictions", tuple(str(r) for r in self.restrictions))
        object.__setattr__(self, "metadata", _frozen_map(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": bool(self.allowed),
            "reason": self.reason,
            "restrictions": list(self.restrictions),
            "source": DecisionSource(self.source).value,
            "metadata": thaw(self.metadata),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PolicyDecision":
        return cls(
            allowed=bool(d["allowed"]),
            reason=str(d.get("reason", "")),
            restrictions=tuple(d.get("restrictions") or ()),
            source=DecisionSource(d.get("source", DecisionSource.REMOTE.value)),
            metadata=d.get("metadata") or {},
        )


@dataclass(frozen=True)
class AttestationProof:
    signature: bytes
    issued_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": base64.b64encode(self.signature).decode("ascii"),
            "issuedAt": _iso(self.issued_at),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "AttestationProof":
        issued = _parse_iso_utc(d.get("issuedAt"))
        if issued is None:
            raise ValueError("proof issuedAt missing or not ISO-8601")
        return cls(signature=base64.b64decode(str(d["signature"]), validate=True), issued_at=issued)


@dataclass(frozen=True)
class ExecutionResult:
    succeeded: bool
    output: Mapping[str, Any] = field(default_factory=dict)
    proof: Optional[AttestationProof] = None
    executed_locally: bool = False
    duration_ms: int = 0
    warning: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "output", _frozen_map(self.output))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": bool(self.succeeded),
            "output": thaw(self.output),
            "proof": self.proof.to_dict() if self.proof else None,
            "executedLocally": bool(self.executed_locally),
            "durationMs": int(self.duration_ms),
            "warning": self.warning,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ExecutionResult":
        proof = d.get("proof")
        return cls(
            succeeded=bool(d["succeeded"]),
            output=d.get("output") or {},
            proof=AttestationProof.from_dict(proof) if proof else None,
            executed_locally=bool(d.get("executedLocally", False)),
            duration_ms=int(d.get("durationMs", 0)),
            warning=d.get("warning"),
            error=d.get("error"),
        )


@dataclass(frozen=True)
class InteractionRecord:
    """The single durable trace of one ActionRequest.

    Use `InteractionRecord.create` so the fingerprint is computed from the
    immutable fields at construction time.
    """
    record_id: str
    actor: Actor
    action_type: str
    community_ref: Optional[str]
    decision: PolicyDecision
    execution: Optional[ExecutionResult]
    recorded_at: datetime
    evaluation_input: Mapping[str, Any]
    fingerprint: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "evaluation_input", _frozen_map(self.evaluation_input))

    @classmethod
    def create(
        cls,
        *,
        actor: Actor,
        action_type: str,
        community_ref: Optional[str],
        decision: PolicyDecision,
        execution: Optional[ExecutionResult],
        evaluation_input: Mapping[str, Any],
        recorded_at: Optional[datetime] = None,
        record_id: Optional[str] = None,
    ) -> "InteractionRecord":
        rec = cls(
            record_id=record_id or f"rec_{uuid.uuid4().hex}",
            actor=actor,
            action_type=action_type,
            community_ref=community_ref,
            decision=decision,
            execution=execution,
            recorded_at=recorded_at or _now_utc(),
            evaluation_input=evaluation_input,
        )
        object.__setattr__(rec, "fingerprint", fingerprint(rec))
        return rec

    def immutable_fields(self) -> Dict[str, Any]:
        """Everything the fingerprint covers (all fields except the fingerprint)."""
        return {
            "recordId": self.record_id,
            "actor": self.actor.to_dict(),
            "actionType": self.action_type,
            "communityRef": self.community_ref,
            "decision": self.decision.to_dict(),
            "execution": self.execution.to_dict() if self.execution else None,
            "recordedAt": _iso(self.recorded_at),
            "evaluationInput": thaw(self.evaluation_input),
        }

    @property
    def execution_failed(self) -> bool:
        """True for "allowed but execution failed", as opposed to blocked."""
        return bool(self.decision.allowed and self.execution is not None and not self.execution.succeeded)

    def to_dict(self) -> Dict[str, Any]:
        d = self.immutable_fields()
        d["fingerprint"] = self.fingerprint
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "InteractionRecord":
        recorded_at = _parse_iso_utc(d.get("recordedAt"))
        if recorded_at is None:
            raise ValueError("recordedAt missing or not ISO-8601")
        execution = d.get("execution")
        return cls(
            record_id=str(d["recordId"]),
            actor=Actor.from_dict(d["actor"]),
            action_type=str(d["actionType"]),
            community_ref=d.get("communityRef"),
            decision=PolicyDecision.from_dict(d["decision"]),
            execution=ExecutionResult.from_dict(execution) if execution else None,
            recorded_at=recorded_at,
            evaluation_input=d.get("evaluationInput") or {},
            fingerprint=str(d.get("fingerprint", "")),
        )


@dataclass(frozen=True)
class LedgerAnchorReceipt:
    """Owned by the ledger anchor; the record row only references it."""
    record_id: str
    fingerprint: str
    anchor_status: AnchorStatus
    anchored_at: datetime = field(default_factory=_now_utc)
    external_ref: Optional[str] = None
    # Non-authoritative: failure reasons, pending flag, attempt counts.
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", _frozen_map(self.metadata))

    @property
    def confirmed(self) -> bool:
        return self.anchor_status == AnchorStatus.CONFIRMED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "fingerprint": self.fingerprint,
            "anchorStatus": AnchorStatus(self.anchor_status).value,
            "anchoredAt": _iso(self.anchored_at),
            "externalRef": self.external_ref,
            "metadata": thaw(self.metadata),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "LedgerAnchorReceipt":
        return cls(
            record_id=str(d["recordId"]),
            fingerprint=str(d["fingerprint"]),
            anchor_status=AnchorStatus(d["anchorStatus"]),
            anchored_at=_parse_iso_utc(d.get("anchoredAt")) or _now_utc(),
            external_ref=d.get("externalRef"),
            metadata=d.get("metadata") or {},
        )
