"""metalayer_core.pdp

Policy Decision Engine.

Every action is decided here. The engine merges the community's custom
ruleset over the template for its kind, builds an evaluation input and asks a
remote rule evaluator for a decision:

Request body (OPA-compatible by default):
    {"input": {"actor": ..., "action": ..., "community": ..., "context": ...}}

Response body:
    * either a decision object directly: {allow, reason, restrictions, metadata}
    * or OPA-style: {"result": <decision object>}

Fallback behavior:
    Any HTTP/network/timeout/parse/schema problem switches to the local
    `FallbackPolicy`. The remote evaluator is called exactly once per request;
    there is no retry loop. Decisions made locally carry source=fallback.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from .audit_log import TamperEvidentAuditLog
from .crypto import _iso, _now_utc
from .errors import (
    RemoteServiceError,
    core_error,
    MLC_E_REMOTE_MALFORMED,
    MLC_E_REMOTE_TIMEOUT,
    MLC_E_REMOTE_UNAVAILABLE,
)
from .metrics import record_decision
from .models import Actor, Community, DecisionSource, PolicyDecision, thaw
from .ruleset import Ruleset, merge_ruleset

logger = logging.getLogger("metalayer_core.pdp")


# Action types whose payload `content` is user-authored text.
MESSAGE_ACTION_TYPES = frozenset({"send_message"})

# Static denylist applied by the fallback policy (case-insensitive substrings).
FALLBACK_DENYLIST: Tuple[str, ...] = ("spam", "buy now", "click here")

FALLBACK_ALLOW_REASON = "basic policy check passed"


class PolicyEvaluator(Protocol):
    """A remote rule evaluator.

    Must return a dict with at least a boolean `allow`; raise
    RemoteServiceError (or anything else) when it cannot.
    """

    def evaluate(self, evaluation_input: Dict[str, Any]) -> Dict[str, Any]:
        ...


def parse_remote_decision(decoded: Any) -> Dict[str, Any]:
    """Validate an evaluator response body and return the decision object.

    Raises RemoteServiceError(MLC_E_REMOTE_MALFORMED) on schema mismatch.
    """
    decision = decoded
    if isinstance(decoded, dict) and "result" in decoded:
        decision = decoded.get("result")

    if not isinstance(decision, dict):
        raise core_error(MLC_E_REMOTE_MALFORMED, "expected decision object", cls=RemoteServiceError)

    allow = decision.get("allow")
    reason = decision.get("reason", "Policy evaluation completed")
    restrictions = decision.get("restrictions", [])
    metadata = decision.get("metadata", {})
    if not isinstance(allow, bool):
        raise core_error(MLC_E_REMOTE_MALFORMED, "missing boolean allow", cls=RemoteServiceError)
    if not isinstance(reason, str):
        raise core_error(MLC_E_REMOTE_MALFORMED, "reason must be a string", cls=RemoteServiceError)
    if not isinstance(restrictions, list) or not all(isinstance(r, str) for r in restrictions):
        raise core_error(MLC_E_REMOTE_MALFORMED, "restrictions must be a list of strings", cls=RemoteServiceError)
    if not isinstance(metadata, dict):
        raise core_error(MLC_E_REMOTE_MALFORMED, "metadata must be an object", cls=RemoteServiceError)

    return {"allow": allow, "reason": reason, "restrictions": restrictions, "metadata": metadata}


@dataclass
class HttpPolicyEvaluator:
    """HTTP-based rule evaluator client.

    By default, sends an OPA-compatible JSON payload: {"input": evaluation_input}.
    Set input_mode="raw" to send the evaluation input directly.
    """

    url: str
    timeout_seconds: float = 5.0
    input_mode: str = "opa"  # 'opa' or 'raw'

    def evaluate(self, evaluation_input: Dict[str, Any]) -> Dict[str, Any]:
        mode = (self.input_mode or "opa").strip().lower()
        body_obj: Any = evaluation_input if mode == "raw" else {"input": evaluation_input}

        body = json.dumps(body_obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                resp_bytes = resp.read()
        except urllib.error.HTTPError as e:
            raise core_error(
                MLC_E_REMOTE_UNAVAILABLE,
                f"policy evaluator returned HTTP {e.code}",
                cls=RemoteServiceError,
                http_status=e.code,
            ) from e
        except (urllib.error.URLError, OSError) as e:
            raise core_error(
                MLC_E_REMOTE_UNAVAILABLE,
                f"policy evaluator unreachable: {e}",
                cls=RemoteServiceError,
                retryable=True,
            ) from e

        try:
            decoded = json.loads(resp_bytes.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise core_error(MLC_E_REMOTE_MALFORMED, "response is not JSON", cls=RemoteServiceError) from e
        return parse_remote_decision(decoded)


@dataclass
class FallbackPolicy:
    """Local checks used when the remote evaluator is unavailable.

    A strict subset of what the remote evaluator can express. Checks run in
    order and the first failure blocks:

      1. identity verification required but actor not verified
      2. message content longer than the ruleset's max_payload_length
      3. content matches the denylist or the ruleset's forbidden content
    """

    denylist: Tuple[str, ...] = FALLBACK_DENYLIST
    message_action_types: frozenset = field(default_factory=lambda: MESSAGE_ACTION_TYPES)

    def decide(
        self,
        actor: Actor,
        action_type: str,
        payload: Mapping[str, Any],
        ruleset: Ruleset,
        *,
        cause: str = "",
    ) -> PolicyDecision:
        checks = (self._check_identity, self._check_length, self._check_content)
        for check in checks:
            failure = check(actor, action_type, payload, ruleset)
            if failure is not None:
                reason, check_name = failure
                return PolicyDecision(
                    allowed=False,
                    reason=reason,
                    restrictions=(),
                    source=DecisionSource.FALLBACK,
                    metadata={"check": check_name, "fallbackCause": cause},
                )
        return PolicyDecision(
            allowed=True,
            reason=FALLBACK_ALLOW_REASON,
            restrictions=(),
            source=DecisionSource.FALLBACK,
            metadata={"fallbackCause": cause},
        )

    @staticmethod
    def _check_identity(actor, action_type, payload, ruleset) -> Optional[Tuple[str, str]]:
        required = ruleset.restrictions.requires_verified_identity or bool(payload.get("requirePoh"))
        if required and not actor.is_verified:
            return "Identity verification required", "identity_verification"
        return None

    def _check_length(self, actor, action_type, payload, ruleset) -> Optional[Tuple[str, str]]:
        if action_type not in self.message_action_types:
            return None
        content = payload.get("content")
        if isinstance(content, str) and len(content) > ruleset.max_payload_length:
            return f"Message too long (max length {ruleset.max_payload_length} characters)", "payload_length"
        return None

    def _check_content(self, actor, action_type, payload, ruleset) -> Optional[Tuple[str, str]]:
        if action_type not in self.message_action_types:
            return None
        content = payload.get("content")
        if not isinstance(content, str):
            return None
        lowered = content.lower()
        for word in (*self.denylist, *sorted(ruleset.restrictions.forbidden_content)):
            if word and word.lower() in lowered:
                return "Forbidden content detected", "forbidden_content"
        return None


def build_evaluation_input(
    actor: Actor,
    action_type: str,
    community: Optional[Community],
    payload: Mapping[str, Any],
    ruleset: Ruleset,
    *,
    context: Optional[Mapping[str, Any]] = None,
    requested_at: Optional[str] = None,
) -> Dict[str, Any]:
    """Assemble the evaluation input sent to the remote evaluator and audited."""
    ctx = thaw(context or {})
    return {
        "actor": actor.to_dict(),
        "action": {
            "type": action_type,
            "payload": thaw(payload),
            "timestamp": requested_at or _iso(_now_utc()),
        },
        "community": {
            "id": community.id if community else None,
            "kind": community.kind if community else None,
            "ruleset": ruleset.to_wire(),
        },
        "context": {
            "actorReputation": ctx.get("reputation", 0),
            "actorBalance": ctx.get("balance", 0),
        },
    }


class PolicyDecisionEngine:
    """Decides allow/block for one action.

    Args:
        evaluator: remote evaluator, or None to always use the fallback policy.
        timeout_seconds: bound on the single remote call.
        fallback: local fallback policy.
        audit_log: optional tamper-evident log receiving every decision with
            its full evaluation input.
    """

    def __init__(
        self,
        evaluator: Optional[PolicyEvaluator] = None,
        *,
        timeout_seconds: float = 5.0,
        fallback: Optional[FallbackPolicy] = None,
        audit_log: Optional[TamperEvidentAuditLog] = None,
    ):
        self.evaluator = evaluator
        self.timeout_seconds = float(timeout_seconds)
        self.fallback = fallback or FallbackPolicy()
        self.audit_log = audit_log

    async def evaluate(
        self,
        actor: Actor,
        action_type: str,
        community: Optional[Community],
        payload: Mapping[str, Any],
        context: Optional[Mapping[str, Any]] = None,
    ) -> PolicyDecision:
        decision, _ = await self.evaluate_with_input(actor, action_type, community, payload, context)
        return decision

    async def evaluate_with_input(
        self,
        actor: Actor,
        action_type: str,
        community: Optional[Community],
        payload: Mapping[str, Any],
        context: Optional[Mapping[str, Any]] = None,
        *,
        requested_at: Optional[str] = None,
    ) -> Tuple[PolicyDecision, Dict[str, Any]]:
        """Return the decision together with the evaluation input it was based on."""
        ruleset = merge_ruleset(
            community.ruleset if community else None,
            community.kind if community else None,
        )
        evaluation_input = build_evaluation_input(
            actor, action_type, community, payload, ruleset,
            context=context, requested_at=requested_at,
        )

        decision = await self._decide(actor, action_type, payload, ruleset, evaluation_input)

        record_decision(decision.source.value, decision.allowed)
        if self.audit_log is not None:
            await asyncio.to_thread(self.audit_log.append_event, {
                "type": "policy_decision",
                "decision": decision.to_dict(),
                "input": evaluation_input,
            })
        return decision, evaluation_input

    async def _decide(
        self,
        actor: Actor,
        action_type: str,
        payload: Mapping[str, Any],
        ruleset: Ruleset,
        evaluation_input: Dict[str, Any],
    ) -> PolicyDecision:
        if self.evaluator is None:
            return self.fallback.decide(actor, action_type, payload, ruleset, cause="no_remote_evaluator")

        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self.evaluator.evaluate, evaluation_input),
                timeout=self.timeout_seconds,
            )
            remote = parse_remote_decision(raw)
        except asyncio.TimeoutError:
            logger.warning("Policy evaluator timed out after %.1fs; using fallback policy", self.timeout_seconds)
            return self.fallback.decide(actor, action_type, payload, ruleset, cause=MLC_E_REMOTE_TIMEOUT)
        except RemoteServiceError as e:
            logger.warning("Policy evaluator unavailable (%s); using fallback policy", e)
            return self.fallback.decide(actor, action_type, payload, ruleset, cause=e.code)
        except Exception as e:
            # Custom evaluators may fail in arbitrary ways; the fallback covers all of them.
            logger.warning("Policy evaluator failed (%s: %s); using fallback policy", type(e).__name__, e)
            return self.fallback.decide(actor, action_type, payload, ruleset, cause=MLC_E_REMOTE_UNAVAILABLE)

        return PolicyDecision(
            allowed=remote["allow"],
            reason=remote["reason"],
            restrictions=tuple(remote["restrictions"]),
            source=DecisionSource.REMOTE,
            metadata=remote["metadata"],
        )
