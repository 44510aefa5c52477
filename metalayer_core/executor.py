"""Trusted Execution Delegate.

Runs actions inside a remote attested executor and refuses to trust the
result unless the returned proof verifies (see `attestation`).

Request body sent to the executor:

    {
      "action":  {"type", "payload", "timestamp"},
      "actor":   {"id", "verificationState", "role"},
      "context": {"communityId", "sessionId", "metadata"},
      "nonce":   <32 hex chars>,
      "signature": base64(Ed25519(canonical_json(projection))),
      "keyId": <request signing key id>
    }

where `projection` is the sorted canonical form of
{actionType, actorId, communityRef, issuedAt, nonce, payloadHash}.

Failure handling (one attempt, no retries):

    remote error / timeout / bad proof
        -> non-critical action: local stand-in, executed_locally=True, warning
        -> anything else: ExecutionError propagates to the caller
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import secrets
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Protocol

from .attestation import ProofVerifier, StructuralProofVerifier, verify_response
from .crypto import _iso, _now_utc, canonical_bytes, sha256_hex
from .errors import (
    ExecutionError,
    MetalayerError,
    PreconditionError,
    RemoteServiceError,
    core_error,
    MLC_E_EXECUTION_FAILED,
    MLC_E_NOT_SENSITIVE,
    MLC_E_REMOTE_MALFORMED,
    MLC_E_REMOTE_TIMEOUT,
    MLC_E_REMOTE_UNAVAILABLE,
)
from .metrics import record_execution
from .models import Actor, ExecutionResult, thaw
from .signing import Signer, coerce_signer

logger = logging.getLogger("metalayer_core.executor")


# Must run in the attested executor; never degrade to local execution.
SENSITIVE_ACTION_TYPES: FrozenSet[str] = frozenset({
    "send_message",
    "join_community",
    "poh_verification",
    "vault_transaction",
    "policy_decision",
})

# Read-only / informational; may run locally when the executor is unavailable.
NON_CRITICAL_ACTION_TYPES: FrozenSet[str] = frozenset({
    "view_messages",
    "get_user_profile",
    "list_communities",
    "get_vault_balance",
})

DEFAULT_EXECUTOR_TIMEOUT_SECONDS = 30.0

LOCAL_EXECUTION_WARNING = "Attested executor unavailable, executed locally"


@dataclass(frozen=True)
class Action:
    type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    action_id: Optional[str] = None


@dataclass(frozen=True)
class ExecutionContext:
    community_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "communityId": self.community_id,
            "sessionId": self.session_id,
            "metadata": thaw(self.metadata),
        }


@dataclass(frozen=True)
class BatchItemResult:
    action_id: Optional[str]
    action_type: str
    succeeded: bool
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None


class ExecutorClient(Protocol):
    """Transport to the remote attested executor.

    Both methods raise RemoteServiceError when the executor cannot be reached
    or answers with something other than a JSON object.
    """

    def execute(self, request: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def status(self) -> Dict[str, Any]:
        ...


@dataclass
class HttpExecutorClient:
    """HTTP client for the attested executor (`/v1/tee/execute`, `/v1/tee/status`)."""

    base_url: str
    api_key: Optional[str] = None
    worker_id: Optional[str] = None
    cluster_id: Optional[str] = None
    timeout_seconds: float = DEFAULT_EXECUTOR_TIMEOUT_SECONDS

    def _headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        if self.worker_id:
            h["X-Worker-ID"] = self.worker_id
        if self.cluster_id:
            h["X-Cluster-ID"] = self.cluster_id
        return h

    def _call(self, path: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}{path}"
        data = None
        method = "GET"
        if payload is not None:
            data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            method = "POST"
        req = urllib.request.Request(url, data=data, headers=self._headers(), method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                body = resp.read()
        except urllib.error.HTTPError as e:
            raise core_error(
                MLC_E_REMOTE_UNAVAILABLE,
                f"executor returned HTTP {e.code}",
                cls=RemoteServiceError,
                http_status=e.code,
            ) from e
        except (urllib.error.URLError, OSError) as e:
            raise core_error(
                MLC_E_REMOTE_UNAVAILABLE,
                f"executor unreachable: {e}",
                cls=RemoteServiceError,
                retryable=True,
            ) from e

        try:
            decoded = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise core_error(MLC_E_REMOTE_MALFORMED, "executor response is not JSON", cls=RemoteServiceError) from e
        if not isinstance(decoded, dict):
            raise core_error(MLC_E_REMOTE_MALFORMED, "executor response is not an object", cls=RemoteServiceError)
        return decoded

    def execute(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("/v1/tee/execute", request)

    def status(self) -> Dict[str, Any]:
        return self._call("/v1/tee/status", None)


def signing_projection(action: Action, actor: Actor, context: ExecutionContext, issued_at: str, nonce: str) -> Dict[str, Any]:
    return {
        "actionType": action.type,
        "actorId": actor.id,
        "communityRef": context.community_id or "global",
        "issuedAt": issued_at,
        "nonce": nonce,
        "payloadHash": sha256_hex(canonical_bytes(action.payload)),
    }


def build_signed_request(
    action: Action,
    actor: Actor,
    context: ExecutionContext,
    signer: Signer,
    now: datetime,
) -> Dict[str, Any]:
    issued_at = _iso(now)
    nonce = secrets.token_hex(16)
    projection = signing_projection(action, actor, context, issued_at, nonce)
    signature = signer.sign(canonical_bytes(projection))
    return {
        "action": {"type": action.type, "payload": thaw(action.payload), "timestamp": issued_at},
        "actor": actor.to_dict(),
        "context": context.to_dict(),
        "nonce": nonce,
        "signature": base64.b64encode(signature).decode("ascii"),
        "keyId": signer.key_id,
    }


class TrustedExecutionDelegate:
    """Executes actions in the attested executor, with a narrow local fallback."""

    def __init__(
        self,
        client: Optional[ExecutorClient],
        signer: Any,
        *,
        proof_verifier: Optional[ProofVerifier] = None,
        timeout_seconds: float = DEFAULT_EXECUTOR_TIMEOUT_SECONDS,
        sensitive_types: FrozenSet[str] = SENSITIVE_ACTION_TYPES,
        non_critical_types: FrozenSet[str] = NON_CRITICAL_ACTION_TYPES,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.client = client
        self.signer = coerce_signer(signer)
        if proof_verifier is None and client is not None:
            proof_verifier = StructuralProofVerifier()
        self.proof_verifier = proof_verifier
        self.timeout_seconds = float(timeout_seconds)
        self.sensitive_types = frozenset(sensitive_types)
        self.non_critical_types = frozenset(non_critical_types)
        self.clock = clock

    def is_sensitive(self, action_type: str) -> bool:
        return action_type in self.sensitive_types

    def is_non_critical(self, action_type: str) -> bool:
        return action_type in self.non_critical_types

    def requires_execution(self, action_type: str) -> bool:
        return self.is_sensitive(action_type) or self.is_non_critical(action_type)

    async def execute_sensitive(
        self,
        action: Action,
        actor: Actor,
        context: Optional[ExecutionContext] = None,
    ) -> ExecutionResult:
        """Same as `execute`, but only for sensitive action types.

        Raises PreconditionError before any network call otherwise.
        """
        if not self.is_sensitive(action.type):
            raise core_error(
                MLC_E_NOT_SENSITIVE,
                f"Action {action.type!r} is not marked as sensitive",
                cls=PreconditionError,
                action_type=action.type,
            )
        return await self.execute(action, actor, context)

    async def execute(
        self,
        action: Action,
        actor: Actor,
        context: Optional[ExecutionContext] = None,
    ) -> ExecutionResult:
        context = context or ExecutionContext()
        start = time.monotonic()
        try:
            data, proof = await self._execute_remote(action, actor, context)
        except MetalayerError as e:
            return self._handle_failure(action, actor, e, start)

        record_execution("remote", "ok")
        return ExecutionResult(
            succeeded=True,
            output=data,
            proof=proof,
            executed_locally=False,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    async def _execute_remote(self, action: Action, actor: Actor, context: ExecutionContext):
        if self.client is None:
            raise core_error(MLC_E_REMOTE_UNAVAILABLE, "no attested executor configured", cls=RemoteServiceError)

        request = build_signed_request(action, actor, context, self.signer, self.clock())
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self.client.execute, request),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise core_error(
                MLC_E_REMOTE_TIMEOUT,
                f"executor timed out after {self.timeout_seconds:.1f}s",
                cls=RemoteServiceError,
            ) from e
        except MetalayerError:
            raise
        except Exception as e:
            raise core_error(
                MLC_E_REMOTE_UNAVAILABLE,
                f"executor call failed: {type(e).__name__}: {e}",
                cls=RemoteServiceError,
            ) from e

        data, proof, _execution_time = verify_response(response, request, self.proof_verifier, self.clock())
        return data, proof

    def _handle_failure(self, action: Action, actor: Actor, err: MetalayerError, start: float) -> ExecutionResult:
        if self.is_non_critical(action.type):
            logger.warning("Attested execution of %s failed (%s); executing locally", action.type, err)
            record_execution("local", "ok")
            return ExecutionResult(
                succeeded=True,
                output={
                    "action": action.type,
                    "actor": actor.id,
                    "status": "executed_locally",
                    "warning": LOCAL_EXECUTION_WARNING,
                },
                proof=None,
                executed_locally=True,
                duration_ms=int((time.monotonic() - start) * 1000),
                warning=LOCAL_EXECUTION_WARNING,
            )

        logger.error("Attested execution of %s failed: %s", action.type, err)
        record_execution("remote", "failed")
        code = err.code if isinstance(err, ExecutionError) else MLC_E_EXECUTION_FAILED
        raise core_error(
            code,
            f"Trusted execution failed: {err.message}",
            cls=ExecutionError,
            action_type=action.type,
            cause=err.code,
        ) from err

    async def batch_execute(
        self,
        actions: List[Action],
        actor: Actor,
        context: Optional[ExecutionContext] = None,
    ) -> List[BatchItemResult]:
        """Execute each action independently; one failure never aborts the batch."""
        results = await asyncio.gather(
            *(self.execute(a, actor, context) for a in actions),
            return_exceptions=True,
        )
        out: List[BatchItemResult] = []
        for action, res in zip(actions, results):
            if isinstance(res, ExecutionResult):
                out.append(BatchItemResult(action.action_id, action.type, True, result=res))
            elif isinstance(res, MetalayerError):
                out.append(BatchItemResult(action.action_id, action.type, False, error=str(res)))
            else:
                raise res
        return out

    async def status(self) -> Dict[str, Any]:
        """Executor status; never raises."""
        if self.client is None:
            return {"available": False, "error": "no attested executor configured"}
        try:
            st = await asyncio.wait_for(asyncio.to_thread(self.client.status), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return {"available": False, "error": "status request timed out"}
        except Exception as e:
            return {"available": False, "error": str(e)}
        return {
            "available": True,
            "status": st.get("status"),
            "uptime": st.get("uptime"),
            "version": st.get("version"),
        }

    async def health_check(self) -> Dict[str, Any]:
        """Status plus a trial `health_check` execution; never raises."""
        status = await self.status()
        if not status.get("available"):
            return {"healthy": False, "error": status.get("error", "executor not available")}
        try:
            result = await self.execute(
                Action(type="health_check"),
                Actor(id="health_check", verification_state="verified", role="system"),
                ExecutionContext(community_id="health_check", session_id="health_check"),
            )
        except ExecutionError as e:
            return {"healthy": False, "executorStatus": status, "error": str(e)}
        return {"healthy": True, "executorStatus": status, "testResult": result.succeeded}
