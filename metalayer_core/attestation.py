"""Attestation proof checks for executor responses.

An executor response is trusted only when all of the following hold:

  1. it carries `data` (object), `proof` (object) and `executionTime` (number)
  2. the proof parses: base64 `signature`, ISO-8601 `issuedAt`
  3. the proof is fresh: issued no more than 5 minutes ago, and not further in
     the future than a small clock-skew allowance
  4. the proof signature passes the configured `ProofVerifier`

Any failure raises ExecutionError(MLC_E_PROOF_INVALID). A stale or malformed
proof is a verification failure, never a success.

Signature scheme
----------------
`Ed25519ProofVerifier` checks an Ed25519 signature by the executor's
attestation key over canonical_json({"data", "issuedAt", "nonce"}), binding
the proof to the request nonce. Providers with a different attestation format
plug in their own `ProofVerifier`. `StructuralProofVerifier` only checks that
a signature is present, for deployments where the provider key is not yet
pinned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Protocol, Tuple

from .crypto import Ed25519KeyPair, _iso, canonical_bytes
from .errors import ExecutionError, core_error, MLC_E_PROOF_INVALID
from .models import AttestationProof

logger = logging.getLogger("metalayer_core.attestation")

PROOF_MAX_AGE = timedelta(minutes=5)
PROOF_MAX_FUTURE_SKEW = timedelta(seconds=30)


def _proof_error(message: str, **details: Any) -> ExecutionError:
    return core_error(MLC_E_PROOF_INVALID, message, cls=ExecutionError, **details)  # type: ignore[return-value]


class ProofVerifier(Protocol):
    def verify(self, proof: AttestationProof, data: Mapping[str, Any], request: Mapping[str, Any]) -> bool:
        ...


def proof_message(data: Mapping[str, Any], issued_at: datetime, nonce: str) -> bytes:
    """Bytes the executor signs: canonical JSON of data, issue time and request nonce."""
    return canonical_bytes({"data": data, "issuedAt": _iso(issued_at), "nonce": nonce})


@dataclass
class Ed25519ProofVerifier:
    """Verifies proofs signed by the executor's pinned Ed25519 attestation key."""

    attestation_key: Ed25519KeyPair

    def verify(self, proof: AttestationProof, data: Mapping[str, Any], request: Mapping[str, Any]) -> bool:
        message = proof_message(data, proof.issued_at, str(request.get("nonce", "")))
        return self.attestation_key.verify(message, proof.signature)


class StructuralProofVerifier:
    """Accepts any non-empty signature. Freshness is still enforced by the caller."""

    def __init__(self) -> None:
        logger.warning("No executor attestation key configured; proof signatures are checked for presence only")

    def verify(self, proof: AttestationProof, data: Mapping[str, Any], request: Mapping[str, Any]) -> bool:
        return len(proof.signature) > 0


def check_freshness(proof: AttestationProof, now: datetime) -> None:
    age = now - proof.issued_at
    if age > PROOF_MAX_AGE:
        raise _proof_error("attestation proof is stale", age_seconds=int(age.total_seconds()))
    if age < -PROOF_MAX_FUTURE_SKEW:
        raise _proof_error("attestation proof is issued in the future", skew_seconds=int(-age.total_seconds()))


def verify_response(
    response: Any,
    request: Mapping[str, Any],
    verifier: ProofVerifier,
    now: datetime,
) -> Tuple[Dict[str, Any], AttestationProof, float]:
    """Validate an executor response. Returns (data, proof, executionTime)."""
    if not isinstance(response, Mapping):
        raise _proof_error("executor response is not an object")

    missing = [k for k in ("data", "proof", "executionTime") if response.get(k) is None]
    if missing:
        raise _proof_error("executor response missing required fields", missing=missing)

    data = response["data"]
    raw_proof = response["proof"]
    execution_time = response["executionTime"]
    if not isinstance(data, Mapping):
        raise _proof_error("executor data is not an object")
    if not isinstance(raw_proof, Mapping):
        raise _proof_error("executor proof is not an object")
    if isinstance(execution_time, bool) or not isinstance(execution_time, (int, float)):
        raise _proof_error("executionTime is not a number")

    try:
        proof = AttestationProof.from_dict(raw_proof)
    except (KeyError, ValueError) as e:
        raise _proof_error(f"malformed attestation proof: {e}") from e
    if not proof.signature:
        raise _proof_error("attestation proof has an empty signature")

    check_freshness(proof, now)

    if not verifier.verify(proof, data, request):
        raise _proof_error("attestation proof signature did not verify")

    return dict(data), proof, float(execution_time)
