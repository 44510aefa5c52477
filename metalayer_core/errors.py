"""Stable error taxonomy for the Metalayer core.

Every error raised out of the core carries a machine-readable `code`, an
optional `retryable` flag and structured `details`, so callers can branch on
the code instead of parsing messages.

Only three conditions ever reach a caller:

- `InputError`: the request (or a ruleset document) is malformed; no record exists.
- `PreconditionError`: an entry point was used outside its contract; no network
  call was made.
- `ExecutionError`: a critical action could not be executed or its attestation
  proof did not verify. The policy decision is still recorded.

Remote evaluator and ledger failures are absorbed by fallbacks and never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Canonicalization / hashing
MLC_E_CANON_NON_JSON = "MLC_E_CANON_NON_JSON"
MLC_E_CANON_DEPTH = "MLC_E_CANON_DEPTH"
MLC_E_CANON_NONFINITE = "MLC_E_CANON_NONFINITE"
MLC_E_CANON_KEY_TYPE = "MLC_E_CANON_KEY_TYPE"
MLC_E_CANON_KEY_COLLISION = "MLC_E_CANON_KEY_COLLISION"

# Input / contract
MLC_E_INPUT_INVALID = "MLC_E_INPUT_INVALID"
MLC_E_RULESET_INVALID = "MLC_E_RULESET_INVALID"
MLC_E_NOT_SENSITIVE = "MLC_E_NOT_SENSITIVE"

# Remote services (converted to fallbacks internally)
MLC_E_REMOTE_UNAVAILABLE = "MLC_E_REMOTE_UNAVAILABLE"
MLC_E_REMOTE_TIMEOUT = "MLC_E_REMOTE_TIMEOUT"
MLC_E_REMOTE_MALFORMED = "MLC_E_REMOTE_MALFORMED"

# Execution
MLC_E_EXECUTION_FAILED = "MLC_E_EXECUTION_FAILED"
MLC_E_PROOF_INVALID = "MLC_E_PROOF_INVALID"

# Ledger
MLC_E_LEDGER_UNAVAILABLE = "MLC_E_LEDGER_UNAVAILABLE"
MLC_E_LEDGER_REJECTED = "MLC_E_LEDGER_REJECTED"
MLC_E_LEDGER_NOT_FOUND = "MLC_E_LEDGER_NOT_FOUND"


@dataclass
class MetalayerError(Exception):
    """Base exception with a stable error code."""

    code: str
    message: str
    retryable: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class InputError(MetalayerError):
    """Malformed request or document, rejected before any record exists."""


class PreconditionError(MetalayerError):
    """Entry point called outside its contract; raised before any network call."""


class ExecutionError(MetalayerError):
    """A critical action failed to execute or its proof failed verification.

    When raised by the pipeline, `outcome` holds the recorded (failed) outcome so
    callers can still inspect the persisted record and receipt.
    """

    outcome: Any = None


class RemoteServiceError(MetalayerError):
    """Remote call failed (network, timeout, non-2xx or malformed body)."""


def core_error(
    code: str,
    message: str,
    *,
    cls: type = MetalayerError,
    retryable: bool = False,
    **details: Any,
) -> MetalayerError:
    return cls(code=code, message=message, retryable=retryable, details=details)
