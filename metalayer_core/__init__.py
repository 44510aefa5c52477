"""Metalayer core package.

Gates every community action behind a policy decision, optionally runs
sensitive actions in a remote attested executor, and leaves exactly one
fingerprinted, ledger-anchored record per action:

- PolicyDecisionEngine (remote evaluator with local fallback)
- TrustedExecutionDelegate (signed requests, attestation proof checks)
- LedgerAnchor (anchor / verify against an append-only ledger)
- PipelineCoordinator (ties the above together over a RecordStore)

Convenience imports
------------------
Top-level names are loaded lazily:

    from metalayer_core import PipelineCoordinator, ActionRequest, Actor
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except Exception:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "Actor": ("metalayer_core.models", "Actor"),
    "Community": ("metalayer_core.models", "Community"),
    "ActionRequest": ("metalayer_core.models", "ActionRequest"),
    "PolicyDecision": ("metalayer_core.models", "PolicyDecision"),
    "ExecutionResult": ("metalayer_core.models", "ExecutionResult"),
    "InteractionRecord": ("metalayer_core.models", "InteractionRecord"),
    "LedgerAnchorReceipt": ("metalayer_core.models", "LedgerAnchorReceipt"),
    "fingerprint": ("metalayer_core.hashing", "fingerprint"),
    "PolicyDecisionEngine": ("metalayer_core.pdp", "PolicyDecisionEngine"),
    "TrustedExecutionDelegate": ("metalayer_core.executor", "TrustedExecutionDelegate"),
    "LedgerAnchor": ("metalayer_core.ledger", "LedgerAnchor"),
    "PipelineCoordinator": ("metalayer_core.pipeline", "PipelineCoordinator"),
    "SQLiteRecordStore": ("metalayer_core.store", "SQLiteRecordStore"),
    "CoreConfig": ("metalayer_core.config", "CoreConfig"),
    "build_coordinator_from_env": ("metalayer_core.config", "build_coordinator_from_env"),
    "MetalayerError": ("metalayer_core.errors", "MetalayerError"),
    "InputError": ("metalayer_core.errors", "InputError"),
    "PreconditionError": ("metalayer_core.errors", "PreconditionError"),
    "ExecutionError": ("metalayer_core.errors", "ExecutionError"),
}

__all__ = ["__version__", *_LAZY_EXPORTS]


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'metalayer_core' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
