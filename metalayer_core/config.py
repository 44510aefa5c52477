"""Environment configuration and component factories.

Env:
  METALAYER_POLICY_MODE: http|fallback (default fallback)
  METALAYER_POLICY_URL: required if METALAYER_POLICY_MODE=http
  METALAYER_POLICY_TIMEOUT_SECONDS: float (default 5)
  METALAYER_POLICY_INPUT_MODE: opa|raw (default opa)

  METALAYER_EXECUTOR_MODE: http|none (default none)
  METALAYER_EXECUTOR_URL: required if METALAYER_EXECUTOR_MODE=http
  METALAYER_EXECUTOR_TIMEOUT_SECONDS: float (default 30)
  METALAYER_EXECUTOR_PUBLIC_KEY: 64 hex chars, executor attestation key
  METALAYER_API_KEY / METALAYER_WORKER_ID / METALAYER_CLUSTER_ID: executor headers
  METALAYER_SIGNING_KEY: 64 hex chars (32-byte Ed25519 seed) for request signing

  METALAYER_LEDGER_MODE: http|file|none (default none)
  METALAYER_LEDGER_URL: required if METALAYER_LEDGER_MODE=http
  METALAYER_LEDGER_API_KEY: optional bearer token for the ledger
  METALAYER_LEDGER_PATH: JSONL path for file mode (default metalayer_anchors.jsonl)
  METALAYER_LEDGER_TIMEOUT_SECONDS: float (default 10)

  METALAYER_AUDIT_LOG_PATH: optional decision audit log (JSONL)
  METALAYER_DB_PATH: SQLite record store (default metalayer.db)

Misconfiguration raises RuntimeError at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .attestation import Ed25519ProofVerifier, StructuralProofVerifier
from .audit_log import TamperEvidentAuditLog
from .crypto import Ed25519KeyPair
from .executor import HttpExecutorClient, TrustedExecutionDelegate
from .ledger import FileLedgerClient, HttpLedgerClient, LedgerAnchor, LedgerClient, NullLedgerClient
from .pdp import HttpPolicyEvaluator, PolicyDecisionEngine
from .pipeline import PipelineCoordinator
from .signing import Signer, build_signer_from_env
from .store import SQLiteRecordStore

_POLICY_MODES = ("http", "fallback")
_EXECUTOR_MODES = ("http", "none")
_LEDGER_MODES = ("http", "file", "none")


def _get(env: Mapping[str, str], name: str, default: str = "") -> str:
    return (env.get(name) or default).strip()


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise RuntimeError(f"{name} must be positive, got {raw!r}")
    return value


def _get_mode(env: Mapping[str, str], name: str, default: str, allowed: tuple) -> str:
    mode = _get(env, name, default).lower() or default
    if mode not in allowed:
        raise RuntimeError(f"{name} must be one of {'|'.join(allowed)}, got {mode!r}")
    return mode


@dataclass(frozen=True)
class CoreConfig:
    policy_mode: str = "fallback"
    policy_url: str = ""
    policy_timeout_seconds: float = 5.0
    policy_input_mode: str = "opa"

    executor_mode: str = "none"
    executor_url: str = ""
    executor_timeout_seconds: float = 30.0
    executor_public_key: Optional[str] = None
    api_key: Optional[str] = None
    worker_id: Optional[str] = None
    cluster_id: Optional[str] = None

    ledger_mode: str = "none"
    ledger_url: str = ""
    ledger_api_key: Optional[str] = None
    ledger_path: str = "metalayer_anchors.jsonl"
    ledger_timeout_seconds: float = 10.0

    audit_log_path: Optional[str] = None
    db_path: str = "metalayer.db"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CoreConfig":
        env = os.environ if environ is None else environ

        cfg = cls(
            policy_mode=_get_mode(env, "METALAYER_POLICY_MODE", "fallback", _POLICY_MODES),
            policy_url=_get(env, "METALAYER_POLICY_URL"),
            policy_timeout_seconds=_get_float(env, "METALAYER_POLICY_TIMEOUT_SECONDS", 5.0),
            policy_input_mode=_get(env, "METALAYER_POLICY_INPUT_MODE", "opa").lower(),
            executor_mode=_get_mode(env, "METALAYER_EXECUTOR_MODE", "none", _EXECUTOR_MODES),
            executor_url=_get(env, "METALAYER_EXECUTOR_URL"),
            executor_timeout_seconds=_get_float(env, "METALAYER_EXECUTOR_TIMEOUT_SECONDS", 30.0),
            executor_public_key=_get(env, "METALAYER_EXECUTOR_PUBLIC_KEY") or None,
            api_key=_get(env, "METALAYER_API_KEY") or None,
            worker_id=_get(env, "METALAYER_WORKER_ID") or None,
            cluster_id=_get(env, "METALAYER_CLUSTER_ID") or None,
            ledger_mode=_get_mode(env, "METALAYER_LEDGER_MODE", "none", _LEDGER_MODES),
            ledger_url=_get(env, "METALAYER_LEDGER_URL"),
            ledger_api_key=_get(env, "METALAYER_LEDGER_API_KEY") or None,
            ledger_path=_get(env, "METALAYER_LEDGER_PATH", "metalayer_anchors.jsonl"),
            ledger_timeout_seconds=_get_float(env, "METALAYER_LEDGER_TIMEOUT_SECONDS", 10.0),
            audit_log_path=_get(env, "METALAYER_AUDIT_LOG_PATH") or None,
            db_path=_get(env, "METALAYER_DB_PATH", "metalayer.db"),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.policy_mode == "http" and not self.policy_url:
            raise RuntimeError("METALAYER_POLICY_URL is required when METALAYER_POLICY_MODE=http")
        if self.policy_input_mode not in ("opa", "raw"):
            raise RuntimeError(f"METALAYER_POLICY_INPUT_MODE must be opa|raw, got {self.policy_input_mode!r}")
        if self.executor_mode == "http" and not self.executor_url:
            raise RuntimeError("METALAYER_EXECUTOR_URL is required when METALAYER_EXECUTOR_MODE=http")
        if self.ledger_mode == "http" and not self.ledger_url:
            raise RuntimeError("METALAYER_LEDGER_URL is required when METALAYER_LEDGER_MODE=http")
        if self.executor_public_key is not None:
            try:
                ok = len(bytes.fromhex(self.executor_public_key)) == 32
            except ValueError:
                ok = False
            if not ok:
                raise RuntimeError("METALAYER_EXECUTOR_PUBLIC_KEY must be 64 hex chars")


def build_policy_engine_from_env(config: Optional[CoreConfig] = None, *, signer: Optional[Any] = None) -> PolicyDecisionEngine:
    cfg = config or CoreConfig.from_env()
    evaluator = None
    if cfg.policy_mode == "http":
        evaluator = HttpPolicyEvaluator(
            url=cfg.policy_url,
            timeout_seconds=cfg.policy_timeout_seconds,
            input_mode=cfg.policy_input_mode,
        )
    audit_log = None
    if cfg.audit_log_path:
        audit_log = TamperEvidentAuditLog(cfg.audit_log_path, signer or build_signer_from_env())
    return PolicyDecisionEngine(evaluator, timeout_seconds=cfg.policy_timeout_seconds, audit_log=audit_log)


def build_delegate_from_env(config: Optional[CoreConfig] = None, *, signer: Optional[Any] = None) -> TrustedExecutionDelegate:
    cfg = config or CoreConfig.from_env()
    client = None
    if cfg.executor_mode == "http":
        client = HttpExecutorClient(
            base_url=cfg.executor_url,
            api_key=cfg.api_key,
            worker_id=cfg.worker_id,
            cluster_id=cfg.cluster_id,
            timeout_seconds=cfg.executor_timeout_seconds,
        )
    verifier = None
    if client is not None:
        if cfg.executor_public_key:
            verifier = Ed25519ProofVerifier(Ed25519KeyPair.from_public_key("executor", cfg.executor_public_key))
        else:
            verifier = StructuralProofVerifier()
    return TrustedExecutionDelegate(
        client,
        signer or build_signer_from_env(),
        proof_verifier=verifier,
        timeout_seconds=cfg.executor_timeout_seconds,
    )


def build_ledger_anchor_from_env(config: Optional[CoreConfig] = None) -> LedgerAnchor:
    cfg = config or CoreConfig.from_env()
    client: LedgerClient
    if cfg.ledger_mode == "http":
        client = HttpLedgerClient(cfg.ledger_url, api_key=cfg.ledger_api_key, timeout_s=cfg.ledger_timeout_seconds)
    elif cfg.ledger_mode == "file":
        client = FileLedgerClient(cfg.ledger_path)
    else:
        client = NullLedgerClient()
    return LedgerAnchor(client, timeout_seconds=cfg.ledger_timeout_seconds)


def build_store_from_env(config: Optional[CoreConfig] = None) -> SQLiteRecordStore:
    cfg = config or CoreConfig.from_env()
    return SQLiteRecordStore(cfg.db_path)


def build_coordinator_from_env(config: Optional[CoreConfig] = None) -> PipelineCoordinator:
    """Construct every collaborator once and wire them into a coordinator."""
    cfg = config or CoreConfig.from_env()
    signer: Signer = build_signer_from_env()
    return PipelineCoordinator(
        engine=build_policy_engine_from_env(cfg, signer=signer),
        delegate=build_delegate_from_env(cfg, signer=signer),
        anchor=build_ledger_anchor_from_env(cfg),
        store=build_store_from_env(cfg),
    )
