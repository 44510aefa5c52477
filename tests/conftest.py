import base64
import threading
import time
from datetime import timedelta
from http.server import HTTPServer

import pytest

from metalayer_core.attestation import Ed25519ProofVerifier, proof_message
from metalayer_core.crypto import Ed25519KeyPair, _iso, _now_utc, create_key_pair
from metalayer_core.errors import RemoteServiceError, core_error, MLC_E_LEDGER_UNAVAILABLE, MLC_E_REMOTE_UNAVAILABLE
from metalayer_core.executor import TrustedExecutionDelegate
from metalayer_core.ledger import LedgerAnchor, LedgerClient, idempotency_key
from metalayer_core.pdp import PolicyDecisionEngine
from metalayer_core.pipeline import PipelineCoordinator
from metalayer_core.store import SQLiteRecordStore


class StaticEvaluator:
    """In-process policy evaluator returning a fixed decision (or raising)."""

    def __init__(self, decision=None, exc=None, delay=0.0):
        self.decision = decision
        self.exc = exc
        self.delay = delay
        self.calls = []

    def evaluate(self, evaluation_input):
        self.calls.append(evaluation_input)
        if self.delay:
            time.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.decision


class FakeExecutor:
    """In-process attested executor signing proofs with `key`."""

    def __init__(self, key: Ed25519KeyPair):
        self.key = key
        self.calls = []
        self.fail_types = set()
        self.proof_age = timedelta(0)
        self.drop_fields = set()
        self.status_error = None

    def execute(self, request):
        self.calls.append(request)
        action_type = request["action"]["type"]
        if action_type in self.fail_types:
            raise core_error(MLC_E_REMOTE_UNAVAILABLE, "executor down", cls=RemoteServiceError)
        data = {"action": action_type, "result": "ok"}
        issued_at = _now_utc() - self.proof_age
        sig = self.key.sign(proof_message(data, issued_at, request["nonce"]))
        response = {
            "data": data,
            "proof": {"signature": base64.b64encode(sig).decode("ascii"), "issuedAt": _iso(issued_at)},
            "executionTime": 12,
        }
        for f in self.drop_fields:
            response.pop(f, None)
        return response

    def status(self):
        if self.status_error is not None:
            raise self.status_error
        return {"status": "running", "uptime": 42, "version": "1.0"}


class MemoryLedger(LedgerClient):
    """In-memory append-only ledger with failure switches."""

    def __init__(self):
        self.entries = {}
        self.fail_submit = False
        self.fail_fetch = False
        self.fail_fingerprints = set()
        self.gate = None

    def submit(self, payload):
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail_submit or payload["fingerprint"] in self.fail_fingerprints:
            raise core_error(MLC_E_LEDGER_UNAVAILABLE, "ledger down", cls=RemoteServiceError)
        ref = "tx_" + idempotency_key(payload)[:16]
        self.entries[ref] = dict(payload)
        return ref

    def fetch(self, external_ref):
        if self.fail_fetch:
            raise core_error(MLC_E_LEDGER_UNAVAILABLE, "ledger down", cls=RemoteServiceError)
        return self.entries.get(external_ref)

    def status(self):
        return {"connected": True, "backend": "memory", "entries": len(self.entries)}


@pytest.fixture
def start_stub():
    """Start BaseHTTPRequestHandler stubs on ephemeral ports; returns the base URL."""
    servers = []

    def _start(handler_cls):
        httpd = HTTPServer(("127.0.0.1", 0), handler_cls)
        t = threading.Thread(target=httpd.serve_forever, daemon=True)
        t.start()
        servers.append((httpd, t))
        host, port = httpd.server_address
        return f"http://{host}:{port}"

    yield _start
    for httpd, t in servers:
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=2)


@pytest.fixture
def executor_key():
    return create_key_pair("executor")


@pytest.fixture
def request_key():
    return create_key_pair("metalayer-test")


@pytest.fixture
def fake_executor(executor_key):
    return FakeExecutor(executor_key)


@pytest.fixture
def delegate(fake_executor, executor_key, request_key):
    pinned = Ed25519KeyPair.from_public_key("executor", executor_key.public_key_hex)
    return TrustedExecutionDelegate(
        fake_executor,
        request_key,
        proof_verifier=Ed25519ProofVerifier(pinned),
        timeout_seconds=2.0,
    )


@pytest.fixture
def memory_ledger():
    return MemoryLedger()


@pytest.fixture
def store(tmp_path):
    return SQLiteRecordStore(str(tmp_path / "records.db"))


@pytest.fixture
def make_coordinator(delegate, store):
    def _make(*, evaluator=None, ledger=None, anchor_timeout=2.0, policy_timeout=2.0):
        return PipelineCoordinator(
            engine=PolicyDecisionEngine(evaluator, timeout_seconds=policy_timeout),
            delegate=delegate,
            anchor=LedgerAnchor(ledger, timeout_seconds=anchor_timeout),
            store=store,
        )

    return _make


@pytest.fixture
def static_evaluator():
    return StaticEvaluator
