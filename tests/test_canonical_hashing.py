import dataclasses
from datetime import datetime, timezone

import pytest

from metalayer_core.crypto import canonical_json_dumps
from metalayer_core.errors import (
    InputError,
    MLC_E_CANON_DEPTH,
    MLC_E_CANON_KEY_COLLISION,
    MLC_E_CANON_NON_JSON,
    MLC_E_CANON_NONFINITE,
)
from metalayer_core.hashing import fingerprint, fingerprint_fields
from metalayer_core.models import Actor, DecisionSource, InteractionRecord, PolicyDecision


def _record(**overrides):
    fields = dict(
        actor=Actor(id="u1", verification_state="verified"),
        action_type="send_message",
        community_ref="c1",
        decision=PolicyDecision(allowed=True, reason="basic policy check passed", source=DecisionSource.FALLBACK),
        execution=None,
        evaluation_input={"action": {"type": "send_message", "payload": {"content": "hello"}}},
        recorded_at=datetime(2026, 1, 13, 12, 0, 0, tzinfo=timezone.utc),
        record_id="rec_fixed",
    )
    fields.update(overrides)
    return InteractionRecord.create(**fields)


def test_fingerprint_is_independent_of_key_order():
    a = {"actor": "u1", "decision": {"allowed": True, "reason": "ok"}, "n": [1, 2]}
    b = {"n": [1, 2], "decision": {"reason": "ok", "allowed": True}, "actor": "u1"}
    assert fingerprint_fields(a) == fingerprint_fields(b)


def test_record_fingerprint_is_sha256_hex_and_stable():
    rec = _record()
    assert len(rec.fingerprint) == 64
    int(rec.fingerprint, 16)
    assert fingerprint(rec) == rec.fingerprint
    assert _record().fingerprint == rec.fingerprint


@pytest.mark.parametrize(
    "field,value",
    [
        ("action_type", "join_community"),
        ("community_ref", "c2"),
        ("actor", Actor(id="u1", verification_state="unverified")),
        ("decision", PolicyDecision(allowed=False, reason="blocked", source=DecisionSource.FALLBACK)),
        ("recorded_at", datetime(2026, 1, 13, 12, 0, 1, tzinfo=timezone.utc)),
        ("evaluation_input", {"action": {"type": "send_message", "payload": {"content": "hellO"}}}),
    ],
)
def test_changing_any_immutable_field_changes_fingerprint(field, value):
    rec = _record()
    mutated = dataclasses.replace(rec, **{field: value})
    assert fingerprint(mutated) != rec.fingerprint


def test_fingerprint_field_is_not_part_of_its_own_projection():
    rec = _record()
    forged = dataclasses.replace(rec, fingerprint="0" * 64)
    assert fingerprint(forged) == rec.fingerprint
    assert fingerprint(rec.to_dict()) == rec.fingerprint


def test_fingerprint_survives_serialization_round_trip():
    rec = _record()
    restored = InteractionRecord.from_dict(rec.to_dict())
    assert restored.fingerprint == rec.fingerprint
    assert fingerprint(restored) == rec.fingerprint


def test_canonical_json_is_compact_sorted_and_nfc():
    assert canonical_json_dumps({"b": 1, "a": {"d": "e\u0301", "c": None}}) == '{"a":{"c":null,"d":"\u00e9"},"b":1}'


def test_canonical_json_sorts_sets():
    assert canonical_json_dumps({"s": {"b", "a", "c"}}) == '{"s":["a","b","c"]}'


def test_canonical_json_rejects_non_finite_floats():
    with pytest.raises(InputError) as ei:
        canonical_json_dumps({"x": float("nan")})
    assert ei.value.code == MLC_E_CANON_NONFINITE


def test_canonical_json_rejects_non_json_types():
    with pytest.raises(InputError) as ei:
        canonical_json_dumps({"x": object()})
    assert ei.value.code == MLC_E_CANON_NON_JSON


def test_canonical_json_rejects_excessive_nesting():
    x = "leaf"
    for _ in range(80):
        x = [x]
    with pytest.raises(InputError) as ei:
        canonical_json_dumps(x)
    assert ei.value.code == MLC_E_CANON_DEPTH


def test_canonical_json_rejects_key_collision_after_normalization():
    with pytest.raises(InputError) as ei:
        canonical_json_dumps({"\u00e9": 1, "e\u0301": 2})
    assert ei.value.code == MLC_E_CANON_KEY_COLLISION
