"""Community rulesets.

A ruleset is a typed document with a fixed set of fields the core reasons
about, plus one open-ended `extra` map inside `restrictions` for fields it does
not (kept so that newer rulesets round-trip unchanged).

Rulesets arrive from the community store as loosely-typed JSON, with camelCase
keys on the wire. `Ruleset.model_validate` accepts both camelCase and the
snake_case field names; `to_wire()` emits camelCase.

Merging
-------
A community's custom document is layered over the default template for the
community kind:

  - top-level fields: community value wins when present
  - `restrictions`: merged key-wise, community wins per key
  - `restrictions.extra`: merged key-wise as well
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import InputError, core_error, MLC_E_RULESET_INVALID
from .models import thaw


class ModerationLevel(str, Enum):
    LIGHT = "light"
    STRICT = "strict"


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Restrictions(_WireModel):
    rate_limit: Optional[int] = Field(default=None, ge=0)
    forbidden_content: FrozenSet[str] = frozenset()
    requires_verified_identity: bool = False
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("forbidden_content", mode="before")
    @classmethod
    def _lowercase_words(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = [v]
        return frozenset(str(w).lower() for w in v)


class Ruleset(_WireModel):
    allow_anonymous: bool = True
    moderation_level: ModerationLevel = ModerationLevel.LIGHT
    max_payload_length: int = Field(default=500, ge=0)
    allowed_action_types: FrozenSet[str] = frozenset()
    restrictions: Restrictions = Field(default_factory=Restrictions)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-safe camelCase form, with sets sorted."""
        d = self.model_dump(by_alias=True, mode="json")
        d["allowedActionTypes"] = sorted(self.allowed_action_types)
        d["restrictions"]["forbiddenContent"] = sorted(self.restrictions.forbidden_content)
        return d


# Original community documents used a few different spellings; map them onto
# the typed field names before validation.
_LEGACY_KEYS = {
    "moderation": "moderationLevel",
    "maxMessageLength": "maxPayloadLength",
    "allowedActions": "allowedActionTypes",
}
_LEGACY_RESTRICTION_KEYS = {
    "poh_required": "requiresVerifiedIdentity",
    "pohRequired": "requiresVerifiedIdentity",
}
_RULESET_KEYS = {to_camel(name) for name in Ruleset.model_fields}
_RESTRICTION_KEYS = {to_camel(name) for name in Restrictions.model_fields} - {"extra"}


def _wire_key(k: str, known: set) -> str:
    camel = to_camel(k) if "_" in k else k
    return camel if camel in known else k


def _normalize_restrictions(doc: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    extra: Dict[str, Any] = dict(doc.get("extra") or {})
    for k, v in doc.items():
        if k == "extra":
            continue
        k = _wire_key(_LEGACY_RESTRICTION_KEYS.get(k, k), _RESTRICTION_KEYS)
        if k == "spam" and isinstance(v, Mapping) and "maxMessagesPerMinute" in v:
            out["rateLimit"] = v["maxMessagesPerMinute"]
        elif k == "content" and isinstance(v, Mapping) and "forbiddenWords" in v:
            out["forbiddenContent"] = v["forbiddenWords"]
        elif k in _RESTRICTION_KEYS:
            out[k] = v
        else:
            extra[k] = v
    if extra:
        out["extra"] = extra
    return out


def normalize_document(doc: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Rename legacy and snake_case keys; fold unknown restriction keys into `extra`."""
    if not doc:
        return {}
    doc = thaw(doc)
    out: Dict[str, Any] = {}
    # Restriction fields written at the top level, e.g. {"requiresVerifiedIdentity": true}.
    hoisted: Dict[str, Any] = {}
    for k, v in doc.items():
        k = _wire_key(_LEGACY_KEYS.get(k, k), _RULESET_KEYS)
        if k == "restrictions" and isinstance(v, Mapping):
            v = _normalize_restrictions(v)
        elif k not in _RULESET_KEYS:
            rk = _wire_key(_LEGACY_RESTRICTION_KEYS.get(k, k), _RESTRICTION_KEYS)
            if rk in _RESTRICTION_KEYS:
                hoisted[rk] = v
                continue
        out[k] = v
    if hoisted:
        out["restrictions"] = {**hoisted, **(out.get("restrictions") or {})}
    return out


_GENERIC_TEMPLATE: Dict[str, Any] = {
    "allowAnonymous": True,
    "moderationLevel": "light",
    "maxPayloadLength": 500,
    "allowedActionTypes": ["send_message", "join_community", "view_messages"],
    "restrictions": {
        "rateLimit": 5,
        "forbiddenContent": [],
        "requiresVerifiedIdentity": False,
    },
}

DEFAULT_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "public_square": _GENERIC_TEMPLATE,
    "governance_circle": {
        "allowAnonymous": False,
        "moderationLevel": "strict",
        "maxPayloadLength": 1000,
        "allowedActionTypes": ["send_message", "join_community", "view_messages", "vote"],
        "restrictions": {
            "rateLimit": 3,
            "forbiddenContent": ["spam", "offensive"],
            "requiresVerifiedIdentity": True,
        },
    },
}


def default_template(kind: Optional[str]) -> Dict[str, Any]:
    """Return a copy of the template document for a community kind."""
    tpl = DEFAULT_TEMPLATES.get(kind or "", _GENERIC_TEMPLATE)
    out = dict(tpl)
    out["restrictions"] = dict(tpl["restrictions"])
    return out


def _merge_documents(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base, **override}
    base_r = dict(base.get("restrictions") or {})
    over_r = dict(override.get("restrictions") or {})
    restrictions = {**base_r, **over_r}
    if base_r.get("extra") or over_r.get("extra"):
        restrictions["extra"] = {**(base_r.get("extra") or {}), **(over_r.get("extra") or {})}
    merged["restrictions"] = restrictions
    return merged


def merge_ruleset(custom: Optional[Mapping[str, Any]], kind: Optional[str] = None) -> Ruleset:
    """Layer a community's custom document over its kind's template.

    Raises InputError if the merged document does not validate.
    """
    base = normalize_document(default_template(kind))
    override = normalize_document(custom)
    return _build(_merge_documents(base, override))


def _build(doc: Mapping[str, Any]) -> Ruleset:
    try:
        return Ruleset.model_validate(doc)
    except ValidationError as e:
        raise core_error(
            MLC_E_RULESET_INVALID,
            "ruleset document failed validation",
            cls=InputError,
            errors=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
        ) from e


_REQUIRED_FIELDS = (
    ("allowAnonymous", ("allowAnonymous", "allow_anonymous")),
    ("moderation", ("moderation", "moderationLevel", "moderation_level")),
    ("maxMessageLength", ("maxMessageLength", "maxPayloadLength", "max_payload_length")),
)


def validate_ruleset(doc: Mapping[str, Any]) -> Ruleset:
    """Validate a standalone ruleset document (community policy creation).

    The document must name the three core fields explicitly; anything else
    defaults from the generic template.
    """
    if not isinstance(doc, Mapping):
        raise core_error(MLC_E_RULESET_INVALID, "ruleset must be an object", cls=InputError)
    missing = [name for name, spellings in _REQUIRED_FIELDS if not any(s in doc for s in spellings)]
    if missing:
        raise core_error(
            MLC_E_RULESET_INVALID,
            f"Missing required policy fields: {', '.join(missing)}",
            cls=InputError,
            missing=missing,
        )
    return _build(_merge_documents(normalize_document(_GENERIC_TEMPLATE), normalize_document(doc)))
