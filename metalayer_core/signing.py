"""
metalayer_core.signing: signing abstraction for outbound requests and audit entries.

Backends implement the small `Signer` protocol. The in-process
`FileEd25519Signer` wraps an `Ed25519KeyPair`; anything else exposing the same
attributes (an HSM or KMS client, for example) can be passed in directly.

All users of a signer are fail-closed: a signing error prevents the request or
audit entry from being issued.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from .crypto import Ed25519KeyPair, create_key_pair, load_signing_key_from_env

logger = logging.getLogger("metalayer_core.signing")


@runtime_checkable
class Signer(Protocol):
    """Protocol implemented by signing backends."""
    key_id: str
    public_key_bytes: bytes

    @property
    def public_key_hex(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...


@dataclass
class FileEd25519Signer:
    """Signer that wraps an Ed25519KeyPair (in-process signing)."""
    keypair: Ed25519KeyPair

    @property
    def key_id(self) -> str:
        return self.keypair.key_id

    @property
    def public_key_bytes(self) -> bytes:
        return self.keypair.public_key_bytes

    @property
    def public_key_hex(self) -> str:
        return self.keypair.public_key_hex

    def sign(self, message: bytes) -> bytes:
        return self.keypair.sign(message)


def coerce_signer(obj: Any) -> Signer:
    """Coerce a supported object into a Signer."""
    if obj is None:
        raise TypeError("signer is None")
    if isinstance(obj, Ed25519KeyPair):
        return FileEd25519Signer(obj)
    if isinstance(obj, Signer):
        return obj
    raise TypeError(f"Unsupported signer type: {type(obj)}")


def build_signer_from_env(
    *,
    env_var: str = "METALAYER_SIGNING_KEY",
    key_id: str = "metalayer",
    signer: Optional[Any] = None,
) -> Signer:
    """Build the request signer.

    An explicitly passed signer wins. Otherwise the seed in `env_var` is used;
    if that is unset, an ephemeral key is generated and a warning is logged
    (requests stay signed, but the executor cannot pin the key across restarts).
    """
    if signer is not None:
        return coerce_signer(signer)
    keypair = load_signing_key_from_env(env_var=env_var, key_id=key_id)
    if keypair is None:
        logger.warning("%s not set; using an ephemeral request signing key", env_var)
        keypair = create_key_pair(key_id)
    return FileEd25519Signer(keypair)
