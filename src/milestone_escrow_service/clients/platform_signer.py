"""Ed25519 JWS signing of requests sent to the settlement ledger."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    load_pem_private_key,
)
from joserfc import jws
from joserfc.jwk import OKPKey

_ALGORITHM = "EdDSA"


def ensure_private_key(private_key_path: str) -> None:
    """Write a new PKCS#8 Ed25519 key to private_key_path unless one is already there."""
    key_file = Path(private_key_path)
    if key_file.exists():
        return
    key_file.parent.mkdir(parents=True, exist_ok=True)
    pem = Ed25519PrivateKey.generate().private_bytes(
        Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
    )
    key_file.write_bytes(pem)


class PlatformSigner:
    """
    Signs ledger payloads as the escrow platform.

    The ledger accepts work records, reviewer registrations, vote mirrors and
    fund releases only when they carry a compact JWS from the platform agent;
    the protected header's ``kid`` names that agent.
    """

    def __init__(self, platform_agent_id: str, private_key_path: str) -> None:
        self._agent_id = platform_agent_id

        pem_data = Path(private_key_path).read_bytes()
        if not isinstance(load_pem_private_key(pem_data, password=None), Ed25519PrivateKey):
            msg = "Platform private key must be an Ed25519 private key"
            raise ValueError(msg)
        self._key = OKPKey.import_key(pem_data)

    @property
    def agent_id(self) -> str:
        return self._agent_id

    def sign(self, payload: dict[str, Any]) -> str:
        """Return ``header.payload.signature`` for payload, serialized with sorted keys."""
        protected = {"alg": _ALGORITHM, "kid": self._agent_id}
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        return jws.serialize_compact(protected, body, self._key, algorithms=[_ALGORITHM])
