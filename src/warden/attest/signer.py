from __future__ import annotations

import base64
import re
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

import httpx

from ..config import HTTP_TIMEOUT_SEC
from ..crypto.sign import normalize_alg
from ..errors import KeyNotFound, SigningError, SigningUnavailable

_KEY_RE = re.compile(
    r"^projects/(?P<project>[^/]+)/locations/(?P<location>[^/]+)/keyRings/(?P<keyring>[^/]+)"
    r"/cryptoKeys/(?P<key>[^/]+)/cryptoKeyVersions/(?P<version>[0-9]+)$"
)


@dataclass(frozen=True)
class KeyRef:
    """Reference to one version of an asymmetric signing key. Never holds key bytes."""

    project: str
    location: str
    keyring: str
    key: str
    version: int = 1

    @classmethod
    def parse(cls, name: str) -> "KeyRef":
        m = _KEY_RE.match(name.strip())
        if not m:
            raise SigningError(f"malformed key version name: {name!r}", reason="InvalidKeyRef")
        return cls(m["project"], m["location"], m["keyring"], m["key"], int(m["version"]))

    @property
    def key_name(self) -> str:
        return f"projects/{self.project}/locations/{self.location}/keyRings/{self.keyring}/cryptoKeys/{self.key}"

    @property
    def name(self) -> str:
        return f"{self.key_name}/cryptoKeyVersions/{self.version}"

    def __str__(self) -> str:
        return self.name


@runtime_checkable
class Signer(Protocol):
    def sign(self, digest: bytes, key_ref: KeyRef) -> bytes: ...
    def public_key_pem(self, key_ref: KeyRef) -> str: ...
    def algorithm(self, key_ref: KeyRef) -> str: ...


class KmsSigner:
    """Signs through a Cloud-KMS-compatible REST endpoint; private keys never leave it.

    POST {base}/v1/{version}:asymmetricSign {"digest": {"sha256": b64}} -> {"signature": b64}
    GET  {base}/v1/{version}/publicKey                                 -> {"pem": ..., "algorithm": ...}
    """

    def __init__(self, base_url: str, *, token: Optional[str] = None, timeout: float = HTTP_TIMEOUT_SEC,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._timeout = timeout
        self._transport = transport

    def _call(self, method: str, path: str, **kwargs) -> dict:
        try:
            with httpx.Client(timeout=self._timeout, headers=self._headers, transport=self._transport) as client:
                r = client.request(method, f"{self.base_url}/v1/{path}", **kwargs)
        except httpx.TransportError as e:
            raise SigningUnavailable(f"KMS unreachable: {e}") from e
        if r.status_code >= 500 or r.status_code == 429:
            raise SigningUnavailable(f"KMS returned {r.status_code}")
        if r.status_code == 404:
            raise KeyNotFound(f"KMS key not found: {path}")
        if r.status_code >= 400:
            raise SigningError(f"KMS rejected request ({r.status_code}): {r.text[:200]}")
        try:
            return r.json()
        except ValueError as e:
            raise SigningError("KMS returned a non-JSON body") from e

    def sign(self, digest: bytes, key_ref: KeyRef) -> bytes:
        body = self._call("POST", f"{key_ref.name}:asymmetricSign",
                          json={"digest": {"sha256": base64.b64encode(digest).decode()}})
        sig = body.get("signature")
        if not sig:
            raise SigningError("KMS response carried no signature")
        return base64.b64decode(sig)

    def public_key_pem(self, key_ref: KeyRef) -> str:
        return self._call("GET", f"{key_ref.name}/publicKey")["pem"]

    def algorithm(self, key_ref: KeyRef) -> str:
        return normalize_alg(self._call("GET", f"{key_ref.name}/publicKey")["algorithm"])
