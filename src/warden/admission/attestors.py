"""Attestor registry: attestor name -> trusted public keys, keyed by key version.

Policies name attestors; the registry is consulted at decision time, so a key
added or removed here changes what later admission decisions trust.

YAML layout::

    attestors:
      vulnerability-attestor:
        note: projects/<p>/notes/vulnerability_note
        public_keys:
        - id: projects/<p>/locations/global/keyRings/binauthz-keys/cryptoKeys/lab-key/cryptoKeyVersions/1
          algorithm: rsa-sign-pkcs1-2048-sha256
          pem: |
            -----BEGIN PUBLIC KEY-----
            ...
"""
from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml

from ..attest.signer import KeyRef, Signer
from ..config import ATTESTORS_FILE
from ..crypto.sign import normalize_alg
from ..errors import PipelineConfigError


@dataclass(frozen=True)
class PublicKey:
    id: str
    algorithm: str
    pem: str


@dataclass
class AttestorSpec:
    name: str
    note: str = ""
    public_keys: Dict[str, PublicKey] = field(default_factory=dict)

    def key(self, key_id: str) -> Optional[PublicKey]:
        return self.public_keys.get(key_id)


class AttestorRegistry:
    def __init__(self, attestors: Optional[Dict[str, AttestorSpec]] = None, path: Optional[str] = None):
        self._attestors: Dict[str, AttestorSpec] = dict(attestors or {})
        self.path = path
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: Optional[str] = None) -> "AttestorRegistry":
        path = path or ATTESTORS_FILE
        if not os.path.exists(path):
            return cls(path=path)
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        attestors = {}
        for name, body in (data.get("attestors") or {}).items():
            body = body or {}
            keys = {}
            for k in body.get("public_keys") or []:
                try:
                    keys[k["id"]] = PublicKey(id=k["id"], algorithm=normalize_alg(k["algorithm"]), pem=k["pem"])
                except (KeyError, ValueError) as e:
                    raise PipelineConfigError(f"bad public key entry for attestor {name}: {e}") from e
            attestors[name] = AttestorSpec(name=name, note=body.get("note", ""), public_keys=keys)
        return cls(attestors, path=path)

    def save(self, path: Optional[str] = None) -> str:
        path = path or self.path or ATTESTORS_FILE
        with self._lock:
            doc = {"attestors": {
                a.name: {
                    "note": a.note,
                    "public_keys": [{"id": k.id, "algorithm": k.algorithm, "pem": k.pem} for k in a.public_keys.values()],
                }
                for a in self._attestors.values()
            }}
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(doc, f, sort_keys=True)
        return path

    def get(self, name: str) -> Optional[AttestorSpec]:
        with self._lock:
            return self._attestors.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._attestors)

    def create(self, name: str, note: str = "") -> AttestorSpec:
        with self._lock:
            spec = self._attestors.setdefault(name, AttestorSpec(name=name, note=note))
            return spec

    def add_public_key(self, name: str, key_id: str, algorithm: str, pem: str) -> PublicKey:
        pk = PublicKey(id=key_id, algorithm=normalize_alg(algorithm), pem=pem)
        with self._lock:
            spec = self._attestors.get(name)
            if spec is None:
                raise PipelineConfigError(f"unknown attestor {name!r}")
            spec.public_keys[key_id] = pk
        return pk

    def add_key_version(self, name: str, signer: Signer, key_ref: KeyRef) -> PublicKey:
        """Trust ``key_ref``'s public half for ``name`` (fetched from the signer)."""
        return self.add_public_key(name, key_ref.name, signer.algorithm(key_ref), signer.public_key_pem(key_ref))

    def remove_public_key(self, name: str, key_id: str) -> None:
        with self._lock:
            spec = self._attestors.get(name)
            if spec is not None:
                spec.public_keys.pop(key_id, None)
