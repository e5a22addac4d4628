"""File-backed KMS-equivalent keyring (DEV/local).

Layout under ``root`` mirrors the key resource name:

    <root>/projects/<p>/locations/<l>/keyRings/<r>/cryptoKeys/<k>/
        key.json          {"algorithm": ..., "versions": {"1": "ENABLED", ...}}
        1.pem, 2.pem ...  PKCS#8 private keys

Callers only ever see ``KeyRef`` values and signatures; destroyed versions
lose their private key file.
"""
from __future__ import annotations

import json
import os
import threading
from typing import Dict, List

from .signer import KeyRef
from ..config import KEYRING_DIR
from ..crypto.sign import RSA_2048, generate_private_key, normalize_alg, private_pem, public_pem, sign_digest
from ..errors import KeyNotFound, SigningError
from ..utils.logging import get_logger

log = get_logger()

ENABLED = "ENABLED"
DISABLED = "DISABLED"
DESTROYED = "DESTROYED"


class LocalKeyring:
    def __init__(self, root: str | None = None):
        self.root = root or os.getenv("WARDEN_KEYRING_DIR", KEYRING_DIR)
        self._lock = threading.Lock()

    def _key_dir(self, key_ref: KeyRef) -> str:
        return os.path.join(self.root, *key_ref.key_name.split("/"))

    def _meta_path(self, key_ref: KeyRef) -> str:
        return os.path.join(self._key_dir(key_ref), "key.json")

    def _read_meta(self, key_ref: KeyRef) -> Dict:
        path = self._meta_path(key_ref)
        if not os.path.exists(path):
            raise KeyNotFound(f"no such key: {key_ref.key_name}")
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_meta(self, key_ref: KeyRef, meta: Dict) -> None:
        path = self._meta_path(key_ref)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2)
        os.replace(tmp, path)

    def _add_version(self, key_ref: KeyRef, meta: Dict) -> KeyRef:
        version = max((int(v) for v in meta["versions"]), default=0) + 1
        ref = KeyRef(key_ref.project, key_ref.location, key_ref.keyring, key_ref.key, version)
        sk = generate_private_key(meta["algorithm"])
        pem_path = os.path.join(self._key_dir(ref), f"{version}.pem")
        with open(pem_path, "wb") as f:
            f.write(private_pem(sk))
        os.chmod(pem_path, 0o600)
        meta["versions"][str(version)] = ENABLED
        self._write_meta(ref, meta)
        log.info(f"key version created {ref.name} alg={meta['algorithm']}")
        return ref

    def create_key(self, key_ref: KeyRef, algorithm: str = RSA_2048) -> KeyRef:
        """Create a key with its first version; ``key_ref.version`` is ignored."""
        with self._lock:
            if os.path.exists(self._meta_path(key_ref)):
                raise SigningError(f"key already exists: {key_ref.key_name}", reason="KeyExists")
            os.makedirs(self._key_dir(key_ref), exist_ok=True)
            meta = {"algorithm": normalize_alg(algorithm), "versions": {}}
            return self._add_version(key_ref, meta)

    def add_version(self, key_ref: KeyRef) -> KeyRef:
        with self._lock:
            return self._add_version(key_ref, self._read_meta(key_ref))

    def _set_state(self, key_ref: KeyRef, state: str) -> None:
        with self._lock:
            meta = self._read_meta(key_ref)
            if str(key_ref.version) not in meta["versions"]:
                raise KeyNotFound(f"no such key version: {key_ref.name}")
            meta["versions"][str(key_ref.version)] = state
            if state == DESTROYED:
                pem_path = os.path.join(self._key_dir(key_ref), f"{key_ref.version}.pem")
                if os.path.exists(pem_path):
                    os.remove(pem_path)
            self._write_meta(key_ref, meta)
        log.info(f"key version {key_ref.name} -> {state}")

    def disable(self, key_ref: KeyRef) -> None:
        self._set_state(key_ref, DISABLED)

    def enable(self, key_ref: KeyRef) -> None:
        self._set_state(key_ref, ENABLED)

    def destroy(self, key_ref: KeyRef) -> None:
        self._set_state(key_ref, DESTROYED)

    def versions(self, key_ref: KeyRef) -> List[tuple[KeyRef, str]]:
        meta = self._read_meta(key_ref)
        out = []
        for v, state in sorted(meta["versions"].items(), key=lambda kv: int(kv[0])):
            out.append((KeyRef(key_ref.project, key_ref.location, key_ref.keyring, key_ref.key, int(v)), state))
        return out

    def _enabled_pem(self, key_ref: KeyRef) -> bytes:
        meta = self._read_meta(key_ref)
        state = meta["versions"].get(str(key_ref.version))
        if state is None:
            raise KeyNotFound(f"no such key version: {key_ref.name}")
        if state != ENABLED:
            raise SigningError(f"key version {key_ref.name} is {state}", reason="KeyRevoked")
        with open(os.path.join(self._key_dir(key_ref), f"{key_ref.version}.pem"), "rb") as f:
            return f.read()

    # Signer protocol

    def algorithm(self, key_ref: KeyRef) -> str:
        return self._read_meta(key_ref)["algorithm"]

    def sign(self, digest: bytes, key_ref: KeyRef) -> bytes:
        pem = self._enabled_pem(key_ref)
        return sign_digest(self.algorithm(key_ref), pem, digest)

    def public_key_pem(self, key_ref: KeyRef) -> str:
        from cryptography.hazmat.primitives import serialization

        sk = serialization.load_pem_private_key(self._enabled_pem(key_ref), password=None)
        return public_pem(sk)
