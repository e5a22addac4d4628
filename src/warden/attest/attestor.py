from __future__ import annotations

import base64
import hashlib
import time
from typing import Callable, TypeVar

from .model import Attestation, build_payload
from .signer import KeyRef, Signer
from .store import AttestationStore
from ..artifacts.model import Artifact
from ..config import BACKOFF_BASE_SEC, SIGN_MAX_ATTEMPTS
from ..crypto.jcs import jcs_canonicalize
from ..errors import SigningError, SigningUnavailable
from ..obs.prom import ATTESTATIONS
from ..utils.logging import get_logger

log = get_logger()

T = TypeVar("T")


class Attestor:
    """Signs gate-passed artifacts on behalf of one attestor identity.

    The attestor does not know about gate results; callers only invoke it after
    an Allow. One stored attestation per (digest, identity): a second call
    returns the record already in the store instead of signing again.
    """

    def __init__(
        self,
        identity: str,
        signer: Signer,
        store: AttestationStore,
        *,
        max_attempts: int = SIGN_MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE_SEC,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.identity = identity
        self.signer = signer
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._sleep = sleep

    def _with_retry(self, call: Callable[[], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return call()
            except SigningUnavailable as e:
                if attempt == self.max_attempts:
                    raise SigningError(f"signing backend unavailable after {attempt} attempts: {e}") from e
                delay = self.backoff_base * (2 ** (attempt - 1))
                log.warning(f"sign attempt {attempt}/{self.max_attempts} failed ({e}); retrying in {delay:.2f}s")
                self._sleep(delay)
        raise SigningError("unreachable")  # pragma: no cover

    def attest(self, artifact: Artifact, key_ref: KeyRef) -> Attestation:
        existing = self.store.get(artifact.digest, self.identity)
        if existing is not None:
            if existing.key_version != key_ref.name:
                log.info(f"attestation for {artifact.digest} by {self.identity} already exists "
                         f"under {existing.key_version}; keeping it")
            ATTESTATIONS.labels(attestor=self.identity, result="existing").inc()
            return existing
        payload = build_payload(artifact.repository, artifact.digest, self.identity)
        payload_bytes = jcs_canonicalize(payload)
        digest = hashlib.sha256(payload_bytes).digest()
        try:
            algorithm = self._with_retry(lambda: self.signer.algorithm(key_ref))
            signature = self._with_retry(lambda: self.signer.sign(digest, key_ref))
        except SigningError as e:
            ATTESTATIONS.labels(attestor=self.identity, result="error").inc()
            if type(e) is SigningError and e.reason == SigningError.reason:
                raise
            raise SigningError(f"{e.reason}: {e}") from e
        att = Attestation(
            artifact_digest=artifact.digest,
            attestor=self.identity,
            payload_b64=base64.b64encode(payload_bytes).decode(),
            signature_b64=base64.b64encode(signature).decode(),
            key_version=key_ref.name,
            algorithm=algorithm,
        )
        stored = self.store.put(att)
        result = "created" if stored.signature_b64 == att.signature_b64 else "existing"
        ATTESTATIONS.labels(attestor=self.identity, result=result).inc()
        log.info(f"attestation {result} digest={artifact.digest} attestor={self.identity} key={key_ref.name}")
        return stored
