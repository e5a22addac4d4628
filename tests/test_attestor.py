import base64
import hashlib
import threading

import pytest

from conftest import ATTESTOR, DIGEST, SCAN_IMAGE

from warden.artifacts.model import Artifact
from warden.attest.attestor import Attestor
from warden.attest.model import SIGNATURE_TYPE
from warden.crypto.sign import verify_digest
from warden.errors import SigningError

REPO = SCAN_IMAGE.rsplit(":", 1)[0]


@pytest.fixture
def artifact():
    return Artifact(repository=REPO, tag="latest", digest=DIGEST)


def test_attestation_payload_and_signature(keyring, key_ref, attestations, artifact):
    att = Attestor(ATTESTOR, keyring, attestations).attest(artifact, key_ref)
    critical = att.payload["critical"]
    assert critical["type"] == SIGNATURE_TYPE
    assert critical["image"]["docker-manifest-digest"] == DIGEST
    assert critical["identity"]["docker-reference"] == REPO
    digest = hashlib.sha256(base64.b64decode(att.payload_b64)).digest()
    assert verify_digest(att.algorithm, keyring.public_key_pem(key_ref), att.signature, digest)


def test_attest_is_idempotent(keyring, key_ref, attestations, artifact):
    a = Attestor(ATTESTOR, keyring, attestations)
    first = a.attest(artifact, key_ref)
    second = a.attest(artifact, key_ref)
    assert first == second
    assert attestations.count() == 1


def test_existing_attestation_kept_after_rotation(keyring, key_ref, attestations, artifact):
    a = Attestor(ATTESTOR, keyring, attestations)
    first = a.attest(artifact, key_ref)
    v2 = keyring.add_version(key_ref)
    again = a.attest(artifact, v2)
    assert again.key_version == first.key_version == key_ref.name


def test_concurrent_attest_stores_one_record(keyring, key_ref, attestations, artifact):
    a = Attestor(ATTESTOR, keyring, attestations)
    results = []
    threads = [threading.Thread(target=lambda: results.append(a.attest(artifact, key_ref))) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert attestations.count() == 1
    assert len({r.signature_b64 for r in results}) == 1


def test_disabled_key_reports_signing_error(keyring, key_ref, attestations, artifact):
    keyring.disable(key_ref)
    with pytest.raises(SigningError) as ei:
        Attestor(ATTESTOR, keyring, attestations).attest(artifact, key_ref)
    assert ei.value.reason == "SigningError"
    assert "KeyRevoked" in str(ei.value)
    assert attestations.count() == 0
