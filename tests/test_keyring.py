import hashlib

import pytest

from warden.attest.keyring import LocalKeyring
from warden.attest.signer import KeyRef
from warden.crypto.sign import EC_P256, ED25519, RSA_2048, verify_digest
from warden.errors import KeyNotFound, SigningError

KEY = "projects/p/locations/global/keyRings/r/cryptoKeys/k/cryptoKeyVersions/1"


def test_keyref_roundtrip():
    ref = KeyRef.parse(KEY)
    assert ref.key == "k" and ref.version == 1
    assert str(ref) == KEY
    with pytest.raises(SigningError):
        KeyRef.parse("projects/p/cryptoKeys/k")


@pytest.mark.parametrize("alg", [RSA_2048, EC_P256, ED25519])
def test_sign_and_verify(tmp_path, alg):
    kr = LocalKeyring(str(tmp_path))
    ref = kr.create_key(KeyRef.parse(KEY), alg)
    digest = hashlib.sha256(b"payload").digest()
    sig = kr.sign(digest, ref)
    pem = kr.public_key_pem(ref)
    assert verify_digest(alg, pem, sig, digest)
    assert not verify_digest(alg, pem, sig, hashlib.sha256(b"other").digest())


def test_create_twice_rejected(tmp_path):
    kr = LocalKeyring(str(tmp_path))
    kr.create_key(KeyRef.parse(KEY), EC_P256)
    with pytest.raises(SigningError) as ei:
        kr.create_key(KeyRef.parse(KEY), EC_P256)
    assert ei.value.reason == "KeyExists"


def test_disable_and_rotate(tmp_path):
    kr = LocalKeyring(str(tmp_path))
    v1 = kr.create_key(KeyRef.parse(KEY), EC_P256)
    v2 = kr.add_version(v1)
    assert v2.version == 2
    kr.disable(v1)
    with pytest.raises(SigningError) as ei:
        kr.sign(b"\0" * 32, v1)
    assert ei.value.reason == "KeyRevoked"
    kr.sign(b"\0" * 32, v2)
    assert [(r.version, s) for r, s in kr.versions(v1)] == [(1, "DISABLED"), (2, "ENABLED")]


def test_destroy_removes_key_material(tmp_path):
    kr = LocalKeyring(str(tmp_path))
    v1 = kr.create_key(KeyRef.parse(KEY), EC_P256)
    kr.destroy(v1)
    assert not any(p.suffix == ".pem" for p in tmp_path.rglob("*"))
    with pytest.raises(SigningError):
        kr.public_key_pem(v1)


def test_unknown_key(tmp_path):
    kr = LocalKeyring(str(tmp_path))
    with pytest.raises(KeyNotFound):
        kr.sign(b"\0" * 32, KeyRef.parse(KEY))
