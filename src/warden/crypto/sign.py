"""Digest signing helpers for the supported key algorithms.

All algorithms sign a SHA-256 digest, the way a KMS ``asymmetricSign`` call
does:
  - rsa-sign-pkcs1-2048-sha256 / rsa-sign-pkcs1-4096-sha256: PKCS#1 v1.5 over the prehashed digest
  - ec-sign-p256-sha256: ECDSA P-256 over the prehashed digest
  - ed25519: Ed25519 over the 32 raw digest bytes
"""
from __future__ import annotations

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa, utils

RSA_2048 = "rsa-sign-pkcs1-2048-sha256"
RSA_4096 = "rsa-sign-pkcs1-4096-sha256"
EC_P256 = "ec-sign-p256-sha256"
ED25519 = "ed25519"

ALGORITHMS = (RSA_2048, RSA_4096, EC_P256, ED25519)


def normalize_alg(alg: str) -> str:
    # accept KMS enum spelling, e.g. RSA_SIGN_PKCS1_2048_SHA256
    a = alg.strip().lower().replace("_", "-")
    if a == "ec-sign-ed25519":
        a = ED25519
    if a not in ALGORITHMS:
        raise ValueError(f"Unsupported alg: {alg}")
    return a


def generate_private_key(alg: str):
    alg = normalize_alg(alg)
    if alg == RSA_2048:
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)
    if alg == RSA_4096:
        return rsa.generate_private_key(public_exponent=65537, key_size=4096)
    if alg == EC_P256:
        return ec.generate_private_key(ec.SECP256R1())
    return ed25519.Ed25519PrivateKey.generate()


def private_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_pem(key) -> str:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def sign_digest(alg: str, private_key_pem: bytes, digest: bytes) -> bytes:
    alg = normalize_alg(alg)
    if len(digest) != 32:
        raise ValueError("expected a 32-byte SHA-256 digest")
    sk = serialization.load_pem_private_key(private_key_pem, password=None)
    if alg in (RSA_2048, RSA_4096):
        assert isinstance(sk, rsa.RSAPrivateKey)
        return sk.sign(digest, padding.PKCS1v15(), utils.Prehashed(hashes.SHA256()))
    if alg == EC_P256:
        assert isinstance(sk, ec.EllipticCurvePrivateKey)
        return sk.sign(digest, ec.ECDSA(utils.Prehashed(hashes.SHA256())))
    assert isinstance(sk, ed25519.Ed25519PrivateKey)
    return sk.sign(digest)


def verify_digest(alg: str, public_key_pem: str, signature: bytes, digest: bytes) -> bool:
    try:
        alg = normalize_alg(alg)
        pk = serialization.load_pem_public_key(public_key_pem.encode())
        if alg in (RSA_2048, RSA_4096):
            if not isinstance(pk, rsa.RSAPublicKey):
                return False
            pk.verify(signature, digest, padding.PKCS1v15(), utils.Prehashed(hashes.SHA256()))
        elif alg == EC_P256:
            if not isinstance(pk, ec.EllipticCurvePublicKey):
                return False
            pk.verify(signature, digest, ec.ECDSA(utils.Prehashed(hashes.SHA256())))
        else:
            if not isinstance(pk, ed25519.Ed25519PublicKey):
                return False
            pk.verify(signature, digest)
        return True
    except (InvalidSignature, ValueError):
        return False


__all__ = [
    "ALGORITHMS",
    "normalize_alg",
    "generate_private_key",
    "private_pem",
    "public_pem",
    "sign_digest",
    "verify_digest",
]
