"""
signer.py - Signing identity loaded from PEM files.

Only RSA keys are supported (RSASSA-PKCS1-v1_5 with SHA-256), which is what
APK Signature Scheme v2 algorithm 0x0103 expects.
"""

import logging
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .errors import PackageInvalid

log = logging.getLogger("deploy_toolkit.signer")


class Signer:
    def __init__(self, key: rsa.RSAPrivateKey, cert: x509.Certificate,
                 key_path: Optional[Path] = None, cert_path: Optional[Path] = None):
        if not isinstance(key, rsa.RSAPrivateKey):
            raise PackageInvalid("only RSA signing keys are supported")
        self.key = key
        self.cert = cert
        self.key_path = key_path
        self.cert_path = cert_path

    @classmethod
    def from_pem(cls, key_path: Path, cert_path: Optional[Path] = None) -> "Signer":
        """Load a key and certificate; both may live in the same PEM file."""
        key_path = Path(key_path)
        cert_path = Path(cert_path) if cert_path else key_path
        try:
            key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
            cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
        except (OSError, ValueError) as exc:
            raise PackageInvalid(f"cannot load signing identity: {exc}") from exc
        log.debug("Signing identity: %s", cert.subject.rfc4514_string())
        return cls(key, cert, key_path, cert_path)

    @property
    def cert_der(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.DER)

    @property
    def public_key_der(self) -> bytes:
        return self.cert.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def sign(self, data: bytes) -> bytes:
        return self.key.sign(data, padding.PKCS1v15(), hashes.SHA256())


def verify_rsa_sha256(public_key_der: bytes, signature: bytes, data: bytes) -> bool:
    key = serialization.load_der_public_key(public_key_der)
    try:
        key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True
