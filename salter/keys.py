"""Local key material: loading, fingerprint checks, and identity generation.

EC2 reports two fingerprint schemes for key pairs:

- Key pairs generated by AWS: SHA-1 of the PKCS#8 DER private key (40 hex chars).
- Imported key pairs: MD5 of the SubjectPublicKeyInfo DER public key (32 hex chars).

The scheme is picked from the length of the remote fingerprint.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Final

import paramiko
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from loguru import logger

from salter.constants import IDENTITY_KEY_BITS
from salter.exceptions import IdentityMismatchError
from salter.types import KeyRecord

MD5_HEX_LENGTH: Final = 32


def normalize_fingerprint(fingerprint: str) -> str:
    """Lowercase hex with the colon separators removed."""
    return fingerprint.replace(":", "").strip().lower()


def fingerprint_scheme(remote: str) -> str:
    return "sha1" if len(normalize_fingerprint(remote)) > MD5_HEX_LENGTH else "md5"


def compute_fingerprint(key: rsa.RSAPrivateKey, scheme: str) -> str:
    """Fingerprint a private key with the given scheme ("sha1" or "md5")."""
    if scheme == "sha1":
        der = key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return hashlib.sha1(der).hexdigest()

    der = key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.md5(der).hexdigest()


def key_path(key_dir: Path, name: str) -> Path:
    return key_dir / f"{name}.pem"


def read_private_key(path: Path) -> rsa.RSAPrivateKey:
    """Read an unencrypted RSA private key in PEM form."""
    key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"Not an RSA private key: {path}")
    return key


def load_key(name: str, fingerprint: str, key_dir: Path) -> KeyRecord:
    """Load ``<key_dir>/<name>.pem`` and verify it against the remote fingerprint.

    Raises:
        FileNotFoundError: No local private key for this key pair.
        IdentityMismatchError: Local key does not match the provider's fingerprint.
    """
    remote = normalize_fingerprint(fingerprint)
    path = key_path(key_dir, name)
    key = read_private_key(path)

    scheme = fingerprint_scheme(remote)
    local = compute_fingerprint(key, scheme)
    if local != remote:
        raise IdentityMismatchError(name, local, remote, scheme)

    logger.debug(f"Loaded key {name} from {path} ({scheme} fingerprint match)")
    return KeyRecord(name=name, fingerprint=remote, path=path, private_key=key)


def to_paramiko(key: rsa.RSAPrivateKey) -> paramiko.RSAKey:
    """Wrap a cryptography key for paramiko authentication."""
    return paramiko.RSAKey(key=key)


def generate_identity(bits: int = IDENTITY_KEY_BITS) -> tuple[bytes, bytes]:
    """Generate a fresh agent identity.

    Returns:
        (private PEM in PKCS#1 "RSA PRIVATE KEY" form, public PEM in PKIX "PUBLIC KEY" form)
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


def write_private_key(path: Path, key: rsa.RSAPrivateKey) -> None:
    """Write a PKCS#1 PEM private key with owner-only permissions."""
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    path.chmod(0o600)


__all__ = [
    "compute_fingerprint",
    "fingerprint_scheme",
    "generate_identity",
    "key_path",
    "load_key",
    "normalize_fingerprint",
    "read_private_key",
    "to_paramiko",
    "write_private_key",
]
