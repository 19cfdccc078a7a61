"""
Key material helpers — SSH public keys and PEM normalisation.

The automation user authenticates with an SSH key pair. Only the
private key is kept in the secret store; the public key registered
on the user is derived from it here. Private keys for SSH
credentials may be passphrase-protected in the bag and are handed
to the server as unencrypted PEM (with the passphrase alongside),
which is what the credentials plugin accepts.
"""

from __future__ import annotations

import hashlib

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from converge.core.errors import ConvergeError


class KeyMaterialError(ConvergeError):
    """Raised when a private key cannot be loaded."""


def load_private_key(pem: str, passphrase: str | None = None):
    """Load a PEM or OpenSSH-format private key."""
    data = pem.strip().encode("utf-8") + b"\n"
    password = passphrase.encode("utf-8") if passphrase else None
    try:
        if b"BEGIN OPENSSH PRIVATE KEY" in data:
            return serialization.load_ssh_private_key(data, password=password)
        return serialization.load_pem_private_key(data, password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyMaterialError(f"Cannot load private key: {e}") from e


def openssh_public_key(pem: str, passphrase: str | None = None) -> str:
    """The ``<type> <base64>`` public key line for a private key."""
    key = load_private_key(pem, passphrase)
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return public.decode("ascii")


def unencrypted_pem(pem: str, passphrase: str | None = None) -> str:
    """Re-serialise a private key without encryption."""
    key = load_private_key(pem, passphrase)
    try:
        body = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    except ValueError:
        # ed25519 and friends have no traditional PEM form
        body = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
    return body.decode("ascii")


def fingerprint(value: str) -> str:
    """Short SHA-256 fingerprint; safe to persist, never reversible."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]
