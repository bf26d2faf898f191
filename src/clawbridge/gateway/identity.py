"""
Device identity — ephemeral Ed25519 keypair used to authenticate to the gateway.

The gateway never sees a shared secret. Instead the client proves that it
holds the private half of a keypair by signing a canonical assertion that
includes a server-issued nonce.

Contract:
  - One keypair per client instance, generated in memory
  - Private key never leaves the process and is never persisted
  - Device id (fingerprint) = hex SHA-256 of the 32-byte raw public key
  - Public key and signatures travel as unpadded base64url
"""

from __future__ import annotations

import base64
import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from clawbridge.core.exceptions import IdentityError


def b64url_encode(data: bytes) -> str:
    """Encode bytes as base64url without ``=`` padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode unpadded (or padded) base64url."""
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def fingerprint_of(public_key_raw: bytes) -> str:
    """Return the device id for a raw Ed25519 public key."""
    return hashlib.sha256(public_key_raw).hexdigest()


def verify_signature(public_key_raw: bytes, payload: bytes, signature: bytes) -> bool:
    """Verify a detached Ed25519 signature. Returns False instead of raising."""
    try:
        key = ed25519.Ed25519PublicKey.from_public_bytes(public_key_raw)
        key.verify(signature, payload)
    except (InvalidSignature, ValueError):
        return False
    return True


class DeviceIdentity:
    """An Ed25519 signing keypair plus its derived fingerprint."""

    __slots__ = ("_private_key", "_public_key_raw", "_fingerprint")

    def __init__(self, private_key: ed25519.Ed25519PrivateKey) -> None:
        try:
            raw = private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
        except Exception as exc:  # noqa: BLE001
            raise IdentityError(f"Cannot encode device public key: {exc}") from exc
        self._private_key = private_key
        self._public_key_raw = raw
        self._fingerprint = fingerprint_of(raw)

    @classmethod
    def generate(cls) -> DeviceIdentity:
        """Create a fresh random identity."""
        try:
            private_key = ed25519.Ed25519PrivateKey.generate()
        except Exception as exc:  # noqa: BLE001
            raise IdentityError(f"Cannot generate Ed25519 keypair: {exc}") from exc
        return cls(private_key)

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    @property
    def public_key_raw(self) -> bytes:
        return self._public_key_raw

    @property
    def public_key_b64url(self) -> str:
        return b64url_encode(self._public_key_raw)

    def sign(self, payload: bytes) -> bytes:
        """Return a detached signature over exactly *payload*."""
        try:
            return self._private_key.sign(payload)
        except Exception as exc:  # noqa: BLE001
            raise IdentityError(f"Signing failed: {exc}") from exc

    def sign_text(self, text: str) -> str:
        """Sign the UTF-8 bytes of *text* and return the base64url signature."""
        return b64url_encode(self.sign(text.encode("utf-8")))

    def __repr__(self) -> str:
        return f"DeviceIdentity(fingerprint={self._fingerprint[:16]}...)"
