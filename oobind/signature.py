"""
Proof-of-possession signatures for the binding protocol.

The browser leg signs `session_id + pairing_code + timestamp` (pairing code
only when the deployment enables it) and the downloader leg signs a message
starting with the stream id. Both sides must build the message the same way;
there are no separators, so byte order matters.

Keys travel as base64 of the raw public key (32 bytes for Ed25519).
Signatures travel as base64 of the raw signature.
"""

from __future__ import annotations

import base64
import binascii
from typing import Callable, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

ED25519_SIGNATURE_SIZE = 64
ED25519_PUBLIC_KEY_SIZE = 32


class SignatureError(Exception):
    """Raised when a key or signature cannot be decoded (not a failed check)."""
    pass


def b64decode_strict(value: str, what: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise SignatureError(f"{what} must be a non-empty base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SignatureError(f"{what} is not valid base64: {e}") from e


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _load_ed25519(raw: bytes) -> Ed25519PublicKey:
    if len(raw) != ED25519_PUBLIC_KEY_SIZE:
        raise SignatureError(
            f"Ed25519 public key must be {ED25519_PUBLIC_KEY_SIZE} bytes, got {len(raw)}"
        )
    try:
        return Ed25519PublicKey.from_public_bytes(raw)
    except ValueError as e:
        raise SignatureError(f"invalid Ed25519 public key: {e}") from e


def _verify_ed25519(key: Ed25519PublicKey, message: bytes, signature: bytes) -> bool:
    if len(signature) != ED25519_SIGNATURE_SIZE:
        raise SignatureError(
            f"Ed25519 signature must be {ED25519_SIGNATURE_SIZE} bytes, got {len(signature)}"
        )
    try:
        key.verify(signature, message)
        return True
    except InvalidSignature:
        return False


_LOADERS: Dict[str, Callable[[bytes], object]] = {"Ed25519": _load_ed25519}
_VERIFIERS: Dict[str, Callable[[object, bytes, bytes], bool]] = {"Ed25519": _verify_ed25519}

SUPPORTED_ALGORITHMS = tuple(_LOADERS)


def decode_public_key(algorithm: str, key_b64: str):
    loader = _LOADERS.get(algorithm)
    if loader is None:
        raise SignatureError(f"unsupported algorithm: {algorithm}")
    return loader(b64decode_strict(key_b64, "public key"))


def build_binding_message(session_id: str, pairing_code: Optional[str], timestamp: str) -> bytes:
    if pairing_code is None:
        return (session_id + timestamp).encode("utf-8")
    return (session_id + pairing_code + timestamp).encode("utf-8")


def build_download_message(stream_id: str, timestamp: str) -> bytes:
    return (stream_id + timestamp).encode("utf-8")


def verify_signature(algorithm: str, key_b64: str, message: bytes, signature_b64: str) -> bool:
    """
    Verify `signature_b64` over `message` with the given public key.

    Returns:
        True if valid, False if the signature does not verify.

    Raises:
        SignatureError: malformed key, malformed signature or unknown algorithm
    """
    key = decode_public_key(algorithm, key_b64)
    signature = b64decode_strict(signature_b64, "signature")
    return _VERIFIERS[algorithm](key, message, signature)


def sign_message(private_key: Ed25519PrivateKey, message: bytes) -> str:
    return b64encode(private_key.sign(message))


def public_key_b64(private_key: Ed25519PrivateKey) -> str:
    raw = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return b64encode(raw)
