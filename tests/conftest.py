"""Shared fixtures: keys, signing helpers and a controllable clock."""

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from oobind.signature import build_binding_message, build_download_message, public_key_b64, sign_message
from oobind.store import PublicKeyInfo

TIMESTAMP = "2026-10-19T12:00:00.000Z"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Signer:
    """Holds one Ed25519 key and produces the protocol's signatures."""

    def __init__(self):
        self.private_key = Ed25519PrivateKey.generate()

    @property
    def public_key(self) -> str:
        return public_key_b64(self.private_key)

    @property
    def key_info(self) -> PublicKeyInfo:
        return PublicKeyInfo(algorithm="Ed25519", key=self.public_key)

    def sign(self, message: bytes) -> str:
        return sign_message(self.private_key, message)

    def sign_binding(self, session_id: str, pairing_code, timestamp: str = TIMESTAMP) -> str:
        return self.sign(build_binding_message(session_id, pairing_code, timestamp))

    def download_proof(self, stream_id: str, timestamp: str = TIMESTAMP) -> dict:
        message = build_download_message(stream_id, timestamp).decode("utf-8")
        return {
            "public_key": self.public_key,
            "message": message,
            "signature": self.sign(message.encode("utf-8")),
        }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def browser():
    return Signer()


@pytest.fixture
def companion():
    return Signer()


@pytest.fixture
def downloader():
    return Signer()
