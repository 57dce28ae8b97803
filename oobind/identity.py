"""
Out-of-band identity proof.

The state machine never looks at credentials itself. It asks an
`IdentityVerifier` whether `proof` answers `challenge` for `username`. Any
credential scheme (WebAuthn passkeys, device keys, an external verifier
service) plugs in behind that one call.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp
import structlog

from .ceremony import NegotiationHandler, Staged
from .errors import BindingError, ErrorCode
from .signature import SignatureError, decode_public_key, verify_signature
from .store import PublicKeyInfo, Session

logger = structlog.get_logger()

CHALLENGE_TTL_S = 5 * 60


class IdentityVerifier(ABC):
    @abstractmethod
    async def verify_identity_proof(self, username: str, proof: Any, challenge: str) -> bool:
        ...

    async def has_user(self, username: str) -> bool:
        return True


@dataclass
class Challenge:
    value: str
    issued_at: float


class ChallengeBook:
    """One outstanding challenge per user; consumed by a successful proof."""

    def __init__(self, ttl_s: float = CHALLENGE_TTL_S, clock: Callable[[], float] = time.time):
        self.ttl_s = ttl_s
        self.clock = clock
        self._challenges: Dict[str, Challenge] = {}

    def issue(self, username: str) -> str:
        value = secrets.token_urlsafe(32)
        self._challenges[username] = Challenge(value=value, issued_at=self.clock())
        return value

    def _live(self, username: str) -> Optional[Challenge]:
        c = self._challenges.get(username)
        if c is not None and self.clock() - c.issued_at > self.ttl_s:
            self._challenges.pop(username, None)
            return None
        return c

    def peek(self, username: str) -> Optional[str]:
        c = self._live(username)
        return c.value if c is not None else None

    def take(self, username: str) -> Optional[Challenge]:
        """Remove and return the outstanding challenge; it cannot be taken twice."""
        c = self._live(username)
        if c is not None:
            del self._challenges[username]
        return c

    def restore(self, username: str, challenge: Challenge) -> None:
        """Put back a challenge whose proof failed, unless a newer one was issued."""
        self._challenges.setdefault(username, challenge)


class DeviceKeyVerifier(IdentityVerifier):
    """
    Companion devices enroll an Ed25519 key per username and prove identity
    by signing the server's challenge.

    proof: {"signature": <base64>} or the base64 signature string itself.
    """

    def __init__(self):
        self._keys: Dict[str, PublicKeyInfo] = {}

    def register(self, username: str, public_key: PublicKeyInfo) -> None:
        if username in self._keys:
            raise BindingError(ErrorCode.USER_EXISTS)
        try:
            decode_public_key(public_key.algorithm, public_key.key)
        except SignatureError as e:
            raise BindingError(ErrorCode.INVALID_PUBLIC_KEY, str(e)) from e
        self._keys[username] = public_key
        logger.info("device_registered", username=username, algorithm=public_key.algorithm)

    async def has_user(self, username: str) -> bool:
        return username in self._keys

    async def verify_identity_proof(self, username: str, proof: Any, challenge: str) -> bool:
        key = self._keys.get(username)
        if key is None:
            return False
        signature = proof.get("signature") if isinstance(proof, dict) else proof
        if not isinstance(signature, str):
            return False
        try:
            return verify_signature(key.algorithm, key.key, challenge.encode("utf-8"), signature)
        except SignatureError as e:
            logger.warning("device_proof_malformed", username=username, error=str(e))
            return False


class RemoteIdentityVerifier(IdentityVerifier):
    """Delegates to an external passkey verifier over HTTP."""

    def __init__(self, url: str, timeout_s: float = 10.0):
        self.url = url
        self.timeout_s = timeout_s

    async def verify_identity_proof(self, username: str, proof: Any, challenge: str) -> bool:
        body = {"username": username, "proof": proof, "challenge": challenge}
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.post(self.url, json=body) as resp:
                    if resp.status >= 500:
                        raise BindingError(ErrorCode.NETWORK_ERROR, f"verifier answered HTTP {resp.status}")
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("identity_verifier_unreachable", url=self.url, error=str(e) or type(e).__name__)
            raise BindingError(ErrorCode.NETWORK_ERROR, str(e) or type(e).__name__) from e
        return isinstance(data, dict) and data.get("verified") is True


class IdentityProofNegotiation(NegotiationHandler):
    """negotiate for the login deployment: proof of identity, stage the username."""

    def __init__(self, verifier: IdentityVerifier, challenges: ChallengeBook):
        self.verifier = verifier
        self.challenges = challenges

    async def stage(self, session: Session, payload: Dict[str, Any]) -> Staged:
        username = payload.get("username")
        proof = payload.get("proof")
        if not isinstance(username, str) or not username or proof is None:
            raise BindingError(ErrorCode.MISSING_PROOF, "username and proof required")
        if not await self.verifier.has_user(username):
            logger.warning("negotiate_unknown_user", session=session.short_id(), username=username)
            raise BindingError(ErrorCode.UNKNOWN_USER)
        # taken before verifying so a concurrent negotiate cannot reuse it
        challenge = self.challenges.take(username)
        if challenge is None:
            logger.warning("negotiate_no_challenge", session=session.short_id(), username=username)
            raise BindingError(ErrorCode.NO_CHALLENGE)

        try:
            verified = await self.verifier.verify_identity_proof(username, proof, challenge.value)
        except BaseException:
            self.challenges.restore(username, challenge)
            raise
        if not verified:
            self.challenges.restore(username, challenge)
            logger.warning("negotiate_verification_failed", session=session.short_id(), username=username)
            raise BindingError(ErrorCode.VERIFICATION_FAILED)

        return Staged(result={"username": username})
