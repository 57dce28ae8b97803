"""
Reference browser-side agent.

Holds the ceremony's private key (generated per ceremony, never exported),
talks to the service over HTTP and suspends the caller until the user has
typed the pairing code or the ceremony is cancelled.

Cancellation and channel closure (e.g. the tab going away) share one cleanup
path: the waiting caller receives an `aborted` outcome.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import aiohttp
import structlog
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .errors import BindingError, ErrorCode
from .handshake import rejection_error_code
from .signature import build_binding_message, public_key_b64, sign_message

logger = structlog.get_logger()

DEFAULT_ENDPOINTS = {
    "handshake": "/bind/handshake",
    "initialize": "/bind/initialize",
    "pre_negotiate": "/pre-negotiate",
    "complete": "/bind/complete",
    "wait": "/bind/wait",
}


@dataclass
class CeremonyOutcome:
    status: str  # success | pending | error | aborted
    result: Optional[Dict[str, Any]] = None
    compromised: bool = False
    error_code: Optional[str] = None


def resolve_endpoint(base_url: str, endpoint: str) -> str:
    if endpoint.startswith("http://") or endpoint.startswith("https://"):
        return endpoint
    return base_url.rstrip("/") + endpoint


def iso_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class BindingAgent:
    def __init__(
        self,
        base_url: str,
        origin: str,
        http: aiohttp.ClientSession,
        endpoints: Optional[Dict[str, str]] = None,
        algorithms: Sequence[str] = ("Ed25519",),
    ):
        self.base_url = base_url
        self.origin = origin
        self.http = http
        self.endpoints = dict(DEFAULT_ENDPOINTS, **(endpoints or {}))
        self.algorithms = list(algorithms)

        self.session_id: Optional[str] = None
        self.algorithm: Optional[str] = None
        self.pairing_code_spec: Dict[str, Any] = {}
        self._key: Optional[Ed25519PrivateKey] = None
        self._outcome: Optional[asyncio.Future] = None

    # ------------------- transport -------------------

    async def _post(self, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = resolve_endpoint(self.base_url, self.endpoints[name])
        try:
            async with self.http.post(url, json=body) as resp:
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("agent_network_error", endpoint=name, error=str(e) or type(e).__name__)
            raise BindingError(ErrorCode.NETWORK_ERROR, str(e) or type(e).__name__) from e
        if not isinstance(data, dict):
            raise BindingError(ErrorCode.INVALID_REQUEST, f"{name}: response is not a JSON object")
        return data

    @property
    def pairing_code_enabled(self) -> bool:
        return self.pairing_code_spec.get("type") == "enabled"

    # ------------------- ceremony -------------------

    async def begin(self) -> str:
        """Handshake and initialize. Returns the session id."""
        self._key = Ed25519PrivateKey.generate()

        handshake = await self._post("handshake", {
            "requesting_origin": self.origin,
            "algorithms": self.algorithms,
        })
        if handshake.get("type") != "accepted":
            code = rejection_error_code(handshake.get("reasons") or [])
            logger.warning("agent_handshake_rejected", reasons=handshake.get("reasons"))
            raise BindingError(code)
        self.algorithm = handshake.get("algorithm")
        self.pairing_code_spec = handshake.get("pairing_code_specification") or {}

        init = await self._post("initialize", {
            "public_key": {"algorithm": self.algorithm, "key": public_key_b64(self._key)},
        })
        if init.get("status") != "initialized":
            raise BindingError(init.get("error") or ErrorCode.INVALID_STATE, "initialize failed")

        self.session_id = init["session_id"]
        self._outcome = asyncio.get_running_loop().create_future()
        logger.info("agent_initialized", session=self.session_id[:8] + "...")
        return self.session_id

    async def pre_negotiate(self, step: str, **payload: Any) -> Dict[str, Any]:
        self._require_session()
        body = dict(payload)
        body.update(session_id=self.session_id, step=step)
        return await self._post("pre_negotiate", body)

    async def wait_for_negotiation(self, timeout_s: float = 25.0) -> str:
        self._require_session()
        res = await self._post("wait", {"session_id": self.session_id, "timeout_s": timeout_s})
        if "error" in res:
            raise BindingError(res["error"], res.get("message"))
        return res.get("outcome", "pending")

    async def submit_pairing_code(self, pairing_code: Optional[str]) -> CeremonyOutcome:
        key = self._require_session()
        timestamp = iso_timestamp()
        code = pairing_code if self.pairing_code_enabled else None
        message = build_binding_message(self.session_id, code, timestamp)

        body: Dict[str, Any] = {
            "session_id": self.session_id,
            "timestamp": timestamp,
            "signature": sign_message(key, message),
        }
        if code is not None:
            body["pairing_code"] = code

        res = await self._post("complete", body)
        status = res.get("status")
        if status == "complete":
            outcome = CeremonyOutcome(
                status="success",
                result=res.get("result"),
                compromised=bool(res.get("compromised")),
            )
            self._settle(outcome)
            return outcome
        if status == "pending":
            return CeremonyOutcome(status="pending")
        return CeremonyOutcome(status="error", error_code=res.get("reason") or res.get("error"))

    async def wait_for_result(self) -> CeremonyOutcome:
        if self._outcome is None:
            raise BindingError(ErrorCode.INVALID_STATE, "no active ceremony")
        return await asyncio.shield(self._outcome)

    def cancel(self) -> None:
        self._settle(CeremonyOutcome(status="aborted", error_code=ErrorCode.ABORTED))
        self._key = None

    def close(self) -> None:
        """Channel closed: same cleanup as an explicit cancel."""
        self.cancel()

    # ------------------- internals -------------------

    def _require_session(self) -> Ed25519PrivateKey:
        if self.session_id is None or self._key is None:
            raise BindingError(ErrorCode.INVALID_STATE, "no active ceremony")
        return self._key

    def _settle(self, outcome: CeremonyOutcome) -> None:
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(outcome)
