"""
Binding ceremony state machine.

    initialized -> (pre-negotiated) -> negotiated -> completed
    any non-terminal state -> expired

Two independent factors must hold for `complete` to release the staged
result: the companion device's identity proof (checked at negotiate) and the
pairing code the human carried back to the browser (checked at complete),
together with the browser's signature over the session-bound message.

A second successful negotiate is not refused. It replaces the pairing code
and staged result and marks the session compromised; the flag is only
revealed to the browser leg in the final `complete` answer.

Every write goes through `_update`, a compare-and-swap loop on the session
record, so concurrent calls for one session cannot interleave their writes.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import structlog

from .errors import BindingError, ErrorCode
from .pairing import PairingCodeSpec, generate_pairing_code, pairing_codes_match
from .signature import SignatureError, build_binding_message, decode_public_key, verify_signature
from .store import PublicKeyInfo, Session, SessionState, SessionStore

logger = structlog.get_logger()

T = TypeVar("T")

CAS_RETRIES = 8

OUTCOME_NEGOTIATED = "negotiated"
OUTCOME_COMPLETED = "completed"
OUTCOME_ABORTED = "aborted"
OUTCOME_PENDING = "pending"


# ============================================================
# Plugin points
# ============================================================

@dataclass
class Staged:
    """What a successful negotiate leaves behind."""
    result: Dict[str, Any]
    response: Dict[str, Any] = field(default_factory=dict)
    bookkeeping: Dict[str, Any] = field(default_factory=dict)


class NegotiationHandler(ABC):
    """Checks the out-of-band party's proof and builds the result to stage."""

    @abstractmethod
    async def stage(self, session: Session, payload: Dict[str, Any]) -> Staged:
        ...

    async def discard(self, bookkeeping: Dict[str, Any]) -> None:
        """Release resources of a staged result that will never be delivered."""
        return None


class PreNegotiation(ABC):
    """Application-specific exchanges between initialize and negotiate."""

    @abstractmethod
    async def step(self, session: Session, step: Optional[str], payload: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """
        Run one step against a working copy of the session.

        Returns the response body and whether the sub-protocol is done
        (the session then moves to pre-negotiated).
        """


# ============================================================
# State machine
# ============================================================

class BindingCeremony:
    def __init__(
        self,
        store: SessionStore,
        negotiation: NegotiationHandler,
        code_spec: PairingCodeSpec,
        supported_algorithms: Sequence[str] = ("Ed25519",),
        pre_negotiation: Optional[PreNegotiation] = None,
        require_pre_negotiation: bool = False,
        announce_renegotiation: bool = False,
        max_clock_skew_s: Optional[float] = None,
        session_ttl_s: float = 30 * 60,
        session_sweep_s: float = 60,
        clock: Callable[[], float] = time.time,
    ):
        if require_pre_negotiation and pre_negotiation is None:
            raise ValueError("require_pre_negotiation needs a pre_negotiation plugin")
        self.store = store
        self.negotiation = negotiation
        self.code_spec = code_spec
        self.supported_algorithms = list(supported_algorithms)
        self.pre_negotiation = pre_negotiation
        self.require_pre_negotiation = require_pre_negotiation
        self.announce_renegotiation = announce_renegotiation
        self.max_clock_skew_s = max_clock_skew_s
        self.session_ttl_s = session_ttl_s
        self.session_sweep_s = session_sweep_s
        self.clock = clock
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._last_sweep = 0.0

    # ------------------- helpers -------------------

    async def _require(self, session_id: Optional[str]) -> Session:
        if not session_id:
            raise BindingError(ErrorCode.UNKNOWN_SESSION, "session_id required")
        session = await self.store.get(session_id)
        if session is None or session.state == SessionState.COMPLETED:
            raise BindingError(ErrorCode.UNKNOWN_SESSION)
        if session.state == SessionState.EXPIRED:
            raise BindingError(ErrorCode.SESSION_EXPIRED)
        return session

    async def _update(self, session_id: str, mutate: Callable[[Session], T]) -> T:
        for _ in range(CAS_RETRIES):
            cur = await self.store.get(session_id)
            if cur is None:
                raise BindingError(ErrorCode.UNKNOWN_SESSION)
            new = cur.clone()
            out = mutate(new)
            if await self.store.compare_and_swap(session_id, cur.version, new):
                return out
        raise BindingError(ErrorCode.INVALID_STATE, "session is being modified concurrently")

    def _release(self, session_id: str, outcome: str) -> None:
        for fut in self._waiters.pop(session_id, []):
            if not fut.done():
                fut.set_result(outcome)

    def _check_negotiable(self, session: Session) -> None:
        if session.state == SessionState.EXPIRED:
            raise BindingError(ErrorCode.SESSION_EXPIRED)
        if session.state == SessionState.COMPLETED:
            raise BindingError(ErrorCode.UNKNOWN_SESSION)
        if session.state == SessionState.INITIALIZED and self.require_pre_negotiation:
            raise BindingError(ErrorCode.INVALID_STATE, "pre-negotiation not complete")

    def _check_timestamp(self, timestamp: str) -> None:
        if self.max_clock_skew_s is None:
            return
        try:
            ts = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        except ValueError as e:
            raise BindingError(ErrorCode.SIGNATURE_ERROR, f"timestamp is not ISO-8601: {e}") from e
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        if abs(ts.timestamp() - self.clock()) > self.max_clock_skew_s:
            raise BindingError(ErrorCode.INVALID_SIGNATURE, "timestamp outside allowed clock skew")

    # ------------------- operations -------------------

    async def initialize(self, public_key: PublicKeyInfo) -> str:
        await self.sweep()
        if public_key.algorithm not in self.supported_algorithms:
            raise BindingError(ErrorCode.INVALID_PUBLIC_KEY, f"unsupported algorithm: {public_key.algorithm}")
        try:
            decode_public_key(public_key.algorithm, public_key.key)
        except SignatureError as e:
            raise BindingError(ErrorCode.INVALID_PUBLIC_KEY, str(e)) from e

        session = Session(id=str(uuid.uuid4()), browser_public_key=public_key, created_at=self.clock())
        await self.store.put(session)
        logger.info("session_initialized", session=session.short_id(), algorithm=public_key.algorithm)
        return session.id

    async def pre_negotiate(self, session_id: str, step: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        await self.sweep()
        session = await self._require(session_id)
        if self.pre_negotiation is None:
            raise BindingError(ErrorCode.INVALID_STEP, "this deployment has no pre-negotiation phase")
        if session.state != SessionState.INITIALIZED:
            logger.warning("pre_negotiate_invalid_state", session=session.short_id(), state=session.state.value)
            raise BindingError(ErrorCode.INVALID_STATE, f"session is {session.state.value}")

        working = session.clone()
        response, done = await self.pre_negotiation.step(working, step, payload)

        def commit(s: Session) -> None:
            if s.state == SessionState.EXPIRED:
                raise BindingError(ErrorCode.SESSION_EXPIRED)
            if s.state != SessionState.INITIALIZED:
                raise BindingError(ErrorCode.INVALID_STATE, f"session is {s.state.value}")
            s.download_algorithm = working.download_algorithm
            s.download_public_key = working.download_public_key
            if done:
                s.state = SessionState.PRE_NEGOTIATED

        await self._update(session_id, commit)
        logger.info("pre_negotiate_step", session=session.short_id(), step=step, done=done)
        return response

    async def negotiate(self, session_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self.sweep()
        session = await self._require(session_id)
        self._check_negotiable(session)

        staged = await self.negotiation.stage(session, payload)
        pairing_code = generate_pairing_code(self.code_spec) if self.code_spec.enabled else None

        def commit(s: Session) -> Tuple[bool, Dict[str, Any]]:
            self._check_negotiable(s)
            renegotiation = s.state == SessionState.NEGOTIATED
            superseded = dict(s.staged) if renegotiation else {}
            s.negotiation_count += 1
            if s.negotiation_count > 1:
                s.compromised = True
            s.pairing_code = pairing_code
            s.result = staged.result
            s.staged = dict(staged.bookkeeping)
            s.state = SessionState.NEGOTIATED
            return renegotiation, superseded

        try:
            renegotiation, superseded = await self._update(session_id, commit)
        except BindingError:
            await self.negotiation.discard(staged.bookkeeping)
            raise
        if superseded:
            await self.negotiation.discard(superseded)

        self._release(session_id, OUTCOME_NEGOTIATED)

        response: Dict[str, Any] = {"status": "negotiated"}
        if pairing_code is not None:
            response["pairing_code"] = pairing_code
        response.update(staged.response)

        if renegotiation:
            logger.warning("negotiate_compromised", session=session.short_id())
            if self.announce_renegotiation:
                response["status"] = "compromised"
                response["message"] = "Another device already completed negotiation for this session."
        else:
            logger.info("negotiate_success", session=session.short_id())
        return response

    async def complete(self, session_id: str, pairing_code: Optional[str], timestamp: str, signature: str) -> Dict[str, Any]:
        await self.sweep()
        session = await self._require(session_id)

        if session.state != SessionState.NEGOTIATED:
            logger.info("complete_pending", session=session.short_id(), state=session.state.value)
            return {"status": "pending"}

        if self.code_spec.enabled and not pairing_codes_match(session.pairing_code, pairing_code):
            logger.warning("complete_invalid_code", session=session.short_id())
            return {"status": "error", "reason": ErrorCode.INVALID_CODE, "message": "Pairing code does not match"}

        self._check_timestamp(timestamp)

        expected_code = session.pairing_code if self.code_spec.enabled else None
        message = build_binding_message(session.id, expected_code, timestamp)
        key = session.browser_public_key
        try:
            valid = verify_signature(key.algorithm, key.key, message, signature)
        except SignatureError as e:
            logger.warning("complete_signature_error", session=session.short_id(), error=str(e))
            raise BindingError(ErrorCode.SIGNATURE_ERROR, str(e)) from e
        if not valid:
            logger.warning("complete_invalid_signature", session=session.short_id())
            raise BindingError(ErrorCode.INVALID_SIGNATURE)

        def commit(s: Session) -> Tuple[Optional[Dict[str, Any]], bool]:
            if s.state == SessionState.EXPIRED:
                raise BindingError(ErrorCode.SESSION_EXPIRED)
            if s.state != SessionState.NEGOTIATED or s.pairing_code != session.pairing_code:
                raise BindingError(ErrorCode.INVALID_STATE, "session changed during completion")
            s.state = SessionState.COMPLETED
            return s.result, s.compromised

        result, compromised = await self._update(session_id, commit)
        await self.store.delete(session_id)
        self._release(session_id, OUTCOME_COMPLETED)

        response: Dict[str, Any] = {"status": "complete", "result": result}
        if compromised:
            response["compromised"] = True
            logger.warning("complete_success_compromised", session=session.short_id())
        else:
            logger.info("complete_success", session=session.short_id())
        return response

    async def wait(self, session_id: str, timeout: Optional[float] = None) -> str:
        """Suspend until the session is negotiated, aborted, or `timeout` passes."""
        session = await self._require(session_id)
        if session.state == SessionState.NEGOTIATED:
            return OUTCOME_NEGOTIATED

        fut = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(session_id, []).append(fut)
        try:
            return await asyncio.wait_for(asyncio.shield(fut), timeout)
        except asyncio.TimeoutError:
            return OUTCOME_PENDING
        finally:
            waiters = self._waiters.get(session_id)
            if waiters and fut in waiters:
                waiters.remove(fut)
                if not waiters:
                    self._waiters.pop(session_id, None)

    # ------------------- administrative -------------------

    async def expire(self, session_id: str) -> bool:
        def mark(s: Session) -> Tuple[bool, Dict[str, Any]]:
            if s.state.is_terminal:
                return False, {}
            staged = dict(s.staged)
            s.state = SessionState.EXPIRED
            s.expired_at = self.clock()
            s.staged = {}
            return True, staged

        changed, staged = await self._update(session_id, mark)
        if staged:
            # e.g. the stream an uploader is blocked on
            await self.negotiation.discard(staged)
        self._release(session_id, OUTCOME_ABORTED)
        if changed:
            logger.info("session_expired", session=session_id[:8] + "...")
        return changed

    async def expire_all(self) -> int:
        n = 0
        for session_id in await self.store.ids():
            try:
                if await self.expire(session_id):
                    n += 1
            except BindingError:
                # removed by a concurrent complete
                continue
        logger.info("sessions_expired_all", count=n)
        return n

    async def sweep(self, force: bool = False) -> None:
        now = self.clock()
        if not force and now - self._last_sweep < self.session_sweep_s:
            return
        self._last_sweep = now
        for session_id in await self.store.ids():
            s = await self.store.get(session_id)
            if s is None:
                continue
            if s.state == SessionState.EXPIRED:
                if now - s.created_at >= 2 * self.session_ttl_s:
                    await self.store.delete(session_id)
                continue
            if now - s.created_at >= self.session_ttl_s:
                try:
                    await self.expire(session_id)
                except BindingError:
                    continue
