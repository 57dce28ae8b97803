"""
Session store: the single source of truth for ceremony progress.

The store only keeps records. Every state change goes through
`compare_and_swap`, so a backend shared between processes could replace the
in-memory one without touching the ceremony logic.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionState(str, Enum):
    INITIALIZED = "initialized"
    PRE_NEGOTIATED = "pre-negotiated"
    NEGOTIATED = "negotiated"
    COMPLETED = "completed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.EXPIRED)


@dataclass(frozen=True)
class PublicKeyInfo:
    algorithm: str
    key: str  # base64, raw encoding

    def to_wire(self) -> Dict[str, str]:
        return {"algorithm": self.algorithm, "key": self.key}


@dataclass
class Session:
    id: str
    browser_public_key: PublicKeyInfo
    created_at: float
    state: SessionState = SessionState.INITIALIZED
    pairing_code: Optional[str] = None
    negotiation_count: int = 0
    compromised: bool = False
    result: Optional[Dict[str, Any]] = None
    expired_at: Optional[float] = None

    # pre-negotiation scratch (file transfer: the downloader's key)
    download_algorithm: Optional[str] = None
    download_public_key: Optional[str] = None

    # negotiation handler bookkeeping, e.g. the stream backing the staged result
    staged: Dict[str, Any] = field(default_factory=dict)

    version: int = 0

    def clone(self) -> "Session":
        return copy.deepcopy(self)

    def short_id(self) -> str:
        return self.id[:8] + "..."


class SessionStore(ABC):
    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def put(self, session: Session) -> None:
        """Insert a new record. Fails if the id is taken."""

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    async def compare_and_swap(self, session_id: str, expected_version: int, new: Session) -> bool:
        """Replace the record iff it is still at `expected_version`."""

    @abstractmethod
    async def ids(self) -> List[str]:
        ...


class InMemorySessionStore(SessionStore):
    """Dict-backed store for a single process. Hands out copies only."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def get(self, session_id: str) -> Optional[Session]:
        s = self._sessions.get(session_id)
        return s.clone() if s is not None else None

    async def put(self, session: Session) -> None:
        if session.id in self._sessions:
            raise KeyError(f"session id already in use: {session.id}")
        self._sessions[session.id] = session.clone()

    async def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    async def compare_and_swap(self, session_id: str, expected_version: int, new: Session) -> bool:
        cur = self._sessions.get(session_id)
        if cur is None or cur.version != expected_version:
            return False
        stored = new.clone()
        stored.version = expected_version + 1
        self._sessions[session_id] = stored
        new.version = stored.version
        return True

    async def ids(self) -> List[str]:
        return list(self._sessions)
