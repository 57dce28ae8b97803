"""
Handshake negotiation: algorithm selection and origin policy.

The negotiator is stateless. The browser leg offers algorithms (and, for
origin-restricted deployments, the origin it is acting for); the service
answers with the selected algorithm plus the pairing-code specification, or
with every reason it refused.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import ErrorCode
from .pairing import PairingCodeSpec

ORIGIN_NOT_ALLOWED = "origin_not_allowed"
NO_COMPATIBLE_ALGORITHM = "no_compatible_algorithm"


class OriginPolicy(ABC):
    @abstractmethod
    def allows(self, origin: Optional[str]) -> bool:
        ...


class AllowListOriginPolicy(OriginPolicy):
    """Same-origin deployment: only listed origins may start a ceremony."""

    def __init__(self, allowed: Iterable[str]):
        self.allowed = frozenset(o.rstrip("/") for o in allowed)

    def allows(self, origin: Optional[str]) -> bool:
        if not origin:
            return False
        return origin.rstrip("/") in self.allowed


class AnyOriginPolicy(OriginPolicy):
    """Cross-origin relay deployment: the origin is informational only."""

    def allows(self, origin: Optional[str]) -> bool:
        return True


@dataclass(frozen=True)
class HandshakeResult:
    accepted: bool
    algorithm: Optional[str] = None
    pairing_code_specification: Optional[PairingCodeSpec] = None
    reasons: List[str] = field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        if self.accepted:
            if self.pairing_code_specification is None:
                raise ValueError("accepted handshake needs a pairing code specification")
            return {
                "type": "accepted",
                "algorithm": self.algorithm,
                "pairing_code_specification": self.pairing_code_specification.to_wire(),
            }
        return {"type": "rejected", "reasons": list(self.reasons)}


class HandshakeNegotiator:
    def __init__(self, supported_algorithms: Sequence[str], origin_policy: OriginPolicy, code_spec: PairingCodeSpec):
        self.supported_algorithms = list(supported_algorithms)
        self.origin_policy = origin_policy
        self.code_spec = code_spec

    def select_algorithm(self, offered: Optional[Sequence[str]]) -> Optional[str]:
        # honour the caller's preference order
        for alg in offered or []:
            if alg in self.supported_algorithms:
                return alg
        return None

    def negotiate(self, algorithms: Optional[Sequence[str]], requesting_origin: Optional[str] = None) -> HandshakeResult:
        reasons: List[str] = []
        if not self.origin_policy.allows(requesting_origin):
            reasons.append(ORIGIN_NOT_ALLOWED)
        algorithm = self.select_algorithm(algorithms)
        if algorithm is None:
            reasons.append(NO_COMPATIBLE_ALGORITHM)
        if reasons:
            return HandshakeResult(accepted=False, reasons=reasons)
        return HandshakeResult(accepted=True, algorithm=algorithm, pairing_code_specification=self.code_spec)


def rejection_error_code(reasons: Sequence[str]) -> str:
    """Caller-side error code for a rejected handshake."""
    if ORIGIN_NOT_ALLOWED in reasons:
        return ErrorCode.ORIGIN_REJECTED
    return ErrorCode.ALGORITHM_REJECTED
