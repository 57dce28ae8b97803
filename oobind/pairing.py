"""Pairing codes: the short value a human copies between the two legs."""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

DIGITS = tuple("0123456789")


@dataclass(frozen=True)
class PairingCodeSpec:
    enabled: bool = True
    characters: Tuple[str, ...] = DIGITS
    length: int = 2

    def __post_init__(self):
        if self.length < 1:
            raise ValueError("pairing code length must be >= 1")
        if len(set(self.characters)) < 2:
            raise ValueError("pairing code alphabet needs at least 2 distinct characters")

    @classmethod
    def from_alphabet(cls, alphabet: str, length: int, enabled: bool = True) -> "PairingCodeSpec":
        return cls(enabled=enabled, characters=tuple(alphabet), length=length)

    def to_wire(self) -> Dict[str, Any]:
        if not self.enabled:
            return {"type": "disabled"}
        return {"type": "enabled", "characters": list(self.characters), "length": self.length}


def generate_pairing_code(spec: PairingCodeSpec) -> str:
    return "".join(secrets.choice(spec.characters) for _ in range(spec.length))


def is_well_formed(code: Optional[str], spec: PairingCodeSpec) -> bool:
    if not isinstance(code, str) or len(code) != spec.length:
        return False
    return all(c in spec.characters for c in code)


def pairing_codes_match(expected: Optional[str], presented: Optional[str]) -> bool:
    # exact match only: no trimming, no case folding
    if not expected or not isinstance(presented, str) or not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))
