"""Tests for handshake negotiation."""

import pytest

from oobind.errors import ErrorCode
from oobind.handshake import (
    AllowListOriginPolicy,
    AnyOriginPolicy,
    HandshakeNegotiator,
    HandshakeResult,
    rejection_error_code,
)
from oobind.pairing import PairingCodeSpec


def make_negotiator(policy=None, algorithms=("Ed25519",)):
    policy = policy or AllowListOriginPolicy(["https://app.example"])
    return HandshakeNegotiator(algorithms, policy, PairingCodeSpec())


class TestHandshake:
    """Test algorithm selection and origin policy."""

    def test_accepted(self) -> None:
        result = make_negotiator().negotiate(["Ed25519"], "https://app.example")
        assert result.to_wire() == {
            "type": "accepted",
            "algorithm": "Ed25519",
            "pairing_code_specification": PairingCodeSpec().to_wire(),
        }

    def test_origin_not_allowed(self) -> None:
        result = make_negotiator().negotiate(["Ed25519"], "https://evil.example")
        assert result.to_wire() == {"type": "rejected", "reasons": ["origin_not_allowed"]}

    def test_missing_origin_rejected_by_allow_list(self) -> None:
        assert not make_negotiator().negotiate(["Ed25519"], None).accepted

    def test_trailing_slash_is_ignored(self) -> None:
        assert make_negotiator().negotiate(["Ed25519"], "https://app.example/").accepted

    def test_no_compatible_algorithm(self) -> None:
        result = make_negotiator().negotiate(["RSA-PSS"], "https://app.example")
        assert result.reasons == ["no_compatible_algorithm"]

    def test_all_reasons_reported(self) -> None:
        result = make_negotiator().negotiate([], "https://evil.example")
        assert result.reasons == ["origin_not_allowed", "no_compatible_algorithm"]

    def test_caller_preference_order(self) -> None:
        negotiator = make_negotiator(algorithms=("Ed25519", "ECDSA-P256"))
        assert negotiator.select_algorithm(["ECDSA-P256", "Ed25519"]) == "ECDSA-P256"

    def test_any_origin_policy(self) -> None:
        negotiator = make_negotiator(policy=AnyOriginPolicy())
        assert negotiator.negotiate(["Ed25519"], "https://anything.example").accepted
        assert negotiator.negotiate(["Ed25519"], None).accepted


class TestRejectionCodes:
    """Test the caller-side error codes for a rejected handshake."""

    def test_origin_takes_precedence(self) -> None:
        assert rejection_error_code(["origin_not_allowed", "no_compatible_algorithm"]) == ErrorCode.ORIGIN_REJECTED

    def test_algorithm(self) -> None:
        assert rejection_error_code(["no_compatible_algorithm"]) == ErrorCode.ALGORITHM_REJECTED


class TestHandshakeResult:
    """Test the wire form of a negotiation result."""

    def test_accepted_without_code_settings_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            HandshakeResult(accepted=True, algorithm="Ed25519").to_wire()
