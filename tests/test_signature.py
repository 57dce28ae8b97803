"""Tests for binding and download signatures."""

import base64

import pytest

from oobind.signature import (
    SignatureError,
    b64encode,
    build_binding_message,
    build_download_message,
    decode_public_key,
    verify_signature,
)


class TestMessageConstruction:
    """Test the concatenated, separator-free messages."""

    def test_binding_message_with_code(self) -> None:
        assert build_binding_message("sid", "42", "ts") == b"sid42ts"

    def test_binding_message_without_code(self) -> None:
        assert build_binding_message("sid", None, "ts") == b"sidts"

    def test_download_message_starts_with_stream_id(self) -> None:
        assert build_download_message("stream-1", "ts").startswith(b"stream-1")


class TestVerify:
    """Test valid, invalid and malformed inputs."""

    def test_valid_signature(self, browser) -> None:
        msg = build_binding_message("sid", "42", "ts")
        assert verify_signature("Ed25519", browser.public_key, msg, browser.sign(msg))

    def test_wrong_message_is_invalid_not_error(self, browser) -> None:
        sig = browser.sign(build_binding_message("sid", "42", "ts"))
        assert not verify_signature("Ed25519", browser.public_key, build_binding_message("sid", "43", "ts"), sig)

    def test_code_omitted_on_one_side_is_invalid(self, browser) -> None:
        sig = browser.sign(build_binding_message("sid", None, "ts"))
        assert not verify_signature("Ed25519", browser.public_key, build_binding_message("sid", "42", "ts"), sig)

    def test_wrong_key_is_invalid(self, browser, companion) -> None:
        msg = b"hello"
        assert not verify_signature("Ed25519", companion.public_key, msg, browser.sign(msg))

    def test_malformed_key_is_error(self, browser) -> None:
        msg = b"hello"
        with pytest.raises(SignatureError):
            verify_signature("Ed25519", "not base64!", msg, browser.sign(msg))

    def test_short_key_is_error(self, browser) -> None:
        msg = b"hello"
        with pytest.raises(SignatureError):
            verify_signature("Ed25519", b64encode(b"\x01" * 16), msg, browser.sign(msg))

    def test_truncated_signature_is_error(self, browser) -> None:
        msg = b"hello"
        sig = base64.b64decode(browser.sign(msg))[:32]
        with pytest.raises(SignatureError):
            verify_signature("Ed25519", browser.public_key, msg, b64encode(sig))

    def test_unknown_algorithm_is_error(self, browser) -> None:
        with pytest.raises(SignatureError):
            decode_public_key("RSA", browser.public_key)
