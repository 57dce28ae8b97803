"""
Error taxonomy for the binding protocol.

Three kinds of failure reach callers:
  - protocol errors: malformed or out-of-order requests
  - authentication failures: bad signature, bad pairing code, bad upload secret
  - transport failures: an external dependency could not be reached

All of them carry a machine-readable code from `ErrorCode`.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCode:
    UNKNOWN_SESSION = "unknown_session"
    SESSION_EXPIRED = "session_expired"
    INVALID_STATE = "invalid_state"
    ALGORITHM_REJECTED = "algorithm_rejected"
    ORIGIN_REJECTED = "origin_rejected"
    INVALID_CODE = "invalid_code"
    INVALID_SIGNATURE = "invalid_signature"
    SIGNATURE_ERROR = "signature_error"
    STREAM_NOT_FOUND = "stream_not_found"
    INVALID_UPLOAD_SECRET = "invalid_upload_secret"
    UPLOADER_ALREADY_CONNECTED = "uploader_already_connected"
    DOWNLOADER_ALREADY_CONNECTED = "downloader_already_connected"
    INVALID_PUBLIC_KEY = "invalid_public_key"
    MISSING_PROOF = "missing_proof"
    NETWORK_ERROR = "network_error"
    ABORTED = "aborted"
    DOWNLOAD_ABORTED = "download_aborted"
    INVALID_REQUEST = "invalid_request"
    INVALID_STEP = "invalid_step"
    ALGORITHM_NOT_NEGOTIATED = "algorithm_not_negotiated"
    ALGORITHM_MISMATCH = "algorithm_mismatch"
    NO_COMPATIBLE_ALGORITHM = "no_compatible_algorithm"
    MISSING_FILE_METADATA = "missing_file_metadata"
    UNKNOWN_USER = "unknown_user"
    USER_EXISTS = "user_exists"
    NO_CHALLENGE = "no_challenge"
    VERIFICATION_FAILED = "verification_failed"


class ErrorKind:
    PROTOCOL = "protocol"
    AUTHENTICATION = "authentication"
    TRANSPORT = "transport"


_AUTH_CODES = {
    ErrorCode.INVALID_CODE,
    ErrorCode.INVALID_SIGNATURE,
    ErrorCode.INVALID_UPLOAD_SECRET,
    ErrorCode.INVALID_PUBLIC_KEY,
    ErrorCode.VERIFICATION_FAILED,
    ErrorCode.UNKNOWN_USER,
}

_STATUS: Dict[str, int] = {
    ErrorCode.UNKNOWN_SESSION: 404,
    ErrorCode.STREAM_NOT_FOUND: 404,
    ErrorCode.SESSION_EXPIRED: 410,
    ErrorCode.ABORTED: 410,
    ErrorCode.DOWNLOAD_ABORTED: 410,
    ErrorCode.INVALID_SIGNATURE: 403,
    ErrorCode.INVALID_UPLOAD_SECRET: 403,
    ErrorCode.INVALID_PUBLIC_KEY: 403,
    ErrorCode.VERIFICATION_FAILED: 401,
    ErrorCode.UNKNOWN_USER: 401,
    ErrorCode.NO_CHALLENGE: 401,
    ErrorCode.UPLOADER_ALREADY_CONNECTED: 409,
    ErrorCode.DOWNLOADER_ALREADY_CONNECTED: 409,
    ErrorCode.NETWORK_ERROR: 502,
}


def error_kind(code: str) -> str:
    if code == ErrorCode.NETWORK_ERROR:
        return ErrorKind.TRANSPORT
    if code in _AUTH_CODES:
        return ErrorKind.AUTHENTICATION
    return ErrorKind.PROTOCOL


def default_status(code: str) -> int:
    return _STATUS.get(code, 400)


class BindingError(Exception):
    """Raised by the core for every failure reported to a caller."""

    def __init__(self, code: str, message: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message
        self.status_code = status_code if status_code is not None else default_status(code)

    @property
    def kind(self) -> str:
        return error_kind(self.code)

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.code}
        if self.message:
            out["message"] = self.message
        return out
