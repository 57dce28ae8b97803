"""Out-of-band device binding: handshake, ceremony state machine and streaming relay."""

from .ceremony import BindingCeremony, NegotiationHandler, PreNegotiation, Staged
from .config import ServiceConfig
from .errors import BindingError, ErrorCode
from .handshake import AllowListOriginPolicy, AnyOriginPolicy, HandshakeNegotiator
from .pairing import PairingCodeSpec
from .relay import StreamingRelay
from .store import InMemorySessionStore, PublicKeyInfo, Session, SessionState, SessionStore

__version__ = "0.1.0"

__all__ = [
    "BindingCeremony",
    "NegotiationHandler",
    "PreNegotiation",
    "Staged",
    "ServiceConfig",
    "BindingError",
    "ErrorCode",
    "AllowListOriginPolicy",
    "AnyOriginPolicy",
    "HandshakeNegotiator",
    "PairingCodeSpec",
    "StreamingRelay",
    "InMemorySessionStore",
    "PublicKeyInfo",
    "Session",
    "SessionState",
    "SessionStore",
]
