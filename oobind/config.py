"""Service configuration: deployment presets and validated settings."""

from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field

DEPLOYMENT = Literal["service", "relay"]

SESSION_TTL_S = 30 * 60
SESSION_SWEEP_S = 60


class ServiceConfig(BaseModel):
    """
    Deployment settings for one binding service.

    "service" is the same-origin login deployment: origins are checked against
    an allow-list and the companion device proves identity at negotiate.
    "relay" is the cross-origin file-transfer deployment: any origin, a
    pre-negotiation phase registers a download key, and negotiate opens a stream.
    """

    deployment: DEPLOYMENT = "service"
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:8000"])
    supported_algorithms: List[str] = Field(default_factory=lambda: ["Ed25519"])

    pairing_code_enabled: bool = True
    pairing_code_characters: str = Field("0123456789", min_length=2)
    pairing_code_length: int = Field(2, ge=1, le=16)

    require_pre_negotiation: bool = False
    announce_renegotiation: bool = False
    max_clock_skew_s: Optional[float] = Field(None, gt=0.0)

    session_ttl_s: int = Field(SESSION_TTL_S, ge=1)
    session_sweep_s: int = Field(SESSION_SWEEP_S, ge=0)

    stream_ttl_s: int = Field(SESSION_TTL_S, ge=1)
    stream_grace_s: float = Field(5.0, ge=0.0, le=300.0)
    stream_pipe_depth: int = Field(4, ge=1, le=64)

    public_base_url: str = "http://localhost:8000"
    cors_origins: List[str] = Field(default_factory=list)
    admin_token: Optional[str] = None

    @classmethod
    def for_deployment(cls, deployment: str, **overrides: Any) -> "ServiceConfig":
        base: dict = {"deployment": deployment}
        if deployment == "relay":
            base.update(require_pre_negotiation=True, cors_origins=["*"])
        base.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**base)
