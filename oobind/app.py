#!/usr/bin/env python3
"""
oobind: out-of-band device binding service.

A browser-held agent binds a companion device to its session:

  1) POST /bind/handshake    algorithm + origin policy, pairing code spec
  2) POST /bind/initialize   browser registers its public key -> session_id
  3) POST /pre-negotiate     optional page-driven steps (relay deployment)
  4) POST /bind/negotiate    companion proves identity (or offers a file)
                             -> pairing code shown on the companion
  5) POST /bind/complete     browser sends pairing code + signature
                             -> staged result, released exactly once

Relay deployment (cross-origin file transfer) adds:
  POST /stream/{id}/upload    app uploads (X-Upload-Secret); held open until done
  POST /stream/{id}/download  browser proves its download key, receives the bytes

Run:
  oobind serve --deployment service --allow-origin http://localhost:3000
  oobind serve --deployment relay --port 3002
  uvicorn oobind.app:app --port 8000

Administration (needs --admin-token on the server):
  oobind expire SESSION_ID --admin-token T
  oobind expire-all --admin-token T
"""

from __future__ import annotations

import argparse
import asyncio
import hmac
import json
import os
import sys
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

import aiohttp
import structlog
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .ceremony import BindingCeremony
from .config import ServiceConfig
from .errors import BindingError, ErrorCode
from .filetransfer import DownloadKeyPreNegotiation, FileTransferNegotiation
from .handshake import AllowListOriginPolicy, AnyOriginPolicy, HandshakeNegotiator
from .identity import ChallengeBook, DeviceKeyVerifier, IdentityProofNegotiation, IdentityVerifier
from .pairing import PairingCodeSpec
from .relay import StreamingRelay
from .store import InMemorySessionStore, PublicKeyInfo, SessionStore

PROTO_NAME = "oob-binding"
PROTO_VER = "1"

logger = structlog.get_logger()


# ============================================================
# Wire models
# ============================================================

class PublicKeyModel(BaseModel):
    algorithm: str
    key: str

    def to_info(self) -> PublicKeyInfo:
        return PublicKeyInfo(algorithm=self.algorithm, key=self.key)


class HandshakeReq(BaseModel):
    algorithms: List[str] = Field(default_factory=list)
    requesting_origin: Optional[str] = None


class InitializeReq(BaseModel):
    public_key: PublicKeyModel


class InitializeResp(BaseModel):
    status: str
    session_id: str


class CompleteReq(BaseModel):
    session_id: str
    pairing_code: Optional[str] = None
    timestamp: str
    signature: str


class WaitReq(BaseModel):
    session_id: str
    timeout_s: float = Field(25.0, ge=0.0, le=60.0)


class DeviceRegisterReq(BaseModel):
    username: str = Field(..., min_length=1)
    public_key: PublicKeyModel


class ChallengeReq(BaseModel):
    username: str = Field(..., min_length=1)


# ============================================================
# Helpers
# ============================================================

def _session_id_of(body: Dict[str, Any]) -> str:
    sid = body.get("session_id")
    if not isinstance(sid, str) or not sid:
        raise BindingError(ErrorCode.INVALID_REQUEST, "session_id required")
    return sid


async def _read_proof(request: Request) -> Dict[str, Any]:
    """Download proofs arrive as JSON or as a plain HTML form post."""
    raw = await request.body()
    if "application/x-www-form-urlencoded" in request.headers.get("content-type", ""):
        return dict(parse_qsl(raw.decode("utf-8", errors="replace")))
    try:
        data = json.loads(raw or b"{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


# ============================================================
# Application factory
# ============================================================

def build_app(
    config: Optional[ServiceConfig] = None,
    store: Optional[SessionStore] = None,
    verifier: Optional[IdentityVerifier] = None,
) -> FastAPI:
    config = config or ServiceConfig()
    store = store or InMemorySessionStore()

    app = FastAPI(title="oobind " + config.deployment, version=PROTO_VER)

    code_spec = PairingCodeSpec.from_alphabet(
        config.pairing_code_characters,
        config.pairing_code_length,
        enabled=config.pairing_code_enabled,
    )
    if config.deployment == "relay":
        origin_policy = AnyOriginPolicy()
    else:
        origin_policy = AllowListOriginPolicy(config.allowed_origins)
    negotiator = HandshakeNegotiator(config.supported_algorithms, origin_policy, code_spec)

    relay: Optional[StreamingRelay] = None
    challenges: Optional[ChallengeBook] = None
    if config.deployment == "relay":
        relay = StreamingRelay(
            grace_s=config.stream_grace_s,
            ttl_s=config.stream_ttl_s,
            pipe_depth=config.stream_pipe_depth,
        )
        negotiation = FileTransferNegotiation(relay, config.public_base_url)
        pre_negotiation = DownloadKeyPreNegotiation(config.supported_algorithms)
    else:
        verifier = verifier or DeviceKeyVerifier()
        challenges = ChallengeBook()
        negotiation = IdentityProofNegotiation(verifier, challenges)
        pre_negotiation = None

    ceremony = BindingCeremony(
        store,
        negotiation,
        code_spec,
        supported_algorithms=config.supported_algorithms,
        pre_negotiation=pre_negotiation,
        require_pre_negotiation=config.require_pre_negotiation and pre_negotiation is not None,
        announce_renegotiation=config.announce_renegotiation,
        max_clock_skew_s=config.max_clock_skew_s,
        session_ttl_s=config.session_ttl_s,
        session_sweep_s=config.session_sweep_s,
    )

    app.state.config = config
    app.state.store = store
    app.state.ceremony = ceremony
    app.state.relay = relay
    app.state.verifier = verifier
    app.state.challenges = challenges

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "X-Upload-Secret"],
        )

    @app.exception_handler(BindingError)
    async def _binding_error(request: Request, exc: BindingError):
        return JSONResponse(exc.to_wire(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            {"error": ErrorCode.INVALID_REQUEST, "detail": json.loads(json.dumps(exc.errors(), default=str))},
            status_code=400,
        )

    def _require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
        # hidden unless the operator configured a token
        if not config.admin_token:
            raise HTTPException(status_code=404, detail="Not Found")
        if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), config.admin_token.encode()):
            raise HTTPException(status_code=403, detail="invalid admin token")

    def _require_relay() -> StreamingRelay:
        if relay is None:
            raise HTTPException(status_code=404, detail="Not Found")
        return relay

    # ------------------- protocol -------------------

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "proto": PROTO_NAME, "ver": PROTO_VER, "deployment": config.deployment}

    @app.post("/bind/handshake")
    def handshake(req: HandshakeReq):
        result = negotiator.negotiate(req.algorithms, req.requesting_origin)
        if result.accepted:
            logger.info("handshake_accepted", origin=req.requesting_origin, algorithm=result.algorithm)
        else:
            logger.warning("handshake_rejected", origin=req.requesting_origin, reasons=result.reasons)
        return result.to_wire()

    @app.post("/bind/initialize", response_model=InitializeResp)
    async def initialize(req: InitializeReq):
        session_id = await ceremony.initialize(req.public_key.to_info())
        return InitializeResp(status="initialized", session_id=session_id)

    @app.post("/pre-negotiate")
    async def pre_negotiate(body: Dict[str, Any] = Body(...)):
        payload = dict(body)
        session_id = _session_id_of(payload)
        step = payload.pop("step", None)
        payload.pop("session_id", None)
        return await ceremony.pre_negotiate(session_id, step, payload)

    @app.post("/bind/negotiate")
    async def negotiate(body: Dict[str, Any] = Body(...)):
        return await ceremony.negotiate(_session_id_of(body), body)

    @app.post("/bind/complete")
    async def complete(req: CompleteReq):
        return await ceremony.complete(req.session_id, req.pairing_code, req.timestamp, req.signature)

    @app.post("/bind/wait")
    async def wait(req: WaitReq):
        outcome = await ceremony.wait(req.session_id, req.timeout_s)
        return {"outcome": outcome}

    # ------------------- companion device enrollment (service) -------------------

    @app.post("/device/register")
    def device_register(req: DeviceRegisterReq):
        if not isinstance(verifier, DeviceKeyVerifier):
            raise HTTPException(status_code=404, detail="Not Found")
        verifier.register(req.username, req.public_key.to_info())
        return {"status": "registered"}

    @app.post("/device/challenge")
    async def device_challenge(req: ChallengeReq):
        if verifier is None or challenges is None:
            raise HTTPException(status_code=404, detail="Not Found")
        if not await verifier.has_user(req.username):
            raise BindingError(ErrorCode.UNKNOWN_USER, status_code=404)
        return {"username": req.username, "challenge": challenges.issue(req.username)}

    # ------------------- streaming (relay) -------------------

    @app.post("/stream/{stream_id}/upload")
    async def upload(stream_id: str, request: Request, x_upload_secret: Optional[str] = Header(None)):
        r = _require_relay()
        stream = r.connect_uploader(stream_id, x_upload_secret)
        total = await r.pump_upload(stream, request.stream())
        return {"status": "uploaded", "bytes": total}

    @app.post("/stream/{stream_id}/download")
    async def download(stream_id: str, request: Request):
        r = _require_relay()
        proof = await _read_proof(request)
        stream = r.connect_downloader(stream_id, proof.get("public_key"), proof.get("message"), proof.get("signature"))
        meta = stream.file_metadata
        return StreamingResponse(
            r.iter_download(stream),
            media_type=meta.type or "application/octet-stream",
            headers={"Content-Disposition": meta.content_disposition()},
        )

    @app.get("/stream/{stream_id}")
    def stream_status(stream_id: str):
        return _require_relay().get(stream_id).status()

    # ------------------- administrative -------------------

    @app.post("/admin/sessions/{session_id}/expire", dependencies=[Depends(_require_admin)])
    async def admin_expire(session_id: str):
        changed = await ceremony.expire(session_id)
        return {"status": "expired" if changed else "unchanged", "session_id": session_id}

    @app.post("/admin/sessions/expire", dependencies=[Depends(_require_admin)])
    async def admin_expire_all():
        return {"status": "expired", "count": await ceremony.expire_all()}

    @app.post("/admin/streams/{stream_id}/teardown", dependencies=[Depends(_require_admin)])
    def admin_teardown(stream_id: str):
        if not _require_relay().teardown(stream_id):
            raise BindingError(ErrorCode.STREAM_NOT_FOUND)
        return {"status": "torn_down", "stream_id": stream_id}

    return app


app = build_app(ServiceConfig.for_deployment(os.environ.get("OOBIND_DEPLOYMENT", "service")))


# ============================================================
# CLI
# ============================================================

def configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]
    )


async def call_admin(url: str, path: str, token: Optional[str]) -> Dict[str, Any]:
    headers = {"X-Admin-Token": token} if token else {}
    async with aiohttp.ClientSession() as http:
        async with http.post(url.rstrip("/") + path, headers=headers) as resp:
            return {"http_status": resp.status, "body": await resp.json(content_type=None)}


def main(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Out-of-band device binding service")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("serve", help="Run the binding service")
    s.add_argument("--deployment", choices=["service", "relay"], default="service")
    s.add_argument("--host", default="127.0.0.1")
    s.add_argument("--port", type=int, default=8000)
    s.add_argument("--allow-origin", action="append", dest="allowed_origins")
    s.add_argument("--cors-origin", action="append", dest="cors_origins")
    s.add_argument("--public-base-url")
    s.add_argument("--code-length", type=int, dest="pairing_code_length")
    s.add_argument("--no-pairing-code", action="store_true")
    s.add_argument("--announce-renegotiation", action="store_true")
    s.add_argument("--max-clock-skew", type=float, dest="max_clock_skew_s")
    s.add_argument("--admin-token", default=os.environ.get("OOBIND_ADMIN_TOKEN"))

    for name in ("expire", "expire-all"):
        a = sub.add_parser(name, help="Force-expire " + ("one session" if name == "expire" else "all sessions"))
        if name == "expire":
            a.add_argument("session_id")
        a.add_argument("--url", default="http://localhost:8000")
        a.add_argument("--admin-token", default=os.environ.get("OOBIND_ADMIN_TOKEN"))

    args = p.parse_args(argv)
    configure_logging()

    if args.cmd == "serve":
        import uvicorn

        config = ServiceConfig.for_deployment(
            args.deployment,
            allowed_origins=args.allowed_origins,
            cors_origins=args.cors_origins,
            public_base_url=args.public_base_url or f"http://{args.host}:{args.port}",
            pairing_code_length=args.pairing_code_length,
            pairing_code_enabled=False if args.no_pairing_code else None,
            announce_renegotiation=True if args.announce_renegotiation else None,
            max_clock_skew_s=args.max_clock_skew_s,
            admin_token=args.admin_token,
        )
        logger.info("starting_service", deployment=config.deployment, host=args.host, port=args.port)
        uvicorn.run(build_app(config), host=args.host, port=args.port, log_config=None)
        return

    path = f"/admin/sessions/{args.session_id}/expire" if args.cmd == "expire" else "/admin/sessions/expire"
    try:
        out = asyncio.run(call_admin(args.url, path, args.admin_token))
    except aiohttp.ClientError as e:
        logger.error("admin_call_failed", error=str(e))
        print(f"{ErrorCode.NETWORK_ERROR}: {e}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(out, indent=2))
    if out["http_status"] >= 400:
        sys.exit(1)


if __name__ == "__main__":
    main()
