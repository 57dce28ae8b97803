"""
File-transfer specialization of the ceremony (cross-origin relay deployment).

Pre-negotiation lets the page register the key it will later sign the
download request with:

    step=offer     {algorithms: [...]}          -> {status: ok, algorithm}
    step=register  {algorithm, publicKey}       -> {status: ok}   (pre-negotiated)

Negotiate is called by the app holding the file. It opens a stream, returns
the upload credentials to the app and stages the download details for the
browser, which only receives them at complete.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence, Tuple

import structlog

from .ceremony import NegotiationHandler, PreNegotiation, Staged
from .errors import BindingError, ErrorCode
from .relay import FileMetadata, StreamingRelay
from .signature import SignatureError, decode_public_key
from .store import Session

logger = structlog.get_logger()


class DownloadKeyPreNegotiation(PreNegotiation):
    def __init__(self, supported_algorithms: Sequence[str] = ("Ed25519",)):
        self.supported_algorithms = list(supported_algorithms)

    async def step(self, session: Session, step: Optional[str], payload: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        if step == "offer":
            offered = payload.get("algorithms") or []
            selected = next((a for a in offered if a in self.supported_algorithms), None)
            if selected is None:
                raise BindingError(ErrorCode.NO_COMPATIBLE_ALGORITHM)
            session.download_algorithm = selected
            return {"status": "ok", "algorithm": selected}, False

        if step == "register":
            if not session.download_algorithm:
                raise BindingError(ErrorCode.ALGORITHM_NOT_NEGOTIATED, "offer algorithms first")
            if payload.get("algorithm") != session.download_algorithm:
                raise BindingError(ErrorCode.ALGORITHM_MISMATCH)
            key = payload.get("publicKey", payload.get("public_key"))
            try:
                decode_public_key(session.download_algorithm, key)
            except SignatureError as e:
                raise BindingError(ErrorCode.INVALID_PUBLIC_KEY, str(e)) from e
            session.download_public_key = key
            return {"status": "ok"}, True

        raise BindingError(ErrorCode.INVALID_STEP, f"unknown step: {step}")


class FileTransferNegotiation(NegotiationHandler):
    def __init__(self, relay: StreamingRelay, base_url: str):
        self.relay = relay
        self.base_url = base_url.rstrip("/")

    async def stage(self, session: Session, payload: Dict[str, Any]) -> Staged:
        metadata = FileMetadata.from_payload(payload)
        # snapshot: the stream keeps its own copy of the download key
        stream = self.relay.create_stream(metadata, session.download_algorithm, session.download_public_key)
        return Staged(
            result={
                "fileMetadata": metadata.to_wire(),
                "streamId": stream.id,
                "downloadUrl": f"{self.base_url}/stream/{stream.id}/download",
            },
            response={
                "stream_id": stream.id,
                "upload_url": f"{self.base_url}/stream/{stream.id}/upload",
                "upload_secret": stream.upload_secret,
            },
            bookkeeping={"stream_id": stream.id},
        )

    async def discard(self, bookkeeping: Dict[str, Any]) -> None:
        stream_id = bookkeeping.get("stream_id")
        if stream_id and self.relay.teardown(stream_id, ErrorCode.ABORTED):
            logger.info("stream_discarded", stream=stream_id[:8] + "...")
