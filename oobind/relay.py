"""
Streaming relay: one uploader, one downloader, one flow-controlled pipe.

    awaiting-both -> relaying -> finished
    awaiting-both | relaying -> torn-down

The uploader's request is held open: nothing is read from its body until a
downloader with a valid signature attaches. Chunks then move through a
bounded queue, so the uploader is throttled by the downloader's read rate
and at most `pipe_depth` chunks are in memory. When the downloader has read
the last chunk the uploader is answered with the byte count, and the record
lingers for `grace_s` so the finished transfer can still be inspected.
"""

from __future__ import annotations

import asyncio
import hmac
import secrets
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional

import structlog

from .errors import BindingError, ErrorCode
from .signature import SignatureError, verify_signature

logger = structlog.get_logger()

_EOF = object()
_ABORT = object()


class StreamState(str, Enum):
    AWAITING_BOTH = "awaiting-both"
    RELAYING = "relaying"
    FINISHED = "finished"
    TORN_DOWN = "torn-down"


@dataclass(frozen=True)
class FileMetadata:
    name: str
    size: int
    type: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "FileMetadata":
        name = payload.get("fileName")
        size = payload.get("fileSize")
        if not isinstance(name, str) or not name or size in (None, ""):
            raise BindingError(ErrorCode.MISSING_FILE_METADATA, "fileName and fileSize required")
        try:
            size = int(size)
        except (TypeError, ValueError) as e:
            raise BindingError(ErrorCode.MISSING_FILE_METADATA, "fileSize must be an integer") from e
        if size < 0:
            raise BindingError(ErrorCode.MISSING_FILE_METADATA, "fileSize must be >= 0")
        ftype = payload.get("fileType")
        return cls(name=name, size=size, type=ftype if isinstance(ftype, str) and ftype else None)

    def to_wire(self) -> Dict[str, Any]:
        return {"fileName": self.name, "fileSize": self.size, "fileType": self.type}

    def content_disposition(self) -> str:
        safe = self.name.replace("\\", "_").replace('"', "_").replace("\r", "").replace("\n", "")
        return f'attachment; filename="{safe}"'


@dataclass
class Stream:
    id: str
    file_metadata: FileMetadata
    upload_secret: str
    download_algorithm: Optional[str]
    download_public_key: Optional[str]
    created_at: float
    state: StreamState = StreamState.AWAITING_BOTH
    uploader_connected: bool = False
    downloader_connected: bool = False
    downloader_finished: bool = False
    bytes_transferred: int = 0
    finished_at: Optional[float] = None
    failure: Optional[str] = None

    pipe: asyncio.Queue = field(default=None, repr=False)
    downloader_ready: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    settled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def status(self) -> Dict[str, Any]:
        return {
            "stream_id": self.id,
            "state": self.state.value,
            "fileMetadata": self.file_metadata.to_wire(),
            "uploaderConnected": self.uploader_connected,
            "downloaderConnected": self.downloader_connected,
            "downloaderFinished": self.downloader_finished,
            "bytesTransferred": self.bytes_transferred,
        }


class StreamingRelay:
    def __init__(
        self,
        grace_s: float = 5.0,
        ttl_s: float = 30 * 60,
        pipe_depth: int = 4,
        clock: Callable[[], float] = time.time,
    ):
        self.grace_s = grace_s
        self.ttl_s = ttl_s
        self.pipe_depth = pipe_depth
        self.clock = clock
        self._streams: Dict[str, Stream] = {}

    def __len__(self) -> int:
        return len(self._streams)

    def create_stream(
        self,
        metadata: FileMetadata,
        download_algorithm: Optional[str],
        download_public_key: Optional[str],
    ) -> Stream:
        self.sweep()
        stream = Stream(
            id=str(uuid.uuid4()),
            file_metadata=metadata,
            upload_secret=secrets.token_urlsafe(24),
            download_algorithm=download_algorithm,
            download_public_key=download_public_key,
            created_at=self.clock(),
            pipe=asyncio.Queue(maxsize=self.pipe_depth),
        )
        self._streams[stream.id] = stream
        logger.info("stream_created", stream=stream.id[:8] + "...", file=metadata.name, size=metadata.size)
        return stream

    def get(self, stream_id: str) -> Stream:
        self.sweep()
        stream = self._streams.get(stream_id)
        if stream is None:
            raise BindingError(ErrorCode.STREAM_NOT_FOUND)
        return stream

    # ------------------- uploader leg -------------------

    def connect_uploader(self, stream_id: str, upload_secret: Optional[str]) -> Stream:
        stream = self.get(stream_id)
        if not upload_secret or not hmac.compare_digest(upload_secret.encode(), stream.upload_secret.encode()):
            logger.warning("upload_invalid_secret", stream=stream_id[:8] + "...")
            raise BindingError(ErrorCode.INVALID_UPLOAD_SECRET)
        if stream.uploader_connected:
            logger.warning("upload_already_connected", stream=stream_id[:8] + "...")
            raise BindingError(ErrorCode.UPLOADER_ALREADY_CONNECTED)
        stream.uploader_connected = True
        logger.info("uploader_connected", stream=stream_id[:8] + "...", waiting=not stream.downloader_connected)
        return stream

    async def pump_upload(self, stream: Stream, chunks: AsyncIterator[bytes]) -> int:
        """
        Forward the uploader's body into the pipe. Blocks until the downloader
        attaches and then until it has read everything.
        """
        try:
            await stream.downloader_ready.wait()
            if stream.failure:
                raise BindingError(stream.failure)
            stream.state = StreamState.RELAYING
            logger.info("transfer_started", stream=stream.id[:8] + "...")

            async for chunk in chunks:
                if not chunk:
                    continue
                if not await self._pipe_put(stream, bytes(chunk)):
                    break
                stream.bytes_transferred += len(chunk)
            else:
                await self._pipe_put(stream, _EOF)

            await stream.settled.wait()
            if stream.failure:
                raise BindingError(stream.failure)
            logger.info("upload_finished", stream=stream.id[:8] + "...", bytes=stream.bytes_transferred)
            return stream.bytes_transferred
        except BindingError:
            raise
        except (asyncio.CancelledError, Exception):
            # uploader went away or its body failed
            self.teardown(stream.id, ErrorCode.ABORTED)
            raise

    @staticmethod
    async def _pipe_put(stream: Stream, item: Any) -> bool:
        """Put into the pipe unless the stream settles first."""
        if stream.settled.is_set():
            return False
        if not stream.pipe.full():
            stream.pipe.put_nowait(item)
            return True
        put = asyncio.ensure_future(stream.pipe.put(item))
        settled = asyncio.ensure_future(stream.settled.wait())
        try:
            await asyncio.wait({put, settled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            settled.cancel()
            if not put.done():
                put.cancel()
        return put.done() and not put.cancelled() and not stream.settled.is_set()

    # ------------------- downloader leg -------------------

    def connect_downloader(
        self,
        stream_id: str,
        public_key: Optional[str],
        message: Optional[str],
        signature: Optional[str],
    ) -> Stream:
        stream = self.get(stream_id)
        short = stream_id[:8] + "..."
        if stream.downloader_connected:
            logger.warning("download_already_connected", stream=short)
            raise BindingError(ErrorCode.DOWNLOADER_ALREADY_CONNECTED)
        if not public_key or not message or not signature:
            logger.warning("download_missing_proof", stream=short)
            raise BindingError(ErrorCode.MISSING_PROOF, "public_key, message and signature required")
        if stream.download_public_key is None or public_key != stream.download_public_key:
            logger.warning("download_public_key_mismatch", stream=short)
            raise BindingError(ErrorCode.INVALID_PUBLIC_KEY)
        if not message.startswith(stream.id):
            logger.warning("download_message_unbound", stream=short)
            raise BindingError(ErrorCode.INVALID_SIGNATURE, "message must start with the stream id")

        try:
            valid = verify_signature(stream.download_algorithm or "Ed25519", public_key, message.encode("utf-8"), signature)
        except SignatureError as e:
            logger.warning("download_signature_error", stream=short, error=str(e))
            raise BindingError(ErrorCode.SIGNATURE_ERROR, str(e)) from e
        if not valid:
            logger.warning("download_invalid_signature", stream=short)
            raise BindingError(ErrorCode.INVALID_SIGNATURE)

        stream.downloader_connected = True
        stream.downloader_ready.set()
        logger.info("downloader_connected", stream=short, uploader_waiting=stream.uploader_connected)
        return stream

    async def iter_download(self, stream: Stream) -> AsyncIterator[bytes]:
        completed = False
        try:
            while True:
                item = await stream.pipe.get()
                if item is _EOF:
                    break
                if item is _ABORT:
                    raise BindingError(stream.failure or ErrorCode.DOWNLOAD_ABORTED)
                yield item
            completed = True
        finally:
            if completed:
                self._finish(stream)
            elif not stream.settled.is_set():
                self.teardown(stream.id, ErrorCode.DOWNLOAD_ABORTED)

    def _finish(self, stream: Stream) -> None:
        stream.downloader_finished = True
        stream.state = StreamState.FINISHED
        stream.finished_at = self.clock()
        stream.settled.set()
        logger.info("download_finished", stream=stream.id[:8] + "...", bytes=stream.bytes_transferred)
        asyncio.get_running_loop().call_later(self.grace_s, self._forget, stream.id, stream)

    def _forget(self, stream_id: str, stream: Stream) -> None:
        if self._streams.get(stream_id) is stream:
            del self._streams[stream_id]

    # ------------------- teardown -------------------

    def teardown(self, stream_id: str, reason: str = ErrorCode.ABORTED) -> bool:
        stream = self._streams.pop(stream_id, None)
        if stream is None:
            return False
        if stream.state == StreamState.FINISHED:
            return True
        stream.state = StreamState.TORN_DOWN
        stream.failure = reason
        while not stream.pipe.empty():
            stream.pipe.get_nowait()
        stream.pipe.put_nowait(_ABORT)
        stream.settled.set()
        stream.downloader_ready.set()
        logger.info("stream_torn_down", stream=stream_id[:8] + "...", reason=reason)
        return True

    def teardown_all(self) -> int:
        return sum(1 for sid in list(self._streams) if self.teardown(sid))

    def sweep(self) -> None:
        now = self.clock()
        stale = [
            sid for sid, s in self._streams.items()
            if s.state == StreamState.AWAITING_BOTH and now - s.created_at >= self.ttl_s
        ]
        for sid in stale:
            self.teardown(sid, ErrorCode.ABORTED)
