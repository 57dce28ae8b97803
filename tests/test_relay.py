"""Tests for the streaming relay."""

import asyncio

import pytest

from oobind.errors import BindingError, ErrorCode
from oobind.relay import FileMetadata, StreamingRelay, StreamState


async def body(*parts):
    for part in parts:
        await asyncio.sleep(0)
        yield part


def open_stream(relay, downloader, size=0):
    meta = FileMetadata(name="report.pdf", size=size, type="application/pdf")
    return relay.create_stream(meta, "Ed25519", downloader.public_key)


async def transfer(relay, downloader, parts):
    stream = open_stream(relay, downloader, sum(len(p) for p in parts))
    relay.connect_uploader(stream.id, stream.upload_secret)
    upload = asyncio.ensure_future(relay.pump_upload(stream, body(*parts)))
    await asyncio.sleep(0)
    proof = downloader.download_proof(stream.id)
    relay.connect_downloader(stream.id, proof["public_key"], proof["message"], proof["signature"])
    received = [chunk async for chunk in relay.iter_download(stream)]
    total = await asyncio.wait_for(upload, 1)
    return stream, b"".join(received), total


class TestFileMetadata:
    """Test metadata parsing from the negotiate payload."""

    def test_from_payload(self) -> None:
        meta = FileMetadata.from_payload({"fileName": "a.txt", "fileSize": "12", "fileType": "text/plain"})
        assert meta == FileMetadata("a.txt", 12, "text/plain")
        assert meta.to_wire() == {"fileName": "a.txt", "fileSize": 12, "fileType": "text/plain"}

    @pytest.mark.parametrize(
        "payload",
        [{}, {"fileName": "a.txt"}, {"fileSize": 3}, {"fileName": "a", "fileSize": "many"}, {"fileName": "a", "fileSize": -1}],
    )
    def test_missing_or_bad(self, payload) -> None:
        with pytest.raises(BindingError) as exc:
            FileMetadata.from_payload(payload)
        assert exc.value.code == ErrorCode.MISSING_FILE_METADATA

    def test_content_disposition_is_quoted_safely(self) -> None:
        meta = FileMetadata('evil".txt\r\nX-Header: 1', 1)
        assert meta.content_disposition() == 'attachment; filename="evil_.txtX-Header: 1"'


class TestTransfer:
    """Test end-to-end byte flow through the pipe."""

    @pytest.mark.parametrize(
        "parts",
        [(), (b"x",), (b"a" * 1000, b"b" * 1000, b"c" * 17, b"", b"d" * 4096)],
        ids=["empty", "one-byte", "multi-chunk"],
    )
    def test_bytes_match(self, downloader, parts) -> None:
        async def run():
            relay = StreamingRelay(grace_s=0.01, pipe_depth=1)
            stream, received, total = await transfer(relay, downloader, parts)
            assert received == b"".join(parts)
            assert total == len(received) == stream.bytes_transferred
            assert stream.state == StreamState.FINISHED
            assert stream.downloader_finished

        asyncio.run(run())

    def test_finished_stream_lingers_for_grace(self, downloader) -> None:
        async def run():
            relay = StreamingRelay(grace_s=0.05)
            stream, _, _ = await transfer(relay, downloader, (b"abc",))
            status = relay.get(stream.id).status()
            assert status["state"] == "finished"
            assert status["bytesTransferred"] == 3
            await asyncio.sleep(0.1)
            with pytest.raises(BindingError) as exc:
                relay.get(stream.id)
            assert exc.value.code == ErrorCode.STREAM_NOT_FOUND

        asyncio.run(run())

    def test_downloader_may_connect_first(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            stream = open_stream(relay, downloader, 4)
            proof = downloader.download_proof(stream.id)
            relay.connect_downloader(stream.id, proof["public_key"], proof["message"], proof["signature"])
            reader = asyncio.ensure_future(_collect(relay.iter_download(stream)))
            relay.connect_uploader(stream.id, stream.upload_secret)
            total = await relay.pump_upload(stream, body(b"da", b"ta"))
            return total, await reader

        assert asyncio.run(run()) == (4, b"data")


async def _collect(chunks):
    return b"".join([c async for c in chunks])


class TestDownloaderAuthentication:
    """Test that an unproven downloader never starts the byte flow."""

    def test_bad_signature_keeps_uploader_paused(self, downloader, companion) -> None:
        async def run():
            relay = StreamingRelay()
            stream = open_stream(relay, downloader, 3)
            relay.connect_uploader(stream.id, stream.upload_secret)
            consumed = []

            async def tracked():
                for part in (b"abc",):
                    consumed.append(part)
                    yield part

            upload = asyncio.ensure_future(relay.pump_upload(stream, tracked()))
            await asyncio.sleep(0.01)

            forged = companion.download_proof(stream.id)
            with pytest.raises(BindingError) as exc:
                relay.connect_downloader(stream.id, downloader.public_key, forged["message"], forged["signature"])
            assert exc.value.code == ErrorCode.INVALID_SIGNATURE

            await asyncio.sleep(0.01)
            assert not upload.done()
            assert consumed == []
            assert stream.state == StreamState.AWAITING_BOTH
            assert not stream.downloader_connected

            proof = downloader.download_proof(stream.id)
            relay.connect_downloader(stream.id, proof["public_key"], proof["message"], proof["signature"])
            received = await _collect(relay.iter_download(stream))
            assert received == b"abc"
            assert await upload == 3

        asyncio.run(run())

    def test_wrong_public_key(self, downloader, companion) -> None:
        relay = StreamingRelay()

        async def run():
            stream = open_stream(relay, downloader)
            proof = companion.download_proof(stream.id)
            with pytest.raises(BindingError) as exc:
                relay.connect_downloader(stream.id, proof["public_key"], proof["message"], proof["signature"])
            assert exc.value.code == ErrorCode.INVALID_PUBLIC_KEY

        asyncio.run(run())

    def test_message_must_name_the_stream(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            stream = open_stream(relay, downloader)
            proof = downloader.download_proof("some-other-stream")
            with pytest.raises(BindingError) as exc:
                relay.connect_downloader(stream.id, proof["public_key"], proof["message"], proof["signature"])
            assert exc.value.code == ErrorCode.INVALID_SIGNATURE

        asyncio.run(run())

    def test_malformed_signature(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            stream = open_stream(relay, downloader)
            proof = downloader.download_proof(stream.id)
            with pytest.raises(BindingError) as exc:
                relay.connect_downloader(stream.id, proof["public_key"], proof["message"], "%%%")
            assert exc.value.code == ErrorCode.SIGNATURE_ERROR

        asyncio.run(run())

    def test_missing_proof(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            stream = open_stream(relay, downloader)
            with pytest.raises(BindingError) as exc:
                relay.connect_downloader(stream.id, downloader.public_key, None, None)
            assert exc.value.code == ErrorCode.MISSING_PROOF

        asyncio.run(run())

    def test_no_registered_key(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            stream = relay.create_stream(FileMetadata("a", 0), None, None)
            proof = downloader.download_proof(stream.id)
            with pytest.raises(BindingError) as exc:
                relay.connect_downloader(stream.id, proof["public_key"], proof["message"], proof["signature"])
            assert exc.value.code == ErrorCode.INVALID_PUBLIC_KEY

        asyncio.run(run())

    def test_second_downloader(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            stream = open_stream(relay, downloader)
            proof = downloader.download_proof(stream.id)
            relay.connect_downloader(stream.id, proof["public_key"], proof["message"], proof["signature"])
            with pytest.raises(BindingError) as exc:
                relay.connect_downloader(stream.id, proof["public_key"], proof["message"], proof["signature"])
            assert exc.value.code == ErrorCode.DOWNLOADER_ALREADY_CONNECTED

        asyncio.run(run())


class TestUploaderAuthentication:
    """Test the upload secret and single-uploader rule."""

    def test_wrong_secret(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            stream = open_stream(relay, downloader)
            for secret in (None, "", "guess"):
                with pytest.raises(BindingError) as exc:
                    relay.connect_uploader(stream.id, secret)
                assert exc.value.code == ErrorCode.INVALID_UPLOAD_SECRET
            assert not stream.uploader_connected

        asyncio.run(run())

    def test_second_uploader(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            stream = open_stream(relay, downloader)
            relay.connect_uploader(stream.id, stream.upload_secret)
            with pytest.raises(BindingError) as exc:
                relay.connect_uploader(stream.id, stream.upload_secret)
            assert exc.value.code == ErrorCode.UPLOADER_ALREADY_CONNECTED

        asyncio.run(run())

    def test_unknown_stream(self) -> None:
        relay = StreamingRelay()
        with pytest.raises(BindingError) as exc:
            relay.connect_uploader("missing", "secret")
        assert exc.value.code == ErrorCode.STREAM_NOT_FOUND


class TestTeardown:
    """Test aborts from either side and administrative teardown."""

    def test_teardown_releases_waiting_uploader(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            stream = open_stream(relay, downloader)
            relay.connect_uploader(stream.id, stream.upload_secret)
            upload = asyncio.ensure_future(relay.pump_upload(stream, body(b"abc")))
            await asyncio.sleep(0)
            assert relay.teardown(stream.id)
            with pytest.raises(BindingError) as exc:
                await asyncio.wait_for(upload, 1)
            assert exc.value.code == ErrorCode.ABORTED
            assert stream.state == StreamState.TORN_DOWN
            assert not relay.teardown(stream.id)

        asyncio.run(run())

    def test_downloader_abort_stops_uploader(self, downloader) -> None:
        async def run():
            relay = StreamingRelay(pipe_depth=1)
            parts = [b"x" * 10] * 20
            stream = open_stream(relay, downloader, 200)
            relay.connect_uploader(stream.id, stream.upload_secret)
            upload = asyncio.ensure_future(relay.pump_upload(stream, body(*parts)))
            proof = downloader.download_proof(stream.id)
            relay.connect_downloader(stream.id, proof["public_key"], proof["message"], proof["signature"])

            chunks = relay.iter_download(stream)
            first = await chunks.__anext__()
            assert first == b"x" * 10
            await chunks.aclose()

            with pytest.raises(BindingError) as exc:
                await asyncio.wait_for(upload, 1)
            assert exc.value.code == ErrorCode.DOWNLOAD_ABORTED
            assert stream.bytes_transferred < 200

        asyncio.run(run())

    def test_uploader_failure_aborts_download(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            stream = open_stream(relay, downloader, 6)

            async def broken():
                yield b"abc"
                raise ConnectionResetError("client went away")

            relay.connect_uploader(stream.id, stream.upload_secret)
            upload = asyncio.ensure_future(relay.pump_upload(stream, broken()))
            proof = downloader.download_proof(stream.id)
            relay.connect_downloader(stream.id, proof["public_key"], proof["message"], proof["signature"])

            with pytest.raises(ConnectionResetError):
                await upload
            with pytest.raises(BindingError) as exc:
                await _collect(relay.iter_download(stream))
            assert exc.value.code == ErrorCode.ABORTED

        asyncio.run(run())

    def test_teardown_all(self, downloader) -> None:
        async def run():
            relay = StreamingRelay()
            for _ in range(3):
                open_stream(relay, downloader)
            assert relay.teardown_all() == 3
            assert len(relay) == 0

        asyncio.run(run())

    def test_sweep_drops_stale_streams(self, downloader, clock) -> None:
        async def run():
            relay = StreamingRelay(ttl_s=60, clock=clock)
            stream = open_stream(relay, downloader)
            clock.advance(61)
            with pytest.raises(BindingError) as exc:
                relay.get(stream.id)
            assert exc.value.code == ErrorCode.STREAM_NOT_FOUND
            assert stream.failure == ErrorCode.ABORTED

        asyncio.run(run())
