from __future__ import annotations

import asyncio

import pytest

from bridgectl.core.codec import MAX_MESSAGE_SIZE, decode_all, encode
from bridgectl.core.errors import ConnectionLostError, ParseError, SizeExceeded, StdoutError, TransportSendError
from bridgectl.core.model import Frame
from bridgectl.transports.stdio import create_extension_host
from bridgectl.transports.stream import FramedStream


class FakeWriter:
    def __init__(self, *, fail: bool = False) -> None:
        self.data = b""
        self.closed = False
        self.fail = fail

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        if self.fail:
            raise BrokenPipeError("pipe closed")
        await asyncio.sleep(0)

    def close(self) -> None:
        self.closed = True

    def is_closing(self) -> bool:
        return self.closed


def _raw(body: bytes) -> bytes:
    return len(body).to_bytes(4, "little") + body


async def _collect(stream: FramedStream) -> tuple[list[Frame], list[Exception], list[None]]:
    messages: list[Frame] = []
    errors: list[Exception] = []
    closes: list[None] = []
    stream.on_message.connect(messages.append)
    stream.on_error.connect(errors.append)
    stream.on_close.connect(closes.append)
    return messages, errors, closes


async def _run_until_closed(stream: FramedStream) -> None:
    done = asyncio.Event()
    stream.on_close.connect(lambda _: done.set())
    await stream.start()
    await asyncio.wait_for(done.wait(), timeout=2.0)


@pytest.mark.asyncio
async def test_frames_split_across_chunks_are_delivered_in_order() -> None:
    frames = [Frame(type="ping", id=i) for i in range(5)]
    data = b"".join(encode(frame) for frame in frames)

    reader = asyncio.StreamReader()
    for i in range(0, len(data), 7):
        reader.feed_data(data[i : i + 7])
    reader.feed_eof()

    stream = FramedStream(reader, FakeWriter())
    messages, errors, closes = await _collect(stream)
    await _run_until_closed(stream)

    assert messages == frames
    assert errors == []
    assert closes == [None]


@pytest.mark.asyncio
async def test_malformed_frame_is_reported_and_skipped() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(encode(Frame(type="before")) + _raw(b"{nope") + encode(Frame(type="after")))
    reader.feed_eof()

    stream = FramedStream(reader, FakeWriter())
    messages, errors, _ = await _collect(stream)
    await _run_until_closed(stream)

    assert [m.type for m in messages] == ["before", "after"]
    assert len(errors) == 1
    assert isinstance(errors[0], ParseError)


@pytest.mark.asyncio
async def test_oversized_frame_is_skipped_and_next_frame_delivered() -> None:
    body = b'"' + b"a" * (MAX_MESSAGE_SIZE + 8) + b'"'
    data = _raw(body) + encode(Frame(type="after"))
    reader = asyncio.StreamReader()
    for start in range(0, len(data), 64 * 1024):
        reader.feed_data(data[start : start + 64 * 1024])
    reader.feed_eof()

    stream = FramedStream(reader, FakeWriter())
    messages, errors, _ = await _collect(stream)
    await _run_until_closed(stream)

    assert [m.type for m in messages] == ["after"]
    assert len(errors) == 1
    assert isinstance(errors[0], SizeExceeded)


@pytest.mark.asyncio
async def test_oversized_body_arriving_later_is_discarded() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data((MAX_MESSAGE_SIZE + 1).to_bytes(4, "little") + b"xyz")

    stream = FramedStream(reader, FakeWriter())
    messages, errors, closes = await _collect(stream)
    await stream.start()

    got_error = asyncio.Event()
    stream.on_error.connect(lambda _: got_error.set())
    await asyncio.wait_for(got_error.wait(), timeout=2.0)
    assert isinstance(errors[0], SizeExceeded)
    assert stream.is_running()

    reader.feed_data(b"z" * (MAX_MESSAGE_SIZE - 2))
    reader.feed_data(encode(Frame(type="fresh")))
    reader.feed_eof()
    while not closes:
        await asyncio.sleep(0.01)

    assert [m.type for m in messages] == ["fresh"]
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_end_of_stream_closes_once() -> None:
    reader = asyncio.StreamReader()
    reader.feed_eof()
    stream = FramedStream(reader, FakeWriter())
    _, _, closes = await _collect(stream)

    await _run_until_closed(stream)
    await stream.stop()
    await stream.close()

    assert closes == [None]
    assert not stream.is_running()


@pytest.mark.asyncio
async def test_concurrent_sends_are_written_whole_and_in_order() -> None:
    writer = FakeWriter()
    stream = FramedStream(asyncio.StreamReader(), writer)
    await stream.start()

    frames = [Frame(type="chunk", payload="x" * (i * 100), id=i) for i in range(20)]
    await asyncio.gather(*(stream.send(frame) for frame in frames))
    await stream.close()

    written, remaining = decode_all(writer.data)
    assert written == frames
    assert remaining == b""
    assert writer.closed


@pytest.mark.asyncio
async def test_send_after_stop_raises_write_error() -> None:
    stream = FramedStream(asyncio.StreamReader(), FakeWriter())
    await stream.start()
    await stream.stop()

    with pytest.raises(TransportSendError):
        await stream.send(Frame(type="late"))


@pytest.mark.asyncio
async def test_write_failure_is_wrapped() -> None:
    stream = FramedStream(asyncio.StreamReader(), FakeWriter(fail=True))
    await stream.start()
    try:
        with pytest.raises(TransportSendError) as excinfo:
            await stream.send(Frame(type="ping"))
        assert isinstance(excinfo.value.__cause__, BrokenPipeError)
    finally:
        await stream.close()


@pytest.mark.asyncio
async def test_start_is_idempotent_and_not_restartable() -> None:
    stream = FramedStream(asyncio.StreamReader(), FakeWriter())
    await stream.start()
    first_task = stream._read_task
    await stream.start()
    assert stream._read_task is first_task

    await stream.stop()
    await stream.start()
    assert not stream.is_running()


@pytest.mark.asyncio
async def test_read_failure_uses_configured_error_type() -> None:
    reader = asyncio.StreamReader()
    reader.set_exception(ConnectionResetError("reset by peer"))
    stream = FramedStream(reader, FakeWriter(), name="ipc.desktop")
    _, errors, closes = await _collect(stream)

    await _run_until_closed(stream)

    assert len(errors) == 1
    assert isinstance(errors[0], ConnectionLostError)
    assert "ipc.desktop" in str(errors[0])
    assert closes == [None]


@pytest.mark.asyncio
async def test_extension_host_maps_write_failures_to_stdout_error() -> None:
    host = await create_extension_host(asyncio.StreamReader(), FakeWriter(fail=True))
    assert host.name == "extension"
    await host.start()
    try:
        with pytest.raises(StdoutError):
            await host.send(Frame(type="pong"))
    finally:
        await host.close()
