"""Framed duplex stream over an asyncio reader/writer pair.

Used for the extension side (the process's own stdin/stdout) and, with a
different error mapping, for every backend connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from bridgectl.core import codec
from bridgectl.core.errors import (
    BridgectlError,
    ConnectionLostError,
    ParseError,
    SizeExceeded,
    TransportSendError,
)
from bridgectl.core.model import Frame, Target
from bridgectl.core.signals import Signal
from bridgectl.transports.base import ByteWriter

LOGGER = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


class FramedStream:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: ByteWriter,
        *,
        target: Target | None = None,
        name: str = "stream",
        read_error: type[BridgectlError] = ConnectionLostError,
        write_error: type[BridgectlError] = TransportSendError,
    ) -> None:
        self.target = target
        self.name = name
        self.on_message: Signal[Frame] = Signal(f"{name}.message")
        self.on_error: Signal[BridgectlError] = Signal(f"{name}.error")
        self.on_close: Signal[None] = Signal(f"{name}.close")
        self._reader = reader
        self._writer = writer
        self._read_error = read_error
        self._write_error = write_error
        self._buffer = b""
        self._discard = 0
        self._running = False
        self._closed = False
        self._read_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()

    async def start(self) -> None:
        if self._running or self._closed:
            return
        self._running = True
        self._read_task = asyncio.create_task(self._read_loop(), name=f"{self.name}-reader")

    def is_running(self) -> bool:
        return self._running

    def is_connected(self) -> bool:
        return self._running and not self._writer.is_closing()

    async def send(self, frame: Frame) -> None:
        data = codec.encode(frame)
        async with self._write_lock:
            if not self.is_connected():
                raise self._write_error(f"{self.name} is not running")
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (OSError, RuntimeError) as exc:
                raise self._write_error(f"{self.name} write failed: {exc}") from exc

    async def stop(self) -> None:
        """Stop reading, discard buffered and queued data, signal closure."""
        if not self._shutdown():
            return
        task, self._read_task = self._read_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        await self.stop()
        with contextlib.suppress(Exception):
            self._writer.close()

    def _shutdown(self) -> bool:
        if self._closed:
            return False
        self._closed = True
        self._running = False
        self._buffer = b""
        self._discard = 0
        self.on_close.emit(None)
        return True

    async def _read_loop(self) -> None:
        try:
            while self._running:
                try:
                    chunk = await self._reader.read(_READ_CHUNK)
                except (OSError, ValueError) as exc:
                    self.on_error.emit(self._read_error(f"{self.name} read failed: {exc}"))
                    break
                if not chunk:
                    LOGGER.debug("%s reached end of stream", self.name)
                    break
                self._feed(chunk)
        finally:
            self._shutdown()

    def _feed(self, chunk: bytes) -> None:
        if self._discard:
            # Still inside the body of an oversized frame.
            skipped = min(self._discard, len(chunk))
            self._discard -= skipped
            chunk = chunk[skipped:]
        self._buffer += chunk
        while self._running:
            try:
                result = codec.decode(self._buffer)
            except ParseError as exc:
                # The frame is complete but malformed; step over it.
                self._buffer = codec.skip_frame(self._buffer)
                self.on_error.emit(exc)
                continue
            except SizeExceeded as exc:
                end = codec.frame_length(self._buffer) or len(self._buffer)
                dropped = min(end, len(self._buffer))
                self._buffer = self._buffer[dropped:]
                self._discard = end - dropped
                self.on_error.emit(exc)
                continue
            if result is None:
                break
            self._buffer = result.remaining
            self.on_message.emit(result.message)
