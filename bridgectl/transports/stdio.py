"""Asyncio streams over the process's own stdin/stdout."""

from __future__ import annotations

import asyncio
import sys
from typing import BinaryIO

from bridgectl.core.errors import StdinError, StdoutError
from bridgectl.transports.stream import FramedStream


async def open_stdio_streams(
    stdin: BinaryIO | None = None,
    stdout: BinaryIO | None = None,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), stdin or sys.stdin.buffer)
    transport, protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin,
        stdout or sys.stdout.buffer,
    )
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer


async def create_extension_host(
    reader: asyncio.StreamReader | None = None,
    writer: asyncio.StreamWriter | None = None,
) -> FramedStream:
    """Build the extension-facing transport; stdout carries frames only."""
    if reader is None or writer is None:
        reader, writer = await open_stdio_streams()
    return FramedStream(
        reader,
        writer,
        name="extension",
        read_error=StdinError,
        write_error=StdoutError,
    )
