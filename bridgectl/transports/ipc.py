"""Backend connector over local IPC: named pipes on Windows, domain sockets elsewhere."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
import time

from bridgectl.core.errors import TransportConnectError, TransportTimeoutError
from bridgectl.core.model import Target
from bridgectl.transports.stream import FramedStream

LOGGER = logging.getLogger(__name__)

_WINDOWS_PIPES = {
    Target.DESKTOP: r"\\.\pipe\anthropic-claude-desktop",
    Target.CLI: r"\\.\pipe\anthropic-claude-code",
}

_UNIX_SOCKETS = {
    Target.DESKTOP: "/tmp/anthropic-claude-desktop.sock",
    Target.CLI: "/tmp/anthropic-claude-code.sock",
}


def default_ipc_paths(platform: str = sys.platform) -> dict[Target, str]:
    if platform == "win32":
        return dict(_WINDOWS_PIPES)
    return dict(_UNIX_SOCKETS)


async def _open_named_pipe(path: str) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    loop = asyncio.get_running_loop()
    create_pipe_connection = getattr(loop, "create_pipe_connection", None)
    if create_pipe_connection is None:
        raise TransportConnectError("Named pipes require the proactor event loop")
    reader = asyncio.StreamReader()
    transport, protocol = await create_pipe_connection(lambda: asyncio.StreamReaderProtocol(reader), path)
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer


class IpcConnector:
    requires_running_process = True

    def __init__(
        self,
        paths: dict[Target, str] | None = None,
        *,
        platform: str = sys.platform,
    ) -> None:
        self._platform = platform
        self.paths = {**default_ipc_paths(platform), **(paths or {})}

    def describe(self, target: Target) -> str | None:
        return self.paths.get(target)

    async def connect(self, target: Target, *, timeout_s: float) -> FramedStream:
        path = self._require_path(target)
        reader, writer = await self._open(target, path, timeout_s)
        stream = FramedStream(reader, writer, target=target, name=f"ipc.{target.value}")
        await stream.start()
        LOGGER.info("Connected to %s over %s", target.value, path)
        return stream

    async def probe(self, target: Target, *, timeout_s: float) -> float:
        """Open a real connection and close it right away.

        A socket file or pipe name can outlive its listener, so existence
        alone says nothing about reachability.
        """
        path = self._require_path(target)
        started = time.perf_counter()
        _, writer = await self._open(target, path, timeout_s)
        elapsed_ms = (time.perf_counter() - started) * 1000
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return elapsed_ms

    def _require_path(self, target: Target) -> str:
        path = self.paths.get(target)
        if not path:
            raise TransportConnectError(f"No IPC path configured for {target.value}")
        return path

    async def _open(
        self,
        target: Target,
        path: str,
        timeout_s: float,
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if self._platform == "win32":
            opener = _open_named_pipe(path)
        else:
            opener = asyncio.open_unix_connection(path)
        try:
            return await asyncio.wait_for(opener, timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(
                f"IPC connect to {target.value} at {path} timed out after {timeout_s:.1f}s"
            ) from exc
        except OSError as exc:
            raise TransportConnectError(f"IPC connect to {target.value} at {path} failed: {exc}") from exc
