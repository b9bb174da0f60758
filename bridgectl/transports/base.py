"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol

from bridgectl.core.errors import BridgectlError
from bridgectl.core.model import Frame, Target
from bridgectl.core.signals import Signal


class ByteWriter(Protocol):
    """The subset of ``asyncio.StreamWriter`` the framed stream relies on."""

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...

    def is_closing(self) -> bool: ...


class Connection(Protocol):
    """One live duplex frame stream to one backend."""

    target: Target | None
    on_message: Signal[Frame]
    on_error: Signal[BridgectlError]
    on_close: Signal[None]

    async def send(self, frame: Frame) -> None:
        """Write one frame; frames are never interleaved or reordered."""

    async def close(self) -> None:
        """Close the stream and release the underlying channel."""

    def is_connected(self) -> bool:
        """Whether frames can currently be sent."""


class Connector(Protocol):
    """Opens connections to backends over one kind of local channel.

    ``requires_running_process`` tells the detector whether reachability is
    only worth probing once the backend process has been seen running.
    """

    requires_running_process: bool

    def describe(self, target: Target) -> str | None:
        """Return the channel identifier used for ``target``, if any."""

    async def connect(self, target: Target, *, timeout_s: float) -> Connection:
        """Open and start a connection to ``target``."""

    async def probe(self, target: Target, *, timeout_s: float) -> float:
        """Check reachability of ``target`` and return the response time in ms."""
