"""Routed message bridge between the extension host and the active backend."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from bridgectl.core.config import ConfigManager
from bridgectl.core.connection_manager import ConnectionManager, ConnectionState
from bridgectl.core.errors import BridgectlError, BridgeStateError, ConnectionLostError
from bridgectl.core.events import EventSink, LoggingEventSink, error_fields
from bridgectl.core.model import (
    DetectionSnapshot,
    DroppedFrame,
    ForwardedMessage,
    Frame,
    ResolutionResult,
    Target,
    TargetChanged,
    TargetSwitch,
)
from bridgectl.core.request_tracker import DEFAULT_REQUEST_TIMEOUT_MS, RequestTracker
from bridgectl.core.router import Router
from bridgectl.core.signals import Signal
from bridgectl.transports.base import Connection
from bridgectl.transports.stdio import create_extension_host
from bridgectl.transports.stream import FramedStream

LOGGER = logging.getLogger(__name__)

EXTENSION_TO_BACKEND = "extension_to_backend"
BACKEND_TO_EXTENSION = "backend_to_extension"
# Frames waiting per direction; beyond this new frames are dropped.
MAX_QUEUED_FRAMES = 1024

HostFactory = Callable[[], Awaitable[FramedStream]]

T = TypeVar("T")


@dataclass(frozen=True)
class BridgeStatus:
    running: bool
    current_target: Target | None
    connection_state: ConnectionState
    resolution: ResolutionResult | None
    detection: DetectionSnapshot | None
    last_error: str | None
    forwarded: dict[str, int]
    dropped: int
    pending_requests: int
    last_activity: datetime | None
    uptime_s: float

    @property
    def messages_forwarded(self) -> int:
        return sum(self.forwarded.values())


class _ForwardPump(Generic[T]):
    """Delivers queued items one at a time, in arrival order."""

    def __init__(self, name: str, deliver: Callable[[T], Awaitable[None]], maxsize: int = MAX_QUEUED_FRAMES) -> None:
        self.name = name
        self._deliver = deliver
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize)
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"pump-{self.name}")

    def put(self, item: T) -> bool:
        """Queue ``item``; returns ``False`` when the queue is full."""
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._deliver(item)
            except Exception:
                LOGGER.exception("Forwarding on %s failed", self.name)
            finally:
                self._queue.task_done()


def _now_ms() -> int:
    return int(time.time() * 1000)


class MessageBridge:
    """Forwards frames between the extension and whichever backend is active.

    Forwarding never raises: every failure becomes a ``dropped`` notification
    or an ``error`` notification plus a structured event.
    """

    def __init__(
        self,
        *,
        config_manager: ConfigManager,
        router: Router,
        connections: ConnectionManager,
        host_factory: HostFactory = create_extension_host,
        events: EventSink | None = None,
        tracker: RequestTracker | None = None,
        max_queued: int = MAX_QUEUED_FRAMES,
    ) -> None:
        self.config_manager = config_manager
        self.router = router
        self.connections = connections
        self.events = events or LoggingEventSink()
        self.tracker = tracker or RequestTracker()
        self.host: FramedStream | None = None
        self._host_factory = host_factory

        self.started: Signal[None] = Signal("bridge.started")
        self.stopped: Signal[None] = Signal("bridge.stopped")
        self.target_changed: Signal[TargetChanged] = Signal("bridge.target_changed")
        self.error: Signal[BridgectlError] = Signal("bridge.error")
        self.message: Signal[ForwardedMessage] = Signal("bridge.message")
        self.dropped: Signal[DroppedFrame] = Signal("bridge.dropped")

        self.running = False
        self.counters = {EXTENSION_TO_BACKEND: 0, BACKEND_TO_EXTENSION: 0}
        self.dropped_count = 0
        self.last_error: BridgectlError | None = None
        self.last_activity: datetime | None = None
        self._started_at: float | None = None
        self._subscriptions: list[Callable[[], None]] = []
        self._to_backend: _ForwardPump[tuple[Connection, Frame]] = _ForwardPump(
            EXTENSION_TO_BACKEND, self._deliver_to_backend, max_queued
        )
        self._to_extension: _ForwardPump[Frame] = _ForwardPump(
            BACKEND_TO_EXTENSION, self._deliver_to_extension, max_queued
        )
        self._stop_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Load config, connect, and begin forwarding.

        Config errors propagate. A failed initial connect does not: it is
        reported and the bridge runs without a backend until detection or a
        config change brings one up.
        """
        if self.running:
            raise BridgeStateError("Bridge is already running")

        self.config_manager.load()

        self._subscriptions = [
            self.router.target_changed.connect(self._on_target_changed),
            self.router.resolution_failed.connect(self._on_resolution_failed),
            self.connections.message.connect(self._on_backend_message),
            self.connections.error.connect(self._report_error),
            self.connections.connected.connect(self._on_connected),
            self.connections.disconnected.connect(self._on_disconnected),
            self.connections.switched.connect(self._on_switched),
            self.connections.follow(self.router),
        ]

        try:
            await self.connections.connect()
        except BridgectlError as exc:
            self._report_error(exc)

        try:
            self.host = await self._host_factory()
        except Exception:
            for undo in self._subscriptions:
                undo()
            self._subscriptions = []
            await self.connections.disconnect("extension host unavailable")
            raise
        self._subscriptions += [
            self.host.on_message.connect(self._on_extension_message),
            self.host.on_error.connect(self._report_error),
            self.host.on_close.connect(self._on_extension_closed),
        ]
        self._to_backend.start()
        self._to_extension.start()
        await self.host.start()

        self.router.start_watching()
        self.config_manager.start_watching()

        self.running = True
        self._started_at = time.monotonic()
        self._stop_task = None
        target = self.connections.current_target
        self.events.emit("bridge_started", target=target.value if target else None)
        self.started.emit(None)

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False

        await self.router.stop_watching()
        await self.config_manager.stop_watching()
        for undo in self._subscriptions:
            undo()
        self._subscriptions = []

        cancelled = self.tracker.cancel_all(BridgeStateError("Bridge stopped"))
        await self._to_backend.stop()
        await self._to_extension.stop()
        await self.connections.disconnect("bridge stopped")
        if self.host is not None:
            await self.host.close()

        self.events.emit("bridge_stopped", cancelled_requests=cancelled, **self.counters)
        self.stopped.emit(None)

    async def request(self, frame: Frame, timeout_ms: float = DEFAULT_REQUEST_TIMEOUT_MS) -> Frame:
        """Send ``frame`` to the active backend and wait for the reply with the same id."""
        connection = self.connections.get_connection()
        if connection is None:
            raise ConnectionLostError("No active backend connection")
        pending = self.tracker.track(frame, timeout_ms)
        try:
            await connection.send(pending.frame)
        except BridgectlError as exc:
            self.tracker.cancel(pending.id, exc)
        return await pending

    def status(self) -> BridgeStatus:
        uptime = time.monotonic() - self._started_at if self.running and self._started_at is not None else 0.0
        return BridgeStatus(
            running=self.running,
            current_target=self.connections.current_target,
            connection_state=self.connections.state,
            resolution=self.router.last_resolution,
            detection=self.router.last_snapshot,
            last_error=str(self.last_error) if self.last_error else None,
            forwarded=dict(self.counters),
            dropped=self.dropped_count,
            pending_requests=len(self.tracker),
            last_activity=self.last_activity,
            uptime_s=uptime,
        )

    async def flush(self) -> None:
        """Wait until every frame queued so far has been delivered or dropped."""
        await self._to_backend.join()
        await self._to_extension.join()

    def _on_extension_message(self, frame: Frame) -> None:
        connection = self.connections.get_connection()
        if connection is None:
            self._drop(frame, "no active connection")
            return
        if frame.id is None or frame.timestamp is None:
            frame = dataclasses.replace(
                frame,
                id=frame.id if frame.id is not None else self.tracker.generate_id(),
                timestamp=frame.timestamp if frame.timestamp is not None else _now_ms(),
            )
        if not self._to_backend.put((connection, frame)):
            self._drop(frame, "forward queue full")

    def _on_backend_message(self, frame: Frame) -> None:
        self.tracker.resolve(frame)
        if not self._to_extension.put(frame):
            self._drop(frame, "forward queue full")

    async def _deliver_to_backend(self, item: tuple[Connection, Frame]) -> None:
        connection, frame = item
        # Frames queued for a replaced connection are not replayed on the new one.
        if connection is not self.connections.get_connection():
            self._drop(frame, "connection replaced")
            return
        try:
            await connection.send(frame)
        except BridgectlError as exc:
            self._report_error(exc)
            return
        self._count(EXTENSION_TO_BACKEND, frame)

    async def _deliver_to_extension(self, frame: Frame) -> None:
        if self.host is None:
            return
        try:
            await self.host.send(frame)
        except BridgectlError as exc:
            self._report_error(exc)
            return
        self._count(BACKEND_TO_EXTENSION, frame)

    def _count(self, direction: str, frame: Frame) -> None:
        self.counters[direction] += 1
        self.last_activity = datetime.now(timezone.utc)
        self.events.emit("message_forwarded", logging.DEBUG, direction=direction, type=frame.type, id=frame.id)
        self.message.emit(ForwardedMessage(direction=direction, frame=frame))  # type: ignore[arg-type]

    def _drop(self, frame: Frame, reason: str) -> None:
        self.dropped_count += 1
        self.events.emit("frame_dropped", logging.WARNING, reason=reason, type=frame.type, id=frame.id)
        self.dropped.emit(DroppedFrame(frame=frame, reason=reason))

    def _report_error(self, error: BridgectlError) -> None:
        self.last_error = error
        self.events.emit("bridge_error", logging.ERROR, **error_fields(error))
        self.error.emit(error)

    def _on_resolution_failed(self, error: BridgectlError) -> None:
        self.last_error = error
        self.events.emit("resolution_failed", logging.WARNING, **error_fields(error))

    def _on_target_changed(self, event: TargetChanged) -> None:
        self.events.emit(
            "target_changed",
            target=event.target.value,
            previous=event.previous.value if event.previous else None,
            reason=event.reason,
            trigger=event.trigger,
        )
        self.target_changed.emit(event)

    def _on_connected(self, target: Target) -> None:
        self.events.emit("backend_connected", target=target.value)

    def _on_disconnected(self, reason: str) -> None:
        cancelled = self.tracker.cancel_all(ConnectionLostError(f"Backend connection lost: {reason}"))
        self.events.emit("backend_disconnected", logging.WARNING, reason=reason, cancelled_requests=cancelled)

    def _on_switched(self, switch: TargetSwitch) -> None:
        self.events.emit(
            "target_switched",
            previous=switch.previous.value,
            target=switch.target.value,
            reason=switch.reason,
        )

    def _on_extension_closed(self, _: Any) -> None:
        if not self.running or self._stop_task is not None:
            return
        LOGGER.info("Extension closed its side of the channel; stopping")
        self._stop_task = asyncio.create_task(self.stop(), name="bridge-stop")
