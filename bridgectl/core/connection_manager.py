"""Ownership of the live backend connection and its reconnection policy."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any
from enum import Enum

from bridgectl.core.errors import BridgectlError, BridgeStateError, ReconnectFailedError
from bridgectl.core.model import DetectionSnapshot, Frame, RoutingConfig, Target, TargetChanged, TargetSwitch
from bridgectl.core.router import Router
from bridgectl.core.signals import Signal
from bridgectl.transports.base import Connection, Connector

LOGGER = logging.getLogger(__name__)

# Default policy: wait reconnect_ms * attempt before attempt 1..N.
MAX_RECONNECT_ATTEMPTS = 3


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ConnectionManager:
    """Sole owner of the active ``Connection``.

    A connection that is replaced or closed on purpose has its handlers
    detached first, so only an unexpected close of the active connection
    starts recovery. At most one recovery task runs; triggers that arrive
    while it runs are absorbed by it. ``disconnect`` starts a new generation:
    any connect begun before it is cancelled or fails with
    ``BridgeStateError`` and never installs its connection.
    """

    def __init__(
        self,
        router: Router,
        connector: Connector,
        config_source: Callable[[], RoutingConfig],
        *,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.router = router
        self.connector = connector
        self._config_source = config_source
        self.max_attempts = max_attempts
        self._sleep = sleep

        self.connected: Signal[Target] = Signal("connection.connected")
        self.disconnected: Signal[str] = Signal("connection.disconnected")
        self.switched: Signal[TargetSwitch] = Signal("connection.switched")
        self.message: Signal[Frame] = Signal("connection.message")
        self.error: Signal[BridgectlError] = Signal("connection.error")

        self.state = ConnectionState.DISCONNECTED
        self.connection: Connection | None = None
        self.current_target: Target | None = None
        self._detach: list[Callable[[], None]] = []
        self._recovery: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._started = False
        self._generation = 0
        self._tasks: set[asyncio.Task[None]] = set()

    def is_connected(self) -> bool:
        return self.connection is not None and self.connection.is_connected()

    def get_connection(self) -> Connection | None:
        return self.connection if self.is_connected() else None

    @property
    def recovering(self) -> bool:
        return self._recovery is not None

    async def connect(self) -> Connection:
        """Resolve a target through the router and connect to it."""
        self._started = True
        self.state = ConnectionState.CONNECTING
        generation = self._generation
        try:
            result = await self.router.resolve()
            return await self._connect_to(result.target, generation)
        except BridgectlError:
            if self.connection is None and generation == self._generation:
                self.state = ConnectionState.FAILED
            raise

    async def switch_to(self, target: Target, reason: str) -> None:
        previous = self.current_target
        if previous is target and self.is_connected():
            return
        generation = self._generation
        try:
            await self._connect_to(target, generation)
        except BridgectlError as exc:
            if generation != self._generation:
                return
            LOGGER.warning("Switch to %s failed: %s", target.value, exc)
            self.error.emit(exc)
            self._schedule_recovery()
            return
        if previous is not None:
            self.switched.emit(TargetSwitch(previous=previous, target=target, reason=reason))

    async def disconnect(self, reason: str = "disconnect requested") -> None:
        self._started = False
        self._generation += 1
        current = asyncio.current_task()
        tasks = [task for task in (self._recovery, *self._tasks) if task is not None and task is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._recovery = None
        async with self._lock:
            connection = self._release()
            self.current_target = None
            self.state = ConnectionState.DISCONNECTED
        if connection is not None:
            await connection.close()
            self.disconnected.emit(reason)

    def follow(self, router: Router) -> Callable[[], None]:
        """React to router notifications; returns a callable that stops following."""
        unsubscribe = [
            router.target_changed.connect(lambda event: self._spawn(self._on_target_changed(event))),
            router.detection_updated.connect(lambda snapshot: self._spawn(self._on_detection_updated(snapshot))),
        ]

        def stop() -> None:
            for undo in unsubscribe:
                undo()

        return stop

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _connect_to(self, target: Target, generation: int) -> Connection:
        async with self._lock:
            if generation != self._generation:
                raise BridgeStateError("Connection manager was disconnected")
            old = self._release()
            if old is not None:
                await old.close()
            if self.state is not ConnectionState.RECONNECTING:
                self.state = ConnectionState.CONNECTING
            timeout_s = self._config_source().timeouts.connection / 1000
            connection = await self.connector.connect(target, timeout_s=timeout_s)
            if generation != self._generation:
                await connection.close()
                raise BridgeStateError("Connection manager was disconnected")

            self._detach = [
                connection.on_message.connect(self.message.emit),
                connection.on_error.connect(self.error.emit),
                connection.on_close.connect(lambda _: self._on_connection_closed(connection)),
            ]
            self.connection = connection
            self.current_target = target
            self.state = ConnectionState.CONNECTED
        LOGGER.info("Connected to %s", target.value)
        self.connected.emit(target)
        return connection

    def _release(self) -> Connection | None:
        for undo in self._detach:
            undo()
        self._detach = []
        connection, self.connection = self.connection, None
        return connection

    def _on_connection_closed(self, connection: Connection) -> None:
        if connection is not self.connection:
            return
        self._release()
        LOGGER.warning("Connection to %s closed unexpectedly", self.current_target.value if self.current_target else "?")
        self.disconnected.emit("Connection closed")
        self._schedule_recovery(connection)

    def _schedule_recovery(self, dead: Connection | None = None) -> None:
        if self._recovery is not None:
            return
        self.state = ConnectionState.RECONNECTING
        self._recovery = asyncio.create_task(self._recover(dead), name="connection-recovery")
        self._recovery.add_done_callback(self._recovery_done)

    async def _recover(self, dead: Connection | None) -> None:
        try:
            if dead is not None:
                await dead.close()
            previous = self.current_target
            generation = self._generation
            for attempt in range(1, self.max_attempts + 1):
                delay_ms = self._config_source().timeouts.reconnect * attempt
                await self._sleep(delay_ms / 1000)
                try:
                    result = await self.router.resolve()
                    await self._connect_to(result.target, generation)
                except BridgeStateError:
                    return
                except BridgectlError as exc:
                    LOGGER.warning("Reconnect attempt %d/%d failed: %s", attempt, self.max_attempts, exc)
                    continue
                if previous is not None and result.target is not previous:
                    self.switched.emit(TargetSwitch(previous=previous, target=result.target, reason="reconnection"))
                return

            self.state = ConnectionState.FAILED
            self.current_target = None
            self.error.emit(ReconnectFailedError(f"Reconnection failed after {self.max_attempts} attempts"))
        finally:
            self._recovery = None

    def _recovery_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Connection recovery crashed", exc_info=exc)
            self.state = ConnectionState.FAILED

    async def _on_target_changed(self, event: TargetChanged) -> None:
        if self.state is not ConnectionState.CONNECTED or self.current_target is event.target:
            return
        await self.switch_to(event.target, event.reason)

    async def _on_detection_updated(self, snapshot: DetectionSnapshot) -> None:
        if not self._started or self.state not in (ConnectionState.FAILED, ConnectionState.DISCONNECTED):
            return
        try:
            await self.connect()
        except BridgectlError as exc:
            LOGGER.debug("Connect after detection update failed: %s", exc)
