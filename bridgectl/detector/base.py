"""Per-target liveness and reachability detection with a short-lived cache."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

from bridgectl.core.model import CacheEntry, DetectionSnapshot, HealthStatus, ProcessInfo, RoutingConfig, Target
from bridgectl.transports.base import Connector

LOGGER = logging.getLogger(__name__)

ConfigSource = Callable[[], RoutingConfig]
WatchCallback = Callable[[DetectionSnapshot], Any]


class ProcessProbe(Protocol):
    def detect_process(self, target: Target) -> ProcessInfo:
        """Enumerate processes and report whether ``target`` is running. May block."""


class WatchHandle:
    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def cancel(self) -> None:
        self._task.cancel()

    def cancelled(self) -> bool:
        return self._task.cancelled()

    async def stop(self) -> None:
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProcessDetector:
    def __init__(
        self,
        probe: ProcessProbe,
        connector: Connector,
        config_source: ConfigSource,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.probe = probe
        self.connector = connector
        self._config_source = config_source
        self._clock = clock
        self._cache: dict[Target, CacheEntry] = {}

    async def detect(self, target: Target) -> HealthStatus:
        """Return the cached status while fresh, otherwise probe and cache.

        Never raises: probe failures are folded into the returned status.
        """
        entry = self._cache.get(target)
        if entry is not None and entry.expires_at > self._clock():
            return entry.status

        config = self._config_source()
        status = await self._check(target, config)
        self._cache[target] = CacheEntry(
            status=status,
            expires_at=self._clock() + config.detection.cache_ttl / 1000,
        )
        return status

    async def detect_all(self) -> DetectionSnapshot:
        desktop, cli = await asyncio.gather(self.detect(Target.DESKTOP), self.detect(Target.CLI))
        return DetectionSnapshot(desktop=desktop, cli=cli)

    def watch(self, callback: WatchCallback) -> WatchHandle:
        """Detect now, then every ``detection.interval``; the callback sees every cycle."""
        task = asyncio.create_task(self._watch_loop(callback), name="detector-watch")
        return WatchHandle(task)

    def clear_cache(self) -> None:
        self._cache = {}

    async def _watch_loop(self, callback: WatchCallback) -> None:
        while True:
            try:
                snapshot = await self.detect_all()
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOGGER.exception("Detection watch iteration failed")
            await asyncio.sleep(self._config_source().detection.interval / 1000)

    async def _check(self, target: Target, config: RoutingConfig) -> HealthStatus:
        try:
            info = await asyncio.to_thread(self.probe.detect_process, target)
        except Exception as exc:
            LOGGER.debug("Process probe for %s failed: %s", target.value, exc)
            return HealthStatus(
                target=target,
                process_running=False,
                ipc_connectable=False,
                last_checked=_now(),
                error=f"Process probe failed: {exc}",
            )

        if not info.running and self.connector.requires_running_process:
            return HealthStatus(
                target=target,
                process_running=False,
                ipc_connectable=False,
                last_checked=_now(),
            )

        try:
            elapsed_ms = await self.connector.probe(target, timeout_s=config.timeouts.health_check / 1000)
        except Exception as exc:
            LOGGER.debug("Reachability probe for %s failed: %s", target.value, exc)
            return HealthStatus(
                target=target,
                process_running=info.running,
                ipc_connectable=False,
                last_checked=_now(),
                error=str(exc),
            )

        return HealthStatus(
            target=target,
            process_running=info.running,
            ipc_connectable=True,
            last_checked=_now(),
            response_time_ms=round(elapsed_ms, 2),
        )
