"""Stateful target resolution on top of the decision engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from bridgectl.core.config import ConfigManager, ensure_valid
from bridgectl.core.decision import decide, fallback_trigger
from bridgectl.core.errors import BridgectlError
from bridgectl.core.model import DetectionSnapshot, ResolutionResult, RoutingConfig, Target, TargetChanged
from bridgectl.core.signals import Signal
from bridgectl.detector.base import ProcessDetector, WatchHandle

LOGGER = logging.getLogger(__name__)


class Router:
    def __init__(self, detector: ProcessDetector, config_manager: ConfigManager) -> None:
        self.detector = detector
        self.config_manager = config_manager
        self.target_changed: Signal[TargetChanged] = Signal("router.target_changed")
        self.resolution_failed: Signal[BridgectlError] = Signal("router.resolution_failed")
        self.detection_updated: Signal[DetectionSnapshot] = Signal("router.detection_updated")
        self.current_target: Target | None = None
        self.last_resolution: ResolutionResult | None = None
        self.last_snapshot: DetectionSnapshot | None = None
        self._lock = asyncio.Lock()
        self._watch: WatchHandle | None = None
        self._unsubscribe_config: Callable[[], None] | None = None

    @property
    def watching(self) -> bool:
        return self._watch is not None

    async def resolve(self) -> ResolutionResult:
        """Re-read config, detect all targets, and decide.

        Raises ``ConfigValidationError`` for a structurally invalid config and
        ``NoAvailableTargetError`` when nothing is reachable.
        """
        return await self._resolve(None)

    def start_watching(self) -> None:
        if self._watch is not None:
            return
        self._unsubscribe_config = self.config_manager.changed.connect(self._on_config_changed)
        self._watch = self.detector.watch(self._on_detection)
        LOGGER.debug("Router watching config and detection")

    async def stop_watching(self) -> None:
        watch, self._watch = self._watch, None
        if self._unsubscribe_config is not None:
            self._unsubscribe_config()
            self._unsubscribe_config = None
        if watch is not None:
            await watch.stop()

    async def _resolve(self, snapshot: DetectionSnapshot | None) -> ResolutionResult:
        async with self._lock:
            config = ensure_valid(self.config_manager.get_config())
            if snapshot is None:
                snapshot = await self.detector.detect_all()
            self.last_snapshot = snapshot
            result = decide(config, snapshot)
            self.last_resolution = result

            previous = self.current_target
            if result.target is not previous:
                self.current_target = result.target
                # The very first resolution is not a change.
                if previous is not None:
                    LOGGER.info(
                        "Target changed from %s to %s (%s)",
                        previous.value,
                        result.target.value,
                        result.reason,
                    )
                    self.target_changed.emit(
                        TargetChanged(
                            target=result.target,
                            previous=previous,
                            reason=result.reason,
                            trigger=fallback_trigger(previous, snapshot),
                        )
                    )
            return result

    async def _on_config_changed(self, config: RoutingConfig) -> None:
        await self._resolve_quietly(None)

    async def _on_detection(self, snapshot: DetectionSnapshot) -> None:
        self.detection_updated.emit(snapshot)
        await self._resolve_quietly(snapshot)

    async def _resolve_quietly(self, snapshot: DetectionSnapshot | None) -> None:
        try:
            await self._resolve(snapshot)
        except BridgectlError as exc:
            LOGGER.debug("Resolution failed: %s", exc)
            self.resolution_failed.emit(exc)
