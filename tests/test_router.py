from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from bridgectl.core.config import ConfigManager
from bridgectl.core.errors import ConfigValidationError, NoAvailableTargetError
from bridgectl.core.model import DetectionSnapshot, HealthStatus, RoutingConfig, Target
from bridgectl.core.router import Router


def _snapshot(*reachable: Target) -> DetectionSnapshot:
    def status(target: Target) -> HealthStatus:
        up = target in reachable
        return HealthStatus(
            target=target,
            process_running=up,
            ipc_connectable=up,
            last_checked=datetime.now(timezone.utc),
        )

    return DetectionSnapshot(desktop=status(Target.DESKTOP), cli=status(Target.CLI))


class FakeHandle:
    def __init__(self) -> None:
        self.stopped = False

    def cancel(self) -> None:
        self.stopped = True

    def cancelled(self) -> bool:
        return self.stopped

    async def stop(self) -> None:
        self.stopped = True


class FakeDetector:
    def __init__(self, snapshot: DetectionSnapshot) -> None:
        self.snapshot = snapshot
        self.detect_calls = 0
        self.callback = None
        self.handle = FakeHandle()

    async def detect_all(self) -> DetectionSnapshot:
        self.detect_calls += 1
        return self.snapshot

    def watch(self, callback):
        self.callback = callback
        return self.handle

    def clear_cache(self) -> None:
        pass


def _manager(tmp_path: Path, content: str | None = None) -> ConfigManager:
    path = tmp_path / "config.json"
    if content is not None:
        path.write_text(content, encoding="utf-8")
    manager = ConfigManager(path)
    manager.load()
    return manager


@pytest.mark.asyncio
async def test_first_resolution_sets_target_without_change_event(tmp_path: Path) -> None:
    router = Router(FakeDetector(_snapshot(Target.DESKTOP, Target.CLI)), _manager(tmp_path))
    changes = []
    router.target_changed.connect(changes.append)

    result = await router.resolve()

    assert result.target is Target.CLI
    assert result.reason == "auto"
    assert router.current_target is Target.CLI
    assert router.last_resolution == result
    assert changes == []


@pytest.mark.asyncio
async def test_change_of_target_is_announced_with_trigger(tmp_path: Path) -> None:
    detector = FakeDetector(_snapshot(Target.DESKTOP, Target.CLI))
    router = Router(detector, _manager(tmp_path))
    changes = []
    router.target_changed.connect(changes.append)

    await router.resolve()
    await router.resolve()
    assert changes == []

    detector.snapshot = _snapshot(Target.DESKTOP)
    result = await router.resolve()

    assert result.target is Target.DESKTOP
    assert len(changes) == 1
    change = changes[0]
    assert change.previous is Target.CLI
    assert change.target is Target.DESKTOP
    assert change.reason == "auto"
    assert change.trigger == "process_not_running"


@pytest.mark.asyncio
async def test_nothing_reachable_raises(tmp_path: Path) -> None:
    router = Router(FakeDetector(_snapshot()), _manager(tmp_path))
    with pytest.raises(NoAvailableTargetError):
        await router.resolve()
    assert router.current_target is None


@pytest.mark.asyncio
async def test_invalid_snapshot_is_rejected_before_deciding(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    detector = FakeDetector(_snapshot(Target.CLI))
    router = Router(detector, manager)
    manager._config = RoutingConfig(target="both")

    with pytest.raises(ConfigValidationError):
        await router.resolve()
    assert detector.detect_calls == 0


@pytest.mark.asyncio
async def test_watch_cycle_reports_failures_instead_of_raising(tmp_path: Path) -> None:
    detector = FakeDetector(_snapshot(Target.CLI))
    router = Router(detector, _manager(tmp_path))
    updates, failures = [], []
    router.detection_updated.connect(updates.append)
    router.resolution_failed.connect(failures.append)

    router.start_watching()
    assert router.watching

    await detector.callback(detector.snapshot)
    assert router.current_target is Target.CLI

    empty = _snapshot()
    await detector.callback(empty)

    assert updates == [detector.snapshot, empty]
    assert len(failures) == 1
    assert isinstance(failures[0], NoAvailableTargetError)
    assert router.last_snapshot is empty
    # The watch cycle supplies the snapshot; no extra detection round trip.
    assert detector.detect_calls == 0

    await router.stop_watching()


@pytest.mark.asyncio
async def test_config_change_triggers_resolution(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    detector = FakeDetector(_snapshot(Target.DESKTOP, Target.CLI))
    router = Router(detector, manager)
    changes = []
    router.target_changed.connect(changes.append)

    await router.resolve()
    router.start_watching()

    manager.set_nested("target", "desktop")
    for _ in range(20):
        if changes:
            break
        await asyncio.sleep(0.01)

    assert [c.target for c in changes] == [Target.DESKTOP]
    assert changes[0].reason == "configured"
    assert changes[0].trigger is None

    await router.stop_watching()


@pytest.mark.asyncio
async def test_stop_watching_unsubscribes(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    detector = FakeDetector(_snapshot(Target.CLI))
    router = Router(detector, manager)

    router.start_watching()
    assert len(manager.changed) == 1

    await router.stop_watching()

    assert not router.watching
    assert detector.handle.stopped
    assert len(manager.changed) == 0
