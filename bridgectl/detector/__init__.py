"""Backend process detection."""

from __future__ import annotations

import sys

from bridgectl.detector.base import ConfigSource, ProcessDetector, ProcessProbe, WatchHandle
from bridgectl.detector.posix import PosixProcessProbe
from bridgectl.detector.windows import WindowsProcessProbe
from bridgectl.transports.base import Connector

__all__ = [
    "ProcessDetector",
    "ProcessProbe",
    "WatchHandle",
    "create_detector",
    "create_probe",
]


def create_probe(platform: str = sys.platform) -> ProcessProbe:
    if platform == "win32":
        return WindowsProcessProbe()
    return PosixProcessProbe()


def create_detector(
    connector: Connector,
    config_source: ConfigSource,
    *,
    platform: str = sys.platform,
) -> ProcessDetector:
    return ProcessDetector(create_probe(platform), connector, config_source)
