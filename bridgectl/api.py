"""Stable public API for building tooling on top of bridgectl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from bridgectl.core.bridge import BridgeStatus, HostFactory, MessageBridge
from bridgectl.core.config import ConfigManager, config_to_document
from bridgectl.core.connection_manager import ConnectionManager, ConnectionState
from bridgectl.core.decision import available_targets, decide
from bridgectl.core.errors import (
    BridgectlError,
    BridgeStateError,
    ConfigError,
    ConfigLoadError,
    ConfigValidationError,
    ConnectionLostError,
    NoAvailableTargetError,
    ParseError,
    ReconnectFailedError,
    RequestTimeoutError,
    SizeExceeded,
    StdinError,
    StdoutError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
)
from bridgectl.core.events import EventSink
from bridgectl.core.model import (
    DetectionSnapshot,
    Frame,
    HealthStatus,
    ResolutionResult,
    RoutingConfig,
    Target,
)
from bridgectl.core.router import Router
from bridgectl.detector import ProcessDetector, ProcessProbe, create_detector, create_probe
from bridgectl.transports.base import Connector
from bridgectl.transports.ipc import IpcConnector
from bridgectl.transports.process import ProcessConnector
from bridgectl.transports.stdio import create_extension_host

__all__ = [
    "BridgectlError",
    "BridgeStateError",
    "ConfigError",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConnectionLostError",
    "NoAvailableTargetError",
    "ParseError",
    "ReconnectFailedError",
    "RequestTimeoutError",
    "SizeExceeded",
    "StdinError",
    "StdoutError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "BridgeStatus",
    "ConnectionState",
    "DetectionSnapshot",
    "Frame",
    "HealthStatus",
    "MessageBridge",
    "ResolutionResult",
    "RoutingConfig",
    "StatusReport",
    "Target",
    "build_bridge",
    "create_connector",
    "inspect_status",
    "status_to_dict",
]


@dataclass(frozen=True)
class StatusReport:
    """One-shot view of config, backend health, and the target that would be chosen."""

    config_path: Path
    config: RoutingConfig
    channels: dict[Target, str | None]
    detection: DetectionSnapshot
    resolution: ResolutionResult | None
    error: str | None

    @property
    def available(self) -> list[Target]:
        return available_targets(self.detection)


def create_connector(config: RoutingConfig, *, platform: str = sys.platform) -> Connector:
    if config.advanced.transport == "process":
        return ProcessConnector(config.advanced.executables or None, platform=platform)
    return IpcConnector(config.advanced.paths or None, platform=platform)


def build_bridge(
    config_path: Path | None = None,
    *,
    host_factory: HostFactory = create_extension_host,
    events: EventSink | None = None,
    platform: str = sys.platform,
) -> MessageBridge:
    """Wire config, detector, router, and connection manager into a bridge.

    The connector kind is fixed by the config present at build time.
    """
    config_manager = ConfigManager(config_path)
    config = config_manager.load()
    connector = create_connector(config, platform=platform)
    detector = create_detector(connector, config_manager.get_config, platform=platform)
    router = Router(detector, config_manager)
    connections = ConnectionManager(router, connector, config_manager.get_config)
    return MessageBridge(
        config_manager=config_manager,
        router=router,
        connections=connections,
        host_factory=host_factory,
        events=events,
    )


async def inspect_status(
    config_path: Path | None = None,
    *,
    connector: Connector | None = None,
    probe: ProcessProbe | None = None,
    platform: str = sys.platform,
) -> StatusReport:
    config_manager = ConfigManager(config_path)
    config = config_manager.load()
    connector = connector or create_connector(config, platform=platform)
    detector = ProcessDetector(probe or create_probe(platform), connector, config_manager.get_config)
    snapshot = await detector.detect_all()

    resolution: ResolutionResult | None = None
    error: str | None = None
    try:
        resolution = decide(config, snapshot)
    except NoAvailableTargetError as exc:
        error = str(exc)

    return StatusReport(
        config_path=config_manager.path,
        config=config,
        channels={target: connector.describe(target) for target in Target},
        detection=snapshot,
        resolution=resolution,
        error=error,
    )


def _health_to_dict(status: HealthStatus) -> dict[str, Any]:
    return {
        "processRunning": status.process_running,
        "ipcConnectable": status.ipc_connectable,
        "responseTimeMs": status.response_time_ms,
        "lastChecked": status.last_checked.isoformat(),
        "error": status.error,
    }


def status_to_dict(report: StatusReport) -> dict[str, Any]:
    resolution = None
    if report.resolution is not None:
        resolution = {
            "target": report.resolution.target.value,
            "reason": report.resolution.reason,
            "alternatives": [t.value for t in report.resolution.alternatives],
        }
    return {
        "configPath": str(report.config_path),
        "config": config_to_document(report.config),
        "channels": {t.value: path for t, path in report.channels.items()},
        "detection": {t.value: _health_to_dict(report.detection[t]) for t in Target},
        "resolution": resolution,
        "error": report.error,
    }
