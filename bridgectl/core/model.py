"""Core data models used across codec, detector, router, bridge, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from bridgectl.core.errors import ParseError


class Target(str, Enum):
    DESKTOP = "desktop"
    CLI = "cli"


TargetSetting = Literal["auto"] | Target
ResolutionReason = Literal["configured", "auto", "fallback"]
TransportKind = Literal["ipc", "process"]

_FRAME_KEYS = ("type", "payload", "id", "timestamp")


@dataclass(frozen=True)
class Frame:
    """One decoded unit of the wire protocol.

    The proxy only reads ``id``, and ``type`` for logging; every field is
    carried opaquely. Unknown top-level keys are kept in ``extra`` and the
    decoded key order in ``keys`` so that a frame is re-encoded exactly as it
    arrived. A field left as ``None`` is written only when the decoded frame
    carried that key (as ``null``).
    """

    type: Any = None
    payload: Any = None
    id: Any = None
    timestamp: Any = None
    extra: dict[str, Any] = field(default_factory=dict)
    keys: tuple[str, ...] = field(default=(), compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in _FRAME_KEYS:
            value = getattr(self, key)
            if value is not None or key in self.keys:
                out[key] = value
        for key, value in self.extra.items():
            if key not in _FRAME_KEYS:
                out[key] = value
        if not self.keys:
            return out
        ordered = {key: out.pop(key) for key in self.keys if key in out}
        ordered.update(out)
        return ordered

    @classmethod
    def from_dict(cls, doc: Any) -> Frame:
        if not isinstance(doc, dict):
            raise ParseError(f"Frame body must be a JSON object, got {type(doc).__name__}")
        return cls(
            type=doc.get("type"),
            payload=doc.get("payload"),
            id=doc.get("id"),
            timestamp=doc.get("timestamp"),
            extra={k: v for k, v in doc.items() if k not in _FRAME_KEYS},
            keys=tuple(doc),
        )


@dataclass(frozen=True)
class ProcessInfo:
    target: Target
    running: bool
    pid: int | None = None
    path: str | None = None


@dataclass(frozen=True)
class HealthStatus:
    target: Target
    process_running: bool
    ipc_connectable: bool
    last_checked: datetime
    response_time_ms: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class DetectionSnapshot:
    desktop: HealthStatus
    cli: HealthStatus

    def __getitem__(self, target: Target) -> HealthStatus:
        return self.desktop if target is Target.DESKTOP else self.cli


@dataclass(frozen=True)
class CacheEntry:
    status: HealthStatus
    expires_at: float


@dataclass(frozen=True)
class FallbackConfig:
    enabled: bool = True
    order: tuple[Target, ...] = (Target.CLI, Target.DESKTOP)


@dataclass(frozen=True)
class TimeoutConfig:
    connection: int = 5000
    health_check: int = 2000
    reconnect: int = 1000


@dataclass(frozen=True)
class DetectionConfig:
    interval: int = 5000
    cache_ttl: int = 3000


@dataclass(frozen=True)
class AdvancedConfig:
    transport: TransportKind = "ipc"
    paths: dict[Target, str] = field(default_factory=dict)
    executables: dict[Target, str] = field(default_factory=dict)
    debug: bool = False


@dataclass(frozen=True)
class RoutingConfig:
    target: TargetSetting = "auto"
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


@dataclass(frozen=True)
class ResolutionResult:
    target: Target
    reason: ResolutionReason
    alternatives: tuple[Target, ...] = ()


@dataclass(frozen=True)
class TargetChanged:
    target: Target
    previous: Target | None
    reason: ResolutionReason
    trigger: str | None = None


@dataclass(frozen=True)
class TargetSwitch:
    previous: Target
    target: Target
    reason: str


@dataclass(frozen=True)
class ForwardedMessage:
    direction: Literal["extension_to_backend", "backend_to_extension"]
    frame: Frame


@dataclass(frozen=True)
class DroppedFrame:
    frame: Frame
    reason: str
