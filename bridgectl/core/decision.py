"""Target selection: a pure function of config and a detection snapshot."""

from __future__ import annotations

from typing import Literal

from bridgectl.core.errors import NoAvailableTargetError
from bridgectl.core.model import DetectionSnapshot, ResolutionResult, RoutingConfig, Target

FallbackTrigger = Literal["process_not_running", "connection_failed", "response_timeout"]


def _first_reachable(order: tuple[Target, ...], snapshot: DetectionSnapshot, *, exclude: Target | None = None) -> Target | None:
    for candidate in order:
        if candidate is not exclude and snapshot[candidate].ipc_connectable:
            return candidate
    return None


def decide(config: RoutingConfig, snapshot: DetectionSnapshot) -> ResolutionResult:
    """Pick the target to connect to.

    An explicit target wins whenever it is reachable. Otherwise ``fallback.order``
    is a strict priority list: the first reachable entry is chosen.
    """
    order = config.fallback.order

    if config.target != "auto":
        configured = Target(config.target)
        if snapshot[configured].ipc_connectable:
            return ResolutionResult(target=configured, reason="configured")
        if config.fallback.enabled:
            alternative = _first_reachable(order, snapshot, exclude=configured)
            if alternative is not None:
                return ResolutionResult(target=alternative, reason="fallback")
        raise NoAvailableTargetError(
            f"Target '{configured.value}' is not available and no fallback is available"
        )

    chosen = _first_reachable(order, snapshot)
    if chosen is None:
        raise NoAvailableTargetError("No available target found")
    return ResolutionResult(
        target=chosen,
        reason="auto",
        alternatives=tuple(t for t in order if t is not chosen),
    )


def available_targets(snapshot: DetectionSnapshot) -> list[Target]:
    return [target for target in Target if snapshot[target].ipc_connectable]


def next_fallback(current: Target, config: RoutingConfig, snapshot: DetectionSnapshot) -> Target | None:
    if not config.fallback.enabled:
        return None
    return _first_reachable(config.fallback.order, snapshot, exclude=current)


def fallback_trigger(current: Target, snapshot: DetectionSnapshot) -> FallbackTrigger | None:
    """Classify why ``current`` can no longer be used, or ``None`` if it still can."""
    status = snapshot[current]
    if status.ipc_connectable:
        return None
    if not status.process_running:
        return "process_not_running"
    error = (status.error or "").lower()
    if "timed out" in error or "timeout" in error:
        return "response_timeout"
    return "connection_failed"
