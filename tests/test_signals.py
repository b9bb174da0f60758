from __future__ import annotations

import asyncio

import pytest

from bridgectl.core.signals import Signal


def test_connect_emit_and_unsubscribe() -> None:
    signal: Signal[int] = Signal("numbers")
    seen: list[int] = []
    unsubscribe = signal.connect(seen.append)

    signal.emit(1)
    unsubscribe()
    signal.emit(2)

    assert seen == [1]
    assert len(signal) == 0
    unsubscribe()


def test_failing_handler_does_not_stop_delivery() -> None:
    signal: Signal[str] = Signal("words")
    seen: list[str] = []

    def broken(value: str) -> None:
        raise RuntimeError(value)

    signal.connect(broken)
    signal.connect(seen.append)
    signal.emit("hello")

    assert seen == ["hello"]


@pytest.mark.asyncio
async def test_coroutine_handlers_are_scheduled() -> None:
    signal: Signal[int] = Signal("async")
    done = asyncio.Event()
    seen: list[int] = []

    async def handler(value: int) -> None:
        seen.append(value)
        done.set()

    signal.connect(handler)
    signal.emit(5)
    assert seen == []

    await asyncio.wait_for(done.wait(), timeout=1.0)
    assert seen == [5]
