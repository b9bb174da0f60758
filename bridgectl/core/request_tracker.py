"""Request/response correlation by frame id."""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import time
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

from bridgectl.core.errors import RequestTimeoutError
from bridgectl.core.model import Frame

DEFAULT_REQUEST_TIMEOUT_MS = 30_000

FrameId = str | int


def _correlatable(frame_id: object) -> bool:
    return isinstance(frame_id, (str, int)) and not isinstance(frame_id, bool)


@dataclass
class PendingRequest:
    id: FrameId
    frame: Frame
    created_at: float
    future: asyncio.Future[Frame]
    timer: asyncio.TimerHandle | None = None

    def __await__(self) -> Generator[Any, None, Frame]:
        return self.future.__await__()


class RequestTracker:
    def __init__(self) -> None:
        self._pending: dict[FrameId, PendingRequest] = {}
        self._counter = itertools.count(1)

    def generate_id(self) -> str:
        return f"req-{int(time.time() * 1000)}-{next(self._counter)}"

    def track(self, frame: Frame, timeout_ms: float = DEFAULT_REQUEST_TIMEOUT_MS) -> PendingRequest:
        """Register ``frame`` as awaiting a reply; an id is assigned if it has none.

        Await the returned object for the reply frame. Raises ``ValueError`` if a
        request with the same id is already pending.
        """
        frame_id = frame.id
        if frame_id is None:
            frame_id = self.generate_id()
            frame = dataclasses.replace(frame, id=frame_id)
        elif not _correlatable(frame_id):
            raise ValueError(f"Request id must be a string or integer, got {type(frame_id).__name__}")
        if frame_id in self._pending:
            raise ValueError(f"Request {frame_id!r} is already pending")

        loop = asyncio.get_running_loop()
        pending = PendingRequest(id=frame_id, frame=frame, created_at=time.time(), future=loop.create_future())
        pending.timer = loop.call_later(timeout_ms / 1000, self._expire, frame_id, pending)
        self._pending[frame_id] = pending
        return pending

    def resolve(self, reply: Frame) -> bool:
        """Fulfil the request whose id matches ``reply``; unmatched ids are ignored."""
        if not _correlatable(reply.id):
            return False
        pending = self._pending.pop(reply.id, None)
        if pending is None:
            return False
        self._settle(pending, result=reply)
        return True

    def cancel(self, frame_id: FrameId, error: BaseException) -> bool:
        pending = self._pending.pop(frame_id, None)
        if pending is None:
            return False
        self._settle(pending, error=error)
        return True

    def cancel_all(self, error: BaseException) -> int:
        pending, self._pending = self._pending, {}
        for request in pending.values():
            self._settle(request, error=error)
        return len(pending)

    def has(self, frame_id: FrameId) -> bool:
        return frame_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def _expire(self, frame_id: FrameId, pending: PendingRequest) -> None:
        if self._pending.get(frame_id) is not pending:
            return
        del self._pending[frame_id]
        self._settle(pending, error=RequestTimeoutError(f"Request timeout: {frame_id}"))

    @staticmethod
    def _settle(pending: PendingRequest, *, result: Frame | None = None, error: BaseException | None = None) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)  # type: ignore[arg-type]
