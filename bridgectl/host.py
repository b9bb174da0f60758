"""Native messaging host entry point.

The browser starts this process and speaks framed JSON over its stdin/stdout.
Diagnostics go to stderr, or to ``BRIDGECTL_LOG_FILE`` when set.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from bridgectl.api import build_bridge
from bridgectl.core.errors import BridgectlError
from bridgectl.core.events import configure_logging, debug_enabled

LOGGER = logging.getLogger(__name__)

LOG_FILE_ENV = "BRIDGECTL_LOG_FILE"


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop: asyncio.Event) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))


async def serve(config_path: Path | None = None) -> None:
    bridge = build_bridge(config_path)
    if debug_enabled(bridge.config_manager.get_config()):
        logging.getLogger("bridgectl").setLevel(logging.DEBUG)

    stop = asyncio.Event()
    _install_signal_handlers(asyncio.get_running_loop(), stop)
    bridge.stopped.connect(lambda _: stop.set())

    await bridge.start()
    try:
        await stop.wait()
    finally:
        await bridge.stop()


def main() -> int:
    log_file = os.environ.get(LOG_FILE_ENV)
    configure_logging(
        logging.DEBUG if debug_enabled() else logging.INFO,
        Path(log_file).expanduser() if log_file else None,
    )
    try:
        asyncio.run(serve())
    except BridgectlError as exc:
        LOGGER.error("Bridge failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
