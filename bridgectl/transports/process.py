"""Backend connector that spawns a backend's native host and talks to its stdio."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import subprocess
import sys
import time
from collections.abc import Mapping
from pathlib import Path

from bridgectl.core.errors import TransportConnectError, TransportTimeoutError
from bridgectl.core.model import Target
from bridgectl.transports.stream import FramedStream

LOGGER = logging.getLogger(__name__)

NATIVE_HOST_NAME = "chrome-native-host"

# A child that dies within this window never became a usable connection.
STARTUP_GRACE_S = 0.1
TERMINATE_GRACE_S = 2.0


def _version_key(name: str) -> tuple[int, ...]:
    """Order ``app-X.Y.Z`` directories by numeric version."""
    parts = []
    for part in name[len("app-") :].split("."):
        digits = "".join(ch for ch in part if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def detect_native_host_paths(
    platform: str = sys.platform,
    *,
    environ: Mapping[str, str] | None = None,
    home: Path | None = None,
) -> dict[Target, str]:
    env = os.environ if environ is None else environ
    home_dir = home or Path.home()

    if platform == "win32":
        paths: dict[Target, str] = {}
        local_app_data = env.get("LOCALAPPDATA")
        if local_app_data:
            base = Path(local_app_data) / "AnthropicClaude"
            try:
                versions = sorted(
                    (entry.name for entry in base.iterdir() if entry.name.startswith("app-")),
                    key=_version_key,
                    reverse=True,
                )
            except OSError:
                versions = []
            if versions:
                paths[Target.DESKTOP] = str(base / versions[0] / "resources" / f"{NATIVE_HOST_NAME}.exe")
        paths[Target.CLI] = str(home_dir / ".claude" / "chrome" / f"{NATIVE_HOST_NAME}.bat")
        return paths

    if platform == "darwin":
        return {
            Target.DESKTOP: str(
                home_dir / "Library" / "Application Support" / "Claude" / "ChromeNativeHost" / NATIVE_HOST_NAME
            ),
            Target.CLI: str(home_dir / ".claude" / "chrome" / NATIVE_HOST_NAME),
        }

    return {}


def _is_runnable(path: str) -> bool:
    return Path(path).is_file() and os.access(path, os.X_OK)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_S)
    except asyncio.TimeoutError:
        LOGGER.warning("Native host pid %s ignored terminate; killing", process.pid)
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


class ProcessConnection(FramedStream):
    """A framed stream over a child's stdio; closing it ends the child."""

    def __init__(self, process: asyncio.subprocess.Process, target: Target) -> None:
        if process.stdout is None or process.stdin is None:
            raise TransportConnectError(f"Native host for {target.value} has no stdio pipes")
        super().__init__(process.stdout, process.stdin, target=target, name=f"process.{target.value}")
        self.process = process
        self._stderr_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        await super().start()
        if self.process.stderr is not None and self._stderr_task is None:
            self._stderr_task = asyncio.create_task(self._log_stderr(self.process.stderr))

    async def close(self) -> None:
        await super().close()
        task, self._stderr_task = self._stderr_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await _terminate(self.process)

    async def _log_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            LOGGER.debug("[%s] stderr: %s", self.name, line.decode("utf-8", errors="replace").rstrip())


class ProcessConnector:
    requires_running_process = False

    def __init__(
        self,
        executables: dict[Target, str] | None = None,
        *,
        platform: str = sys.platform,
    ) -> None:
        self._platform = platform
        self.executables = {**detect_native_host_paths(platform), **(executables or {})}

    def describe(self, target: Target) -> str | None:
        return self.executables.get(target)

    async def connect(self, target: Target, *, timeout_s: float) -> ProcessConnection:
        executable = self._require_executable(target)
        argv = self._argv(executable)
        try:
            process = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
                ),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"Starting native host {executable} timed out") from exc
        except OSError as exc:
            raise TransportConnectError(f"Could not start native host {executable}: {exc}") from exc

        try:
            code = await asyncio.wait_for(process.wait(), timeout=min(STARTUP_GRACE_S, timeout_s))
        except asyncio.TimeoutError:
            code = None
        if code is not None:
            # Closes stdin and drains the output pipes so their transports close.
            _, stderr = await process.communicate()
            message = f"Native host {executable} exited with code {code}"
            lines = (stderr or b"").decode("utf-8", errors="replace").strip().splitlines()
            if lines:
                message = f"{message}: {lines[-1]}"
            raise TransportConnectError(message)

        connection = ProcessConnection(process, target)
        await connection.start()
        LOGGER.info("Started native host for %s (pid %s)", target.value, process.pid)
        return connection

    async def probe(self, target: Target, *, timeout_s: float) -> float:
        """Check that the native host is present and runnable.

        Spawning on every poll would start backend processes as a side effect.
        """
        started = time.perf_counter()
        self._require_executable(target)
        return (time.perf_counter() - started) * 1000

    def _require_executable(self, target: Target) -> str:
        executable = self.executables.get(target)
        if not executable:
            raise TransportConnectError(f"No native host configured for {target.value}")
        if not _is_runnable(executable):
            raise TransportConnectError(f"Native host not found or not executable: {executable}")
        return executable

    def _argv(self, executable: str) -> list[str]:
        if self._platform == "win32" and executable.lower().endswith(".bat"):
            return ["cmd.exe", "/c", executable]
        return [executable]
