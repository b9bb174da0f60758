"""Process probe for macOS and other Unix-like systems (pgrep + ps)."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Sequence

from bridgectl.core.model import ProcessInfo, Target

DESKTOP_PROCESS_NAME = "Claude"
CLI_PATTERN = "claude"
COMMAND_TIMEOUT_S = 5.0


def _run_command(cmd: Sequence[str]) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT_S,
        )
    except FileNotFoundError:
        return None


def _parse_pids(output: str) -> list[int]:
    pids: list[int] = []
    for line in output.splitlines():
        line = line.strip()
        if line.isdigit():
            pids.append(int(line))
    return pids


class PosixProcessProbe:
    def __init__(self, *, own_pid: int | None = None) -> None:
        self.own_pid = os.getpid() if own_pid is None else own_pid

    def detect_process(self, target: Target) -> ProcessInfo:
        if target is Target.DESKTOP:
            for pid in self._pgrep("-x", DESKTOP_PROCESS_NAME):
                if pid != self.own_pid:
                    return ProcessInfo(target=target, running=True, pid=pid)
            return ProcessInfo(target=target, running=False)

        # pgrep -f also matches editors and shells mentioning "claude".
        for pid in self._pgrep("-f", CLI_PATTERN):
            if pid == self.own_pid:
                continue
            command = self._command_line(pid)
            if command and "node" in command and CLI_PATTERN in command:
                return ProcessInfo(target=target, running=True, pid=pid, path=command.split()[0])
        return ProcessInfo(target=target, running=False)

    def _pgrep(self, flag: str, pattern: str) -> list[int]:
        result = _run_command(["pgrep", flag, pattern])
        # Exit status 1 means "no match".
        if result is None or result.returncode != 0:
            return []
        return _parse_pids(result.stdout)

    def _command_line(self, pid: int) -> str | None:
        result = _run_command(["ps", "-p", str(pid), "-o", "command="])
        if result is None or result.returncode != 0:
            return None
        return result.stdout.strip() or None
