"""Process probe for Windows (tasklist + wmic)."""

from __future__ import annotations

import csv
import os
import subprocess
from collections.abc import Sequence

from bridgectl.core.model import ProcessInfo, Target

PROCESS_NAMES = {
    Target.DESKTOP: "Claude.exe",
    Target.CLI: "node.exe",
}
CLI_IDENTIFIER = "claude"
COMMAND_TIMEOUT_S = 5.0


def _run_command(cmd: Sequence[str]) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT_S,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
    except FileNotFoundError:
        return None


def parse_tasklist(output: str, image_name: str) -> list[int]:
    """Extract pids of exactly ``image_name`` from ``tasklist /FO CSV /NH`` output."""
    pids: list[int] = []
    for row in csv.reader(output.splitlines()):
        if len(row) < 2 or row[0] != image_name:
            continue
        try:
            pids.append(int(row[1]))
        except ValueError:
            continue
    return pids


class WindowsProcessProbe:
    def __init__(self, *, own_pid: int | None = None) -> None:
        self.own_pid = os.getpid() if own_pid is None else own_pid

    def detect_process(self, target: Target) -> ProcessInfo:
        image_name = PROCESS_NAMES[target]
        result = _run_command(["tasklist", "/FI", f"IMAGENAME eq {image_name}", "/FO", "CSV", "/NH"])
        if result is None or result.returncode != 0:
            return ProcessInfo(target=target, running=False)

        for pid in parse_tasklist(result.stdout, image_name):
            if pid == self.own_pid:
                continue
            if target is Target.DESKTOP:
                return ProcessInfo(target=target, running=True, pid=pid)
            command = self._command_line(pid)
            if command and CLI_IDENTIFIER in command.lower():
                return ProcessInfo(target=target, running=True, pid=pid)
        return ProcessInfo(target=target, running=False)

    def _command_line(self, pid: int) -> str | None:
        result = _run_command(["wmic", "process", "where", f"processid={pid}", "get", "commandline", "/FORMAT:VALUE"])
        if result is None or result.returncode != 0:
            return None
        return result.stdout.strip() or None
