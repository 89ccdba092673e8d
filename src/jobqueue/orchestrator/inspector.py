"""Host process inspection behind a small capability interface."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol

import psutil

logger = logging.getLogger(__name__)

INIT_PID = 1


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    pid: int
    cwd: str | None
    cmdline: str
    username: str | None = None


class ProcessInspector(Protocol):
    """What the queue needs to know about host processes."""

    def is_alive(self, pid: int) -> bool: ...

    def find_by_command_pattern(self, pattern: str) -> list[ProcessInfo]: ...


class PsutilProcessInspector:
    """ProcessInspector over psutil's native process table."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            process = psutil.Process(pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                # Unreaped exit: alive while the parent that records it is still around,
                # dead once orphaned to init.
                return process.ppid() != INIT_PID
            return process.is_running()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def find_by_command_pattern(self, pattern: str) -> list[ProcessInfo]:
        regex = re.compile(pattern)
        matches: list[ProcessInfo] = []
        for proc in psutil.process_iter(["pid", "cmdline", "username"]):
            cmdline_parts = proc.info.get("cmdline") or []
            cmdline = " ".join(cmdline_parts)
            if not cmdline or not regex.search(cmdline):
                continue
            matches.append(
                ProcessInfo(
                    pid=proc.info["pid"],
                    cwd=_read_cwd(proc),
                    cmdline=cmdline,
                    username=proc.info.get("username"),
                ),
            )
        return matches


def ancestor_pids(pid: int) -> set[int]:
    """Pids of every ancestor of ``pid``, best effort."""

    ancestors: set[int] = set()
    try:
        for parent in psutil.Process(pid).parents():
            ancestors.add(parent.pid)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        logger.debug("Cannot walk ancestors of pid %s", pid)
    return ancestors


def _read_cwd(proc: psutil.Process) -> str | None:
    try:
        return proc.cwd()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as error:
        logger.debug("Cannot read cwd of pid %s: %s", proc.pid, error)
        return None
