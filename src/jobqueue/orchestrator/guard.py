"""Single runner per working directory."""

from __future__ import annotations

import getpass
import logging
import os
from pathlib import Path

from jobqueue.orchestrator.inspector import ProcessInspector, ancestor_pids

logger = logging.getLogger(__name__)


class SingleInstanceGuard:
    """Detects another runner process already serving ``workdir``.

    Host-local and best effort: two runners started at the same instant can
    both pass the check. Guarded store transitions keep that case safe.
    """

    def __init__(
        self,
        inspector: ProcessInspector,
        command_pattern: str,
        workdir: Path,
        own_pid: int | None = None,
    ) -> None:
        self.inspector = inspector
        self.command_pattern = command_pattern
        self.workdir = workdir.resolve()
        self.own_pid = own_pid if own_pid is not None else os.getpid()

    def is_already_running(self) -> int | None:
        """Pid of another runner in the same working directory, if any."""

        skipped = {self.own_pid} | ancestor_pids(self.own_pid)
        current_user = _current_user()
        for info in self.inspector.find_by_command_pattern(self.command_pattern):
            if info.pid in skipped:
                continue
            if info.username is not None and current_user is not None:
                if info.username != current_user:
                    continue
            if info.cwd is None:
                continue
            if Path(info.cwd).resolve() == self.workdir:
                logger.info("Runner %s already serves %s", info.pid, self.workdir)
                return info.pid
        return None


def _current_user() -> str | None:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None
