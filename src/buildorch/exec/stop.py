from __future__ import annotations

import logging
from pathlib import Path

from buildorch.exec.supervise import StopPolicy, detect_stop_policy, pid_alive, stop_pid
from buildorch.exec.task import Task
from buildorch.progress.tree import Step
from buildorch.util.errors import TaskExecutionFailure

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 60.0


class StopTask(Task[int | None]):
    """Stop the process recorded in a pidfile and remove the pidfile."""

    def __init__(
        self,
        pidfile: Path,
        *,
        name: str = "stop",
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        stop_policy: StopPolicy | None = None,
        step: Step | None = None,
    ) -> None:
        super().__init__(name, step=step)
        self.pidfile = pidfile
        self.timeout_sec = timeout_sec
        self.stop_policy = stop_policy or detect_stop_policy()

    def _read_pid(self) -> int:
        try:
            return int(self.pidfile.read_text(encoding="utf-8").strip())
        except (OSError, ValueError) as exc:
            raise TaskExecutionFailure(f"error reading pidfile: {self.pidfile}", cause=exc) from exc

    async def execute(self) -> int | None:
        if self.step is not None:
            self.step.describe("Stopping process...")
        if not self.pidfile.is_file():
            log.warning("[ Process doesn't appear to be running, pidfile is not present: %s ]", self.pidfile)
            return None

        pid = self._read_pid()
        if pid_alive(pid):
            log.info("[ Stopping process %s... ]", pid)
            await stop_pid(pid, self.timeout_sec, self.stop_policy)
        else:
            log.warning(
                "[ Process doesn't appear to be running, removing existing pidfile %s ]",
                self.pidfile,
            )
        try:
            self.pidfile.unlink(missing_ok=True)
        except OSError as exc:
            raise TaskExecutionFailure(f"error removing pidfile: {self.pidfile}", cause=exc) from exc
        return pid
