from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import IO

from buildorch.exec.process import command_argv
from buildorch.exec.supervise import StopPolicy, detect_stop_policy, pid_alive, stop_pid
from buildorch.exec.task import Task
from buildorch.progress.tree import Step
from buildorch.util.errors import TaskExecutionFailure, TimeoutExceeded, UnterminatedQuoteError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 60.0
DEFAULT_POLL_INTERVAL_SEC = 0.25
PIDFILE_ENV = "BUILDORCH_PIDFILE"

BackgroundSpawner = Callable[..., subprocess.Popen[bytes]]


def spawn_background(
    argv: Sequence[str],
    *,
    cwd: Path | None,
    env: Mapping[str, str] | None,
    log_path: Path | None,
) -> subprocess.Popen[bytes]:
    """Start argv in a session of its own, with no pipes back to this process.

    Output is appended to log_path, or discarded when there is none.
    """
    if log_path is None:
        return _popen(argv, cwd, env, subprocess.DEVNULL, subprocess.DEVNULL)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("ab") as output:
        return _popen(argv, cwd, env, output, subprocess.STDOUT)


def _popen(
    argv: Sequence[str],
    cwd: Path | None,
    env: Mapping[str, str] | None,
    stdout: int | IO[bytes],
    stderr: int,
) -> subprocess.Popen[bytes]:
    return subprocess.Popen(
        list(argv),
        cwd=str(cwd) if cwd is not None else None,
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=stdout,
        stderr=stderr,
        start_new_session=os.name != "nt",
    )


class StartTask(Task[int]):
    """Start a long-running process in the background and wait for its pidfile.

    The process is expected to write its own pid to the pidfile, whose path
    it receives in the BUILDORCH_PIDFILE environment variable. The task
    completes with that pid. When no readable pid shows up within
    timeout_sec the process is stopped and the task fails.
    """

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        pidfile: Path,
        name: str = "start",
        arguments: str | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        log_path: Path | None = None,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        stop_policy: StopPolicy | None = None,
        spawner: BackgroundSpawner = spawn_background,
        step: Step | None = None,
    ) -> None:
        super().__init__(name, step=step)
        self.command = command
        self.pidfile = pidfile.absolute()
        self.arguments = arguments
        self.cwd = cwd
        self.env = env
        self.log_path = log_path
        self.timeout_sec = timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self.stop_policy = stop_policy or detect_stop_policy()
        self._spawner = spawner
        self.process: subprocess.Popen[bytes] | None = None

    def _read_pid(self) -> int:
        return int(self.pidfile.read_text(encoding="utf-8").strip())

    def _clear_stale_pidfile(self) -> None:
        if not self.pidfile.is_file():
            return
        try:
            pid = self._read_pid()
        except (OSError, ValueError):
            pid = None
        if pid is not None and pid_alive(pid):
            raise TaskExecutionFailure(f"process already running with pid {pid}: {self.pidfile}")
        log.warning("[ Removing stale pidfile %s ]", self.pidfile)
        try:
            self.pidfile.unlink(missing_ok=True)
        except OSError as exc:
            raise TaskExecutionFailure(f"error removing pidfile: {self.pidfile}", cause=exc) from exc

    def _environment(self) -> dict[str, str]:
        merged = os.environ.copy()
        if self.env:
            merged.update(self.env)
        merged[PIDFILE_ENV] = str(self.pidfile)
        return merged

    async def _stop(self, proc: subprocess.Popen[bytes]) -> None:
        await stop_pid(proc.pid, self.timeout_sec, self.stop_policy)
        proc.poll()

    async def _await_pid(self, proc: subprocess.Popen[bytes]) -> int:
        deadline = time.monotonic() + self.timeout_sec
        read_error: Exception | None = None
        while True:
            if self.pidfile.is_file():
                try:
                    return self._read_pid()
                except (OSError, ValueError) as exc:
                    read_error = exc
            elif proc.poll() is not None:
                raise TaskExecutionFailure(
                    f"{self.name} exited during startup: exit({proc.returncode})"
                )
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(self.poll_interval_sec)

        if read_error is not None:
            log.error("Unable to get pid, trying to stop the process gracefully...")
            await self._stop(proc)
            raise TaskExecutionFailure(f"error reading pidfile: {self.pidfile}", cause=read_error)
        log.error("Startup timeout exceeded, trying to stop the process gracefully...")
        await self._stop(proc)
        raise TaskExecutionFailure(
            "startup timeout exceeded", cause=TimeoutExceeded(self.timeout_sec)
        )

    async def execute(self) -> int:
        if self.step is not None:
            self.step.describe("Starting process...")
        try:
            argv = command_argv(self.command, self.arguments)
        except UnterminatedQuoteError as exc:
            raise TaskExecutionFailure(f"invalid arguments for {self.name}: {exc}", cause=exc) from exc
        if not argv:
            raise TaskExecutionFailure(f"empty command for {self.name}")
        self._clear_stale_pidfile()

        log.info("[ Starting %s... ]", self.name)
        log.info(" - %s", " ".join(argv))
        try:
            proc = self._spawner(
                argv, cwd=self.cwd, env=self._environment(), log_path=self.log_path
            )
        except (OSError, ValueError) as exc:
            raise TaskExecutionFailure(f"failed to start process: {exc}", cause=exc) from exc
        self.process = proc

        try:
            pid = await self._await_pid(proc)
        except asyncio.CancelledError:
            await self._stop(proc)
            raise
        log.info("[ %s started with pid %s ]", self.name, pid)
        return pid
