from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Collection, Mapping, Sequence
from pathlib import Path

from buildorch.args.tokenize import sanitize_arguments, tokenize
from buildorch.exec.capture import LineBufferedLogger, pump_stream
from buildorch.exec.supervise import StopPolicy, detect_stop_policy, stop_process, wait_with_timeout
from buildorch.exec.task import Task
from buildorch.progress.tree import Step
from buildorch.util.errors import (
    ProcessExitFailure,
    TaskExecutionFailure,
    TimeoutExceeded,
    UnterminatedQuoteError,
)

log = logging.getLogger(__name__)

ProcessSpawner = Callable[..., Awaitable[asyncio.subprocess.Process]]

DEFAULT_STOP_TIMEOUT_SEC = 10.0
OUTPUT_DRAIN_GRACE_SEC = 1.0


async def spawn_process(
    argv: Sequence[str],
    *,
    cwd: Path | None,
    env: Mapping[str, str] | None,
) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd) if cwd is not None else None,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=os.name != "nt",
    )


def command_argv(command: str | Sequence[str], arguments: str | None = None) -> list[str]:
    """Build an argument vector; string commands and arguments are tokenized."""
    if isinstance(command, str):
        argv = tokenize(sanitize_arguments(command))
    else:
        argv = list(command)
    if arguments:
        argv.extend(tokenize(sanitize_arguments(arguments)))
    return argv


async def _drain(pumps: set[asyncio.Task[None]], grace_sec: float) -> None:
    """Give the output pumps grace_sec to reach end of stream, then cancel them.

    Descendants of the process may keep its pipes open indefinitely.
    """
    _, pending = await asyncio.wait(pumps, timeout=grace_sec)
    if not pending:
        return
    log.debug("output still open %ss after exit, no longer reading it", grace_sec)
    for pump in pending:
        pump.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


class ExecTask(Task[int]):
    """Run one external process, streaming its output into the log."""

    def __init__(
        self,
        name: str,
        command: str | Sequence[str],
        *,
        arguments: str | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout_sec: float | None = None,
        tolerated_exit_codes: Collection[int] = (),
        logger: logging.Logger | None = None,
        stop_policy: StopPolicy | None = None,
        stop_timeout_sec: float = DEFAULT_STOP_TIMEOUT_SEC,
        spawner: ProcessSpawner = spawn_process,
        step: Step | None = None,
    ) -> None:
        super().__init__(name, step=step)
        self.command = command
        self.arguments = arguments
        self.cwd = cwd
        self.env = env
        self.timeout_sec = timeout_sec
        self.tolerated_exit_codes = frozenset(tolerated_exit_codes)
        self.logger = logger or log.getChild(name)
        self.stop_policy = stop_policy or detect_stop_policy()
        self.stop_timeout_sec = stop_timeout_sec
        self._spawner = spawner
        self.process: asyncio.subprocess.Process | None = None

    def argv(self) -> list[str]:
        return command_argv(self.command, self.arguments)

    def _merged_env(self) -> dict[str, str]:
        merged = os.environ.copy()
        if self.env:
            merged.update(self.env)
        return merged

    async def execute(self) -> int:
        try:
            argv = self.argv()
        except UnterminatedQuoteError as exc:
            raise TaskExecutionFailure(f"invalid arguments for {self.name}: {exc}", cause=exc) from exc
        if not argv:
            raise TaskExecutionFailure(f"empty command for {self.name}")

        if self.step is not None and self.step.description is None:
            self.step.describe(f"Running {self.name}...")
        log.info(" - %s", " ".join(argv))

        try:
            proc = await self._spawner(argv, cwd=self.cwd, env=self._merged_env())
        except (OSError, ValueError) as exc:
            raise TaskExecutionFailure(f"failed to start process: {exc}", cause=exc) from exc
        self.process = proc

        out_pump = asyncio.create_task(
            pump_stream(proc.stdout, LineBufferedLogger(self.logger, logging.INFO))
        )
        err_pump = asyncio.create_task(
            pump_stream(proc.stderr, LineBufferedLogger(self.logger, logging.ERROR))
        )
        try:
            exit_code = await wait_with_timeout(
                proc, self.timeout_sec, self.stop_policy.poll_interval_sec
            )
        except TimeoutExceeded as exc:
            await stop_process(proc, self.stop_timeout_sec, self.stop_policy)
            raise TaskExecutionFailure(
                f"{self.name} timed out after {self.timeout_sec}s", cause=exc
            ) from exc
        except asyncio.CancelledError:
            await stop_process(proc, self.stop_timeout_sec, self.stop_policy)
            raise
        finally:
            await _drain({out_pump, err_pump}, OUTPUT_DRAIN_GRACE_SEC)

        if exit_code != 0 and exit_code not in self.tolerated_exit_codes:
            raise ProcessExitFailure(argv, exit_code)
        return exit_code
