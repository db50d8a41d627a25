from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from buildorch.util.errors import TaskExecutionFailure, TimeoutExceeded

log = logging.getLogger(__name__)

_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)

DEFAULT_POLL_INTERVAL_SEC = 0.05


@dataclass(frozen=True, slots=True)
class StopPolicy:
    """How a supervised process is stopped.

    graceful is False on platforms where the termination signal cannot be
    handled by the target, in which case stopping goes straight to a kill.
    """

    graceful: bool = True
    kill_timeout_sec: float = 5.0
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC


def detect_stop_policy() -> StopPolicy:
    return StopPolicy(graceful=os.name != "nt")


async def wait_for_exit(
    proc: asyncio.subprocess.Process,
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
) -> int:
    """Return the exit code as soon as the process itself has exited.

    Process.wait() may not return before every pipe is closed, and a
    descendant that inherited stdout or stderr can hold them open long after
    the process is gone.
    """
    while proc.returncode is None:
        await asyncio.sleep(poll_interval_sec)
    return proc.returncode


async def wait_with_timeout(
    proc: asyncio.subprocess.Process,
    timeout_sec: float | None,
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
) -> int:
    if timeout_sec is None:
        return await wait_for_exit(proc, poll_interval_sec)
    try:
        return await asyncio.wait_for(wait_for_exit(proc, poll_interval_sec), timeout=timeout_sec)
    except TimeoutError as exc:
        raise TimeoutExceeded(timeout_sec) from exc


def _signal_group(pid: int, sig: int) -> bool:
    """Signal the process group led by pid; False when pid leads no group of its own."""
    if not hasattr(os, "killpg"):
        return False
    try:
        if os.getpgid(pid) != pid:
            return False
        os.killpg(pid, sig)
    except ProcessLookupError:
        return False
    return True


def _signal_pid(pid: int, sig: int) -> None:
    if not _signal_group(pid, sig):
        os.kill(pid, sig)


def _signal_process(proc: asyncio.subprocess.Process, sig: int) -> None:
    if not _signal_group(proc.pid, sig):
        proc.send_signal(sig)


async def stop_process(
    proc: asyncio.subprocess.Process,
    timeout_sec: float,
    policy: StopPolicy,
) -> int:
    """Stop proc and every process of the group it leads.

    A graceful stop sends SIGTERM and waits timeout_sec before escalating to
    a kill. The kill is given policy.kill_timeout_sec, after which the
    failure is reported as a TaskExecutionFailure.
    """
    if proc.returncode is not None:
        return proc.returncode
    if policy.graceful:
        with suppress(ProcessLookupError):
            _signal_process(proc, signal.SIGTERM)
        try:
            return await wait_with_timeout(proc, timeout_sec, policy.poll_interval_sec)
        except TimeoutExceeded:
            log.error(
                "Process %s did not exit within %ss, stopping it forcibly...", proc.pid, timeout_sec
            )
    with suppress(ProcessLookupError):
        _signal_process(proc, _KILL_SIGNAL)
    try:
        return await wait_with_timeout(proc, policy.kill_timeout_sec, policy.poll_interval_sec)
    except TimeoutExceeded as exc:
        raise TaskExecutionFailure(
            f"process {proc.pid} did not exit on both graceful and forced shutdown attempts",
            cause=exc,
        ) from exc


def _reap(pid: int) -> None:
    if not hasattr(os, "WNOHANG"):
        return
    with suppress(ChildProcessError, OSError):
        os.waitpid(pid, os.WNOHANG)


def _is_zombie(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="ascii", errors="replace")
    except OSError:
        return False
    # the state follows the parenthesised command name
    return stat.rpartition(")")[2].split()[:1] == ["Z"]


def pid_alive(pid: int) -> bool:
    """Whether pid runs; an exited process nobody has reaped yet counts as gone."""
    _reap(pid)
    if _is_zombie(pid):
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


async def _wait_pid_exit(pid: int, timeout_sec: float, interval: float) -> bool:
    deadline = time.monotonic() + timeout_sec
    while pid_alive(pid):
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(interval)
    return True


async def stop_pid(pid: int, timeout_sec: float, policy: StopPolicy) -> None:
    if not pid_alive(pid):
        return
    if policy.graceful:
        with suppress(ProcessLookupError):
            _signal_pid(pid, signal.SIGTERM)
        if await _wait_pid_exit(pid, timeout_sec, policy.poll_interval_sec):
            return
        log.error("Process %s did not exit within %ss, stopping it forcibly...", pid, timeout_sec)
    with suppress(ProcessLookupError):
        _signal_pid(pid, _KILL_SIGNAL)
    if not await _wait_pid_exit(pid, policy.kill_timeout_sec, policy.poll_interval_sec):
        raise TaskExecutionFailure(
            f"process {pid} did not exit on both graceful and forced shutdown attempts",
            cause=TimeoutExceeded(policy.kill_timeout_sec),
        )
