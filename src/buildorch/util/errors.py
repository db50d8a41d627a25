"""Application-level error types."""

from __future__ import annotations

from collections.abc import Sequence


class BuildOrchError(Exception):
    """Base error for the build orchestrator."""


class PlanError(BuildOrchError):
    """Raised when plan loading/validation fails."""


class UnterminatedQuoteError(BuildOrchError, ValueError):
    """Raised when an argument string ends inside an open quote."""

    def __init__(self, quote: str, arguments: str) -> None:
        super().__init__(f"unterminated {quote} quote in arguments: {arguments}")
        self.quote = quote
        self.arguments = arguments


class TaskExecutionFailure(BuildOrchError):
    """Raised when the work of a task fails."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ProcessExitFailure(TaskExecutionFailure):
    """Raised when a spawned process exits with a code that is not tolerated."""

    def __init__(self, command: Sequence[str], exit_code: int) -> None:
        head = command[0] if command else "<empty>"
        super().__init__(f"process {head} exited with code {exit_code}")
        self.command = list(command)
        self.exit_code = exit_code


class TimeoutExceeded(BuildOrchError):
    """Raised when a bounded wait on a process expires."""

    def __init__(self, timeout_sec: float) -> None:
        super().__init__(f"timeout of {timeout_sec}s exceeded")
        self.timeout_sec = timeout_sec
