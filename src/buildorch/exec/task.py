from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import Generic, Literal, TypeVar

from buildorch.progress.tree import Step
from buildorch.util.errors import TaskExecutionFailure

T = TypeVar("T")

TaskStatus = Literal["PENDING", "RUNNING", "SUCCEEDED", "FAILED"]


@contextmanager
def bound_step(step: Step | None) -> Iterator[Step | None]:
    """Release step exactly once on every exit path; failures are not credited."""
    if step is None:
        yield None
        return
    try:
        yield step
    except BaseException:
        step.fail()
        raise
    finally:
        step.done()


class Task(ABC, Generic[T]):
    """A unit of work producing a result of type T."""

    def __init__(self, name: str, *, step: Step | None = None) -> None:
        self.name = name
        self.step = step
        self.status: TaskStatus = "PENDING"
        self._on_complete: list[Callable[[T], None]] = []

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, status={self.status})"

    def bind(self, step: Step | None) -> Task[T]:
        if self.status != "PENDING":
            raise RuntimeError(f"task {self.name} already started")
        self.step = step
        return self

    def on_complete(self, callback: Callable[[T], None]) -> Task[T]:
        self._on_complete.append(callback)
        return self

    @abstractmethod
    async def execute(self) -> T: ...

    async def run(self) -> T:
        if self.status != "PENDING":
            raise RuntimeError(f"task {self.name} already started")
        self.status = "RUNNING"
        try:
            with bound_step(self.step):
                try:
                    result = await self.execute()
                    for callback in self._on_complete:
                        callback(result)
                except TaskExecutionFailure:
                    raise
                except Exception as exc:
                    raise TaskExecutionFailure(f"{self.name}: {exc}", cause=exc) from exc
        except BaseException:
            self.status = "FAILED"
            raise
        self.status = "SUCCEEDED"
        return result


class FunctionTask(Task[T]):
    """Run a plain or async callable as a task."""

    def __init__(
        self,
        name: str,
        func: Callable[[], T | Awaitable[T]],
        *,
        step: Step | None = None,
    ) -> None:
        super().__init__(name, step=step)
        self._func = func

    async def execute(self) -> T:
        result = self._func()
        if inspect.isawaitable(result):
            return await result
        return result
