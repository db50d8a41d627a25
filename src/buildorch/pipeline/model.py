from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from buildorch.exec.task import Task
from buildorch.stale.units import LOCAL_FS, BuildUnit, FileSystem

PipelineStatus = Literal["NOT_STARTED", "RUNNING", "COMPLETED", "FAILED"]
StageStatus = Literal["PENDING", "RUNNING", "SKIPPED", "SUCCEEDED", "FAILED", "NOT_RUN"]

TaskFactory = Callable[[], Task[Any]]


@dataclass(slots=True)
class Stage:
    name: str
    weight: float
    task_factory: TaskFactory
    inputs: list[Path] = field(default_factory=list)
    output: Path | None = None
    version: str | None = None
    depends_on: list[str] | None = None
    description: str | None = None

    def units(self, fs: FileSystem = LOCAL_FS) -> list[BuildUnit]:
        if self.output is None:
            return []
        return [
            BuildUnit.scan(self.name, source, self.output, version=self.version, fs=fs)
            for source in self.inputs
        ]

    def is_stale(self, fs: FileSystem = LOCAL_FS) -> bool:
        """A stage without a declared output is always stale."""
        if self.output is None:
            return True
        units = self.units(fs)
        if not units:
            return not fs.exists(self.output)
        return any(unit.stale for unit in units)


@dataclass(slots=True)
class StageOutcome:
    name: str
    status: StageStatus = "PENDING"
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None
    result: object = None
    error: str | None = None
    task_started: bool = False


@dataclass(slots=True)
class PipelineResult:
    status: PipelineStatus
    stages: dict[str, StageOutcome]
    failed_stage: str | None = None
    cause: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == "COMPLETED"

    def names_with_status(self, status: StageStatus) -> list[str]:
        return [name for name, outcome in self.stages.items() if outcome.status == status]

    @property
    def message(self) -> str:
        if self.failed_stage is None:
            return f"pipeline {self.status.lower()}"
        return f"stage {self.failed_stage} failed: {self.cause}"
