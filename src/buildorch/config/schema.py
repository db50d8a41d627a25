from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class StageSpec:
    name: str
    weight: float
    cmd: list[str]
    args: str | None = None
    description: str | None = None
    cwd: str | None = None
    env: dict[str, str] | None = None
    inputs: list[str] = field(default_factory=list)
    output: str | None = None
    depends_on: list[str] | None = None
    timeout_sec: float | None = None
    ok_exit_codes: list[int] = field(default_factory=list)


@dataclass(slots=True)
class PlanSpec:
    name: str | None
    version: str | None
    stages: list[StageSpec]
