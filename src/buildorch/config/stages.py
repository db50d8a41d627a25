from __future__ import annotations

from pathlib import Path

from buildorch.config.schema import PlanSpec, StageSpec
from buildorch.exec.process import ExecTask
from buildorch.exec.supervise import StopPolicy
from buildorch.pipeline.model import Stage, TaskFactory


def _resolve(path: str | None, workdir: Path) -> Path | None:
    if path is None:
        return None
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return workdir / candidate


def _exec_factory(spec: StageSpec, workdir: Path, stop_policy: StopPolicy) -> TaskFactory:
    def factory() -> ExecTask:
        return ExecTask(
            spec.name,
            spec.cmd,
            arguments=spec.args,
            cwd=_resolve(spec.cwd, workdir) or workdir,
            env=spec.env,
            timeout_sec=spec.timeout_sec,
            tolerated_exit_codes=spec.ok_exit_codes,
            stop_policy=stop_policy,
        )

    return factory


def build_stages(plan: PlanSpec, workdir: Path, stop_policy: StopPolicy) -> list[Stage]:
    """Turn loaded stage specs into runnable stages rooted at workdir."""
    stages: list[Stage] = []
    for spec in plan.stages:
        stages.append(
            Stage(
                name=spec.name,
                weight=spec.weight,
                task_factory=_exec_factory(spec, workdir, stop_policy),
                inputs=[workdir / Path(p) for p in spec.inputs],
                output=_resolve(spec.output, workdir),
                version=plan.version,
                depends_on=spec.depends_on,
                description=spec.description,
            )
        )
    return stages
