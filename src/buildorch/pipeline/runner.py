from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from buildorch.exec.task import Task
from buildorch.pipeline.model import PipelineResult, Stage, StageOutcome
from buildorch.pipeline.order import build_adjacency, check_stage_order
from buildorch.progress.tree import ProgressTree, Step
from buildorch.stale.units import LOCAL_FS, FileSystem
from buildorch.util.errors import TaskExecutionFailure

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now().astimezone()


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="seconds")


def _finish(outcome: StageOutcome, started: datetime | None) -> None:
    ended = _now()
    outcome.ended_at = _iso(ended)
    if started is not None:
        outcome.duration_sec = round((ended - started).total_seconds(), 3)


def _prepare(stage: Stage, step: Step, *, force: bool, fs: FileSystem) -> Task[Any] | None:
    """Return the task to run, or None when the stage is up to date."""
    try:
        if not force and not stage.is_stale(fs):
            return None
        return stage.task_factory().bind(step)
    except TaskExecutionFailure:
        raise
    except Exception as exc:
        raise TaskExecutionFailure(f"{stage.name}: {exc}", cause=exc) from exc


def _mark_not_run(outcomes: dict[str, StageOutcome]) -> None:
    for outcome in outcomes.values():
        if outcome.status == "PENDING":
            outcome.status = "NOT_RUN"


async def run_pipeline(
    stages: Sequence[Stage],
    *,
    force: bool = False,
    progress: ProgressTree | None = None,
    max_parallel: int = 1,
    fs: FileSystem = LOCAL_FS,
    state: PipelineResult | None = None,
) -> PipelineResult:
    """Run stages in the given order, skipping the ones whose outputs are fresh.

    The first failing stage stops the pipeline: nothing new starts, stages
    already running are awaited and the rest are reported as NOT_RUN.

    The returned result is updated in place while the run proceeds; pass an
    existing one as state to observe it from another task.
    """
    if max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")
    check_stage_order(stages)

    tree = progress if progress is not None else ProgressTree()
    dependents, dep_remaining = build_adjacency(stages)
    stage_by_name = {stage.name: stage for stage in stages}
    result = state if state is not None else PipelineResult(status="NOT_STARTED", stages={})
    result.stages.update({stage.name: StageOutcome(name=stage.name) for stage in stages})
    outcomes = result.stages
    steps = {stage.name: tree.add_step(stage.weight, stage.description) for stage in stages}
    started: dict[str, datetime] = {}

    ready = [stage.name for stage in stages if dep_remaining[stage.name] == 0]
    running: dict[asyncio.Task[Any], str] = {}

    def _release(name: str) -> None:
        for child in dependents[name]:
            dep_remaining[child] -= 1
            if dep_remaining[child] == 0:
                ready.append(child)

    def _record_failure(name: str, exc: BaseException) -> None:
        outcome = outcomes[name]
        outcome.status = "FAILED"
        outcome.error = str(exc)
        _finish(outcome, started.get(name))
        log.error("[ Stage %s failed: %s ]", name, exc)
        if result.failed_stage is None:
            result.failed_stage = name
            result.cause = exc

    result.status = "RUNNING"
    try:
        while ready or running:
            while ready and len(running) < max_parallel and result.failed_stage is None:
                name = ready.pop(0)
                stage = stage_by_name[name]
                step = steps[name]
                outcome = outcomes[name]
                started[name] = _now()
                outcome.started_at = _iso(started[name])
                try:
                    task = _prepare(stage, step, force=force, fs=fs)
                except TaskExecutionFailure as exc:
                    step.fail()
                    step.done()
                    _record_failure(name, exc)
                    break
                if task is None:
                    log.info("[ %s is up to date ]", name)
                    step.describe(f"{name} is up to date")
                    step.done()
                    outcome.status = "SKIPPED"
                    _finish(outcome, started[name])
                    _release(name)
                    continue
                log.debug("starting stage %s", name)
                outcome.status = "RUNNING"
                outcome.task_started = True
                running[asyncio.create_task(task.run())] = name

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for fut in done:
                name = running.pop(fut)
                try:
                    value = fut.result()
                except Exception as exc:
                    _record_failure(name, exc)
                    continue
                outcome = outcomes[name]
                outcome.status = "SUCCEEDED"
                outcome.result = value
                _finish(outcome, started.get(name))
                _release(name)
    except asyncio.CancelledError:
        for fut in running:
            fut.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        for name in running.values():
            outcomes[name].status = "FAILED"
            outcomes[name].error = "cancelled"
            _finish(outcomes[name], started.get(name))
        _mark_not_run(outcomes)
        result.status = "FAILED"
        raise

    if result.failed_stage is not None:
        _mark_not_run(outcomes)
        result.status = "FAILED"
        return result

    tree.complete()
    result.status = "COMPLETED"
    return result
