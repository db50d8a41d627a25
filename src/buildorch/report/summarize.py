from __future__ import annotations

from buildorch.pipeline.model import PipelineResult
from buildorch.util.errors import ProcessExitFailure


def _exit_code(error: BaseException | None) -> int | None:
    if isinstance(error, ProcessExitFailure):
        return error.exit_code
    return None


def build_summary(result: PipelineResult, plan_name: str | None) -> dict[str, object]:
    stage_rows: list[dict[str, object]] = []
    problem_rows: list[dict[str, object]] = []

    for name, outcome in result.stages.items():
        stage_rows.append(
            {
                "name": name,
                "status": outcome.status,
                "started_at": outcome.started_at,
                "ended_at": outcome.ended_at,
                "duration_sec": outcome.duration_sec,
            }
        )
        if outcome.status in {"FAILED", "NOT_RUN"}:
            problem_rows.append(
                {
                    "name": name,
                    "status": outcome.status,
                    "error": outcome.error,
                }
            )

    return {
        "pipeline": {
            "name": plan_name,
            "status": result.status,
            "failed_stage": result.failed_stage,
            "cause": None if result.cause is None else str(result.cause),
            "exit_code": _exit_code(result.cause),
            "executed": sum(1 for outcome in result.stages.values() if outcome.task_started),
            "skipped": len(result.names_with_status("SKIPPED")),
        },
        "stages": stage_rows,
        "problems": problem_rows,
    }
