"""Stage ordering checks and dependency structures."""

from __future__ import annotations

import os
from collections.abc import Sequence
from pathlib import Path

from buildorch.pipeline.model import Stage
from buildorch.util.errors import PlanError

_WEIGHT_EPSILON = 1e-9


def effective_dependencies(stages: Sequence[Stage]) -> dict[str, list[str]]:
    """Return dependencies by stage name; unset means the previous stage."""
    deps: dict[str, list[str]] = {}
    previous: str | None = None
    for stage in stages:
        if stage.depends_on is not None:
            deps[stage.name] = list(stage.depends_on)
        elif previous is not None:
            deps[stage.name] = [previous]
        else:
            deps[stage.name] = []
        previous = stage.name
    return deps


def build_adjacency(stages: Sequence[Stage]) -> tuple[dict[str, list[str]], dict[str, int]]:
    """Return dependents adjacency and in-degree by stage name."""
    dependents: dict[str, list[str]] = {stage.name: [] for stage in stages}
    in_degree: dict[str, int] = {}
    for name, deps in effective_dependencies(stages).items():
        in_degree[name] = len(deps)
        for dep in deps:
            dependents[dep].append(name)
    return dependents, in_degree


def check_stage_order(stages: Sequence[Stage]) -> None:
    seen: dict[str, str] = {}
    total = 0.0
    for idx, stage in enumerate(stages):
        key = stage.name.lower()
        if key in seen:
            raise PlanError(f"stages[{idx}] duplicates stage name: {seen[key]}")
        if not 0.0 <= stage.weight <= 1.0:
            raise PlanError(f"stages[{idx}].weight must be within [0, 1]: {stage.weight}")
        for dep in stage.depends_on or []:
            if dep == stage.name:
                raise PlanError(f"stages[{idx}] depends on itself: {dep}")
            if dep not in {s.name for s in stages[:idx]}:
                raise PlanError(f"stages[{idx}] depends on unknown or later stage: {dep}")
        sources: set[Path] = set()
        for source in stage.inputs:
            # each input becomes a build unit identified by stage, version and source
            normalized = Path(os.path.normpath(source))
            if normalized in sources:
                raise PlanError(f"stages[{idx}] lists input more than once: {source}")
            sources.add(normalized)
        seen[key] = stage.name
        total += stage.weight
    if total > 1.0 + _WEIGHT_EPSILON:
        raise PlanError(f"stage weights sum to {total:g}, must not exceed 1")
