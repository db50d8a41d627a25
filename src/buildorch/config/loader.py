from __future__ import annotations

import math
import os
import re
from pathlib import Path
from typing import Any

import yaml

from buildorch.args.tokenize import sanitize_arguments, tokenize
from buildorch.config.schema import PlanSpec, StageSpec
from buildorch.util.errors import PlanError, UnterminatedQuoteError

_SAFE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_STAGE_NAME_MAX_LEN = 128
_WEIGHT_EPSILON = 1e-9
_ALLOWED_PLAN_KEYS = {"name", "version", "stages"}
_ALLOWED_STAGE_KEYS = {
    "name",
    "weight",
    "cmd",
    "args",
    "description",
    "cwd",
    "env",
    "inputs",
    "output",
    "depends_on",
    "timeout_sec",
    "ok_exit_codes",
}


def _is_finite_real_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value)


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def _is_str_without_nul(value: object) -> bool:
    return isinstance(value, str) and "\x00" not in value


def _is_valid_env_key(value: object) -> bool:
    return _is_non_blank_str(value) and "=" not in value


def _is_safe_name(value: object) -> bool:
    return isinstance(value, str) and _SAFE_NAME_PATTERN.fullmatch(value) is not None


def normalize_cmd(cmd: str | list[str]) -> list[str]:
    if isinstance(cmd, str):
        if "\x00" in cmd:
            raise PlanError("cmd must not contain null bytes")
        try:
            parts = tokenize(sanitize_arguments(cmd))
        except UnterminatedQuoteError as exc:
            raise PlanError(f"invalid cmd string: {exc}") from exc
        if not parts:
            raise PlanError("cmd string must not be empty")
        return parts
    if isinstance(cmd, list) and cmd and all(_is_non_blank_str(p) for p in cmd):
        return cmd
    raise PlanError("cmd must be str or non-empty list[str]")


def _ensure_list_str(name: str, value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PlanError(f"{name} must be list[str]")
    if any(not _is_non_blank_str(v) for v in value):
        raise PlanError(f"{name} must not contain empty strings")
    return value


def _optional_str(name: str, value: Any) -> str | None:
    if value is not None and not _is_non_blank_str(value):
        raise PlanError(f"{name} must be non-empty string when provided")
    return value


def _parse_stage(raw: Any) -> StageSpec:
    if not isinstance(raw, dict):
        raise PlanError("stage must be mapping")
    if any(not isinstance(key, str) for key in raw):
        raise PlanError("stage fields must use string keys")
    if "name" not in raw or not _is_non_blank_str(raw["name"]):
        raise PlanError("stage.name is required and must be non-empty string")
    name = raw["name"]
    if len(name) > _STAGE_NAME_MAX_LEN:
        raise PlanError(f"stage.name must be <= {_STAGE_NAME_MAX_LEN} characters")
    if not _is_safe_name(name):
        raise PlanError("stage.name must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
    unknown = set(raw.keys()) - _ALLOWED_STAGE_KEYS
    if unknown:
        raise PlanError(f"stage '{name}' has unknown fields: {sorted(unknown)}")
    if "cmd" not in raw:
        raise PlanError(f"stage '{name}' missing cmd")

    weight = raw.get("weight")
    if not _is_finite_real_number(weight) or not 0 <= weight <= 1:
        raise PlanError(f"stage '{name}' weight is required and must be within [0, 1]")

    args = raw.get("args")
    if args is not None:
        if not _is_str_without_nul(args):
            raise PlanError(f"stage '{name}' args must be string")
        try:
            tokenize(sanitize_arguments(args))
        except UnterminatedQuoteError as exc:
            raise PlanError(f"stage '{name}' has invalid args: {exc}") from exc

    timeout_sec = raw.get("timeout_sec")
    if timeout_sec is not None:
        if not _is_finite_real_number(timeout_sec) or timeout_sec <= 0:
            raise PlanError(f"stage '{name}' timeout_sec must be > 0")
        timeout_sec = float(timeout_sec)

    ok_exit_codes = raw.get("ok_exit_codes", [])
    if not isinstance(ok_exit_codes, list) or not all(
        isinstance(code, int) and not isinstance(code, bool) for code in ok_exit_codes
    ):
        raise PlanError(f"stage '{name}' ok_exit_codes must be list[int]")

    depends_on = raw.get("depends_on")
    if depends_on is not None:
        depends_on = _ensure_list_str(f"stage '{name}' depends_on", depends_on)

    env = raw.get("env")
    if env is not None and (
        not isinstance(env, dict)
        or not all(_is_valid_env_key(k) and _is_str_without_nul(v) for k, v in env.items())
    ):
        raise PlanError(f"stage '{name}' env must be dict[str, str]")

    return StageSpec(
        name=name,
        weight=float(weight),
        cmd=normalize_cmd(raw["cmd"]),
        args=args,
        description=_optional_str(f"stage '{name}' description", raw.get("description")),
        cwd=_optional_str(f"stage '{name}' cwd", raw.get("cwd")),
        env=env,
        inputs=_ensure_list_str(f"stage '{name}' inputs", raw.get("inputs", [])),
        output=_optional_str(f"stage '{name}' output", raw.get("output")),
        depends_on=depends_on,
        timeout_sec=timeout_sec,
        ok_exit_codes=list(ok_exit_codes),
    )


def validate_plan(plan: PlanSpec) -> None:
    if not plan.stages:
        raise PlanError("plan.stages must contain at least one stage")

    names = [stage.name for stage in plan.stages]
    if len({name.casefold() for name in names}) != len(names):
        raise PlanError("stage.name must be unique (case-insensitive)")

    earlier: set[str] = set()
    for stage in plan.stages:
        deps = stage.depends_on or []
        if stage.name in deps:
            raise PlanError(f"stage '{stage.name}' must not depend on itself")
        if len(set(deps)) != len(deps):
            raise PlanError(f"stage '{stage.name}' has duplicate dependencies")
        if len({os.path.normpath(path) for path in stage.inputs}) != len(stage.inputs):
            raise PlanError(f"stage '{stage.name}' has duplicate inputs")
        unknown = [dep for dep in deps if dep not in earlier]
        if unknown:
            raise PlanError(f"stage '{stage.name}' depends on unknown or later stages: {unknown}")
        earlier.add(stage.name)

    total = sum(stage.weight for stage in plan.stages)
    if total > 1 + _WEIGHT_EPSILON:
        raise PlanError(f"stage weights sum to {total:g}, must not exceed 1")


def load_plan(path: Path) -> PlanSpec:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise PlanError(f"plan file not found: {path}") from exc
    except UnicodeError as exc:
        raise PlanError(f"failed to decode plan file as utf-8: {path}") from exc
    except OSError as exc:
        raise PlanError(f"failed to read plan file: {path}") from exc

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise PlanError(f"failed to parse yaml: {exc}") from exc

    if not isinstance(raw, dict):
        raise PlanError("plan root must be a mapping")
    if any(not isinstance(key, str) for key in raw):
        raise PlanError("plan root keys must be strings")
    unknown_root = set(raw.keys()) - _ALLOWED_PLAN_KEYS
    if unknown_root:
        raise PlanError(f"plan contains unknown fields: {sorted(unknown_root)}")

    raw_stages = raw.get("stages")
    if not isinstance(raw_stages, list):
        raise PlanError("plan.stages must be a list")

    version = raw.get("version")
    if isinstance(version, (int, float)) and not isinstance(version, bool):
        version = str(version)

    plan = PlanSpec(
        name=_optional_str("plan.name", raw.get("name")),
        version=_optional_str("plan.version", version),
        stages=[_parse_stage(stage) for stage in raw_stages],
    )
    validate_plan(plan)
    return plan
