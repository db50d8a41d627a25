from __future__ import annotations

import sys
from pathlib import Path

import pytest

from buildorch.config.loader import load_plan, normalize_cmd
from buildorch.config.stages import build_stages
from buildorch.exec.process import ExecTask
from buildorch.exec.supervise import StopPolicy
from buildorch.util.errors import PlanError


def _write(tmp_path: Path, content: str, name: str = "plan.yaml") -> Path:
    plan_path = tmp_path / name
    plan_path.write_text(content.strip() + "\n", encoding="utf-8")
    return plan_path


def test_load_plan_parses_full_stage(tmp_path: Path) -> None:
    plan_path = _write(
        tmp_path,
        """
name: demo
version: 1.2
stages:
  - name: compile
    weight: 0.6
    cmd: "javac -d 'build/classes' src/Main.java"
    args: "-Xlint:all\\n-g"
    description: Compiling...
    cwd: sub
    env: {JAVA_OPTS: "-Xmx1g"}
    inputs: [src]
    output: build/classes/Main.class
    timeout_sec: 120
    ok_exit_codes: [3]
  - name: package
    weight: 0.4
    cmd: ["jar", "cf", "app.jar"]
    depends_on: [compile]
""",
    )

    plan = load_plan(plan_path)
    assert plan.name == "demo"
    assert plan.version == "1.2"
    compile_stage, package_stage = plan.stages
    assert compile_stage.cmd == ["javac", "-d", "build/classes", "src/Main.java"]
    assert compile_stage.args == "-Xlint:all\n-g"
    assert compile_stage.cwd == "sub"
    assert compile_stage.env == {"JAVA_OPTS": "-Xmx1g"}
    assert compile_stage.inputs == ["src"]
    assert compile_stage.output == "build/classes/Main.class"
    assert compile_stage.timeout_sec == 120.0
    assert compile_stage.ok_exit_codes == [3]
    assert compile_stage.depends_on is None
    assert package_stage.depends_on == ["compile"]
    assert package_stage.output is None


def test_normalize_cmd_uses_argument_tokenizer() -> None:
    assert normalize_cmd("tool a\\ b 'c d'") == ["tool", "a b", "c d"]
    with pytest.raises(PlanError, match="invalid cmd string"):
        normalize_cmd("tool 'open")
    with pytest.raises(PlanError):
        normalize_cmd("   ")
    with pytest.raises(PlanError):
        normalize_cmd([])


@pytest.mark.parametrize(
    ("content", "match"),
    [
        ("stages: []", "at least one stage"),
        ("stages: {}", "must be a list"),
        ("- a", "mapping"),
        ("extra: 1\nstages: []", "unknown fields"),
        ("stages:\n  - name: a\n    cmd: [x]", "weight"),
        ("stages:\n  - name: a\n    weight: 1.5\n    cmd: [x]", "weight"),
        ("stages:\n  - name: a\n    weight: true\n    cmd: [x]", "weight"),
        ("stages:\n  - name: a\n    weight: 0.5", "missing cmd"),
        ("stages:\n  - name: -bad\n    weight: 0.5\n    cmd: [x]", "must match"),
        ("stages:\n  - name: a\n    weight: 0.5\n    cmd: [x]\n    bogus: 1", "unknown fields"),
        ("stages:\n  - name: a\n    weight: 0.5\n    cmd: [x]\n    timeout_sec: 0", "timeout_sec"),
        ("stages:\n  - name: a\n    weight: 0.5\n    cmd: [x]\n    args: \"'x\"", "invalid args"),
        ("stages:\n  - name: a\n    weight: 0.5\n    cmd: [x]\n    env: {A: 1}", "env"),
        (
            "stages:\n  - name: a\n    weight: 0.5\n    cmd: [x]\n    ok_exit_codes: [x]",
            "ok_exit_codes",
        ),
        ("stages:\n  - name: a\n    weight: 0.5\n    cmd: [x]\n    inputs: ['']", "empty strings"),
    ],
)
def test_load_plan_rejects_invalid_plans(tmp_path: Path, content: str, match: str) -> None:
    with pytest.raises(PlanError, match=match):
        load_plan(_write(tmp_path, content))


def test_load_plan_rejects_case_insensitive_duplicate_names(tmp_path: Path) -> None:
    plan_path = _write(
        tmp_path,
        """
stages:
  - name: Build
    weight: 0.5
    cmd: ["echo", "x"]
  - name: build
    weight: 0.5
    cmd: ["echo", "y"]
""",
    )
    with pytest.raises(PlanError, match="unique"):
        load_plan(plan_path)


def test_load_plan_rejects_duplicate_inputs(tmp_path: Path) -> None:
    plan_path = _write(
        tmp_path,
        """
stages:
  - name: compile
    weight: 1
    cmd: ["echo", "x"]
    inputs: [src/Main.java, src/../src/Main.java]
    output: build/Main.class
""",
    )
    with pytest.raises(PlanError, match="duplicate inputs"):
        load_plan(plan_path)


def test_load_plan_rejects_forward_dependency(tmp_path: Path) -> None:
    plan_path = _write(
        tmp_path,
        """
stages:
  - name: a
    weight: 0.5
    cmd: ["echo", "a"]
    depends_on: [b]
  - name: b
    weight: 0.5
    cmd: ["echo", "b"]
""",
    )
    with pytest.raises(PlanError, match="unknown or later"):
        load_plan(plan_path)


def test_load_plan_rejects_weights_above_one(tmp_path: Path) -> None:
    plan_path = _write(
        tmp_path,
        """
stages:
  - name: a
    weight: 0.7
    cmd: ["echo", "a"]
  - name: b
    weight: 0.7
    cmd: ["echo", "b"]
""",
    )
    with pytest.raises(PlanError, match="must not exceed 1"):
        load_plan(plan_path)


def test_load_plan_rejects_missing_file(tmp_path: Path) -> None:
    with pytest.raises(PlanError, match="not found"):
        load_plan(tmp_path / "missing.yaml")


def test_load_plan_rejects_invalid_yaml_syntax(tmp_path: Path) -> None:
    plan_path = tmp_path / "bad.yaml"
    plan_path.write_text("stages: [\n", encoding="utf-8")
    with pytest.raises(PlanError, match="failed to parse yaml"):
        load_plan(plan_path)


def test_load_plan_rejects_non_utf8_file(tmp_path: Path) -> None:
    plan_path = tmp_path / "bad_encoding.yaml"
    plan_path.write_bytes(b"stages:\n  - name: \xff\n")
    with pytest.raises(PlanError, match="utf-8"):
        load_plan(plan_path)


def test_build_stages_resolves_paths_against_workdir(tmp_path: Path) -> None:
    plan_path = _write(
        tmp_path,
        f"""
version: "2.0"
stages:
  - name: gen
    weight: 1.0
    cmd: ["{Path(sys.executable).as_posix()}", "-c", "pass"]
    cwd: work
    inputs: [src, /abs/input]
    output: out/gen.txt
    timeout_sec: 5
    ok_exit_codes: [4]
""",
    )
    plan = load_plan(plan_path)
    policy = StopPolicy(graceful=True)
    (stage,) = build_stages(plan, tmp_path, policy)

    assert stage.name == "gen"
    assert stage.version == "2.0"
    assert stage.inputs == [tmp_path / "src", Path("/abs/input")]
    assert stage.output == tmp_path / "out" / "gen.txt"
    assert stage.depends_on is None

    task = stage.task_factory()
    assert isinstance(task, ExecTask)
    assert task.cwd == tmp_path / "work"
    assert task.timeout_sec == 5.0
    assert task.tolerated_exit_codes == frozenset({4})
    assert task.stop_policy is policy
    assert stage.task_factory() is not task
