from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

from buildorch.stale.units import BuildUnit, is_stale, output_is_stale


class FakeFileSystem:
    def __init__(self, mtimes: dict[str, int], dirs: dict[str, list[str]] | None = None) -> None:
        self.mtimes = mtimes
        self.dirs = dirs or {}
        self.visited: list[Path] = []

    def exists(self, path: Path) -> bool:
        return str(path) in self.mtimes or str(path) in self.dirs

    def is_dir(self, path: Path) -> bool:
        return str(path) in self.dirs

    def mtime_ns(self, path: Path) -> int:
        self.visited.append(path)
        return self.mtimes[str(path)]

    def iter_files(self, root: Path) -> Iterator[Path]:
        for name in self.dirs.get(str(root), []):
            yield Path(name)


def _touch(path: Path, mtime_ns: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("x", encoding="utf-8")
    os.utime(path, ns=(mtime_ns, mtime_ns))


def test_missing_output_is_stale() -> None:
    fs = FakeFileSystem({"src.txt": 10})
    assert output_is_stale(Path("src.txt"), Path("out.bin"), aggregate=False, fs=fs) is True


def test_missing_input_contributes_nothing() -> None:
    fs = FakeFileSystem({"out.bin": 10})
    assert output_is_stale(Path("gone.txt"), Path("out.bin"), aggregate=False, fs=fs) is False


def test_equal_timestamps_are_not_stale() -> None:
    fs = FakeFileSystem({"src.txt": 10, "out.bin": 10})
    assert output_is_stale(Path("src.txt"), Path("out.bin"), aggregate=False, fs=fs) is False


def test_strictly_newer_input_is_stale() -> None:
    fs = FakeFileSystem({"src.txt": 11, "out.bin": 10})
    assert output_is_stale(Path("src.txt"), Path("out.bin"), aggregate=False, fs=fs) is True


def test_aggregate_short_circuits_on_first_newer_file() -> None:
    fs = FakeFileSystem(
        {"out.bin": 10, "src/a": 5, "src/b": 20, "src/c": 1},
        dirs={"src": ["src/a", "src/b", "src/c"]},
    )
    unit = BuildUnit.scan("lib", Path("src"), Path("out.bin"), fs=fs)
    assert unit.aggregate is True
    assert unit.stale is True
    assert Path("src/c") not in fs.visited


def test_aggregate_with_only_older_files_is_not_stale() -> None:
    fs = FakeFileSystem(
        {"out.bin": 10, "src/a": 5, "src/b": 10},
        dirs={"src": ["src/a", "src/b"]},
    )
    assert BuildUnit.scan("lib", Path("src"), Path("out.bin"), fs=fs).stale is False


def test_empty_aggregate_tree_is_not_stale() -> None:
    fs = FakeFileSystem({"out.bin": 10}, dirs={"src": []})
    assert BuildUnit.scan("lib", Path("src"), Path("out.bin"), fs=fs).stale is False


def test_build_unit_records_metadata_and_identity() -> None:
    fs = FakeFileSystem({"src.txt": 3})
    unit = BuildUnit.scan("app", Path("src.txt"), Path("out.bin"), version="1.2", fs=fs)
    assert unit.identity == ("app", "1.2", Path("src.txt"))
    assert unit.source_mtime == 3
    assert unit.output_mtime is None
    assert unit.stale is True
    assert str(unit) == "app@1.2"


def test_is_stale_rechecks_real_files(tmp_path: Path) -> None:
    src = tmp_path / "src" / "Main.java"
    out = tmp_path / "build" / "Main.class"
    _touch(src, 1_000_000_000)
    _touch(out, 1_000_000_000)

    unit = BuildUnit.scan("compile", src, out)
    assert unit.stale is False

    os.utime(src, ns=(2_000_000_000, 2_000_000_000))
    assert unit.stale is False
    assert is_stale(unit) is True


def test_real_directory_scan_detects_nested_newer_file(tmp_path: Path) -> None:
    out = tmp_path / "dist" / "bundle.zip"
    _touch(out, 5_000_000_000)
    _touch(tmp_path / "res" / "a.txt", 1_000_000_000)
    _touch(tmp_path / "res" / "deep" / "b.txt", 6_000_000_000)

    unit = BuildUnit.scan("bundle", tmp_path / "res", out)
    assert unit.aggregate is True
    assert unit.stale is True
