from __future__ import annotations

import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


class FileSystem(Protocol):
    def exists(self, path: Path) -> bool: ...

    def is_dir(self, path: Path) -> bool: ...

    def mtime_ns(self, path: Path) -> int: ...

    def iter_files(self, root: Path) -> Iterator[Path]: ...


class LocalFileSystem:
    """File metadata read from the local disk."""

    def exists(self, path: Path) -> bool:
        return path.exists()

    def is_dir(self, path: Path) -> bool:
        return path.is_dir()

    def mtime_ns(self, path: Path) -> int:
        return path.stat().st_mtime_ns

    def iter_files(self, root: Path) -> Iterator[Path]:
        for dirpath, _, filenames in os.walk(root):
            for filename in filenames:
                yield Path(dirpath) / filename


LOCAL_FS = LocalFileSystem()


def _optional_mtime(fs: FileSystem, path: Path) -> int | None:
    if not fs.exists(path):
        return None
    return fs.mtime_ns(path)


def output_is_stale(
    source: Path,
    output: Path,
    *,
    aggregate: bool,
    fs: FileSystem = LOCAL_FS,
) -> bool:
    """
    Return True when output is missing or older than any input file.

    Timestamps are compared with a strict greater-than: an input modified at
    exactly the output time does not make the output stale. For aggregate
    sources every file under the root is scanned until a newer one is found.
    """
    if not fs.exists(output):
        return True
    output_mtime = fs.mtime_ns(output)
    if not fs.exists(source):
        return False
    if not aggregate:
        return fs.mtime_ns(source) > output_mtime
    return any(fs.mtime_ns(path) > output_mtime for path in fs.iter_files(source))


@dataclass(frozen=True, slots=True)
class BuildUnit:
    name: str
    version: str | None
    source_path: Path
    output_path: Path
    aggregate: bool
    source_mtime: int | None
    output_mtime: int | None
    stale: bool = field(compare=False)

    @property
    def identity(self) -> tuple[str, str | None, Path]:
        """Units of one stage share name and version and differ by source."""
        return self.name, self.version, self.source_path

    @classmethod
    def scan(
        cls,
        name: str,
        source: Path,
        output: Path,
        *,
        version: str | None = None,
        aggregate: bool | None = None,
        fs: FileSystem = LOCAL_FS,
    ) -> BuildUnit:
        """Capture metadata for one unit; aggregate defaults to whether source is a directory."""
        if aggregate is None:
            aggregate = fs.is_dir(source)
        return cls(
            name=name,
            version=version,
            source_path=source,
            output_path=output,
            aggregate=aggregate,
            source_mtime=_optional_mtime(fs, source),
            output_mtime=_optional_mtime(fs, output),
            stale=output_is_stale(source, output, aggregate=aggregate, fs=fs),
        )

    def __str__(self) -> str:
        if self.version is None:
            return self.name
        return f"{self.name}@{self.version}"


def is_stale(unit: BuildUnit, fs: FileSystem = LOCAL_FS) -> bool:
    """Re-check a unit against the current file system state."""
    return output_is_stale(unit.source_path, unit.output_path, aggregate=unit.aggregate, fs=fs)
