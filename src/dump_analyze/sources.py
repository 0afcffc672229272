"""Reading dump files and resolving the files a command works on."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

from dump_analyze.errors import UnreadableFile


def read_lines(path: Path) -> list[str]:
    """Read a text file into lines without line endings."""
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            return f.read().splitlines()
    except OSError as e:
        raise UnreadableFile(f"cannot read {path}: {e.strerror or e}") from e


def iter_files(path: Path) -> Iterator[Path]:
    """A file itself, or every file below a directory in lexicographic order."""
    if path.is_file():
        yield path
        return
    yield from sorted(p for p in path.rglob("*") if p.is_file())


def dump_files(directory: Path, pattern: str = "*.txt") -> list[Path]:
    """Files directly inside `directory` matching `pattern`, sorted by name."""
    return sorted((p for p in directory.glob(pattern) if p.is_file()), key=lambda p: p.name)


def plan_comparisons(first: Path, second: Path) -> list[tuple[Path, Path]]:
    """Pairs of snapshot files to compare.

    - file and file: that single pair
    - file and directory: the file against every other file in the directory
    - directory and directory: every file of the first against every file of
      the second, skipping identical files and files already compared as the
      first of a pair
    """
    if first.is_file() and second.is_file():
        return [(first, second)]

    if first.is_file() and second.is_dir():
        return [(first, other) for other in iter_files(second) if other != first]

    if first.is_dir() and second.is_dir():
        pairs: list[tuple[Path, Path]] = []
        processed: set[Path] = set()
        for file_a in iter_files(first):
            for file_b in iter_files(second):
                if file_b != file_a and file_b not in processed:
                    pairs.append((file_a, file_b))
                    processed.add(file_a)
        return pairs

    raise ValueError("one or both are not files")


def read_address_names(path: Path) -> dict[str, str]:
    """Load an `ip=name` mapping file; later lines override earlier ones."""
    names: dict[str, str] = {}
    for line_number, line in enumerate(read_lines(path), start=1):
        if not line.strip():
            continue
        ip, separator, name = line.partition("=")
        if not separator:
            raise ValueError(f"{path}:{line_number}: expected ip=name, found: {line}")
        names[ip] = name
    return names
