"""Utility helpers for filesystem access and path handling."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from .errors import InvalidInputError
from .text import Messages

logger = logging.getLogger(__name__)


def resolve_directory(path: Path | str) -> Path:
    """Resolve and validate a user supplied directory path."""
    dir_path = Path(path).expanduser().resolve()
    if not dir_path.exists():
        raise FileNotFoundError(f"Directory does not exist: {dir_path}")
    if not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    return dir_path


def normalize_patterns(values: Iterable[str | None] | None) -> tuple[str, ...]:
    """Return deduplicated glob patterns; comma separated entries are split."""

    if not values:
        return ()
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in values:
        if raw is None:
            continue
        for token in raw.split(","):
            token = token.strip()
            if not token:
                continue
            if token.startswith(".") and "/" not in token and "*" not in token and len(token) > 1:
                # A bare extension such as ".py" means every file with that suffix.
                token = f"*{token}"
            if token not in seen:
                seen.add(token)
                normalized.append(token)
    return tuple(normalized)


def build_pattern_spec(patterns: Sequence[str] | None):
    """Return a gitwildmatch spec for *patterns*, or None when there are none."""

    from pathspec.gitignore import GitIgnoreSpec

    cleaned = normalize_patterns(patterns)
    if not cleaned:
        return None
    return GitIgnoreSpec.from_lines(cleaned)


def matches_spec(spec, rel_path: str, *, is_dir: bool = False) -> bool:
    if spec is None or not rel_path:
        return False
    candidate = f"{rel_path}/" if is_dir and not rel_path.endswith("/") else rel_path
    return spec.check_file(candidate).include is True


def _relative_posix(path: Path, root: Path) -> str:
    rel = path.relative_to(root)
    if rel == Path("."):
        return ""
    return rel.as_posix()


def _find_git_root(path: Path) -> Path | None:
    for candidate in (path,) + tuple(path.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def _read_gitignore_lines(path: Path) -> list[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return []


def _scope_gitignore_line(line: str, base_dir: str) -> str | None:
    if line == "":
        return None
    if line.startswith("#") and not line.startswith(r"\#"):
        return None
    if not base_dir:
        return line

    negated = line.startswith("!") and not line.startswith(r"\!")
    prefix = "!" if negated else ""
    body = line[1:] if negated else line

    if body.startswith("/") and not body.startswith(r"\/"):
        body = body[1:]
        scoped = f"{base_dir}/{body}" if body else f"{base_dir}/"
        return f"{prefix}{scoped}"

    directory_only = body.endswith("/") and not body.endswith(r"\/")
    body_check = body[:-1] if directory_only else body
    if "/" in body_check:
        return f"{prefix}{base_dir}/{body}"
    return f"{prefix}{base_dir}/**/{body}"


def _gitignore_spec(lines: Iterable[str], base_dir: str):
    from pathspec.gitignore import GitIgnoreSpec

    scoped = [
        scoped_line
        for scoped_line in (_scope_gitignore_line(line, base_dir) for line in lines)
        if scoped_line is not None
    ]
    return GitIgnoreSpec.from_lines(scoped)


def _ancestor_gitignore_spec(ignore_root: Path, scan_root: Path):
    """Return the gitignore rules inherited by *scan_root* from *ignore_root*."""

    spec = _gitignore_spec([], "")
    exclude_file = ignore_root / ".git" / "info" / "exclude"
    if exclude_file.is_file():
        spec += _gitignore_spec(_read_gitignore_lines(exclude_file), "")
    parts = scan_root.relative_to(ignore_root).parts
    for depth in range(len(parts)):
        ancestor = ignore_root.joinpath(*parts[:depth]) if depth else ignore_root
        gitignore_file = ancestor / ".gitignore"
        if gitignore_file.is_file():
            spec += _gitignore_spec(
                _read_gitignore_lines(gitignore_file),
                _relative_posix(ancestor, ignore_root),
            )
    return spec


@dataclass(slots=True)
class CollectedFile:
    path: Path
    rel_path: str
    size: int
    mtime_ms: int


def mtime_ms(stat_result: os.stat_result) -> int:
    return stat_result.st_mtime_ns // 1_000_000


def collect_files(
    root: Path | str,
    *,
    include_patterns: Sequence[str] | None = None,
    exclude_patterns: Sequence[str] | None = None,
    max_file_size: int | None = None,
    include_hidden: bool = False,
    respect_gitignore: bool = True,
) -> list[CollectedFile]:
    """Collect files under *root* recursively.

    Include patterns keep only matching files, exclude patterns drop files and
    whole directories, both matched against root-relative POSIX paths.
    Files larger than *max_file_size* and files that cannot be stat'ed are
    skipped.
    """

    directory = resolve_directory(root)
    include_spec = build_pattern_spec(include_patterns)
    exclude_spec = build_pattern_spec(exclude_patterns)

    ignore_root: Path | None = None
    spec_by_dir: dict[Path, object] = {}
    if respect_gitignore:
        ignore_root = _find_git_root(directory) or directory
        spec_by_dir[directory] = _ancestor_gitignore_spec(ignore_root, directory)

    collected: list[CollectedFile] = []
    for dirpath, dirnames, filenames in os.walk(directory, topdown=True):
        current_dir = Path(dirpath)
        if not include_hidden:
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            filenames = [f for f in filenames if not f.startswith(".")]
        dirnames[:] = [d for d in dirnames if d != ".git"]

        git_spec = None
        if ignore_root is not None:
            git_spec = spec_by_dir.get(current_dir)
            gitignore_file = current_dir / ".gitignore"
            if git_spec is not None and gitignore_file.is_file():
                git_spec = git_spec + _gitignore_spec(
                    _read_gitignore_lines(gitignore_file),
                    _relative_posix(current_dir, ignore_root),
                )

        kept: list[str] = []
        for dirname in sorted(dirnames):
            child = current_dir / dirname
            if matches_spec(exclude_spec, _relative_posix(child, directory), is_dir=True):
                continue
            if git_spec is not None and matches_spec(
                git_spec, _relative_posix(child, ignore_root), is_dir=True
            ):
                continue
            kept.append(dirname)
            if git_spec is not None:
                spec_by_dir[child] = git_spec
        dirnames[:] = kept

        for filename in filenames:
            candidate = current_dir / filename
            rel_path = _relative_posix(candidate, directory)
            if include_spec is not None and not matches_spec(include_spec, rel_path):
                continue
            if matches_spec(exclude_spec, rel_path):
                continue
            if git_spec is not None and matches_spec(
                git_spec, _relative_posix(candidate, ignore_root)
            ):
                continue
            try:
                stat_result = candidate.stat()
            except OSError as exc:
                logger.debug("Skipping unreadable file %s: %s", candidate, exc)
                continue
            if not candidate.is_file():
                continue
            if max_file_size is not None and max_file_size > 0 and stat_result.st_size > max_file_size:
                logger.debug("Skipping %s (%d bytes over limit)", candidate, stat_result.st_size)
                continue
            collected.append(
                CollectedFile(
                    path=candidate,
                    rel_path=rel_path,
                    size=stat_result.st_size,
                    mtime_ms=mtime_ms(stat_result),
                )
            )

    collected.sort(key=lambda item: item.rel_path)
    return collected


def format_path(path: Path | str, base: Path | None = None) -> str:
    """Return a user friendly representation of *path* relative to *base* when possible."""
    path = Path(path)
    if base:
        try:
            relative = path.relative_to(base)
            return f"./{relative.as_posix()}"
        except ValueError:
            return str(path)
    return str(path)


def ensure_positive(value: int, name: str) -> int:
    """Validate that *value* is positive."""
    if value <= 0:
        raise InvalidInputError(Messages.ERROR_BATCH_SIZE.format(name=name))
    return value
