# rulekeeper:domain=rules
"""Target file expansion: explicit paths, directories, and glob patterns.

Walking honours ``.gitignore`` / ``.ignore`` files (gitignore semantics via
``pathspec``), skips hidden entries, VCS and tool directories, and binary
files, and stops at :data:`MAX_FILES`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import pathspec

from rulekeeper.rules.errors import GlobExpansionError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

logger = logging.getLogger(__name__)

MAX_FILES = 10_000
DEFAULT_PATTERNS: tuple[str, ...] = ("**/*",)
IGNORE_FILES: tuple[str, ...] = (".gitignore", ".ignore")
EXCLUDED_DIRS: frozenset[str] = frozenset({".git", ".hg", ".svn", ".rulekeeper"})

_BINARY_SNIFF_BYTES = 8192
_GLOB_CHARS = frozenset("*?[")


@dataclass
class _IgnoreRules:
    """Ignore specs keyed by the directory (relative to root) that declares them."""

    specs: list[tuple[str, pathspec.PathSpec]] = field(default_factory=list)

    def load(self, directory: Path, rel_dir: str) -> None:
        for name in IGNORE_FILES:
            ignore_file = directory / name
            if not ignore_file.is_file():
                continue
            try:
                lines = ignore_file.read_text(encoding="utf-8").splitlines()
                self.specs.append((rel_dir, pathspec.GitIgnoreSpec.from_lines(lines)))
            except (OSError, UnicodeDecodeError, ValueError) as exc:
                logger.warning("Cannot parse ignore file %s: %s", ignore_file, exc)

    def is_ignored(self, rel_path: str, *, is_dir: bool) -> bool:
        for base, spec in self.specs:
            if base and not rel_path.startswith(base + "/"):
                continue
            local = rel_path[len(base) + 1 :] if base else rel_path
            if is_dir:
                local += "/"
            if spec.match_file(local):
                return True
        return False


def is_binary_file(path: Path) -> bool:
    """Heuristic: a NUL byte in the first few KB marks a binary file."""
    try:
        with path.open("rb") as fh:
            return b"\0" in fh.read(_BINARY_SNIFF_BYTES)
    except OSError:
        return True


def _walk(root: Path, start: Path, *, respect_ignore: bool, include_hidden: bool) -> Iterator[Path]:
    """Yield files under *start* in sorted, deterministic order."""
    ignore = _IgnoreRules()
    if respect_ignore:
        # Ignore files between root and start also apply.
        chain = [root]
        if start != root and root in start.parents:
            rel = start.relative_to(root)
            for part in rel.parts[:-1]:
                chain.append(chain[-1] / part)
        for directory in chain:
            rel_dir = directory.relative_to(root).as_posix()
            ignore.load(directory, "" if rel_dir == "." else rel_dir)

    for dirpath, dirnames, filenames in os.walk(start):
        current = Path(dirpath)
        rel_dir = current.relative_to(root).as_posix() if current != root else ""
        if respect_ignore and current != root:
            ignore.load(current, rel_dir)

        kept: list[str] = []
        for name in sorted(dirnames):
            if name in EXCLUDED_DIRS or (not include_hidden and name.startswith(".")):
                continue
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if respect_ignore and ignore.is_ignored(rel, is_dir=True):
                continue
            kept.append(name)
        dirnames[:] = kept

        for name in sorted(filenames):
            if not include_hidden and name.startswith("."):
                continue
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if respect_ignore and ignore.is_ignored(rel, is_dir=False):
                continue
            yield current / name


def _compile_pattern(pattern: str) -> pathspec.PathSpec:
    try:
        return pathspec.PathSpec.from_lines("gitwildmatch", [pattern])
    except ValueError as exc:
        msg = f"invalid glob pattern '{pattern}': {exc}"
        raise GlobExpansionError(msg) from exc


def _expand_one(
    pattern: str,
    root: Path,
    *,
    respect_ignore: bool,
    include_hidden: bool,
) -> Iterator[Path]:
    if not pattern.strip():
        msg = "empty file pattern"
        raise GlobExpansionError(msg)

    candidate = Path(pattern)
    if not candidate.is_absolute():
        candidate = root / candidate

    if candidate.is_file():
        if any(part in EXCLUDED_DIRS for part in candidate.parts):
            logger.info("Filtering out excluded path: %s", candidate)
            return
        yield candidate
        return

    if candidate.is_dir():
        candidate = candidate.resolve()
        if candidate != root and root not in candidate.parents:
            msg = f"directory '{pattern}' is outside the project root {root}"
            raise GlobExpansionError(msg)
        yield from _walk(
            root,
            candidate,
            respect_ignore=respect_ignore,
            include_hidden=include_hidden,
        )
        return

    if not _GLOB_CHARS & set(pattern):
        logger.warning("No such file or directory: %s", pattern)
        return

    rel_pattern = pattern
    if Path(pattern).is_absolute():
        try:
            rel_pattern = Path(pattern).relative_to(root).as_posix()
        except ValueError as exc:
            msg = f"pattern '{pattern}' is outside the project root {root}"
            raise GlobExpansionError(msg) from exc

    spec = _compile_pattern(rel_pattern)
    for path in _walk(root, root, respect_ignore=respect_ignore, include_hidden=include_hidden):
        if spec.match_file(path.relative_to(root).as_posix()):
            yield path


def expand_patterns(
    patterns: Sequence[str] | None,
    root: Path,
    *,
    max_files: int = MAX_FILES,
    respect_ignore: bool = True,
    include_hidden: bool = False,
    skip_binary: bool = True,
) -> list[Path]:
    """Resolve *patterns* to a sorted, de-duplicated list of files under *root*.

    An invalid pattern is logged and skipped as long as other patterns still
    produce files.

    Raises
    ------
    GlobExpansionError
        If a pattern was invalid and no file matched overall.
    """
    root = root.resolve()
    errors: list[GlobExpansionError] = []
    found: dict[Path, None] = {}

    for pattern in patterns or DEFAULT_PATTERNS:
        try:
            for path in _expand_one(
                pattern,
                root,
                respect_ignore=respect_ignore,
                include_hidden=include_hidden,
            ):
                if len(found) >= max_files:
                    break
                resolved = path.resolve()
                if resolved in found:
                    continue
                if skip_binary and is_binary_file(resolved):
                    logger.debug("Skipping binary file: %s", resolved)
                    continue
                found[resolved] = None
        except GlobExpansionError as exc:
            logger.warning("%s", exc)
            errors.append(exc)
        if len(found) >= max_files:
            logger.warning("File limit reached (%d), remaining files are not checked", max_files)
            break

    if not found and errors:
        raise errors[0]

    return sorted(found)
