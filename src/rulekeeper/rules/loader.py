# rulekeeper:domain=rules
"""Rule loader: discover rule files, parse frontmatter, collect partials.

Rules are Markdown files with optional YAML frontmatter::

    ---
    severity: warning
    tags: [testing]
    ---
    Check that the code does not use mock objects.

Sources are merged in precedence order (built-in, user, project); a rule in a
later source replaces one with the same name from an earlier source.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from rulekeeper.rules.errors import LoadError, RuleError, ValidationError
from rulekeeper.rules.models import Rule, Severity

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Longest first so ".md.j2" wins over ".j2".
RULE_EXTENSIONS: tuple[str, ...] = (".md.j2", ".markdown", ".liquid", ".md", ".j2")
PARTIALS_DIR = "_partials"
RULES_SUBDIR = Path(".rulekeeper") / "rules"

_FRONTMATTER_RE = re.compile(
    r"\A---[ \t]*\r?\n(?P<meta>.*?)^---[ \t]*(?:\r?\n|\Z)",
    re.DOTALL | re.MULTILINE,
)

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class RuleSet:
    """Rules and partials collected from one or more sources."""

    rules: list[Rule] = field(default_factory=list)
    partials: dict[str, str] = field(default_factory=dict)
    errors: list[RuleError] = field(default_factory=list)

    def get(self, name: str) -> Rule | None:
        for rule in self.rules:
            if rule.name == name:
                return rule
        return None

    def merge(self, other: RuleSet) -> None:
        """Overlay *other* on top of this set (other wins on identical names)."""
        by_name = {r.name: r for r in self.rules}
        for rule in other.rules:
            if rule.name in by_name:
                logger.debug("Rule %s overridden by %s", rule.name, rule.source)
            by_name[rule.name] = rule
        self.rules = sorted(by_name.values(), key=lambda r: r.name)
        self.partials.update(other.partials)
        self.errors.extend(other.errors)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_frontmatter(content: str) -> tuple[dict[str, Any] | None, str]:
    """Split *content* into ``(metadata, body)``.

    ``metadata`` is ``None`` when the file has no frontmatter block at all,
    and a (possibly empty) dict when one is present.

    Raises
    ------
    ValidationError
        On unterminated frontmatter, invalid YAML, or a non-mapping block.
    """
    if not content.startswith("---"):
        return None, content.strip()

    match = _FRONTMATTER_RE.match(content)
    if match is None:
        msg = "unterminated frontmatter block"
        raise ValidationError(msg)

    try:
        data = yaml.safe_load(match.group("meta"))
    except yaml.YAMLError as exc:
        msg = f"invalid frontmatter YAML: {exc}"
        raise ValidationError(msg) from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        msg = "frontmatter must be a YAML mapping"
        raise ValidationError(msg)

    return data, content[match.end() :].strip()


def _parse_tags(raw: object, name: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,)
    if not isinstance(raw, list) or not all(isinstance(t, str) for t in raw):
        msg = f"rule '{name}': 'tags' must be a list of strings"
        raise ValidationError(msg)
    # Ordered set: keep first occurrence.
    return tuple(dict.fromkeys(raw))


def parse_rule(name: str, content: str, *, source: Path | None = None) -> Rule:
    """Build a :class:`Rule` from file content.

    Severity defaults: no frontmatter at all means ``error``; frontmatter
    without a ``severity`` key means ``warning``.

    Raises
    ------
    ValidationError
        For malformed frontmatter, severity, or tags.
    """
    try:
        metadata, body = parse_frontmatter(content)
    except ValidationError as exc:
        msg = f"rule '{name}': {exc}"
        raise ValidationError(msg) from exc

    if metadata is None:
        return Rule(name=name, body=body, severity=Severity.ERROR, source=source)

    if "severity" in metadata:
        try:
            severity = Severity.parse(metadata["severity"])
        except ValidationError as exc:
            msg = f"rule '{name}': {exc}"
            raise ValidationError(msg) from exc
    else:
        severity = Severity.WARNING

    description = metadata.get("description")
    return Rule(
        name=name,
        body=body,
        severity=severity,
        tags=_parse_tags(metadata.get("tags"), name),
        description=str(description) if description is not None else None,
        source=source,
        has_frontmatter=True,
    )


def _strip_extension(filename: str) -> str | None:
    lowered = filename.lower()
    for ext in RULE_EXTENSIONS:
        if lowered.endswith(ext):
            return filename[: -len(ext)]
    return None


def _relative_name(path: Path, base: Path) -> str | None:
    stem = _strip_extension(path.name)
    if stem is None:
        return None
    parent = path.parent.relative_to(base).as_posix()
    return stem if parent == "." else f"{parent}/{stem}"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_directory(root: Path) -> RuleSet:
    """Load every rule and partial under *root*.

    Unreadable files produce a :class:`LoadError` and malformed metadata a
    :class:`ValidationError`; both are collected in ``RuleSet.errors`` and the
    remaining files still load.  A missing *root* yields an empty set.
    """
    result = RuleSet()
    if not root.is_dir():
        return result

    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        rel_parts = path.relative_to(root).parts
        if PARTIALS_DIR in rel_parts[:-1]:
            idx = rel_parts.index(PARTIALS_DIR)
            partial_name = _relative_name(path, root.joinpath(*rel_parts[: idx + 1]))
            if partial_name is None:
                continue
            try:
                result.partials[partial_name] = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                result.errors.append(LoadError(f"cannot read partial {path}: {exc}"))
            continue

        name = _relative_name(path, root)
        if name is None:
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Cannot read rule file: %s", path)
            result.errors.append(LoadError(f"cannot read rule file {path}: {exc}"))
            continue
        try:
            result.rules.append(parse_rule(name, content, source=path))
        except ValidationError as exc:
            logger.warning("Skipping invalid rule %s: %s", path, exc)
            result.errors.append(exc)

    result.rules.sort(key=lambda r: r.name)
    return result


def builtin_rules_dir() -> Path:
    """Directory holding the embedded built-in rule set."""
    return Path(__file__).resolve().parent.parent / "builtin" / "rules"


def rule_directories(
    project_root: Path,
    *,
    user_home: Path | None = None,
    include_builtin: bool = True,
) -> list[Path]:
    """Rule roots in increasing precedence order."""
    dirs: list[Path] = []
    if include_builtin:
        dirs.append(builtin_rules_dir())
    home = user_home if user_home is not None else Path.home()
    dirs.append(home / RULES_SUBDIR)
    dirs.append(project_root / RULES_SUBDIR)
    return dirs


def load_rules(
    project_root: Path,
    *,
    user_home: Path | None = None,
    include_builtin: bool = True,
    extra_dirs: Sequence[Path] = (),
) -> RuleSet:
    """Load and merge rules from built-in, user, and project directories.

    *extra_dirs* are merged last (highest precedence).
    """
    merged = RuleSet()
    seen: set[Path] = set()
    for directory in [
        *rule_directories(project_root, user_home=user_home, include_builtin=include_builtin),
        *extra_dirs,
    ]:
        resolved = directory.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        merged.merge(load_directory(directory))
    logger.debug(
        "Loaded %d rules and %d partials (%d errors)",
        len(merged.rules),
        len(merged.partials),
        len(merged.errors),
    )
    return merged


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


def filter_rules(
    rules: Iterable[Rule],
    *,
    names: Sequence[str] | None = None,
    tags: Sequence[str] | None = None,
    severity: Severity | None = None,
    category: str | None = None,
) -> list[Rule]:
    """Select rules by name, tag (any match), severity, and category."""
    selected: list[Rule] = []
    for rule in rules:
        if names and rule.name not in names:
            continue
        if tags and not set(tags) & set(rule.tags):
            continue
        if severity is not None and rule.severity is not severity:
            continue
        if category is not None and rule.category != category:
            continue
        selected.append(rule)
    if names:
        missing = sorted(set(names) - {r.name for r in selected})
        for name in missing:
            logger.warning("Rule not found or filtered out: %s", name)
    return selected
