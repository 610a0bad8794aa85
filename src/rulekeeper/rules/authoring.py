# rulekeeper:domain=rules
"""Create new project rules on disk."""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

import yaml

from rulekeeper.rules.errors import ValidationError
from rulekeeper.rules.loader import RULES_SUBDIR
from rulekeeper.rules.models import Severity

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

RULE_SUFFIX = ".md"


def _validate_name(name: str) -> PurePosixPath:
    cleaned = name.strip().replace("\\", "/")
    if not cleaned:
        msg = "rule name must not be empty"
        raise ValidationError(msg)
    rel = PurePosixPath(cleaned)
    if rel.is_absolute() or cleaned.startswith("/"):
        msg = f"rule name must be relative: {name!r}"
        raise ValidationError(msg)
    if any(part in ("..", ".") for part in rel.parts):
        msg = f"rule name must not contain '.' or '..' segments: {name!r}"
        raise ValidationError(msg)
    return rel


def render_rule_file(content: str, severity: Severity, tags: Sequence[str] | None = None) -> str:
    """Build rule file text: frontmatter with severity and tags, then *content*."""
    meta: dict[str, object] = {"severity": severity.value}
    if tags:
        meta["tags"] = list(dict.fromkeys(tags))
    frontmatter = yaml.safe_dump(meta, default_flow_style=False, sort_keys=False)
    return f"---\n{frontmatter}---\n\n{content.strip()}\n"


def create_rule(
    project_root: Path,
    name: str,
    content: str,
    severity: Severity | str,
    tags: Sequence[str] | None = None,
) -> Path:
    """Write ``<project_root>/.rulekeeper/rules/<name>.md`` and return its path.

    Parent directories are created as needed; an existing rule of the same
    name is overwritten.

    Raises
    ------
    ValidationError
        For an empty name or content, an invalid severity, or a name that
        would escape the rules directory.
    """
    rel = _validate_name(name)
    if not content.strip():
        msg = "rule content must not be empty"
        raise ValidationError(msg)
    level = Severity.parse(severity)

    target = project_root / RULES_SUBDIR / Path(*rel.parts)
    target = target.with_name(target.name + RULE_SUFFIX)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_rule_file(content, level, tags), encoding="utf-8")
    logger.info("Created rule %s at %s", rel.as_posix(), target)
    return target
