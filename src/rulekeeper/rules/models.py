# rulekeeper:domain=rules
"""Rule data model: rules, verdicts, violations, and the aggregate check report."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from rulekeeper.rules.errors import AgentError, RuleViolationError, ValidationError

if TYPE_CHECKING:
    from pathlib import Path


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------


class Severity(enum.Enum):
    """How serious a rule breach is.  Only ``ERROR`` consumes the error budget."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    HINT = "hint"

    @classmethod
    def parse(cls, raw: object) -> Severity:
        """Parse a severity name case-insensitively.

        Raises
        ------
        ValidationError
            If *raw* is not one of ``error``, ``warning``, ``info``, ``hint``.
        """
        if isinstance(raw, Severity):
            return raw
        value = str(raw).strip().lower()
        for member in cls:
            if member.value == value:
                return member
        valid = ", ".join(m.value for m in cls)
        msg = f"invalid severity {raw!r}, must be one of: {valid}"
        raise ValidationError(msg)

    def __str__(self) -> str:
        return self.value


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rule:
    """A named natural-language checking instruction.

    ``name`` may contain ``/`` separators; everything before the last
    separator is the rule's category.
    """

    name: str
    body: str
    severity: Severity
    tags: tuple[str, ...] = ()
    description: str | None = None
    source: Path | None = None
    has_frontmatter: bool = False

    @property
    def category(self) -> str | None:
        """Category derived from the rule's path, e.g. ``code-quality``."""
        if "/" not in self.name:
            return None
        return self.name.rsplit("/", 1)[0]


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Violation:
    """A single rule breach found in one file.

    ``message`` is the full agent response, not just the keyword.
    """

    rule_name: str
    file_path: str
    severity: Severity
    message: str

    def compact(self) -> str:
        """One-line summary used in error messages."""
        return (
            f"Rule '{self.rule_name}' violated in {self.file_path} "
            f"(severity: {self.severity})"
        )

    def __str__(self) -> str:
        return (
            f"Violation\nRule: {self.rule_name}\nFile: {self.file_path}\n"
            f"Severity: {self.severity}\nMessage: {self.message}"
        )


@dataclass(frozen=True)
class Verdict:
    """Outcome of checking one (rule, file) pair."""

    passed: bool
    violation: Violation | None = None

    @classmethod
    def passing(cls) -> Verdict:
        return cls(passed=True)

    @classmethod
    def violated(cls, violation: Violation) -> Verdict:
        return cls(passed=False, violation=violation)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


class CheckStatus(enum.Enum):
    """Terminal status of a checking run."""

    COMPLETED = "completed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    ABORTED = "aborted"


EXIT_OK = 0
EXIT_VIOLATIONS = 1
EXIT_FAILURE = 2


@dataclass
class CheckReport:
    """Aggregate result of a checking run."""

    status: CheckStatus = CheckStatus.COMPLETED
    violations: list[Violation] = field(default_factory=list)
    rules_checked: int = 0
    files_checked: int = 0
    pairs_checked: int = 0
    cache_hits: int = 0
    agent_calls: int = 0
    errors: list[str] = field(default_factory=list)
    error: str | None = None
    elapsed_ms: float = 0.0

    @property
    def error_violations(self) -> list[Violation]:
        return [v for v in self.violations if v.severity is Severity.ERROR]

    @property
    def exit_code(self) -> int:
        """Stable process outcome: 0 passed, 1 error violations, 2 agent failure."""
        if self.status is CheckStatus.ABORTED:
            return EXIT_FAILURE
        if self.error_violations:
            return EXIT_VIOLATIONS
        return EXIT_OK

    def raise_for_status(self) -> None:
        """Raise the first blocking outcome as an exception, if any.

        Raises
        ------
        AgentError
            If the run was aborted.
        RuleViolationError
            For the first Error-severity violation.
        """
        if self.status is CheckStatus.ABORTED:
            raise AgentError(self.error or "check aborted")
        errors = self.error_violations
        if errors:
            raise RuleViolationError(errors[0])
