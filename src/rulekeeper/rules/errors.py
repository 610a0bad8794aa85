# rulekeeper:domain=rules
"""Error taxonomy for rule loading and checking."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rulekeeper.rules.models import Violation


class RuleError(Exception):
    """Base class for every rules-system failure."""


class LoadError(RuleError):
    """Raised when a rule file cannot be read."""


class ValidationError(RuleError):
    """Raised when rule metadata (severity, tags, name) is malformed."""


class CheckError(RuleError):
    """Raised when a prompt cannot be rendered or a target cannot be read."""


class AgentError(RuleError):
    """Raised when the LLM backend cannot be initialized or invoked.

    Also covers malformed agent output: a response that starts with neither
    ``PASS`` nor ``VIOLATION``.
    """


class LanguageDetectionError(RuleError):
    """Raised when no language can be inferred for a target file."""


class GlobExpansionError(RuleError):
    """Raised for an invalid file pattern."""


class CacheError(RuleError):
    """Raised when a cache entry cannot be persisted or the cache is closed."""


class RuleViolationError(RuleError):
    """A detected rule breach, raised only at the presentation boundary.

    Inside the checker violations travel as :class:`~rulekeeper.rules.models.Verdict`
    data; this exception exists so callers can turn a report into ordinary
    error propagation via ``CheckReport.raise_for_status()``.
    """

    def __init__(self, violation: Violation) -> None:
        super().__init__(violation.compact())
        self.violation = violation
