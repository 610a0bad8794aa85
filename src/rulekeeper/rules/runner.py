# rulekeeper:domain=rules
"""Check orchestrator: resolve settings, load rules, expand files, run, format."""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from rulekeeper.config import resolve_settings
from rulekeeper.rules.cache import RuleCache
from rulekeeper.rules.checker import CancelToken, RuleChecker
from rulekeeper.rules.errors import GlobExpansionError
from rulekeeper.rules.files import expand_patterns
from rulekeeper.rules.loader import filter_rules, load_rules
from rulekeeper.rules.models import CheckReport, CheckStatus

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from rulekeeper.agents.base import AgentExecutor
    from rulekeeper.config import Settings
    from rulekeeper.rules.models import Severity

logger = logging.getLogger(__name__)


def run_check(
    project_root: Path,
    *,
    rule_names: Sequence[str] | None = None,
    patterns: Sequence[str] | None = None,
    severity: Severity | None = None,
    category: str | None = None,
    tags: Sequence[str] | None = None,
    max_errors: int | None = None,
    fail_fast: bool = True,
    force: bool = False,
    agent_backend: str | None = None,
    concurrency: int | None = None,
    settings: Settings | None = None,
    executor: AgentExecutor | None = None,
    user_home: Path | None = None,
    include_builtin: bool = True,
    cancel_token: CancelToken | None = None,
) -> CheckReport:
    """Run a full check of *project_root* and return the report.

    Parameters
    ----------
    max_errors:
        Error budget.  ``None`` falls back to the configured
        ``check.max_errors`` (default 1).
    fail_fast:
        When *False* the budget is unlimited and every pair is checked.
    executor:
        Pre-built agent executor.  When given, the caller owns it and it is
        not shut down here; otherwise one is created from the resolved
        settings and shut down after the run.
    cancel_token:
        Lets another thread cancel the run; a run cancelled before it starts
        aborts without calling the agent.

    Raises
    ------
    ConfigError
        If configuration files or environment are malformed.
    GlobExpansionError
        If the patterns match no files.
    AgentError
        If the agent backend is unknown.
    """
    start = time.monotonic()
    root = project_root.resolve()
    if settings is None:
        settings = resolve_settings(root, agent_backend=agent_backend, user_home=user_home)

    rule_set = load_rules(root, user_home=user_home, include_builtin=include_builtin)
    for err in rule_set.errors:
        logger.warning("%s", err)
    rules = filter_rules(
        rule_set.rules,
        names=rule_names,
        tags=tags,
        severity=severity,
        category=category,
    )
    if not rules:
        logger.warning("No rules selected, nothing to check")
        return CheckReport(elapsed_ms=(time.monotonic() - start) * 1000)

    files = expand_patterns(patterns, root)
    if not files:
        shown = ", ".join(patterns) if patterns else "**/*"
        msg = f"no files matched: {shown}"
        raise GlobExpansionError(msg)

    if not fail_fast:
        budget: int | None = None
    elif max_errors is not None:
        budget = max_errors
    else:
        budget = settings.max_errors

    # Lazy import to avoid circular dependency:
    # agents.factory -> rules.errors -> rules/__init__ -> runner -> agents.factory
    from rulekeeper.agents.factory import create_executor

    agent = executor if executor is not None else create_executor(settings.agent)
    try:
        with RuleCache.open(settings.cache_dir) as cache:
            checker = RuleChecker(
                agent,
                cache,
                partials=rule_set.partials,
                root=root,
                max_errors=budget,
                concurrency=concurrency if concurrency is not None else settings.concurrency,
                force=force,
            )
            if cancel_token is not None:
                cancel_token.attach(checker)
            report = checker.run(rules, files)
    finally:
        if executor is None:
            agent.shutdown()

    report.elapsed_ms = (time.monotonic() - start) * 1000
    return report


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


def _summary_line(report: CheckReport) -> str:
    elapsed_str = f"{report.elapsed_ms / 1000:.1f}s"
    stats = f"{report.pairs_checked} checks, {report.cache_hits} cached, {elapsed_str}"
    if report.status is CheckStatus.ABORTED:
        return f"✗ Check aborted: {report.error} ({stats})"
    count = len(report.violations)
    errors = len(report.error_violations)
    if count == 0:
        return f"✓ No violations found ({stats})"
    line = f"{count} violations found, {errors} errors ({stats})"
    if report.status is CheckStatus.BUDGET_EXHAUSTED:
        line += "; stopped early, error budget exhausted"
    return line


def format_rich(report: CheckReport) -> str:
    """Format a CheckReport as human-readable text.

    Example output with violations::

        Rules: 2 checked
        Files: 14 checked

        x security/no-hardcoded-secrets [error]
          src/settings.py
          VIOLATION: line 12 assigns a literal API key.

        1 violations found, 1 errors (3 checks, 0 cached, 4.2s)
    """
    lines: list[str] = [
        f"Rules: {report.rules_checked} checked",
        f"Files: {report.files_checked} checked",
        "",
    ]
    for v in report.violations:
        lines.append(f"✗ {v.rule_name} [{v.severity}]")
        lines.append(f"  {v.file_path}")
        for msg_line in v.message.splitlines():
            lines.append(f"  {msg_line}")
        lines.append("")
    for err in report.errors:
        lines.append(f"! {err}")
    if report.errors:
        lines.append("")
    lines.append(_summary_line(report))
    return "\n".join(lines)


def report_to_dict(report: CheckReport) -> dict[str, object]:
    """Structured form of a report, shared by the JSON formatter and MCP."""
    return {
        "status": report.status.value,
        "violations": [
            {
                "rule_name": v.rule_name,
                "file_path": v.file_path,
                "severity": v.severity.value,
                "message": v.message,
            }
            for v in report.violations
        ],
        "errors": list(report.errors),
        "error": report.error,
        "summary": {
            "rules_checked": report.rules_checked,
            "files_checked": report.files_checked,
            "pairs_checked": report.pairs_checked,
            "cache_hits": report.cache_hits,
            "agent_calls": report.agent_calls,
            "violations_count": len(report.violations),
            "error_count": len(report.error_violations),
            "elapsed_ms": report.elapsed_ms,
            "exit_code": report.exit_code,
        },
    }


def format_json(report: CheckReport) -> str:
    """Format a CheckReport as structured JSON."""
    return json.dumps(report_to_dict(report), indent=2)


def format_porcelain(report: CheckReport) -> str:
    """One line per violation: ``rule_name:severity:file_path``.

    Returns an empty string when there are no violations.
    """
    return "\n".join(f"{v.rule_name}:{v.severity}:{v.file_path}" for v in report.violations)
