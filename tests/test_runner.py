# rulekeeper:domain=rules
"""Tests for rulekeeper.rules.runner: run_check orchestration and formatters."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from conftest import FakeAgent, write_rule

from rulekeeper.config import Settings
from rulekeeper.rules.errors import GlobExpansionError
from rulekeeper.rules.models import CheckReport, CheckStatus, Severity, Violation
from rulekeeper.rules.runner import (
    format_json,
    format_porcelain,
    format_rich,
    report_to_dict,
    run_check,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture()
def project(tmp_project: Path, rules_dir: Path) -> Path:
    """Project with two error rules, one warning rule, and three source files."""
    write_rule(rules_dir, "security/no-eval", "NO-EVAL: never call eval().")
    write_rule(rules_dir, "security/no-exec", "NO-EXEC: never call exec().")
    write_rule(
        rules_dir,
        "style/docstrings",
        "---\ntags: [style]\n---\nDOCSTRINGS: public functions have docstrings.",
    )
    src = tmp_project / "src"
    src.mkdir()
    (src / "a.py").write_text("def a():\n    return 1\n")
    (src / "b.py").write_text("eval('1 + 1')\n")
    (src / "c.py").write_text("exec('x = 1')\n")
    return tmp_project


def _settings(tmp_path: Path, **kwargs: object) -> Settings:
    return Settings(cache_dir=tmp_path / "verdicts", **kwargs)  # type: ignore[arg-type]


def _responder(prompt: str) -> str:
    if "NO-EVAL" in prompt and "eval(" in prompt.split("## File:", 1)[1]:
        return "VIOLATION\n\nCalls eval()."
    if "NO-EXEC" in prompt and "exec(" in prompt.split("## File:", 1)[1]:
        return "VIOLATION\n\nCalls exec()."
    return "PASS"


def _run(project: Path, tmp_path: Path, **kwargs: object) -> tuple[CheckReport, FakeAgent]:
    agent = FakeAgent(responder=_responder)
    options: dict[str, object] = {
        "settings": _settings(tmp_path),
        "executor": agent,
        "include_builtin": False,
        "patterns": ["src/**/*.py"],
    }
    options.update(kwargs)
    report = run_check(project, **options)  # type: ignore[arg-type]
    return report, agent


class TestRunCheck:
    def test_default_budget_stops_at_first_error(self, project: Path, tmp_path: Path) -> None:
        report, _ = _run(project, tmp_path)

        assert report.status is CheckStatus.BUDGET_EXHAUSTED
        assert [(v.rule_name, v.file_path) for v in report.violations] == [
            ("security/no-eval", "src/b.py"),
        ]
        assert report.exit_code == 1

    def test_no_fail_fast_checks_everything(self, project: Path, tmp_path: Path) -> None:
        report, agent = _run(project, tmp_path, fail_fast=False)

        assert report.status is CheckStatus.COMPLETED
        assert report.pairs_checked == 9
        assert agent.call_count == 9
        assert {(v.rule_name, v.file_path) for v in report.violations} == {
            ("security/no-eval", "src/b.py"),
            ("security/no-exec", "src/c.py"),
        }

    def test_explicit_budget_overrides_settings(self, project: Path, tmp_path: Path) -> None:
        report, _ = _run(project, tmp_path, max_errors=2)
        assert report.status is CheckStatus.BUDGET_EXHAUSTED
        assert [v.rule_name for v in report.violations] == [
            "security/no-eval",
            "security/no-exec",
        ]

        report, _ = _run(project, tmp_path, max_errors=3)
        assert report.status is CheckStatus.COMPLETED

    def test_settings_budget_used_by_default(self, project: Path, tmp_path: Path) -> None:
        report, _ = _run(project, tmp_path, settings=_settings(tmp_path, max_errors=None))
        assert report.status is CheckStatus.COMPLETED
        assert len(report.violations) == 2

    def test_filters(self, project: Path, tmp_path: Path) -> None:
        report, agent = _run(project, tmp_path, category="style")
        assert report.rules_checked == 1
        assert agent.call_count == 3
        assert all("DOCSTRINGS" in prompt for prompt, _ in agent.calls)

        report, _ = _run(project, tmp_path, severity=Severity.WARNING)
        assert report.rules_checked == 1

        report, _ = _run(project, tmp_path, tags=["style"])
        assert report.rules_checked == 1

        report, _ = _run(project, tmp_path, rule_names=["security/no-exec"])
        assert report.rules_checked == 1
        assert report.violations[0].file_path == "src/c.py"

    def test_no_rules_selected_is_empty_report(self, project: Path, tmp_path: Path) -> None:
        report, agent = _run(project, tmp_path, rule_names=["does/not-exist"])
        assert report.status is CheckStatus.COMPLETED
        assert report.rules_checked == 0
        assert agent.call_count == 0
        assert report.exit_code == 0

    def test_no_files_matched(self, project: Path, tmp_path: Path) -> None:
        with pytest.raises(GlobExpansionError, match="no files matched: docs/\\*\\*/\\*.rst"):
            _run(project, tmp_path, patterns=["docs/**/*.rst"])

    def test_cache_shared_between_runs(self, project: Path, tmp_path: Path) -> None:
        _run(project, tmp_path, fail_fast=False)
        report, agent = _run(project, tmp_path, fail_fast=False)
        assert agent.call_count == 0
        assert report.cache_hits == 9

    def test_caller_owned_executor_not_shut_down(self, project: Path, tmp_path: Path) -> None:
        _, agent = _run(project, tmp_path)
        assert agent.shutdown_count == 0

    def test_created_executor_is_shut_down(
        self, project: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        agent = FakeAgent()
        monkeypatch.setattr("rulekeeper.agents.factory.create_executor", lambda _cfg: agent)

        run_check(
            project,
            settings=_settings(tmp_path),
            include_builtin=False,
            patterns=["src/a.py"],
        )

        assert agent.shutdown_count == 1
        assert agent.call_count == 3

    def test_invalid_rule_is_skipped(self, project: Path, tmp_path: Path) -> None:
        write_rule(project / ".rulekeeper" / "rules", "broken", "---\nseverity: fatal\n---\nx")
        report, _ = _run(project, tmp_path, fail_fast=False)
        assert report.rules_checked == 3

    def test_builtin_rules_included(self, project: Path, tmp_path: Path) -> None:
        report, _ = _run(
            project,
            tmp_path,
            include_builtin=True,
            category="security",
            patterns=["src/a.py"],
        )
        # Two project rules plus the built-in security rules.
        assert report.rules_checked >= 4


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


def _report(**kwargs: object) -> CheckReport:
    defaults: dict[str, object] = {
        "rules_checked": 2,
        "files_checked": 3,
        "pairs_checked": 6,
        "cache_hits": 2,
        "agent_calls": 4,
        "elapsed_ms": 1500.0,
    }
    defaults.update(kwargs)
    return CheckReport(**defaults)  # type: ignore[arg-type]


_VIOLATIONS = [
    Violation("security/no-eval", "src/b.py", Severity.ERROR, "VIOLATION\n\nCalls eval()."),
    Violation("style/docstrings", "src/a.py", Severity.WARNING, "VIOLATION"),
]


class TestFormatters:
    def test_rich_clean(self) -> None:
        text = format_rich(_report())
        assert "Rules: 2 checked" in text
        assert "✓ No violations found (6 checks, 2 cached, 1.5s)" in text

    def test_rich_violations(self) -> None:
        text = format_rich(_report(violations=list(_VIOLATIONS), errors=["failed to read x"]))
        assert "✗ security/no-eval [error]" in text
        assert "  src/b.py" in text
        assert "  Calls eval()." in text
        assert "! failed to read x" in text
        assert "2 violations found, 1 errors" in text

    def test_rich_budget_exhausted(self) -> None:
        report = _report(violations=_VIOLATIONS[:1], status=CheckStatus.BUDGET_EXHAUSTED)
        assert "error budget exhausted" in format_rich(report)

    def test_rich_aborted(self) -> None:
        report = _report(status=CheckStatus.ABORTED, error="agent process failed: boom")
        assert "✗ Check aborted: agent process failed: boom" in format_rich(report)

    def test_json(self) -> None:
        data = json.loads(format_json(_report(violations=list(_VIOLATIONS))))
        assert data["status"] == "completed"
        assert data["violations"][0] == {
            "rule_name": "security/no-eval",
            "file_path": "src/b.py",
            "severity": "error",
            "message": "VIOLATION\n\nCalls eval().",
        }
        assert data["summary"]["violations_count"] == 2
        assert data["summary"]["error_count"] == 1
        assert data["summary"]["exit_code"] == 1
        assert data["error"] is None

    def test_report_to_dict_aborted(self) -> None:
        data = report_to_dict(_report(status=CheckStatus.ABORTED, error="cancelled"))
        assert data["status"] == "aborted"
        assert data["error"] == "cancelled"
        assert data["summary"]["exit_code"] == 2

    def test_porcelain(self) -> None:
        assert format_porcelain(_report(violations=list(_VIOLATIONS))) == (
            "security/no-eval:error:src/b.py\nstyle/docstrings:warning:src/a.py"
        )

    def test_porcelain_empty(self) -> None:
        assert format_porcelain(_report()) == ""
