# rulekeeper:domain=rules
"""Rule checker: drive the rule x file cross product to a report.

Pairs are evaluated in a fixed order (rules by name, then files by path).
Evaluation may run on several worker threads, but results are consumed in
that canonical order, and the error budget is charged only there, so the
report is identical whatever order the workers finish in.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from rulekeeper.rules.cache import compute_fingerprint
from rulekeeper.rules.errors import AgentError, CacheError, CheckError, LanguageDetectionError
from rulekeeper.rules.language import detect_language
from rulekeeper.rules.models import CheckReport, CheckStatus, Severity, Verdict, Violation
from rulekeeper.rules.rendering import SYSTEM_PROMPT, PromptRenderer

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from rulekeeper.agents.base import AgentExecutor
    from rulekeeper.rules.cache import RuleCache
    from rulekeeper.rules.models import Rule

logger = logging.getLogger(__name__)

DEFAULT_MAX_ERRORS = 1
PASS_TOKEN = "PASS"
VIOLATION_TOKEN = "VIOLATION"
FALLBACK_LANGUAGE = "text"


class CheckerState(enum.Enum):
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    ABORTED = "aborted"


_TERMINAL_STATES = {
    CheckStatus.COMPLETED: CheckerState.COMPLETED,
    CheckStatus.BUDGET_EXHAUSTED: CheckerState.BUDGET_EXHAUSTED,
    CheckStatus.ABORTED: CheckerState.ABORTED,
}


def parse_response(response: str, rule: Rule, file_path: str) -> Verdict:
    """Turn raw agent output into a verdict.

    The response must *start* with ``PASS`` or ``VIOLATION``; any explanation
    after the keyword is expected.  A violation keeps the full response as its
    message.

    Raises
    ------
    AgentError
        If the response starts with neither keyword.
    """
    text = response.lstrip()
    if text.startswith(PASS_TOKEN):
        return Verdict.passing()
    if text.startswith(VIOLATION_TOKEN):
        return Verdict.violated(
            Violation(
                rule_name=rule.name,
                file_path=file_path,
                severity=rule.severity,
                message=text.rstrip(),
            )
        )
    preview = text[:80] + ("..." if len(text) > 80 else "")
    msg = (
        f"malformed agent response for rule '{rule.name}' on {file_path}: "
        f"expected PASS or VIOLATION, got {preview!r}"
    )
    raise AgentError(msg)


@dataclass(frozen=True)
class _Outcome:
    """What happened to one pair inside a worker."""

    verdict: Verdict | None = None
    error: CheckError | None = None
    cached: bool = False
    agent_called: bool = False
    skipped: bool = False


class CancelToken:
    """Cancel a run from another thread, before or after its checker exists."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._checker: RuleChecker | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def attach(self, checker: RuleChecker) -> None:
        with self._lock:
            self._checker = checker
            cancelled = self._cancelled
        if cancelled:
            checker.cancel()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            checker = self._checker
        if checker is not None:
            checker.cancel()


class RuleChecker:
    """Check rules against files with caching, an error budget, and fail-fast.

    A checker runs once: ``ready -> running -> completed | budget_exhausted |
    aborted``.  The agent and cache are owned by the caller.
    """

    def __init__(
        self,
        agent: AgentExecutor,
        cache: RuleCache,
        *,
        partials: Mapping[str, str] | None = None,
        renderer: PromptRenderer | None = None,
        root: Path | None = None,
        max_errors: int | None = DEFAULT_MAX_ERRORS,
        concurrency: int | None = None,
        force: bool = False,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        if max_errors is not None and max_errors < 1:
            msg = "max_errors must be >= 1 (or None for unlimited)"
            raise ValueError(msg)
        self.agent = agent
        self.cache = cache
        self.renderer = renderer or PromptRenderer(partials)
        self.root = root.resolve() if root is not None else None
        self.max_errors = max_errors
        self.concurrency = concurrency
        self.force = force
        self.system_prompt = system_prompt
        self._state = CheckerState.READY
        self._stop = threading.Event()
        self._cancel_requested = threading.Event()

    @property
    def state(self) -> CheckerState:
        return self._state

    # -- single pair ---------------------------------------------------------

    def _display_path(self, path: Path) -> str:
        if self.root is not None:
            try:
                return path.resolve().relative_to(self.root).as_posix()
            except ValueError:
                pass
        return str(path)

    def _evaluate(self, rule: Rule, path: Path) -> _Outcome:
        """Evaluate one pair.  Raises only :class:`AgentError`."""
        if self._stop.is_set():
            return _Outcome(skipped=True)

        display = self._display_path(path)
        try:
            raw = path.read_bytes()
            content = raw.decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return _Outcome(error=CheckError(f"failed to read file {display}: {exc}"))

        try:
            language = detect_language(path, content)
        except LanguageDetectionError as exc:
            logger.debug("%s; using %r", exc, FALLBACK_LANGUAGE)
            language = FALLBACK_LANGUAGE

        try:
            rendered_rule = self.renderer.render_rule(
                rule, target_path=display, target_content=content, language=language
            )
        except CheckError as exc:
            return _Outcome(error=exc)

        fingerprint = compute_fingerprint(rule, rendered_rule, raw, self.agent.identity)
        if not self.force:
            cached = self.cache.get(fingerprint, rule_name=rule.name, file_path=display)
            if cached is not None:
                return _Outcome(verdict=cached, cached=True)

        try:
            prompt = self.renderer.render_check_prompt(
                rendered_rule, target_path=display, target_content=content, language=language
            )
        except CheckError as exc:
            return _Outcome(error=exc)

        if self._stop.is_set():
            return _Outcome(skipped=True)

        logger.debug("Checking %s against rule %s", display, rule.name)
        response = self.agent.execute(prompt, system_prompt=self.system_prompt)
        verdict = parse_response(response, rule, display)

        try:
            self.cache.store(fingerprint, verdict)
        except CacheError as exc:
            logger.warning("Verdict for %s / %s not cached: %s", rule.name, display, exc)

        return _Outcome(verdict=verdict, agent_called=True)

    def check_file(self, rule: Rule, path: Path) -> Verdict:
        """Check a single pair synchronously.

        The agent must already be initialized.

        Raises
        ------
        CheckError
            If the file cannot be read or the prompt cannot be rendered.
        AgentError
            If the agent fails or returns malformed output.
        """
        outcome = self._evaluate(rule, path)
        if outcome.error is not None:
            raise outcome.error
        if outcome.verdict is None:
            msg = "check was cancelled"
            raise AgentError(msg)
        return outcome.verdict

    # -- whole run -----------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation from any thread; in-flight agent calls are aborted."""
        self._cancel_requested.set()
        self._stop.set()
        self.agent.cancel()

    def _workers(self) -> int:
        limit = max(1, self.agent.max_concurrency)
        if self.concurrency is not None:
            return max(1, min(self.concurrency, limit))
        return limit

    def run(self, rules: Sequence[Rule], files: Sequence[Path]) -> CheckReport:
        """Check every rule against every file and return the report.

        Stops early when ``max_errors`` Error-severity violations have been
        collected (``budget_exhausted``) or when the agent fails
        (``aborted``).  Violations of other severities never stop the run.
        """
        if self._state is not CheckerState.READY:
            msg = f"RuleChecker already used (state: {self._state.value})"
            raise RuntimeError(msg)
        self._state = CheckerState.RUNNING
        start = time.monotonic()

        ordered_rules = sorted(rules, key=lambda r: r.name)
        ordered_files = sorted(files)
        report = CheckReport(rules_checked=len(ordered_rules))
        logger.info("Checking %d rules against %d files", len(ordered_rules), len(ordered_files))

        try:
            self.agent.initialize()
        except AgentError as exc:
            self._abort(report, str(exc))
        except BaseException:
            self._state = CheckerState.ABORTED
            raise
        else:
            try:
                self._run_pairs(report, ordered_rules, ordered_files)
            except BaseException:
                self._state = CheckerState.ABORTED
                raise

        report.elapsed_ms = (time.monotonic() - start) * 1000
        self._state = _TERMINAL_STATES[report.status]
        if report.status is CheckStatus.COMPLETED:
            logger.info("All checks finished (%d pairs)", report.pairs_checked)
        return report

    def _abort(self, report: CheckReport, reason: str) -> None:
        logger.error("Rule check aborted: %s", reason)
        report.status = CheckStatus.ABORTED
        report.error = reason
        # Partial results from a broken oracle are misleading.
        report.violations.clear()

    def _run_pairs(self, report: CheckReport, rules: list[Rule], files: list[Path]) -> None:
        pairs: Iterator[tuple[Rule, Path]] = ((r, f) for r in rules for f in files)
        workers = self._workers()
        window = workers * 2
        errors_found = 0
        seen_files: set[Path] = set()
        pending: deque[tuple[Rule, Path, Future[_Outcome]]] = deque()

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rulekeeper-check")

        def submit_next() -> None:
            pair = next(pairs, None)
            if pair is not None:
                rule, path = pair
                pending.append((rule, path, pool.submit(self._evaluate, rule, path)))

        try:
            for _ in range(window):
                submit_next()

            while pending:
                rule, path, future = pending.popleft()
                try:
                    outcome = future.result()
                except AgentError as exc:
                    reason = "cancelled" if self._cancel_requested.is_set() else str(exc)
                    self._abort(report, reason)
                    break
                except Exception as exc:
                    logger.exception("Unexpected failure checking %s against %s", path, rule.name)
                    self._abort(report, f"unexpected error checking rule '{rule.name}': {exc}")
                    break

                if self._cancel_requested.is_set() or outcome.skipped:
                    self._abort(report, "cancelled")
                    break

                report.pairs_checked += 1
                seen_files.add(path)
                report.files_checked = len(seen_files)
                if outcome.cached:
                    report.cache_hits += 1
                if outcome.agent_called:
                    report.agent_calls += 1

                if outcome.error is not None:
                    logger.error("%s", outcome.error)
                    report.errors.append(str(outcome.error))
                elif outcome.verdict is not None:
                    errors_found += self._record(report, rule, path, outcome.verdict)
                    if self.max_errors is not None and errors_found >= self.max_errors:
                        report.status = CheckStatus.BUDGET_EXHAUSTED
                        logger.info("Error budget of %d exhausted, stopping", self.max_errors)
                        break

                submit_next()
        except KeyboardInterrupt:
            self._cancel_requested.set()
            self._abort(report, "cancelled")
        finally:
            self._stop.set()
            for _, _, future in pending:
                future.cancel()
            if any(not f.done() for _, _, f in pending):
                self.agent.cancel()
            pool.shutdown(wait=True)

    def _record(self, report: CheckReport, rule: Rule, path: Path, verdict: Verdict) -> int:
        """Add *verdict* to the report; return 1 if it consumes the error budget."""
        violation = verdict.violation
        if verdict.passed or violation is None:
            logger.info("PASS %s: %s", rule.name, self._display_path(path))
            return 0
        report.violations.append(violation)
        logger.warning(
            "Violation of %s in %s (%s)",
            violation.rule_name,
            violation.file_path,
            violation.severity,
        )
        return 1 if violation.severity is Severity.ERROR else 0
