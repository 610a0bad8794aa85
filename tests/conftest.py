"""Shared test fixtures for Rulekeeper."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

import pytest

from rulekeeper.agents.base import AgentExecutor
from rulekeeper.rules.cache import RuleCache
from rulekeeper.rules.errors import AgentError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path


class FakeAgent(AgentExecutor):
    """Scripted executor: answers by substring match on the prompt.

    *script* maps a substring to a response; the first substring found in the
    prompt wins, otherwise *default* is returned.  A response that is an
    exception instance is raised instead of returned.  *responder*, when
    given, replaces the script entirely.
    """

    name = "fake"

    def __init__(
        self,
        script: dict[str, str | Exception] | None = None,
        *,
        default: str = "PASS",
        responder: Callable[[str], str] | None = None,
        identity: str = "fake:test-model",
        max_concurrency: int = 1,
        delay: float = 0.0,
        init_error: AgentError | None = None,
    ) -> None:
        self.script = dict(script or {})
        self.default = default
        self.responder = responder
        self._identity = identity
        self._max_concurrency = max_concurrency
        self.delay = delay
        self.init_error = init_error
        self.calls: list[tuple[str, str | None]] = []
        self.initialize_count = 0
        self.cancel_count = 0
        self.shutdown_count = 0
        self._lock = threading.Lock()

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def initialize(self) -> None:
        self.initialize_count += 1
        if self.init_error is not None:
            raise self.init_error

    def execute(self, prompt: str, *, system_prompt: str | None = None) -> str:
        with self._lock:
            self.calls.append((prompt, system_prompt))
        if self.delay:
            time.sleep(self.delay)
        if self.responder is not None:
            return self.responder(prompt)
        for needle, response in self.script.items():
            if needle in prompt:
                if isinstance(response, Exception):
                    raise response
                return response
        return self.default

    def cancel(self) -> None:
        self.cancel_count += 1

    def shutdown(self) -> None:
        self.shutdown_count += 1


def write_rule(root: Path, name: str, text: str) -> Path:
    """Write ``<root>/<name>.md`` creating parent directories."""
    path = root / f"{name}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Keep user-level rules, config, and cache out of every test."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg-cache"))
    for var in (
        "RULEKEEPER_AGENT",
        "RULEKEEPER_MODEL",
        "RULEKEEPER_AGENT_COMMAND",
        "RULEKEEPER_AGENT_TIMEOUT",
        "RULEKEEPER_CACHE_DIR",
    ):
        monkeypatch.delenv(var, raising=False)
    yield home


@pytest.fixture()
def tmp_project(tmp_path: Path) -> Path:
    """Create a minimal project with an empty rules directory."""
    project = tmp_path / "proj"
    (project / ".rulekeeper" / "rules").mkdir(parents=True)
    return project


@pytest.fixture()
def rules_dir(tmp_project: Path) -> Path:
    return tmp_project / ".rulekeeper" / "rules"


@pytest.fixture()
def cache(tmp_path: Path) -> Iterator[RuleCache]:
    with RuleCache.open(tmp_path / "cache") as handle:
        yield handle


@pytest.fixture()
def fake_agent() -> FakeAgent:
    return FakeAgent()
