# rulekeeper:domain=agents
"""Subprocess-backed agent: one CLI agent process per prompt (default ``claude``)."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import threading
from typing import TYPE_CHECKING

from rulekeeper.agents.base import AgentExecutor
from rulekeeper.rules.errors import AgentError

if TYPE_CHECKING:
    from rulekeeper.config import ClaudeCodeConfig

logger = logging.getLogger(__name__)


class SubprocessAgentExecutor(AgentExecutor):
    """Run prompts through an external CLI agent.

    The user prompt is written to the process's stdin; the system prompt is
    passed with ``--system-prompt`` and is never mixed into the user prompt.
    Stdout is the response.
    """

    name = "claude-code"

    def __init__(self, config: ClaudeCodeConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._active: set[subprocess.Popen[str]] = set()
        self._cancelled = threading.Event()

    @property
    def identity(self) -> str:
        """Backend name plus the full argv, minus the per-call system prompt."""
        return f"{self.name}:{shlex.join(self.build_command(None))}"

    @property
    def max_concurrency(self) -> int:
        return self.config.max_concurrency

    def initialize(self) -> None:
        executable = self.config.command[0]
        if shutil.which(executable) is None:
            msg = (
                f"agent command not found: {executable!r}. "
                "Install it or set agent.claude_code.command."
            )
            raise AgentError(msg)
        self._cancelled.clear()
        logger.debug("Subprocess agent ready: %s", executable)

    def build_command(self, system_prompt: str | None) -> list[str]:
        """Full argv for one invocation."""
        argv = [*self.config.command, *self.config.args]
        if self.config.model:
            argv += ["--model", self.config.model]
        if system_prompt:
            argv += ["--system-prompt", system_prompt]
        return argv

    def execute(self, prompt: str, *, system_prompt: str | None = None) -> str:
        if self._cancelled.is_set():
            msg = "agent execution cancelled"
            raise AgentError(msg)

        argv = self.build_command(system_prompt)
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
            )
        except OSError as exc:
            msg = f"failed to spawn agent process {argv[0]!r}: {exc}"
            raise AgentError(msg) from exc

        with self._lock:
            self._active.add(proc)
        if self._cancelled.is_set():
            proc.kill()
        try:
            try:
                stdout, stderr = proc.communicate(prompt, timeout=self.config.timeout)
            except subprocess.TimeoutExpired as exc:
                proc.kill()
                proc.communicate()
                msg = f"agent timed out after {self.config.timeout:g}s"
                raise AgentError(msg) from exc
            except UnicodeDecodeError as exc:
                proc.kill()
                proc.wait()
                msg = f"agent output is not valid UTF-8: {exc}"
                raise AgentError(msg) from exc
        finally:
            with self._lock:
                self._active.discard(proc)

        if self._cancelled.is_set():
            msg = "agent execution cancelled"
            raise AgentError(msg)
        if proc.returncode != 0:
            detail = (stderr or "").strip() or f"exit code {proc.returncode}"
            msg = f"agent process failed: {detail}"
            raise AgentError(msg)
        return stdout

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            active = list(self._active)
        for proc in active:
            if proc.poll() is None:
                logger.debug("Killing agent process %s", proc.pid)
                proc.kill()

    def shutdown(self) -> None:
        self.cancel()
