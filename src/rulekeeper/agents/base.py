# rulekeeper:domain=agents
"""Agent executor interface shared by every LLM backend."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import TracebackType


class AgentExecutor(abc.ABC):
    """Evaluate prompts with an LLM backend.

    Lifecycle: ``initialize()`` once, then any number of ``execute()`` calls
    (possibly from several threads, up to ``max_concurrency``), then
    ``shutdown()``.  ``cancel()`` may be called from any thread to abort
    in-flight work.
    """

    #: Short backend name, e.g. ``"claude-code"``.
    name: str = "agent"

    @property
    @abc.abstractmethod
    def identity(self) -> str:
        """Stable description of backend and configuration, hashed into cache keys."""

    @property
    def max_concurrency(self) -> int:
        """How many ``execute()`` calls may usefully run at once."""
        return 1

    @abc.abstractmethod
    def initialize(self) -> None:
        """Prepare the backend.

        Raises
        ------
        AgentError
            If the backend is unavailable.
        """

    @abc.abstractmethod
    def execute(self, prompt: str, *, system_prompt: str | None = None) -> str:
        """Run *prompt* and return the raw response text.

        Raises
        ------
        AgentError
            On any invocation failure, timeout, or cancellation.
        """

    def cancel(self) -> None:  # noqa: B027
        """Abort in-flight ``execute()`` calls.  Default: nothing to abort."""

    def shutdown(self) -> None:  # noqa: B027
        """Release backend resources."""

    def __enter__(self) -> AgentExecutor:
        self.initialize()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()
