# rulekeeper:domain=agents
"""The one place that turns resolved agent configuration into an executor."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rulekeeper.config import CLAUDE_CODE, LLAMA
from rulekeeper.rules.errors import AgentError

if TYPE_CHECKING:
    from rulekeeper.agents.base import AgentExecutor
    from rulekeeper.config import AgentConfig


def create_executor(config: AgentConfig) -> AgentExecutor:
    """Instantiate (but do not initialize) the executor for ``config.backend``.

    Raises
    ------
    AgentError
        For an unknown backend name.
    """
    if config.backend == CLAUDE_CODE:
        from rulekeeper.agents.subprocess_agent import SubprocessAgentExecutor

        return SubprocessAgentExecutor(config.claude_code)
    if config.backend == LLAMA:
        from rulekeeper.agents.local_agent import LocalAgentExecutor

        return LocalAgentExecutor(config.llama)

    msg = f"Unsupported agent backend: {config.backend!r}"
    raise AgentError(msg)
