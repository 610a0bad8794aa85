"""Agents domain: executor interface, subprocess and in-process backends, factory."""

# rulekeeper:domain=agents

from rulekeeper.agents.base import AgentExecutor
from rulekeeper.agents.factory import create_executor

__all__ = [
    "AgentExecutor",
    "create_executor",
]
