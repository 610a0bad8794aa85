"""MCP server: stdio-based tool server exposing rule checking to AI agents."""

# rulekeeper:service=mcp-server

from __future__ import annotations

import functools
import json
import logging
import threading
from typing import TYPE_CHECKING, Any

import anyio.to_thread
import mcp
from mcp.server import Server
from mcp.types import TextContent

from rulekeeper import __version__
from rulekeeper.agents.factory import create_executor
from rulekeeper.config import ConfigError, resolve_settings
from rulekeeper.rules.authoring import create_rule
from rulekeeper.rules.checker import CancelToken
from rulekeeper.rules.errors import RuleError
from rulekeeper.rules.loader import load_rules
from rulekeeper.rules.models import Severity
from rulekeeper.rules.runner import report_to_dict, run_check

if TYPE_CHECKING:
    from pathlib import Path

    from rulekeeper.agents.base import AgentExecutor
    from rulekeeper.config import AgentConfig

logger = logging.getLogger(__name__)


# --- Tool handler functions (sync, testable without transport) ---


def handle_check(
    project_root: Path,
    *,
    rule_names: list[str] | None = None,
    file_paths: list[str] | None = None,
    severity: str | None = None,
    category: str | None = None,
    tags: list[str] | None = None,
    max_errors: int | None = None,
    force: bool = False,
    executor: AgentExecutor | None = None,
    cancel_token: CancelToken | None = None,
) -> dict[str, Any]:
    """Run a check and return the JSON-ready report."""
    report = run_check(
        project_root,
        rule_names=rule_names or None,
        patterns=file_paths or None,
        severity=Severity.parse(severity) if severity else None,
        category=category,
        tags=tags or None,
        max_errors=max_errors,
        force=force,
        executor=executor,
        cancel_token=cancel_token,
    )
    return report_to_dict(report)


def handle_create(
    project_root: Path,
    *,
    name: str,
    content: str,
    severity: str,
    tags: list[str] | None = None,
) -> dict[str, Any]:
    """Create a project rule and return where it was written."""
    path = create_rule(project_root, name, content, severity, tags)
    return {
        "name": name,
        "severity": Severity.parse(severity).value,
        "tags": list(tags or []),
        "path": path.relative_to(project_root).as_posix(),
    }


def handle_list(project_root: Path) -> list[dict[str, Any]]:
    """List all rules visible from *project_root*."""
    rule_set = load_rules(project_root)
    return [
        {
            "name": rule.name,
            "severity": rule.severity.value,
            "category": rule.category,
            "tags": list(rule.tags),
            "description": rule.description,
            "source": str(rule.source) if rule.source is not None else None,
        }
        for rule in rule_set.rules
    ]


# --- MCP server setup ---

_TOOLS = [
    mcp.Tool(
        name="rules_check",
        description=(
            "Check project files against natural-language coding rules using an "
            "LLM agent. Results are cached per rule and file content. Stops after "
            "max_errors error-severity violations. Returns a JSON report with "
            "status, violations, and summary counts."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "rule_names": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Only check these rules (e.g. security/no-hardcoded-secrets)",
                },
                "file_paths": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Files, directories, or glob patterns (default: whole project)",
                },
                "severity": {
                    "type": "string",
                    "enum": ["error", "warning", "info", "hint"],
                },
                "category": {
                    "type": "string",
                    "description": "Rule category, e.g. code-quality",
                },
                "tags": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Only rules carrying at least one of these tags",
                },
                "max_errors": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Error budget before stopping (default from config, 1)",
                },
                "force": {
                    "type": "boolean",
                    "default": False,
                    "description": "Ignore cached verdicts",
                },
            },
        },
    ),
    mcp.Tool(
        name="rules_create",
        description=(
            "Create a new project rule under .rulekeeper/rules/. The content is "
            "the natural-language instruction the agent checks files against."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "name": {
                    "type": "string",
                    "description": "Rule name; '/' separates the category (e.g. testing/no-mocks)",
                },
                "content": {"type": "string"},
                "severity": {
                    "type": "string",
                    "enum": ["error", "warning", "info", "hint"],
                },
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["name", "content", "severity"],
        },
    ),
    mcp.Tool(
        name="rules_list",
        description="List all available rules with severity, category, and tags.",
        inputSchema={"type": "object", "properties": {}},
    ),
]


class ExecutorPool:
    """One agent executor per distinct agent configuration, reused across calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._executors: dict[AgentConfig, AgentExecutor] = {}

    def get(self, config: AgentConfig) -> AgentExecutor:
        with self._lock:
            executor = self._executors.get(config)
            if executor is None:
                executor = create_executor(config)
                self._executors[config] = executor
            return executor

    def shutdown(self) -> None:
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown()


def create_server(project_root: Path, *, executors: ExecutorPool | None = None) -> Server:
    """Create and configure the MCP server for a project.

    The caller owns *executors* and should shut it down when the server exits.
    """
    server = Server(
        name="rulekeeper",
        version=__version__,
        instructions="Rulekeeper - check code against natural-language rules with an LLM.",
    )
    if executors is None:
        executors = ExecutorPool()

    @server.list_tools()  # type: ignore[no-untyped-call,untyped-decorator]
    async def _list_tools() -> list[mcp.Tool]:
        return _TOOLS

    @server.call_tool()  # type: ignore[untyped-decorator]
    async def _call_tool(
        name: str,
        arguments: dict[str, Any] | None,
    ) -> list[TextContent]:
        return await call_tool(
            name, arguments or {}, project_root=project_root, executors=executors
        )

    return server


async def call_tool(
    name: str,
    args: dict[str, Any],
    *,
    project_root: Path,
    executors: ExecutorPool | None = None,
) -> list[TextContent]:
    """Run one tool call on a worker thread, keeping the event loop free.

    Cancelling the calling task cancels the rule check and kills in-flight
    agent calls.
    """
    token = CancelToken()
    dispatch = functools.partial(
        _dispatch_tool,
        name,
        args,
        project_root=project_root,
        executors=executors,
        cancel_token=token,
    )
    try:
        result = await anyio.to_thread.run_sync(dispatch, abandon_on_cancel=True)
    except anyio.get_cancelled_exc_class():
        logger.info("Tool %s cancelled", name)
        token.cancel()
        raise
    except (RuleError, ConfigError) as exc:
        logger.error("Tool %s failed: %s", name, exc)
        return [TextContent(type="text", text=f"Error: {exc}")]
    return [
        TextContent(
            type="text",
            text=json.dumps(result, ensure_ascii=False, indent=2),
        )
    ]


def _dispatch_tool(
    name: str,
    args: dict[str, Any],
    *,
    project_root: Path,
    executors: ExecutorPool | None = None,
    cancel_token: CancelToken | None = None,
) -> Any:
    """Route tool call to the appropriate handler."""
    if name == "rules_check":
        executor = None
        if executors is not None:
            settings = resolve_settings(project_root)
            executor = executors.get(settings.agent)
        return handle_check(
            project_root,
            rule_names=args.get("rule_names"),
            file_paths=args.get("file_paths"),
            severity=args.get("severity"),
            category=args.get("category"),
            tags=args.get("tags"),
            max_errors=args.get("max_errors"),
            force=bool(args.get("force", False)),
            executor=executor,
            cancel_token=cancel_token,
        )

    if name == "rules_create":
        return handle_create(
            project_root,
            name=args["name"],
            content=args["content"],
            severity=args["severity"],
            tags=args.get("tags"),
        )

    if name == "rules_list":
        return handle_list(project_root)

    msg = f"Unknown tool: {name}"
    raise ValueError(msg)
