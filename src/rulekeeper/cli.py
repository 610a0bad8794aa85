"""Rulekeeper CLI entry point."""

# rulekeeper:service=cli

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from rulekeeper import __version__
from rulekeeper.config import BACKENDS

_SEVERITY_CHOICES = ["error", "warning", "info", "hint"]

_project_option = click.option(
    "--project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project root (default: current directory).",
)


def _configure_logging(*, verbose: bool, quiet: bool) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


# rulekeeper:service=cli
@click.group()
@click.version_option(version=__version__, prog_name="rulekeeper")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output (errors only).")
@click.pass_context
def main(ctx: click.Context, *, verbose: bool, quiet: bool) -> None:
    """Rulekeeper - check code against natural-language rules with an LLM."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    _configure_logging(verbose=verbose, quiet=quiet)


@main.group()
def rule() -> None:
    """Manage and run rules."""


# rulekeeper:domain=rules
@rule.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@_project_option
def rule_list(*, as_json: bool, project: Path | None) -> None:
    """List available rules (built-in, user, and project)."""
    from rulekeeper.services.mcp_server import handle_list

    project_root = project or Path.cwd()
    rules = handle_list(project_root)

    if as_json:
        click.echo(json.dumps(rules, indent=2))
        return

    if not rules:
        click.echo("No rules found.")
        return

    from rich.console import Console
    from rich.table import Table

    table = Table(title=f"Rules ({len(rules)})")
    table.add_column("Name", style="bold")
    table.add_column("Severity")
    table.add_column("Category")
    table.add_column("Tags")
    severity_styles = {"error": "red", "warning": "yellow", "info": "cyan", "hint": "dim"}
    for r in rules:
        sev = r["severity"]
        table.add_row(
            r["name"],
            f"[{severity_styles.get(sev, '')}]{sev}[/]",
            r["category"] or "",
            ", ".join(r["tags"]),
        )
    Console().print(table)


@rule.command("validate")
@click.option("--rule", "rule_names", multiple=True, help="Only validate these rules.")
@_project_option
def rule_validate(*, rule_names: tuple[str, ...], project: Path | None) -> None:
    """Validate rule files: frontmatter, template syntax, and partials.

    Exit codes: 0 = all valid, 1 = problems found.
    """
    from rulekeeper.rules.errors import CheckError
    from rulekeeper.rules.loader import filter_rules, load_rules
    from rulekeeper.rules.rendering import PromptRenderer

    project_root = project or Path.cwd()
    rule_set = load_rules(project_root)
    problems = [str(err) for err in rule_set.errors]

    renderer = PromptRenderer(rule_set.partials)
    selected = filter_rules(rule_set.rules, names=list(rule_names) or None)
    if rule_names:
        missing = sorted(set(rule_names) - {r.name for r in selected})
        problems.extend(f"rule not found: {name}" for name in missing)
    for r in selected:
        try:
            renderer.validate(r)
        except CheckError as exc:
            problems.append(str(exc))

    for problem in problems:
        click.echo(f"✗ {problem}", err=True)
    if problems:
        click.echo(f"{len(problems)} problems found ({len(selected)} rules checked)")
        sys.exit(1)
    click.echo(f"✓ {len(selected)} rules valid")


@rule.command("check")
@click.argument("patterns", nargs=-1)
@click.option("--rule", "rule_names", multiple=True, help="Only check these rules (repeatable).")
@click.option("--tag", "tags", multiple=True, help="Only rules with this tag (repeatable).")
@click.option("--severity", type=click.Choice(_SEVERITY_CHOICES), default=None)
@click.option("--category", default=None, help="Only rules in this category.")
@click.option(
    "--max-errors",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after N error-severity violations (default: 1).",
)
@click.option(
    "--no-fail-fast",
    is_flag=True,
    default=False,
    help="Check everything; never stop early.",
)
@click.option("--force", is_flag=True, default=False, help="Ignore cached verdicts.")
@click.option("--agent", type=click.Choice(BACKENDS), default=None, help="Agent backend.")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["rich", "json", "porcelain"]),
    default=None,
    help="Output format (default: rich if TTY, porcelain if piped).",
)
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Parallel checks.")
@_project_option
def rule_check(
    *,
    patterns: tuple[str, ...],
    rule_names: tuple[str, ...],
    tags: tuple[str, ...],
    severity: str | None,
    category: str | None,
    max_errors: int | None,
    no_fail_fast: bool,
    force: bool,
    agent: str | None,
    fmt: str | None,
    concurrency: int | None,
    project: Path | None,
) -> None:
    """Check files matching PATTERNS against rules.

    Exit codes: 0 = passed, 1 = error-severity violations,
    2 = agent failure, configuration error, or no files.
    """
    from rulekeeper.config import ConfigError
    from rulekeeper.rules.errors import RuleError
    from rulekeeper.rules.models import Severity
    from rulekeeper.rules.runner import format_json, format_porcelain, format_rich, run_check

    project_root = project or Path.cwd()

    if fmt is None:
        fmt = "rich" if sys.stdout.isatty() else "porcelain"

    try:
        report = run_check(
            project_root,
            rule_names=list(rule_names) or None,
            patterns=list(patterns) or None,
            severity=Severity.parse(severity) if severity else None,
            category=category,
            tags=list(tags) or None,
            max_errors=max_errors,
            fail_fast=not no_fail_fast,
            force=force,
            agent_backend=agent,
            concurrency=concurrency,
        )
    except (ConfigError, RuleError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)

    formatters = {
        "rich": format_rich,
        "json": format_json,
        "porcelain": format_porcelain,
    }
    output = formatters[fmt](report)
    if output:
        click.echo(output)
    if report.error and fmt == "porcelain":
        click.echo(f"Error: {report.error}", err=True)

    sys.exit(report.exit_code)


@rule.command("create")
@click.argument("name")
@click.option("--severity", type=click.Choice(_SEVERITY_CHOICES), required=True)
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable).")
@click.option("--content", default=None, help="Rule text (default: read from stdin).")
@_project_option
def rule_create(
    *,
    name: str,
    severity: str,
    tags: tuple[str, ...],
    content: str | None,
    project: Path | None,
) -> None:
    """Create a project rule NAME under .rulekeeper/rules/."""
    from rulekeeper.rules.authoring import create_rule
    from rulekeeper.rules.errors import ValidationError

    project_root = project or Path.cwd()
    if content is None:
        content = click.get_text_stream("stdin").read()

    try:
        path = create_rule(project_root, name, content, severity, list(tags))
    except ValidationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)
    click.echo(f"Created {path}")


@rule.group("cache")
def rule_cache() -> None:
    """Manage the verdict cache."""


@rule_cache.command("clear")
@_project_option
def rule_cache_clear(*, project: Path | None) -> None:
    """Remove all cached verdicts."""
    from rulekeeper.config import ConfigError, resolve_settings
    from rulekeeper.rules.cache import RuleCache
    from rulekeeper.rules.errors import CacheError

    project_root = project or Path.cwd()
    try:
        settings = resolve_settings(project_root)
        with RuleCache.open(settings.cache_dir) as cache:
            count = cache.clear()
    except (ConfigError, CacheError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)
    click.echo(f"Cleared {count} cache entries")


# rulekeeper:service=mcp-server
@main.command("mcp-serve")
@_project_option
def mcp_serve(*, project: Path | None) -> None:
    """Run the rulekeeper MCP server (stdio transport)."""
    import anyio

    from rulekeeper.services.mcp_server import ExecutorPool, create_server

    project_root = project or Path.cwd()
    executors = ExecutorPool()
    server = create_server(project_root, executors=executors)

    async def _run() -> None:
        from mcp import stdio_server

        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )

    try:
        anyio.run(_run)
    finally:
        executors.shutdown()
