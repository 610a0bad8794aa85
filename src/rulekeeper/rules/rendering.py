# rulekeeper:domain=rules
"""Two-stage prompt rendering: rule body first, then the check prompt.

Stage 1 renders the rule body itself, which may pull in partials with
``{% include "name" %}`` and use ``target_path``, ``target_content`` and
``language``.  Stage 2 embeds the rendered rule into the built-in check
prompt.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import jinja2
import jinja2.meta

from rulekeeper.rules.errors import CheckError
from rulekeeper.rules.loader import PARTIALS_DIR

if TYPE_CHECKING:
    from collections.abc import Mapping

    from rulekeeper.rules.models import Rule

SYSTEM_PROMPT = (
    "You are a meticulous code reviewer enforcing a project's coding rules. "
    "You judge one file against one rule at a time. "
    "Always begin your reply with the single word PASS or VIOLATION."
)


def _builtin_check_template() -> str:
    path = Path(__file__).resolve().parent.parent / "builtin" / "prompts" / "check.md.j2"
    return path.read_text(encoding="utf-8")


class PromptRenderer:
    """Render rule bodies and check prompts against a fixed set of partials."""

    def __init__(
        self,
        partials: Mapping[str, str] | None = None,
        *,
        check_template: str | None = None,
    ) -> None:
        templates: dict[str, str] = {}
        for name, source in (partials or {}).items():
            templates[name] = source
            templates[f"{PARTIALS_DIR}/{name}"] = source
        self._partial_names = frozenset(templates)
        self._env = jinja2.Environment(
            loader=jinja2.DictLoader(templates),
            autoescape=False,
            keep_trailing_newline=False,
        )
        source = check_template if check_template is not None else _builtin_check_template()
        try:
            self._check_template = self._env.from_string(source)
        except jinja2.TemplateSyntaxError as exc:
            msg = f"invalid check prompt template: {exc}"
            raise CheckError(msg) from exc

    def validate(self, rule: Rule) -> None:
        """Compile *rule* and make sure every referenced partial exists.

        Raises
        ------
        CheckError
            On syntax errors, empty bodies, or undefined partials.
        """
        if not rule.body.strip():
            msg = f"rule '{rule.name}' has an empty body"
            raise CheckError(msg)
        try:
            ast = self._env.parse(rule.body)
        except jinja2.TemplateSyntaxError as exc:
            msg = f"rule '{rule.name}' has invalid template syntax: {exc}"
            raise CheckError(msg) from exc
        for ref in jinja2.meta.find_referenced_templates(ast):
            if ref is not None and ref not in self._partial_names:
                msg = f"rule '{rule.name}' references undefined partial '{ref}'"
                raise CheckError(msg)

    def render_rule(
        self,
        rule: Rule,
        *,
        target_path: str,
        target_content: str,
        language: str,
    ) -> str:
        """Stage 1: render the rule body with target context and partials."""
        try:
            template = self._env.from_string(rule.body)
            return template.render(
                target_path=target_path,
                target_content=target_content,
                language=language,
            )
        except jinja2.TemplateNotFound as exc:
            msg = f"rule '{rule.name}' references undefined partial '{exc.name}'"
            raise CheckError(msg) from exc
        except jinja2.TemplateError as exc:
            msg = f"failed to render rule template for {rule.name}: {exc}"
            raise CheckError(msg) from exc

    def render_check_prompt(
        self,
        rule_content: str,
        *,
        target_path: str,
        target_content: str,
        language: str,
    ) -> str:
        """Stage 2: render the check prompt around an already-rendered rule."""
        try:
            return self._check_template.render(
                rule_content=rule_content,
                target_path=target_path,
                target_content=target_content,
                language=language,
            )
        except jinja2.TemplateError as exc:
            msg = f"failed to render check prompt: {exc}"
            raise CheckError(msg) from exc
