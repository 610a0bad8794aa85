"""Rules domain: loader, renderer, cache, file expansion, checker, runner."""

# rulekeeper:domain=rules

from rulekeeper.rules.authoring import create_rule
from rulekeeper.rules.cache import RuleCache, compute_fingerprint, default_cache_dir
from rulekeeper.rules.checker import CancelToken, CheckerState, RuleChecker, parse_response
from rulekeeper.rules.errors import (
    AgentError,
    CacheError,
    CheckError,
    GlobExpansionError,
    LanguageDetectionError,
    LoadError,
    RuleError,
    RuleViolationError,
    ValidationError,
)
from rulekeeper.rules.files import expand_patterns
from rulekeeper.rules.language import detect_language
from rulekeeper.rules.loader import (
    RuleSet,
    filter_rules,
    load_directory,
    load_rules,
    parse_frontmatter,
    parse_rule,
)
from rulekeeper.rules.models import (
    CheckReport,
    CheckStatus,
    Rule,
    Severity,
    Verdict,
    Violation,
)
from rulekeeper.rules.rendering import PromptRenderer
from rulekeeper.rules.runner import format_json, format_porcelain, format_rich, run_check

__all__ = [
    "AgentError",
    "CacheError",
    "CancelToken",
    "CheckError",
    "CheckReport",
    "CheckStatus",
    "CheckerState",
    "GlobExpansionError",
    "LanguageDetectionError",
    "LoadError",
    "PromptRenderer",
    "Rule",
    "RuleCache",
    "RuleChecker",
    "RuleError",
    "RuleSet",
    "RuleViolationError",
    "Severity",
    "ValidationError",
    "Verdict",
    "Violation",
    "compute_fingerprint",
    "create_rule",
    "default_cache_dir",
    "detect_language",
    "expand_patterns",
    "filter_rules",
    "format_json",
    "format_porcelain",
    "format_rich",
    "load_directory",
    "load_rules",
    "parse_frontmatter",
    "parse_response",
    "parse_rule",
    "run_check",
]
