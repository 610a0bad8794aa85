"""Rulekeeper - LLM-checked coding rules with caching and fail-fast."""

__version__ = "0.1.0"
