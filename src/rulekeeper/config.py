# rulekeeper:domain=config
"""Layered configuration: defaults, global, project, environment, override.

Every caller that needs agent settings goes through :func:`resolve_settings`;
backend selection from the resolved settings happens only in
:func:`rulekeeper.agents.factory.create_executor`.

Example ``.rulekeeper/config.yml``::

    agent:
      backend: llama
      llama:
        repo: unsloth/Qwen3-Coder-30B-A3B-Instruct-GGUF
        filename: Qwen3-Coder-30B-A3B-Instruct-UD-Q4_K_XL.gguf
    check:
      concurrency: 4
"""

from __future__ import annotations

import copy
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

CLAUDE_CODE = "claude-code"
LLAMA = "llama"
BACKENDS: tuple[str, ...] = (CLAUDE_CODE, LLAMA)
DEFAULT_BACKEND = CLAUDE_CODE

CONFIG_DIRNAME = ".rulekeeper"
CONFIG_FILENAME = "config.yml"


class ConfigError(ValueError):
    """Raised when a configuration file or value is invalid."""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RepetitionSettings:
    """Stop generation when the output starts looping."""

    enabled: bool = True
    min_pattern_length: int = 10
    max_pattern_length: int = 100
    min_repetitions: int = 3
    window_size: int = 1000


@dataclass(frozen=True)
class ClaudeCodeConfig:
    """Subprocess-backed agent settings."""

    command: tuple[str, ...] = ("claude",)
    args: tuple[str, ...] = ("-p", "--output-format", "text")
    model: str | None = None
    timeout: float = 300.0
    max_concurrency: int = 4


@dataclass(frozen=True)
class LlamaConfig:
    """In-process llama.cpp agent settings."""

    model_path: str | None = None
    repo: str | None = "unsloth/Qwen3-Coder-30B-A3B-Instruct-GGUF"
    filename: str | None = "Qwen3-Coder-30B-A3B-Instruct-UD-Q4_K_XL.gguf"
    n_ctx: int = 16384
    n_gpu_layers: int = -1
    max_tokens: int = 2048
    temperature: float = 0.0
    timeout: float = 600.0
    repetition: RepetitionSettings = field(default_factory=RepetitionSettings)


@dataclass(frozen=True)
class AgentConfig:
    """Which agent backend to use and its backend-specific settings."""

    backend: str = DEFAULT_BACKEND
    claude_code: ClaudeCodeConfig = field(default_factory=ClaudeCodeConfig)
    llama: LlamaConfig = field(default_factory=LlamaConfig)


@dataclass(frozen=True)
class Settings:
    """Fully resolved settings for one run."""

    agent: AgentConfig = field(default_factory=AgentConfig)
    cache_dir: Path | None = None
    concurrency: int | None = None
    max_errors: int | None = 1
    sources: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Raw layer handling
# ---------------------------------------------------------------------------


def deep_merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Return *base* updated recursively with *overlay* (overlay wins)."""
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def read_config_file(path: Path) -> dict[str, Any]:
    """Read one YAML config layer; a missing file is an empty layer.

    Raises
    ------
    ConfigError
        If the file is not valid YAML or not a mapping.
    """
    if not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        msg = f"cannot read config {path}: {exc}"
        raise ConfigError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"{path}: config must be a YAML mapping"
        raise ConfigError(msg)
    return data


def _env_layer(env: Mapping[str, str], backend: str) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    agent: dict[str, Any] = {}

    if env.get("RULEKEEPER_AGENT"):
        agent["backend"] = env["RULEKEEPER_AGENT"]
        backend = env["RULEKEEPER_AGENT"]

    backend_key = "llama" if backend == LLAMA else "claude_code"
    if env.get("RULEKEEPER_MODEL"):
        model_key = "model_path" if backend == LLAMA else "model"
        agent.setdefault(backend_key, {})[model_key] = env["RULEKEEPER_MODEL"]
    if env.get("RULEKEEPER_AGENT_TIMEOUT"):
        agent.setdefault(backend_key, {})["timeout"] = env["RULEKEEPER_AGENT_TIMEOUT"]
    if env.get("RULEKEEPER_AGENT_COMMAND"):
        agent.setdefault("claude_code", {})["command"] = env["RULEKEEPER_AGENT_COMMAND"]

    if agent:
        layer["agent"] = agent
    if env.get("RULEKEEPER_CACHE_DIR"):
        layer["cache"] = {"dir": env["RULEKEEPER_CACHE_DIR"]}
    return layer


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        msg = f"config: '{key}' must be a mapping"
        raise ConfigError(msg)
    return value


def _as_int(value: Any, key: str, *, minimum: int | None = None) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError) as exc:
        msg = f"config: '{key}' must be an integer, got {value!r}"
        raise ConfigError(msg) from exc
    if minimum is not None and result < minimum:
        msg = f"config: '{key}' must be >= {minimum}"
        raise ConfigError(msg)
    return result


def _as_float(value: Any, key: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        msg = f"config: '{key}' must be a number, got {value!r}"
        raise ConfigError(msg) from exc
    if result <= 0:
        msg = f"config: '{key}' must be positive"
        raise ConfigError(msg)
    return result


def _as_command(value: Any, key: str) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = tuple(shlex.split(value))
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        parts = tuple(value)
    else:
        msg = f"config: '{key}' must be a string or list of strings"
        raise ConfigError(msg)
    if not parts:
        msg = f"config: '{key}' must not be empty"
        raise ConfigError(msg)
    return parts


def _parse_repetition(raw: Mapping[str, Any]) -> RepetitionSettings:
    defaults = RepetitionSettings()
    settings = RepetitionSettings(
        enabled=bool(raw.get("enabled", defaults.enabled)),
        min_pattern_length=_as_int(
            raw.get("min_pattern_length", defaults.min_pattern_length),
            "agent.llama.repetition.min_pattern_length",
            minimum=1,
        ),
        max_pattern_length=_as_int(
            raw.get("max_pattern_length", defaults.max_pattern_length),
            "agent.llama.repetition.max_pattern_length",
            minimum=1,
        ),
        min_repetitions=_as_int(
            raw.get("min_repetitions", defaults.min_repetitions),
            "agent.llama.repetition.min_repetitions",
            minimum=2,
        ),
        window_size=_as_int(
            raw.get("window_size", defaults.window_size),
            "agent.llama.repetition.window_size",
            minimum=1,
        ),
    )
    if settings.min_pattern_length > settings.max_pattern_length:
        msg = "config: repetition min_pattern_length must not exceed max_pattern_length"
        raise ConfigError(msg)
    return settings


def parse_agent_config(raw: Mapping[str, Any]) -> AgentConfig:
    """Build an :class:`AgentConfig` from the merged ``agent`` section.

    Raises
    ------
    ConfigError
        On unknown backends or malformed values.
    """
    backend = str(raw.get("backend", DEFAULT_BACKEND)).strip().lower()
    if backend not in BACKENDS:
        msg = f"Unsupported agent backend: {backend!r}. Use one of {', '.join(BACKENDS)}."
        raise ConfigError(msg)

    cc_raw = _section(raw, "claude_code")
    cc_defaults = ClaudeCodeConfig()
    claude_code = ClaudeCodeConfig(
        command=_as_command(
            cc_raw.get("command", list(cc_defaults.command)), "agent.claude_code.command"
        ),
        args=tuple(str(a) for a in cc_raw.get("args", cc_defaults.args)),
        model=str(cc_raw["model"]) if cc_raw.get("model") else None,
        timeout=_as_float(cc_raw.get("timeout", cc_defaults.timeout), "agent.claude_code.timeout"),
        max_concurrency=_as_int(
            cc_raw.get("max_concurrency", cc_defaults.max_concurrency),
            "agent.claude_code.max_concurrency",
            minimum=1,
        ),
    )

    ll_raw = _section(raw, "llama")
    ll_defaults = LlamaConfig()
    repo = ll_raw.get("repo", ll_defaults.repo)
    filename = ll_raw.get("filename", ll_defaults.filename)
    llama = LlamaConfig(
        model_path=str(ll_raw["model_path"]) if ll_raw.get("model_path") else None,
        repo=str(repo) if repo else None,
        filename=str(filename) if filename else None,
        n_ctx=_as_int(ll_raw.get("n_ctx", ll_defaults.n_ctx), "agent.llama.n_ctx", minimum=1),
        n_gpu_layers=_as_int(
            ll_raw.get("n_gpu_layers", ll_defaults.n_gpu_layers), "agent.llama.n_gpu_layers"
        ),
        max_tokens=_as_int(
            ll_raw.get("max_tokens", ll_defaults.max_tokens), "agent.llama.max_tokens", minimum=1
        ),
        temperature=float(ll_raw.get("temperature", ll_defaults.temperature)),
        timeout=_as_float(ll_raw.get("timeout", ll_defaults.timeout), "agent.llama.timeout"),
        repetition=_parse_repetition(_section(ll_raw, "repetition")),
    )

    return AgentConfig(backend=backend, claude_code=claude_code, llama=llama)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def global_config_path(user_home: Path | None = None) -> Path:
    home = user_home if user_home is not None else Path.home()
    return home / CONFIG_DIRNAME / CONFIG_FILENAME


def project_config_path(project_root: Path) -> Path:
    return project_root / CONFIG_DIRNAME / CONFIG_FILENAME


def resolve_settings(
    project_root: Path,
    *,
    overrides: Mapping[str, Any] | None = None,
    agent_backend: str | None = None,
    env: Mapping[str, str] | None = None,
    user_home: Path | None = None,
) -> Settings:
    """Resolve settings from every layer, lowest precedence first.

    Layers: built-in defaults, ``~/.rulekeeper/config.yml``,
    ``<project>/.rulekeeper/config.yml``, ``RULEKEEPER_*`` environment
    variables, then *overrides* and *agent_backend* (explicit, e.g. from CLI
    flags).

    Raises
    ------
    ConfigError
        If any layer is malformed.
    """
    environ = os.environ if env is None else env
    merged: dict[str, Any] = {}
    sources: list[str] = []

    for path in (global_config_path(user_home), project_config_path(project_root)):
        layer = read_config_file(path)
        if layer:
            merged = deep_merge(merged, layer)
            sources.append(str(path))

    current_backend = str(_section(merged, "agent").get("backend", DEFAULT_BACKEND))
    env_layer = _env_layer(environ, current_backend)
    if env_layer:
        merged = deep_merge(merged, env_layer)
        sources.append("environment")

    if overrides:
        merged = deep_merge(merged, dict(overrides))
        sources.append("override")
    if agent_backend:
        merged = deep_merge(merged, {"agent": {"backend": agent_backend}})
        if "override" not in sources:
            sources.append("override")

    agent = parse_agent_config(_section(merged, "agent"))

    cache_raw = _section(merged, "cache")
    cache_dir = Path(str(cache_raw["dir"])).expanduser() if cache_raw.get("dir") else None

    check_raw = _section(merged, "check")
    concurrency = (
        _as_int(check_raw["concurrency"], "check.concurrency", minimum=1)
        if check_raw.get("concurrency") is not None
        else None
    )
    max_errors: int | None = 1
    if "max_errors" in check_raw:
        raw_max = check_raw["max_errors"]
        max_errors = None if raw_max is None else _as_int(raw_max, "check.max_errors", minimum=1)

    logger.debug("Resolved agent backend %s from %s", agent.backend, sources or ["defaults"])
    return Settings(
        agent=agent,
        cache_dir=cache_dir,
        concurrency=concurrency,
        max_errors=max_errors,
        sources=tuple(sources),
    )
