# rulekeeper:domain=agents
"""In-process agent backed by llama.cpp (``llama-cpp-python``).

The loaded model is owned exclusively by one executor; generations are
serialized with a lock.  ``initialize()`` must finish before ``execute()``.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from rulekeeper.agents.base import AgentExecutor
from rulekeeper.rules.errors import AgentError

if TYPE_CHECKING:
    from collections.abc import Callable

    from rulekeeper.config import LlamaConfig, RepetitionSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generation settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationSettings:
    """Per-request generation and stopping parameters."""

    max_tokens: int
    temperature: float
    timeout: float
    repetition: RepetitionSettings


class RepetitionDetector:
    """Detect a short pattern repeating at the end of generated text.

    Looks at the last ``window_size`` characters and reports a repetition when
    some suffix of length ``min_pattern_length..max_pattern_length`` occurs at
    least ``min_repetitions`` times back to back.
    """

    def __init__(self, settings: RepetitionSettings) -> None:
        self.settings = settings
        self._buffer = ""

    def feed(self, text: str) -> bool:
        """Append *text*; return True if the output is now repeating."""
        if not self.settings.enabled:
            return False
        self._buffer = (self._buffer + text)[-self.settings.window_size :]
        return self.is_repeating()

    def is_repeating(self) -> bool:
        buf = self._buffer
        reps = self.settings.min_repetitions
        for length in range(self.settings.min_pattern_length, self.settings.max_pattern_length + 1):
            needed = length * reps
            if needed > len(buf):
                break
            unit = buf[-length:]
            if buf[-needed:] == unit * reps:
                return True
        return False


# ---------------------------------------------------------------------------
# Runtime loading
# ---------------------------------------------------------------------------


def load_llama_runtime(config: LlamaConfig) -> Any:
    """Load a ``llama_cpp.Llama`` model from a local path or Hugging Face repo.

    Raises
    ------
    AgentError
        If llama-cpp-python is missing, no model is configured, or loading fails.
    """
    try:
        from llama_cpp import Llama
    except ImportError as exc:
        msg = "llama-cpp-python is not installed. Install with: pip install 'rulekeeper[local]'"
        raise AgentError(msg) from exc

    try:
        if config.model_path:
            logger.info("Loading model from %s", config.model_path)
            return Llama(
                model_path=config.model_path,
                n_ctx=config.n_ctx,
                n_gpu_layers=config.n_gpu_layers,
                verbose=False,
            )
        if config.repo and config.filename:
            logger.info("Loading model %s/%s", config.repo, config.filename)
            return Llama.from_pretrained(
                repo_id=config.repo,
                filename=config.filename,
                n_ctx=config.n_ctx,
                n_gpu_layers=config.n_gpu_layers,
                verbose=False,
            )
    except (OSError, ValueError, RuntimeError) as exc:
        msg = f"failed to load model: {exc}"
        raise AgentError(msg) from exc

    msg = "no model configured: set agent.llama.model_path or agent.llama.repo + filename"
    raise AgentError(msg)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class LocalAgentExecutor(AgentExecutor):
    """Run prompts against an in-process llama.cpp model."""

    name = "llama"

    def __init__(
        self,
        config: LlamaConfig,
        *,
        loader: Callable[[LlamaConfig], Any] | None = None,
    ) -> None:
        self.config = config
        self._loader = loader or load_llama_runtime
        self._model: Any = None
        self._settings: GenerationSettings | None = None
        self._init_lock = threading.Lock()
        self._generate_lock = threading.Lock()
        self._cancelled = threading.Event()

    @property
    def model_name(self) -> str:
        return self.config.model_path or f"{self.config.repo}/{self.config.filename}"

    @property
    def identity(self) -> str:
        """Model plus every setting that shapes the generated text.

        Only the wall-clock ``timeout`` is left out.
        """
        params = asdict(self.config)
        del params["timeout"]
        return f"{self.name}:{json.dumps(params, sort_keys=True, separators=(',', ':'))}"

    @property
    def initialized(self) -> bool:
        return self._model is not None

    def initialize(self) -> None:
        with self._init_lock:
            self._cancelled.clear()
            if self._model is not None:
                return
            self._model = self._loader(self.config)
            self._settings = GenerationSettings(
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                timeout=self.config.timeout,
                repetition=self.config.repetition,
            )
            logger.info("Local agent initialized: %s", self.model_name)

    def execute(self, prompt: str, *, system_prompt: str | None = None) -> str:
        model = self._model
        settings = self._settings
        if model is None or settings is None:
            msg = "local agent executor not initialized; call initialize() before execute()"
            raise AgentError(msg)

        deadline = time.monotonic() + settings.timeout
        if not self._generate_lock.acquire(timeout=settings.timeout):
            msg = f"timed out after {settings.timeout:g}s waiting for the model"
            raise AgentError(msg)
        try:
            return self._generate(model, settings, prompt, system_prompt, deadline)
        finally:
            self._generate_lock.release()

    def _generate(
        self,
        model: Any,
        settings: GenerationSettings,
        prompt: str,
        system_prompt: str | None,
        deadline: float,
    ) -> str:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        detector = RepetitionDetector(settings.repetition)
        parts: list[str] = []
        try:
            stream = model.create_chat_completion(
                messages=messages,
                max_tokens=settings.max_tokens,
                temperature=settings.temperature,
                stream=True,
            )
            for chunk in stream:
                if self._cancelled.is_set():
                    msg = "agent execution cancelled"
                    raise AgentError(msg)
                if time.monotonic() > deadline:
                    msg = f"generation timed out after {settings.timeout:g}s"
                    raise AgentError(msg)
                choices = chunk.get("choices") or [{}]
                text = (choices[0].get("delta") or {}).get("content") or ""
                if not text:
                    continue
                parts.append(text)
                if detector.feed(text):
                    logger.warning("Repetition detected, stopping generation early")
                    break
        except AgentError:
            raise
        except (RuntimeError, ValueError, KeyError, TypeError) as exc:
            msg = f"generation failed: {exc}"
            raise AgentError(msg) from exc

        return "".join(parts)

    def cancel(self) -> None:
        self._cancelled.set()

    def shutdown(self) -> None:
        self.cancel()
        with self._generate_lock:
            model, self._model = self._model, None
            self._settings = None
        close = getattr(model, "close", None)
        if callable(close):
            close()
