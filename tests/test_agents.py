# rulekeeper:domain=agents
"""Tests for agent executors: subprocess, local llama.cpp, and the factory."""

from __future__ import annotations

import json
import sys
import threading
import time
from typing import Any

import pytest

from rulekeeper.agents.factory import create_executor
from rulekeeper.agents.local_agent import LocalAgentExecutor, RepetitionDetector
from rulekeeper.agents.subprocess_agent import SubprocessAgentExecutor
from rulekeeper.config import AgentConfig, ClaudeCodeConfig, LlamaConfig, RepetitionSettings
from rulekeeper.rules.errors import AgentError

_ECHO = (
    "import json, sys; "
    "print(json.dumps({'argv': sys.argv[1:], 'stdin': sys.stdin.read()}))"
)
_SLEEP = "import time; time.sleep(30)"
_FAIL = "import sys; sys.stderr.write('boom'); sys.exit(3)"
_BAD_BYTES = "import sys; sys.stdin.read(); sys.stdout.buffer.write(b'PASS\\xff')"


def _script_agent(script: str, **kwargs: Any) -> SubprocessAgentExecutor:
    config = ClaudeCodeConfig(command=(sys.executable, "-c", script), args=("-p",), **kwargs)
    agent = SubprocessAgentExecutor(config)
    agent.initialize()
    return agent


# ---------------------------------------------------------------------------
# Subprocess executor
# ---------------------------------------------------------------------------


class TestSubprocessAgent:
    def test_prompt_on_stdin_system_prompt_as_argument(self) -> None:
        agent = _script_agent(_ECHO, model="sonnet")
        out = json.loads(agent.execute("CHECK THIS FILE", system_prompt="BE STRICT"))
        assert out["stdin"] == "CHECK THIS FILE"
        assert out["argv"] == ["-p", "--model", "sonnet", "--system-prompt", "BE STRICT"]
        assert "BE STRICT" not in out["stdin"]

    def test_no_system_prompt(self) -> None:
        agent = _script_agent(_ECHO)
        out = json.loads(agent.execute("x"))
        assert out["argv"] == ["-p"]

    def test_non_zero_exit(self) -> None:
        agent = _script_agent(_FAIL)
        with pytest.raises(AgentError, match="agent process failed: boom"):
            agent.execute("x")

    def test_timeout(self) -> None:
        agent = _script_agent(_SLEEP, timeout=0.5)
        start = time.monotonic()
        with pytest.raises(AgentError, match="timed out"):
            agent.execute("x")
        assert time.monotonic() - start < 10

    def test_missing_command(self) -> None:
        agent = SubprocessAgentExecutor(ClaudeCodeConfig(command=("no-such-agent-cli-xyz",)))
        with pytest.raises(AgentError, match="not found"):
            agent.initialize()

    def test_cancel_kills_running_process(self) -> None:
        agent = _script_agent(_SLEEP, timeout=60)
        errors: list[AgentError] = []

        def _run() -> None:
            try:
                agent.execute("x")
            except AgentError as exc:
                errors.append(exc)

        worker = threading.Thread(target=_run)
        worker.start()
        deadline = time.monotonic() + 10
        while not agent._active and time.monotonic() < deadline:
            time.sleep(0.01)
        agent.cancel()
        worker.join(timeout=10)

        assert not worker.is_alive()
        assert len(errors) == 1
        assert "cancelled" in str(errors[0])

    def test_initialize_clears_cancel(self) -> None:
        agent = _script_agent(_ECHO)
        agent.cancel()
        with pytest.raises(AgentError, match="cancelled"):
            agent.execute("x")
        agent.initialize()
        assert json.loads(agent.execute("again"))["stdin"] == "again"

    def test_identity_and_concurrency(self) -> None:
        agent = SubprocessAgentExecutor(ClaudeCodeConfig(model="opus", max_concurrency=3))
        assert agent.identity == "claude-code:claude -p --output-format text --model opus"
        assert agent.max_concurrency == 3

    def test_invalid_utf8_output_is_agent_error(self) -> None:
        agent = _script_agent(_BAD_BYTES)
        with pytest.raises(AgentError, match="not valid UTF-8"):
            agent.execute("x")
        assert not agent._active


# ---------------------------------------------------------------------------
# Local executor
# ---------------------------------------------------------------------------


class _FakeLlama:
    def __init__(self, chunks: list[str], *, fail: bool = False) -> None:
        self.chunks = chunks
        self.fail = fail
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    def create_chat_completion(self, **kwargs: Any) -> Any:
        self.requests.append(kwargs)
        if self.fail:
            msg = "llama_decode returned -1"
            raise RuntimeError(msg)
        return iter({"choices": [{"delta": {"content": c}}]} for c in self.chunks)

    def close(self) -> None:
        self.closed = True


def _local(model: _FakeLlama, **config: Any) -> tuple[LocalAgentExecutor, list[int]]:
    loads: list[int] = []

    def _loader(_cfg: LlamaConfig) -> _FakeLlama:
        loads.append(1)
        return model

    return LocalAgentExecutor(LlamaConfig(**config), loader=_loader), loads


class TestLocalAgent:
    def test_execute_before_initialize(self) -> None:
        agent, _ = _local(_FakeLlama(["PASS"]))
        with pytest.raises(AgentError, match="not initialized"):
            agent.execute("x")

    def test_streams_and_joins(self) -> None:
        model = _FakeLlama(["VIOL", "ATION", ": line 3"])
        agent, _ = _local(model, max_tokens=64, temperature=0.2)
        agent.initialize()

        assert agent.execute("prompt", system_prompt="sys") == "VIOLATION: line 3"
        request = model.requests[0]
        assert request["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "prompt"},
        ]
        assert request["max_tokens"] == 64
        assert request["temperature"] == 0.2
        assert request["stream"] is True

    def test_initialize_is_idempotent(self) -> None:
        agent, loads = _local(_FakeLlama(["PASS"]))
        agent.initialize()
        agent.initialize()
        assert len(loads) == 1
        assert agent.initialized

    def test_repetition_stops_generation(self) -> None:
        model = _FakeLlama(["PASS "] + ["loop-text!"] * 50)
        agent, _ = _local(model)
        agent.initialize()
        assert agent.execute("x") == "PASS " + "loop-text!" * 3

    def test_runtime_failure(self) -> None:
        agent, _ = _local(_FakeLlama([], fail=True))
        agent.initialize()
        with pytest.raises(AgentError, match="generation failed"):
            agent.execute("x")

    def test_cancel(self) -> None:
        agent, _ = _local(_FakeLlama(["PASS"]))
        agent.initialize()
        agent.cancel()
        with pytest.raises(AgentError, match="cancelled"):
            agent.execute("x")
        agent.initialize()
        assert agent.execute("x") == "PASS"

    def test_shutdown_releases_model(self) -> None:
        model = _FakeLlama(["PASS"])
        agent, _ = _local(model)
        agent.initialize()
        agent.shutdown()
        assert model.closed
        assert not agent.initialized

    def test_identity_reflects_model_and_params(self) -> None:
        a, _ = _local(_FakeLlama([]), model_path="/models/a.gguf")
        b, _ = _local(_FakeLlama([]), model_path="/models/a.gguf", temperature=0.7)
        assert "/models/a.gguf" in a.identity
        assert a.identity != b.identity


class TestRepetitionDetector:
    def test_detects_loop(self) -> None:
        detector = RepetitionDetector(RepetitionSettings(min_pattern_length=3, min_repetitions=3))
        assert not detector.feed("hello ")
        assert detector.feed("abcabcabc")

    def test_disabled(self) -> None:
        detector = RepetitionDetector(RepetitionSettings(enabled=False))
        assert not detector.feed("x" * 1000)

    def test_no_false_positive_on_prose(self) -> None:
        detector = RepetitionDetector(RepetitionSettings())
        assert not detector.feed("VIOLATION: the function at line 12 builds a SQL string by hand.")


# ---------------------------------------------------------------------------
# Identity (hashed into cache fingerprints)
# ---------------------------------------------------------------------------


class TestAgentIdentity:
    @pytest.mark.parametrize(
        "changed",
        [
            ClaudeCodeConfig(command=("claude", "--model", "haiku")),
            ClaudeCodeConfig(command=("/opt/bin/claude",)),
            ClaudeCodeConfig(args=("-p", "--model", "opus")),
            ClaudeCodeConfig(args=("-p",)),
            ClaudeCodeConfig(model="sonnet"),
        ],
    )
    def test_subprocess_config_changes_identity(self, changed: ClaudeCodeConfig) -> None:
        base = SubprocessAgentExecutor(ClaudeCodeConfig())
        assert SubprocessAgentExecutor(changed).identity != base.identity

    def test_subprocess_args_and_command_not_conflated(self) -> None:
        via_args = ClaudeCodeConfig(args=("-p", "--model", "opus"))
        via_command = ClaudeCodeConfig(command=("claude", "--model", "haiku"))
        assert (
            SubprocessAgentExecutor(via_args).identity
            != SubprocessAgentExecutor(via_command).identity
        )

    def test_subprocess_runtime_limits_keep_identity(self) -> None:
        base = SubprocessAgentExecutor(ClaudeCodeConfig())
        tuned = SubprocessAgentExecutor(ClaudeCodeConfig(timeout=5.0, max_concurrency=1))
        assert tuned.identity == base.identity

    @pytest.mark.parametrize(
        "changed",
        [
            {"model_path": "/models/b.gguf"},
            {"n_ctx": 4096},
            {"n_gpu_layers": 0},
            {"max_tokens": 128},
            {"temperature": 0.7},
            {"repetition": RepetitionSettings(enabled=False)},
            {"repetition": RepetitionSettings(min_repetitions=2)},
            {"repetition": RepetitionSettings(min_pattern_length=5)},
            {"repetition": RepetitionSettings(max_pattern_length=50)},
            {"repetition": RepetitionSettings(window_size=500)},
        ],
    )
    def test_local_config_changes_identity(self, changed: dict[str, Any]) -> None:
        base, _ = _local(_FakeLlama([]), model_path="/models/a.gguf")
        options = {"model_path": "/models/a.gguf", **changed}
        other, _ = _local(_FakeLlama([]), **options)
        assert other.identity != base.identity

    def test_local_repo_and_filename_in_identity(self) -> None:
        a, _ = _local(_FakeLlama([]), repo="org/model-GGUF", filename="q4.gguf")
        b, _ = _local(_FakeLlama([]), repo="org/model-GGUF", filename="q8.gguf")
        assert a.identity != b.identity

    def test_local_timeout_keeps_identity(self) -> None:
        a, _ = _local(_FakeLlama([]), model_path="/models/a.gguf")
        b, _ = _local(_FakeLlama([]), model_path="/models/a.gguf", timeout=5.0)
        assert a.identity == b.identity


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestCreateExecutor:
    def test_default_is_claude_code(self) -> None:
        executor = create_executor(AgentConfig())
        assert isinstance(executor, SubprocessAgentExecutor)
        assert executor.name == "claude-code"

    def test_llama(self) -> None:
        executor = create_executor(AgentConfig(backend="llama"))
        assert isinstance(executor, LocalAgentExecutor)
        assert not executor.initialized

    def test_unknown(self) -> None:
        with pytest.raises(AgentError, match="Unsupported agent backend"):
            create_executor(AgentConfig(backend="telepathy"))
