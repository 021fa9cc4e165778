import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from ralph_mode.backends import (
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
    WorkerError,
    WorkerTimeoutError,
)
from ralph_mode.backends.base import AgentBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.calls = 0
        self.retriable = retriable

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        raise WorkerError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        yield "ok"


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(5)
        yield "late"


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self.payload = payload

    async def read(self) -> bytes:
        return self.payload


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.returncode: int | None = None
        self._return_code = return_code

    async def wait(self) -> int:
        self.returncode = self._return_code
        return self._return_code

    def kill(self) -> None:
        self.returncode = -9


def _collect(backend: AgentBackend, context: dict[str, Any] | None = None) -> str:
    async def _run() -> str:
        chunks: list[str] = []
        async for chunk in backend.execute("system", "user", context or {}):
            chunks.append(chunk)
        return "".join(chunks)

    return asyncio.run(_run())


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"task": "x", "model": "gpt-5-codex", "_working_directory": "/tmp"},
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--full-auto" in command
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "_working_directory" not in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", {})

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[-2:] == ["--append-system-prompt", "system"]


def test_cli_backend_streams_json_content(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["cwd"] = kwargs.get("cwd")
        return FakeProcess(
            [
                b'{"type":"assistant","message":{"content":[{"type":"text","text":"hello "}]}}\n',
                b"noise-before-json\n",
                b'{"type":"result","result":"world"}\n',
            ]
        )

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    backend = ClaudeCodeBackend(event_hook=events.append)
    output = _collect(backend, {"_working_directory": "/work/tree"})

    assert output == "hello noise-before-jsonworld"
    assert captured["cwd"] == "/work/tree"
    assert [event["event"] for event in events] == ["agent_start", "agent_exit"]


def test_cli_backend_nonzero_exit_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess([], return_code=2, stderr=b"usage error")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(WorkerError) as excinfo:
        _collect(CodexBackend())

    assert excinfo.value.exit_code == 2
    assert "usage error" in str(excinfo.value)


def test_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        raise FileNotFoundError("no such file")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(WorkerError) as excinfo:
        _collect(ClaudeCodeBackend(binary="claude-missing"))

    assert excinfo.value.retriable is False


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()

    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=primary,
        fallback_name="codex",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = _collect(backend)

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_skips_retries_for_permanent_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    fallback = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=primary,
        fallback_name="codex",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(WorkerError) as excinfo:
        _collect(backend)

    assert primary.calls == 1
    assert fallback.calls == 1
    assert excinfo.value.retriable is False


def test_resilient_backend_times_out_each_attempt() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=SlowBackend(),
        fallback_name="claude",
        fallback_backend=SlowBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
        event_hook=events.append,
    )

    with pytest.raises(WorkerError) as excinfo:
        _collect(backend)

    assert "timed out" in str(excinfo.value)
    assert not isinstance(excinfo.value, WorkerTimeoutError)
    assert events[0]["event"] == "backend_attempt_failed"


def test_retry_policy_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(backoff_seconds=1.0, max_backoff_seconds=5.0)

    assert [policy.delay_before(attempt) for attempt in range(5)] == [0.0, 1.0, 2.0, 4.0, 5.0]


def test_retry_policy_budget_covers_every_attempt() -> None:
    policy = RetryPolicy(max_retries=1, backoff_seconds=0.5, timeout_seconds=60.0)

    assert policy.budget_seconds(1) == 120.5
    assert policy.budget_seconds(2) == 241.0
    assert policy.budget_seconds(2) > policy.timeout_seconds
