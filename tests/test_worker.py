import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from ralph_mode.backends.base import AgentBackend, WorkerError, WorkerTimeoutError
from ralph_mode.tasks import Task
from ralph_mode.worker import AgentWorker, extract_notes
from ralph_mode.worktree import WorkingTree


class EditingBackend(AgentBackend):
    def __init__(self, *, delay: float = 0.0, fail: bool = False) -> None:
        self.delay = delay
        self.fail = fail
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        self.calls.append({"system": system_prompt, "user": user_prompt, "context": context})
        if self.fail:
            raise WorkerError("agent exited 1", backend="fake")
        if self.delay:
            await asyncio.sleep(self.delay)
        root = Path(context["_working_directory"])
        (root / "feature.py").write_text("VALUE = 1\n", encoding="utf-8")
        yield "Implemented the feature.\n"
        yield "NOTE: the config loader ignores env vars\n"
        yield "- DISCOVERY: tests need a tmp home dir\n"


def test_worker_reports_changed_files_and_notes(tmp_path: Path) -> None:
    backend = EditingBackend()
    worker = AgentWorker(backend, plan_file="PLAN.md", guide_file="OPS.md")
    task = Task(id="3", description="Add the feature", notes=["previous attempt broke lint"])

    result = asyncio.run(worker.implement(task, WorkingTree(tmp_path), timeout=5))

    assert result.files_changed == ["feature.py"]
    assert result.notes == [
        "the config loader ignores env vars",
        "tests need a tmp home dir",
    ]
    prompt = backend.calls[0]["user"]
    assert "Task 3: Add the feature" in prompt
    assert "OPS.md" in prompt
    assert "Do not tick checkboxes in PLAN.md" in prompt
    assert "previous attempt broke lint" in prompt
    assert backend.calls[0]["context"]["_working_directory"] == str(tmp_path.resolve())


def test_worker_timeout_raises(tmp_path: Path) -> None:
    worker = AgentWorker(EditingBackend(delay=5))

    with pytest.raises(WorkerTimeoutError):
        asyncio.run(worker.implement(Task(id="1", description="Slow"), WorkingTree(tmp_path), 0.05))


def test_backend_errors_propagate(tmp_path: Path) -> None:
    worker = AgentWorker(EditingBackend(fail=True))

    with pytest.raises(WorkerError):
        asyncio.run(worker.implement(Task(id="1", description="Broken"), WorkingTree(tmp_path), 5))


def test_worker_emits_start_event(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    worker = AgentWorker(EditingBackend(), event_hook=events.append)

    asyncio.run(worker.implement(Task(id="7", description="Go"), WorkingTree(tmp_path), None))

    assert events == [{"event": "worker_started", "task_id": "7"}]


def test_extract_notes_ignores_other_lines() -> None:
    output = "note: lowercase is not a marker\nNOTE:   spaced out  \nNothing here"

    assert extract_notes(output) == ["spaced out"]
