from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ralph_mode.backends.base import AgentBackend, WorkerTimeoutError, collect_reply
from ralph_mode.tasks import Task
from ralph_mode.worktree import WorkingTree

logger = logging.getLogger(__name__)

WorkerEventHook = Callable[[dict[str, Any]], None]

NOTE_LINE_PATTERN = re.compile(r"^\s*(?:[-*]\s+)?(?:NOTE|DISCOVERY):\s*(?P<text>.+?)\s*$")

WORKER_SYSTEM_PROMPT = """
You are an autonomous implementation agent working one task at a time.
Make the smallest complete change that satisfies the task and nothing else.
Quality gates (tests, typecheck, lint) run after you finish; the task only
counts as done when every gate passes, so fix failures instead of hiding them.
""".strip()


@dataclass(slots=True)
class WorkerResult:
    files_changed: list[str] = field(default_factory=list)
    output: str = ""
    notes: list[str] = field(default_factory=list)


class Worker(ABC):
    @abstractmethod
    async def implement(
        self, task: Task, working_tree: WorkingTree, timeout: float | None
    ) -> WorkerResult:
        """Perform the code change for ``task`` inside ``working_tree``."""


def extract_notes(output: str) -> list[str]:
    notes: list[str] = []
    for line in output.splitlines():
        match = NOTE_LINE_PATTERN.match(line)
        if match:
            notes.append(match.group("text"))
    return notes


class AgentWorker(Worker):
    """Worker that delegates the change to a coding-agent backend."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        plan_file: str = "IMPLEMENTATION_PLAN.md",
        guide_file: str = "AGENTS.md",
        specs_dir: str = "specs",
        event_hook: WorkerEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.plan_file = plan_file
        self.guide_file = guide_file
        self.specs_dir = specs_dir
        self.event_hook = event_hook

    def build_prompt(self, task: Task) -> str:
        lines = [
            f"Task {task.id}: {task.description}",
            "",
            "Instructions:",
            f"1. Study {self.guide_file} for the build and test commands.",
            f"2. Read {self.plan_file} and {self.specs_dir}/ for context.",
            "3. Implement only the task above (code changes only).",
            "4. Run the validation commands and fix anything that fails.",
            f"5. Do not tick checkboxes in {self.plan_file} and do not commit;",
            "   the loop marks the task done and commits once every gate passes.",
            "6. Report anything the next iteration should know on its own line",
            "   starting with 'NOTE: '.",
        ]
        if task.notes:
            lines.extend(["", "Notes from earlier attempts:"])
            lines.extend(f"- {note}" for note in task.notes)
        return "\n".join(lines)

    async def implement(
        self, task: Task, working_tree: WorkingTree, timeout: float | None
    ) -> WorkerResult:
        before = working_tree.snapshot()
        if self.event_hook is not None:
            self.event_hook({"event": "worker_started", "task_id": task.id})
        try:
            output = await asyncio.wait_for(
                collect_reply(
                    self.backend, WORKER_SYSTEM_PROMPT, self.build_prompt(task), working_tree.root
                ),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise WorkerTimeoutError(
                f"Worker timed out after {timeout:.1f}s on task {task.id}",
                retriable=False,
            ) from exc
        changed = sorted(working_tree.changed_since(before))
        logger.debug("Worker changed %d file(s) for task %s", len(changed), task.id)
        return WorkerResult(files_changed=changed, output=output, notes=extract_notes(output))
