"""Markdown checklist store backing the implementation plan.

The plan is a plain markdown file. Lines of the form ``- [ ] text`` are
pending tasks and ``- [x] text`` are done tasks; indented lines directly
below a task are its notes. Everything else (headings, prose) is kept
verbatim so the file stays pleasant to edit by hand between iterations.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ralph_mode.atomic import atomic_write_text

TaskStatus = Literal["pending", "done"]

TASK_LINE_PATTERN = re.compile(r"^(?P<bullet>[-*]) \[(?P<mark>.)\](?:\s+(?P<text>.*))?$")
TASK_ID_PATTERN = re.compile(r"\s*<!--\s*id:\s*(?P<id>[\w.\-]+)\s*-->\s*")
NOTE_BULLET_PATTERN = re.compile(r"^[-*]\s+")


class TaskListError(RuntimeError):
    """Raised when the task list cannot be read or updated."""


class TaskListParseError(TaskListError):
    """Raised when the persisted task list is structurally malformed."""

    def __init__(self, message: str, *, path: Path | None = None, line: int | None = None) -> None:
        location = ""
        if path is not None:
            location = f"{path}:{line}: " if line is not None else f"{path}: "
        super().__init__(f"{location}{message}")
        self.path = path
        self.line = line


class TaskNotFoundError(TaskListError):
    """Raised when a task id is not present in the list."""


class TaskAlreadyDoneError(TaskListError):
    """Raised by strict ``mark_done`` calls on a task that is already done."""


@dataclass(slots=True)
class Task:
    id: str
    description: str
    status: TaskStatus = "pending"
    notes: list[str] = field(default_factory=list)
    explicit_id: bool = False
    bullet: str = "-"

    @property
    def done(self) -> bool:
        return self.status == "done"

    def render(self) -> list[str]:
        mark = "x" if self.done else " "
        line = f"{self.bullet} [{mark}] {self.description}"
        if self.explicit_id:
            line += f" <!-- id: {self.id} -->"
        return [line, *(f"  - {note}" for note in self.notes)]

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status,
            "notes": list(self.notes),
        }


def _fold(text: str) -> str:
    return " ".join(part.strip() for part in text.splitlines() if part.strip())


def parse_tasks(content: str, *, path: Path | None = None) -> list[str | Task]:
    """Split ``content`` into verbatim lines and ``Task`` entries."""
    entries: list[str | Task] = []
    seen_ids: dict[str, int] = {}
    current: Task | None = None
    position = 0

    for number, raw_line in enumerate(content.splitlines(), start=1):
        match = TASK_LINE_PATTERN.match(raw_line)
        if match is None:
            if current is not None and raw_line[:1].isspace() and raw_line.strip():
                note = NOTE_BULLET_PATTERN.sub("", raw_line.strip(), count=1)
                current.notes.append(note)
                continue
            current = None
            entries.append(raw_line)
            continue

        mark = match.group("mark")
        if mark not in {" ", "x", "X"}:
            raise TaskListParseError(
                f"Unknown checkbox marker '[{mark}]'; expected '[ ]' or '[x]'.",
                path=path,
                line=number,
            )

        position += 1
        text = match.group("text") or ""
        explicit = TASK_ID_PATTERN.search(text)
        task_id = str(position)
        if explicit:
            task_id = explicit.group("id")
            text = TASK_ID_PATTERN.sub(" ", text)
        description = text.strip()
        if not description:
            raise TaskListParseError("Task has an empty description.", path=path, line=number)
        if task_id in seen_ids:
            raise TaskListParseError(
                f"Duplicate task id '{task_id}' (first defined on line {seen_ids[task_id]}).",
                path=path,
                line=number,
            )
        seen_ids[task_id] = number

        current = Task(
            id=task_id,
            description=description,
            status="pending" if mark == " " else "done",
            explicit_id=explicit is not None,
            bullet=match.group("bullet"),
        )
        entries.append(current)

    return entries


class TaskList:
    def __init__(
        self, path: Path, entries: list[str | Task], *, trailing_newline: bool = True
    ) -> None:
        self.path = path
        self._entries = entries
        self._trailing_newline = trailing_newline

    @classmethod
    def load(cls, path: Path) -> TaskList:
        if not path.exists():
            raise TaskListError(f"Task list not found: {path}")
        content = path.read_text(encoding="utf-8")
        return cls(
            path,
            parse_tasks(content, path=path),
            trailing_newline=content.endswith("\n") or not content,
        )

    @property
    def tasks(self) -> list[Task]:
        return [entry for entry in self._entries if isinstance(entry, Task)]

    def pending(self) -> list[Task]:
        return [task for task in self.tasks if not task.done]

    def has_pending(self) -> bool:
        return self.next_pending() is not None

    def next_pending(self) -> Task | None:
        for task in self.tasks:
            if not task.done:
                return task
        return None

    def get(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(f"Task not found: {task_id}")

    def locate(self, task: Task) -> Task | None:
        """Find ``task`` again in a list that may have been edited since it was read.

        Positional ids shift when lines are inserted above a task, so the id
        only counts while the description still matches. Otherwise the task
        is looked up by description, preferring a pending entry.
        """
        for candidate in self.tasks:
            if candidate.id == task.id and candidate.description == task.description:
                return candidate
        matches = [item for item in self.tasks if item.description == task.description]
        if not matches:
            return None
        return next((item for item in matches if not item.done), matches[0])

    def mark_done(self, task_id: str, *, strict: bool = False) -> Task:
        task = self.get(task_id)
        if task.done:
            if strict:
                raise TaskAlreadyDoneError(f"Task already done: {task_id}")
            return task
        task.status = "done"
        self.save()
        return task

    def reopen(self, task_id: str, reason: str) -> Task:
        """Flip a done task back to pending, leaving ``reason`` as a note."""
        task = self.get(task_id)
        if not task.done:
            return task
        task.status = "pending"
        note = _fold(reason)
        if note:
            task.notes.append(note)
        self.save()
        return task

    def append_note(self, task_id: str, text: str) -> Task:
        task = self.get(task_id)
        note = _fold(text)
        if not note:
            return task
        task.notes.append(note)
        self.save()
        return task

    def dumps(self) -> str:
        lines: list[str] = []
        for entry in self._entries:
            if isinstance(entry, Task):
                lines.extend(entry.render())
            else:
                lines.append(entry)
        rendered = "\n".join(lines)
        if self._trailing_newline and lines:
            rendered += "\n"
        return rendered

    def save(self, path: Path | None = None) -> None:
        atomic_write_text(path or self.path, self.dumps())

    def counts(self) -> dict[str, int]:
        tasks = self.tasks
        done = sum(1 for task in tasks if task.done)
        return {"total": len(tasks), "done": done, "pending": len(tasks) - done}
