from __future__ import annotations

import json
import os
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

IterationStatus = Literal["in_progress", "blocked", "complete", "failed"]
ITERATION_STATUSES = {"in_progress", "blocked", "complete", "failed"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class ProgressLogError(RuntimeError):
    """Raised when a record cannot be appended to the progress log."""


@dataclass(slots=True)
class IterationRecord:
    status: IterationStatus
    task_id: str | None = None
    iteration: int = 0
    actions: list[str] = field(default_factory=list)
    blockers: str = ""
    next_step: str = ""
    files_changed: list[str] = field(default_factory=list)
    gates: list[dict[str, Any]] = field(default_factory=list)
    session_id: str | None = None
    sequence_number: int | None = None
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["files_changed"] = sorted(set(self.files_changed))
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IterationRecord:
        status = str(payload.get("status", ""))
        if status not in ITERATION_STATUSES:
            raise ValueError(f"Unknown iteration status: {status!r}")
        sequence = payload.get("sequence_number")
        return cls(
            status=status,  # type: ignore[arg-type]
            task_id=payload.get("task_id"),
            iteration=int(payload.get("iteration", 0)),
            actions=[str(item) for item in payload.get("actions", [])],
            blockers=str(payload.get("blockers", "")),
            next_step=str(payload.get("next_step", "")),
            files_changed=[str(item) for item in payload.get("files_changed", [])],
            gates=[item for item in payload.get("gates", []) if isinstance(item, dict)],
            session_id=payload.get("session_id"),
            sequence_number=int(sequence) if sequence is not None else None,
            timestamp=str(payload.get("timestamp") or _utcnow_iso()),
        )


class ProgressLog:
    """Append-only JSON Lines log of iteration records.

    Each record is one line written with a single ``write`` call followed by
    ``fsync``. Readers only trust newline-terminated lines, so a record that
    is still being written is invisible rather than half-visible.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _complete_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        raw = self.path.read_text(encoding="utf-8", errors="replace")
        lines = raw.split("\n")
        # The last element is either "" or a torn write in progress.
        return [line for line in lines[:-1] if line.strip()]

    def records(self) -> Iterator[IterationRecord]:
        for line in self._complete_lines():
            try:
                payload = json.loads(line)
                yield IterationRecord.from_dict(payload)
            except (json.JSONDecodeError, TypeError, ValueError):
                continue

    def read_latest(self) -> IterationRecord | None:
        for line in reversed(self._complete_lines()):
            try:
                return IterationRecord.from_dict(json.loads(line))
            except (json.JSONDecodeError, TypeError, ValueError):
                continue
        return None

    def tail(self, count: int) -> list[IterationRecord]:
        if count <= 0:
            return []
        return list(self.records())[-count:]

    def next_sequence(self) -> int:
        latest = self.read_latest()
        if latest is None or latest.sequence_number is None:
            return 1
        return latest.sequence_number + 1

    def append(self, record: IterationRecord) -> IterationRecord:
        expected = self.next_sequence()
        if record.sequence_number is None:
            record.sequence_number = expected
        elif record.sequence_number < expected:
            raise ProgressLogError(
                f"Sequence number {record.sequence_number} is not greater than the "
                f"latest logged sequence {expected - 1}."
            )

        line = json.dumps(record.to_dict(), ensure_ascii=False, separators=(",", ":")) + "\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        try:
            pending = memoryview(line.encode("utf-8"))
            while pending:
                written = os.write(fd, pending)
                pending = pending[written:]
            os.fsync(fd)
        finally:
            os.close(fd)
        return record


def render(record: IterationRecord) -> str:
    """Human-readable markdown block for one record."""
    lines = [
        f"## Iteration {record.iteration} (#{record.sequence_number}) - {record.status}",
        f"- Timestamp: {record.timestamp}",
        f"- Task: {record.task_id or '-'}",
    ]
    if record.actions:
        lines.append("- Actions:")
        lines.extend(f"  - {action}" for action in record.actions)
    if record.files_changed:
        lines.append("- Files changed:")
        lines.extend(f"  - {path}" for path in sorted(set(record.files_changed)))
    if record.blockers:
        lines.append("- Blockers:")
        lines.extend(f"  {line}" for line in record.blockers.splitlines())
    lines.append(f"- Next step: {record.next_step or '-'}")
    return "\n".join(lines)
