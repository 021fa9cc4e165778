"""Iteration state machine: select a task, implement it, gate it, record it.

The controller owns no state of its own between runs. Everything a run
needs lives in a ``ControllerSession`` and everything that must survive a
crash lives on disk (the task list, the progress log, the session lock),
so a killed controller resumes simply by being started again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from ralph_mode.backends.base import WorkerError, WorkerTimeoutError
from ralph_mode.config import LoopConfig
from ralph_mode.gates import Gate, GateContext, GateReport, GateRunner, JudgeGate
from ralph_mode.lock import LockLostError, SessionGuard, SessionLock
from ralph_mode.progress import IterationRecord, IterationStatus, ProgressLog
from ralph_mode.tasks import Task, TaskList
from ralph_mode.worker import Worker, WorkerResult
from ralph_mode.worktree import CommitResult, GitCommitter, WorkingTree

logger = logging.getLogger(__name__)

ControllerState = Literal[
    "idle",
    "selecting",
    "implementing",
    "validating",
    "completing",
    "blocked",
    "drained",
    "capped",
    "stopped",
]
TerminalState = Literal["drained", "capped", "stopped"]
TERMINAL_STATES = {"drained", "capped", "stopped"}

ControllerEventHook = Callable[[dict[str, Any]], None]
ApprovalHook = Callable[[Task], bool]

NO_OP_REASON = "no-op iteration: the worker changed no files"
TASK_MOVED_REASON = "task moved or edited during the iteration"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class ControllerSession:
    session_id: str
    owner_id: str
    max_iterations: int = 0
    iteration_count: int = 0
    state: ControllerState = "idle"
    completed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    stop_requested: bool = False
    stop_reason: str | None = None
    lock: SessionLock | None = None
    lock_lost: bool = False
    current_task_id: str | None = None
    started_at: str = field(default_factory=_utcnow_iso)


@dataclass(slots=True)
class RunSummary:
    state: TerminalState
    iterations: int
    completed: list[str]
    blocked: list[str]
    session_id: str
    stop_reason: str | None
    started_at: str
    ended_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class IterationController:
    def __init__(
        self,
        plan_path: Path,
        progress: ProgressLog,
        gate_runner: GateRunner,
        gates: Sequence[Gate],
        worker: Worker,
        working_tree: WorkingTree,
        guard: SessionGuard,
        *,
        committer: GitCommitter | None = None,
        config: LoopConfig | None = None,
        worker_timeout_seconds: float | None = None,
        heartbeat_interval_seconds: float = 30.0,
        event_hook: ControllerEventHook | None = None,
        approval_hook: ApprovalHook | None = None,
    ) -> None:
        self.plan_path = plan_path
        self.progress = progress
        self.gate_runner = gate_runner
        self.gates = list(gates)
        self.worker = worker
        self.working_tree = working_tree
        self.guard = guard
        self.committer = committer
        self.config = config or LoopConfig()
        self.worker_timeout_seconds = worker_timeout_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.event_hook = event_hook
        self.approval_hook = approval_hook
        self._session: ControllerSession | None = None
        self._pending_stop: str | None = None

    @property
    def session(self) -> ControllerSession | None:
        return self._session

    def _emit(self, session: ControllerSession, event: str, **payload: Any) -> None:
        logger.info("%s %s", event, payload or "")
        if self.event_hook is not None:
            self.event_hook({"event": event, "session_id": session.session_id, **payload})

    def request_stop(self, reason: str = "stop requested") -> None:
        """Ask the running session to stop at its next idle state."""
        session = self._session
        if session is None:
            self._pending_stop = reason
            return
        if not session.stop_requested:
            session.stop_requested = True
            session.stop_reason = reason
            logger.info("Stop requested: %s", reason)

    def _load_tasks(self) -> TaskList:
        return TaskList.load(self.plan_path)

    def _record(
        self,
        session: ControllerSession,
        status: IterationStatus,
        task: Task | None,
        *,
        actions: list[str] | None = None,
        blockers: str = "",
        next_step: str = "",
        files_changed: list[str] | None = None,
        report: GateReport | None = None,
    ) -> IterationRecord:
        record = IterationRecord(
            status=status,
            task_id=task.id if task is not None else None,
            iteration=session.iteration_count,
            actions=list(actions or []),
            blockers=blockers,
            next_step=next_step,
            files_changed=list(files_changed or []),
            gates=[
                result.to_dict(self.gate_runner.output_limit)
                for result in (report.results if report is not None else [])
            ],
            session_id=session.session_id,
        )
        return self.progress.append(record)

    def _next_step(self) -> str:
        upcoming = self._load_tasks().next_pending()
        if upcoming is None:
            return "none: task list drained"
        return f"task {upcoming.id}: {upcoming.description}"

    def _heartbeat(self, session: ControllerSession) -> None:
        if session.lock is None:
            return
        session.lock = self.guard.heartbeat(session.lock)

    async def _heartbeat_loop(self, session: ControllerSession) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_seconds)
            try:
                self._heartbeat(session)
            except LockLostError as exc:
                logger.error("%s", exc)
                session.lock_lost = True
                self.request_stop(f"lock lost: {exc}")
                return

    def _idle(self, session: ControllerSession) -> TerminalState | None:
        session.state = "idle"
        session.current_task_id = None
        if session.stop_requested:
            return "stopped"
        if session.max_iterations > 0 and session.iteration_count >= session.max_iterations:
            return "capped"
        if not self._load_tasks().has_pending():
            return "drained"
        return None

    async def run(
        self, max_iterations: int | None = None, owner_id: str | None = None
    ) -> RunSummary:
        limit = self.config.max_iterations if max_iterations is None else max_iterations
        lock = self.guard.acquire(owner_id)
        session = ControllerSession(
            session_id=f"session-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}",
            owner_id=lock.owner_id,
            max_iterations=max(0, int(limit)),
            lock=lock,
        )
        self._session = session
        if self._pending_stop is not None:
            self.request_stop(self._pending_stop)
            self._pending_stop = None

        heartbeat_task: asyncio.Task[None] | None = None
        if self.heartbeat_interval_seconds > 0:
            heartbeat_task = asyncio.create_task(self._heartbeat_loop(session))

        self._emit(
            session,
            "session_started",
            owner_id=session.owner_id,
            max_iterations=session.max_iterations,
        )
        try:
            while True:
                terminal = self._idle(session)
                if terminal is not None:
                    session.state = terminal
                    break
                await self.run_iteration(session)
        finally:
            if heartbeat_task is not None:
                heartbeat_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat_task
            if not session.lock_lost:
                self.guard.release(lock)
            self._session = None

        summary = RunSummary(
            state=session.state,  # type: ignore[arg-type]
            iterations=session.iteration_count,
            completed=list(session.completed),
            blocked=list(session.blocked),
            session_id=session.session_id,
            stop_reason=session.stop_reason,
            started_at=session.started_at,
            ended_at=_utcnow_iso(),
        )
        self._emit(session, "session_finished", **summary.to_dict())
        return summary

    async def run_iteration(self, session: ControllerSession) -> IterationRecord | None:
        """Drive one task from selection to a complete or blocked record."""
        session.state = "selecting"
        task = self._load_tasks().next_pending()
        if task is None:
            return None

        if not self.config.auto_approve and self.approval_hook is not None:
            # Off the loop thread, so heartbeats and signal handlers keep running.
            approved = await asyncio.to_thread(self.approval_hook, task)
            if not approved:
                self.request_stop("declined")
                self._emit(session, "task_declined", task_id=task.id)
                return None
            if session.stop_requested:
                return None

        session.iteration_count += 1
        session.current_task_id = task.id
        self._emit(
            session,
            "task_selected",
            task_id=task.id,
            description=task.description,
            iteration=session.iteration_count,
        )
        if self.config.record_in_progress:
            self._record(
                session,
                "in_progress",
                task,
                actions=[f"selected task {task.id}"],
                next_step=f"implement task {task.id}",
            )

        try:
            return await self._attempt(session, task)
        except Exception as exc:
            logger.exception("Iteration %d failed fatally", session.iteration_count)
            self._record(
                session,
                "failed",
                task,
                blockers=f"{type(exc).__name__}: {exc}",
                next_step="fix the error above and restart the loop",
            )
            self._emit(session, "iteration_failed", task_id=task.id, error=str(exc))
            raise

    async def _attempt(self, session: ControllerSession, task: Task) -> IterationRecord:
        session.state = "implementing"
        try:
            result = await self.worker.implement(
                task, self.working_tree, self.worker_timeout_seconds
            )
        except WorkerTimeoutError as exc:
            return self._block(session, task, f"worker timeout: {exc}")
        except WorkerError as exc:
            return self._block(session, task, f"worker failed: {exc}")
        except Exception as exc:
            logger.warning("Worker raised on task %s", task.id, exc_info=True)
            return self._block(session, task, f"worker raised {type(exc).__name__}: {exc}")

        self._emit(
            session,
            "worker_finished",
            task_id=task.id,
            files_changed=list(result.files_changed),
        )
        self._append_notes(task, result.notes)
        if not result.files_changed:
            return self._block(session, task, NO_OP_REASON, result=result)

        session.state = "validating"
        needs_diff = any(isinstance(gate, JudgeGate) for gate in self.gates)
        context = GateContext(
            working_tree=self.working_tree.root,
            task=task,
            files_changed=list(result.files_changed),
            diff=self.working_tree.diff_text() if needs_diff else "",
        )
        report = await self.gate_runner.run(self.gates, context)
        self._emit(
            session,
            "gates_finished",
            task_id=task.id,
            all_passed=report.all_passed,
            results={item.gate_name: item.outcome for item in report.results},
        )
        if not report.all_passed:
            return self._block(session, task, report.blocker_text(), result=result, report=report)
        return self._complete(session, task, result, report)

    def _append_notes(self, task: Task, notes: list[str]) -> None:
        if not notes:
            return
        tasks = self._load_tasks()
        current = tasks.locate(task)
        if current is None:
            logger.warning("Task %s vanished from the plan; dropping worker notes", task.id)
            return
        for note in notes:
            tasks.append_note(current.id, note)

    def _commit(self, message: str) -> CommitResult | None:
        if self.committer is None or not self.config.commit:
            return None
        return self.committer.commit(message)

    def _complete(
        self,
        session: ControllerSession,
        task: Task,
        result: WorkerResult,
        report: GateReport,
    ) -> IterationRecord:
        session.state = "completing"
        self._heartbeat(session)

        tasks = self._load_tasks()
        current = tasks.locate(task)
        if current is None:
            return self._block(
                session,
                task,
                f"{TASK_MOVED_REASON}: {task.description}",
                result=result,
                report=report,
            )
        task = current

        actions = [
            f"worker changed {len(result.files_changed)} file(s)",
            "gates passed: " + (", ".join(item.gate_name for item in report.results) or "none"),
        ]
        message = f"ralph: {task.description}"
        commit: CommitResult | None
        if self.config.commit_before_done:
            commit = self._commit(message)
            if commit is not None and not commit.ok:
                return self._block(
                    session,
                    task,
                    f"commit failed: {commit.message}",
                    result=result,
                    report=report,
                )
            tasks.mark_done(task.id, strict=self.config.strict_mark_done)
        else:
            tasks.mark_done(task.id, strict=self.config.strict_mark_done)
            commit = self._commit(message)
        actions.append(f"marked task {task.id} done")

        if commit is not None:
            if commit.ok:
                actions.append(f"committed {commit.revision or ''}".strip())
            else:
                actions.append(f"commit failed: {commit.message}")
        for advisory in report.advisory_failures:
            actions.append(f"advisory gate {advisory.describe()}")

        session.completed.append(task.id)
        record = self._record(
            session,
            "complete",
            task,
            actions=actions,
            next_step=self._next_step(),
            files_changed=result.files_changed,
            report=report,
        )
        self._emit(
            session,
            "task_completed",
            task_id=task.id,
            sequence_number=record.sequence_number,
            committed=bool(commit and commit.ok),
        )
        return record

    def _block(
        self,
        session: ControllerSession,
        task: Task,
        reason: str,
        *,
        result: WorkerResult | None = None,
        report: GateReport | None = None,
    ) -> IterationRecord:
        session.state = "blocked"
        actions: list[str] = []
        if result is not None:
            actions.append(f"worker changed {len(result.files_changed)} file(s)")
        tasks = self._load_tasks()
        current = tasks.locate(task)
        if current is not None and current.done:
            # The worker ticked the box itself; only passing gates may do that.
            tasks.reopen(current.id, f"reopened: {reason.splitlines()[0] if reason else 'blocked'}")
            actions.append(f"reopened task {current.id}")

        session.blocked.append(task.id)
        record = self._record(
            session,
            "blocked",
            task,
            actions=actions,
            blockers=reason,
            next_step=f"retry task {task.id}",
            files_changed=result.files_changed if result is not None else [],
            report=report,
        )
        self._emit(
            session,
            "task_blocked",
            task_id=task.id,
            reason=reason.splitlines()[0] if reason else "",
            sequence_number=record.sequence_number,
        )
        return record
