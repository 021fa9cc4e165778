from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import signal
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from ralph_mode.backends.base import AgentBackend, WorkerError, collect_reply
from ralph_mode.config import GateConfig
from ralph_mode.tasks import Task

logger = logging.getLogger(__name__)

GateOutcome = Literal["pass", "fail", "error"]
GateEventHook = Callable[[dict[str, Any]], None]

# Anything the shell must interpret, including a leading VAR=value assignment.
SHELL_REQUIRED_PATTERN = re.compile(
    r"(?:\|\||&&|[|;<>`*?\[~$]|^\s*[A-Za-z_][A-Za-z0-9_]*=)"
)
VERDICT_PATTERN = re.compile(r"VERDICT:\s*(PASS|FAIL)\b", re.IGNORECASE)
# Exit codes a POSIX shell uses for "not found" and "not executable".
SHELL_LAUNCH_FAILURES = {126, 127}

JUDGE_SYSTEM_PROMPT = """
You are a strict code reviewer acting as a quality gate.
Judge only whether the change satisfies the stated criteria.
Finish your reply with a single line: VERDICT: PASS or VERDICT: FAIL.
""".strip()


@dataclass(slots=True)
class GateResult:
    gate_name: str
    outcome: GateOutcome
    output: str = ""
    message: str = ""
    duration_seconds: float = 0.0
    required: bool = True

    @property
    def passed(self) -> bool:
        return self.outcome == "pass"

    def describe(self) -> str:
        label = self.outcome.upper()
        if self.message:
            label = f"{label} ({self.message})"
        return f"{self.gate_name}: {label}"

    def to_dict(self, output_limit: int = 2000) -> dict[str, Any]:
        return {
            "name": self.gate_name,
            "outcome": self.outcome,
            "message": self.message,
            "required": self.required,
            "duration_seconds": round(self.duration_seconds, 3),
            "output_tail": self.output[-output_limit:] if output_limit > 0 else "",
        }


@dataclass(slots=True)
class GateReport:
    results: list[GateResult] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return all(result.passed for result in self.results if result.required)

    @property
    def failures(self) -> list[GateResult]:
        return [result for result in self.results if result.required and not result.passed]

    @property
    def advisory_failures(self) -> list[GateResult]:
        return [result for result in self.results if not result.required and not result.passed]

    def blocker_text(self) -> str:
        sections: list[str] = []
        for result in self.failures:
            header = result.describe()
            body = result.output.strip()
            sections.append(f"{header}\n{body}" if body else header)
        return "\n\n".join(sections)


@dataclass(slots=True)
class GateContext:
    working_tree: Path
    task: Task | None = None
    files_changed: list[str] = field(default_factory=list)
    diff: str = ""


class Gate(ABC):
    name: str
    required: bool
    timeout_seconds: float | None

    kind = "gate"

    @abstractmethod
    async def evaluate(
        self, context: GateContext, *, timeout: float, output_limit: int
    ) -> GateResult:
        """Run the check once and classify it."""


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    # Shell gates spawn children that would otherwise keep the output pipe open.
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except (AttributeError, PermissionError):
        process.kill()


@dataclass(slots=True)
class CommandGate(Gate):
    name: str
    command: str
    required: bool = True
    timeout_seconds: float | None = None

    kind = "command"

    def _payload(self) -> tuple[str | list[str], bool]:
        command_text = self.command.strip()
        if SHELL_REQUIRED_PATTERN.search(command_text):
            return command_text, True
        try:
            return shlex.split(command_text), False
        except ValueError:
            return command_text, True

    async def evaluate(
        self, context: GateContext, *, timeout: float, output_limit: int
    ) -> GateResult:
        started = time.monotonic()
        if not self.command.strip():
            return GateResult(
                self.name, "error", message="Command is empty.", required=self.required
            )

        payload, used_shell = self._payload()
        try:
            if used_shell:
                process = await asyncio.create_subprocess_shell(
                    str(payload),
                    cwd=context.working_tree,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *payload,
                    cwd=context.working_tree,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            return GateResult(
                self.name,
                "error",
                message=f"could not start command: {exc}",
                duration_seconds=time.monotonic() - started,
                required=self.required,
            )

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            _kill_process_group(process)
            await process.wait()
            return GateResult(
                self.name,
                "error",
                message="timeout",
                duration_seconds=time.monotonic() - started,
                required=self.required,
            )

        output = stdout.decode("utf-8", errors="replace").strip()[-output_limit:]
        duration = time.monotonic() - started
        if process.returncode == 0:
            return GateResult(self.name, "pass", output, "", duration, self.required)
        if used_shell and process.returncode in SHELL_LAUNCH_FAILURES:
            return GateResult(
                self.name,
                "error",
                output,
                f"command could not be executed (exit {process.returncode})",
                duration,
                self.required,
            )
        return GateResult(
            self.name, "fail", output, f"exit code {process.returncode}", duration, self.required
        )


@dataclass(slots=True)
class JudgeGate(Gate):
    """Subjective review by an agent, reduced to a PASS/FAIL verdict."""

    name: str
    criteria: str
    backend: AgentBackend
    required: bool = True
    timeout_seconds: float | None = None

    kind = "judge"

    def build_prompt(self, context: GateContext) -> str:
        parts = [f"Review criteria:\n{self.criteria.strip()}"]
        if context.task is not None:
            parts.append(f"Task under review:\n{context.task.description}")
        if context.files_changed:
            parts.append("Files changed:\n" + "\n".join(sorted(context.files_changed)))
        if context.diff:
            parts.append(f"Diff:\n{context.diff}")
        return "\n\n".join(parts)

    @staticmethod
    def parse_verdict(content: str) -> GateOutcome | None:
        matches = VERDICT_PATTERN.findall(content)
        if not matches:
            return None
        return "pass" if matches[-1].upper() == "PASS" else "fail"

    async def evaluate(
        self, context: GateContext, *, timeout: float, output_limit: int
    ) -> GateResult:
        started = time.monotonic()
        reply = collect_reply(
            self.backend, JUDGE_SYSTEM_PROMPT, self.build_prompt(context), context.working_tree
        )
        try:
            content = await asyncio.wait_for(reply, timeout=timeout)
        except TimeoutError:
            return GateResult(
                self.name,
                "error",
                message="timeout",
                duration_seconds=time.monotonic() - started,
                required=self.required,
            )
        except WorkerError as exc:
            return GateResult(
                self.name,
                "error",
                message=f"judge backend failed: {exc}",
                duration_seconds=time.monotonic() - started,
                required=self.required,
            )

        duration = time.monotonic() - started
        output = content[-output_limit:]
        verdict = self.parse_verdict(content)
        if verdict is None:
            return GateResult(self.name, "error", output, "no verdict", duration, self.required)
        return GateResult(self.name, verdict, output, "", duration, self.required)


class GateRunner:
    def __init__(
        self,
        *,
        default_timeout_seconds: float = 600.0,
        fail_fast: bool = False,
        parallel: bool = False,
        output_limit: int = 4000,
        event_hook: GateEventHook | None = None,
    ) -> None:
        self.default_timeout_seconds = default_timeout_seconds
        self.fail_fast = fail_fast
        self.parallel = parallel
        self.output_limit = output_limit
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    async def _run_one(self, gate: Gate, context: GateContext) -> GateResult:
        timeout = gate.timeout_seconds or self.default_timeout_seconds
        self._emit({"event": "gate_started", "gate": gate.name, "kind": gate.kind})
        result = await gate.evaluate(context, timeout=timeout, output_limit=self.output_limit)
        logger.info("Gate %s", result.describe())
        self._emit(
            {
                "event": "gate_finished",
                "gate": gate.name,
                "outcome": result.outcome,
                "message": result.message,
                "required": result.required,
            }
        )
        return result

    async def run(self, gates: Sequence[Gate], context: GateContext) -> GateReport:
        if self.parallel:
            results = await asyncio.gather(*(self._run_one(gate, context) for gate in gates))
            return GateReport(results=list(results))

        report = GateReport()
        for gate in gates:
            result = await self._run_one(gate, context)
            report.results.append(result)
            if self.fail_fast and result.required and not result.passed:
                break
        return report


def build_gates(configs: Sequence[GateConfig], judge_backend: AgentBackend | None) -> list[Gate]:
    gates: list[Gate] = []
    for config in configs:
        timeout = config.timeout_seconds if config.timeout_seconds > 0 else None
        if config.kind == "judge":
            if judge_backend is None:
                raise ValueError(f"Judge gate '{config.name}' needs an agent backend.")
            gates.append(
                JudgeGate(
                    name=config.name,
                    criteria=config.criteria,
                    backend=judge_backend,
                    required=config.required,
                    timeout_seconds=timeout,
                )
            )
            continue
        gates.append(
            CommandGate(
                name=config.name,
                command=config.command,
                required=config.required,
                timeout_seconds=timeout,
            )
        )
    return gates
