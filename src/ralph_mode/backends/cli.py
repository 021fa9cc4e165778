from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from ralph_mode.backends.base import (
    WORKING_DIRECTORY_KEY,
    AgentBackend,
    WorkerError,
    WorkerProcessError,
)

BackendEventHook = Callable[[dict[str, Any]], None]


class CLIAgentBackend(AgentBackend):
    """Streams JSON-lines output of a coding-agent CLI run in the working tree."""

    name = "cli"

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        raise NotImplementedError

    @staticmethod
    def render_prompt(user_prompt: str, context: dict[str, Any]) -> str:
        visible = {key: value for key, value in context.items() if not key.startswith("_")}
        if not visible:
            return user_prompt
        return "\n\n".join(
            [user_prompt, "Context JSON:", json.dumps(visible, ensure_ascii=False, indent=2)]
        )

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        delta = event.get("delta")
        if isinstance(delta, str):
            return delta

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            return CLIAgentBackend._extract_content(message)

        result = event.get("result")
        if isinstance(result, str):
            return result
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def _cwd(self, context: dict[str, Any]) -> str | None:
        override = context.get(WORKING_DIRECTORY_KEY)
        if isinstance(override, str) and override.strip():
            return override
        return str(self.working_directory) if self.working_directory else None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context)
        self._emit({"event": "agent_start", "backend": self.name, "command": command[:3]})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self._cwd(context),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise WorkerProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise WorkerProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        stderr_task: asyncio.Task[bytes] | None = None
        if process.stderr is not None:
            stderr_task = asyncio.ensure_future(process.stderr.read())

        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield line
                    continue

                if not isinstance(event, dict):
                    continue
                content = self._extract_content(event)
                if content:
                    yield content

            if parse_buffer:
                yield parse_buffer

            return_code = await process.wait()
        finally:
            # Cancellation (timeouts) must not leave the agent running in the tree.
            if process.returncode is None:
                process.kill()
                await process.wait()
                if stderr_task is not None:
                    stderr_task.cancel()

        stderr_output = ""
        if stderr_task is not None:
            stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
        self._emit({"event": "agent_exit", "backend": self.name, "exit_code": return_code})
        if return_code != 0:
            raise WorkerError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output[:400]}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )


class ClaudeCodeBackend(CLIAgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
        permission_mode: str = "acceptEdits",
    ) -> None:
        super().__init__(binary, working_directory, event_hook)
        self.permission_mode = permission_mode

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            self.render_prompt(user_prompt, context),
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            self.permission_mode,
        ]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        return command


class CodexBackend(CLIAgentBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--full-auto",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        requested_model = context.get("model")
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["-m", requested_model.strip()])
        command.append(self.render_prompt(user_prompt, context))
        return command
