from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

# Context key naming the directory the agent process should run in.
WORKING_DIRECTORY_KEY = "_working_directory"


class WorkerError(RuntimeError):
    """Raised when the worker agent fails to carry out a task."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class WorkerTimeoutError(WorkerError):
    """Raised when a worker run exceeds its configured timeout."""


class WorkerProcessError(WorkerError):
    """Raised when the agent process cannot be started or talked to."""


class AgentBackend(ABC):
    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Run the agent once and stream its textual reply."""


async def collect_reply(
    backend: AgentBackend,
    system_prompt: str,
    user_prompt: str,
    working_directory: Path,
) -> str:
    """Run ``backend`` inside ``working_directory`` and return its whole reply."""
    chunks: list[str] = []
    context = {WORKING_DIRECTORY_KEY: str(working_directory)}
    async for chunk in backend.execute(system_prompt, user_prompt, context):
        chunks.append(chunk)
    return "".join(chunks).strip()
