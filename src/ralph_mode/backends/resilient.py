from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from ralph_mode.backends.base import AgentBackend, WorkerError, WorkerTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0
    max_backoff_seconds: float = 30.0

    def delay_before(self, attempt: int) -> float:
        """Exponential backoff before retry ``attempt`` (the first try waits 0)."""
        if attempt <= 0:
            return 0.0
        return min(self.max_backoff_seconds, self.backoff_seconds * (2 ** (attempt - 1)))

    def budget_seconds(self, backends: int) -> float:
        """Worst-case wall time for every attempt on ``backends`` backends, backoff included."""
        per_backend = sum(
            self.timeout_seconds + self.delay_before(attempt)
            for attempt in range(self.max_retries + 1)
        )
        return per_backend * max(1, backends)


@dataclass(slots=True)
class BackendSlot:
    name: str
    backend: AgentBackend


class ResilientBackend(AgentBackend):
    """Runs the worker agent on the primary CLI, then the fallback.

    Each attempt is bounded by ``retry_policy.timeout_seconds``. Retriable
    failures are retried with backoff on the same backend; permanent ones
    move straight on to the fallback. Output is buffered per attempt so a
    half-finished reply from a failed attempt never reaches the caller.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.slots = [BackendSlot(primary_name, primary_backend)]
        if fallback_name != primary_name:
            self.slots.append(BackendSlot(fallback_name, fallback_backend))
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    @property
    def primary_name(self) -> str:
        return self.slots[0].name

    def _emit(self, event: str, slot: BackendSlot, attempt: int, **payload: Any) -> None:
        if self.event_hook:
            self.event_hook({"event": event, "backend": slot.name, "attempt": attempt, **payload})

    async def _run_once(
        self, slot: BackendSlot, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        chunks: list[str] = []

        async def _drain() -> None:
            async for chunk in slot.backend.execute(system_prompt, user_prompt, context):
                chunks.append(chunk)

        timeout = self.retry_policy.timeout_seconds
        try:
            await asyncio.wait_for(_drain(), timeout=timeout)
        except TimeoutError as exc:
            raise WorkerTimeoutError(
                f"{slot.name} timed out after {timeout:.1f}s", backend=slot.name
            ) from exc
        return chunks

    async def _run_slot(
        self,
        slot: BackendSlot,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        errors: list[str],
    ) -> list[str] | None:
        for attempt in range(self.retry_policy.max_retries + 1):
            delay = self.retry_policy.delay_before(attempt)
            if attempt > 0:
                self._emit("backend_retry", slot, attempt, delay_seconds=delay)
                await asyncio.sleep(delay)
            try:
                return await self._run_once(slot, system_prompt, user_prompt, context)
            except WorkerError as exc:
                errors.append(f"{slot.name}#{attempt}: {exc}")
                logger.warning("Agent %s attempt %d failed: %s", slot.name, attempt, exc)
                self._emit(
                    "backend_attempt_failed",
                    slot,
                    attempt,
                    error=str(exc),
                    retriable=exc.retriable,
                )
                if not exc.retriable:
                    return None
        return None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        errors: list[str] = []
        for slot in self.slots:
            chunks = await self._run_slot(slot, system_prompt, user_prompt, context, errors)
            if chunks is None:
                continue
            if slot.name != self.primary_name:
                self._emit("backend_fallback_success", slot, len(errors))
            for chunk in chunks:
                yield chunk
            return

        raise WorkerError(
            "Every agent backend failed: " + "; ".join(errors[-6:]),
            retriable=False,
        )
