from ralph_mode.backends.base import (
    AgentBackend,
    WorkerError,
    WorkerProcessError,
    WorkerTimeoutError,
)
from ralph_mode.backends.cli import ClaudeCodeBackend, CLIAgentBackend, CodexBackend
from ralph_mode.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "CLIAgentBackend",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
    "WorkerError",
    "WorkerProcessError",
    "WorkerTimeoutError",
]
