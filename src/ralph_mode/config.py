from __future__ import annotations

import json
import re
import shlex
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ralph_mode.atomic import atomic_write_text

WorkerName = Literal["codex", "claude"]
GateKind = Literal["command", "judge"]

DEFAULT_GUIDE = """# Project Operations

## Build Commands
npm run dev    # Development
npm run build  # Production build

## Validation
npm run test      # All tests
npm run typecheck  # TypeScript
npm run lint      # ESLint
"""

DEFAULT_PLAN = """# Implementation Plan

- [ ] Describe the first task here
"""

HEADING_PATTERN = re.compile(r"^#{1,6}\s+(?P<title>.+?)\s*#*\s*$")
VALIDATION_HEADINGS = ("validation", "validate", "backpressure", "quality gate")
COMMAND_WRAPPERS = {
    "npm",
    "npx",
    "yarn",
    "pnpm",
    "bun",
    "uv",
    "poetry",
    "pipenv",
    "hatch",
    "run",
    "exec",
    "python",
    "python3",
    "-m",
    "make",
    "cargo",
    "go",
}


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    plan_file: str = "IMPLEMENTATION_PLAN.md"
    guide_file: str = "AGENTS.md"
    specs_dir: str = "specs"
    state_dir: str = ".ralph"


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 0
    auto_approve: bool = True
    commit: bool = True
    commit_before_done: bool = False
    strict_mark_done: bool = False
    record_in_progress: bool = True


@dataclass(slots=True)
class WorkerConfig:
    primary: WorkerName = "claude"
    fallback: WorkerName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0
    claude_binary: str = "claude"
    codex_binary: str = "codex"


@dataclass(slots=True)
class ValidationConfig:
    timeout_seconds: float = 600.0
    fail_fast: bool = False
    parallel: bool = False
    output_limit: int = 4000


@dataclass(slots=True)
class SessionConfig:
    liveness_seconds: float = 120.0
    heartbeat_interval_seconds: float = 30.0


@dataclass(slots=True)
class GateConfig:
    name: str
    command: str = ""
    kind: GateKind = "command"
    criteria: str = ""
    required: bool = True
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class RalphConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    gates: list[GateConfig] = field(default_factory=list)

    @classmethod
    def default(cls) -> RalphConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RalphConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            loop=LoopConfig(**data.get("loop", {})),
            worker=WorkerConfig(**data.get("worker", {})),
            validation=ValidationConfig(**data.get("validation", {})),
            session=SessionConfig(**data.get("session", {})),
            gates=[GateConfig(**item) for item in data.get("gates", [])],
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "plan_file": self.project.plan_file,
                "guide_file": self.project.guide_file,
                "specs_dir": self.project.specs_dir,
                "state_dir": self.project.state_dir,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "auto_approve": self.loop.auto_approve,
                "commit": self.loop.commit,
                "commit_before_done": self.loop.commit_before_done,
                "strict_mark_done": self.loop.strict_mark_done,
                "record_in_progress": self.loop.record_in_progress,
            },
            "worker": {
                "primary": self.worker.primary,
                "fallback": self.worker.fallback,
                "max_retries": self.worker.max_retries,
                "retry_backoff_seconds": self.worker.retry_backoff_seconds,
                "timeout_seconds": self.worker.timeout_seconds,
                "claude_binary": self.worker.claude_binary,
                "codex_binary": self.worker.codex_binary,
            },
            "validation": {
                "timeout_seconds": self.validation.timeout_seconds,
                "fail_fast": self.validation.fail_fast,
                "parallel": self.validation.parallel,
                "output_limit": self.validation.output_limit,
            },
            "session": {
                "liveness_seconds": self.session.liveness_seconds,
                "heartbeat_interval_seconds": self.session.heartbeat_interval_seconds,
            },
            "gates": [
                {
                    "name": gate.name,
                    "command": gate.command,
                    "kind": gate.kind,
                    "criteria": gate.criteria,
                    "required": gate.required,
                    "timeout_seconds": gate.timeout_seconds,
                }
                for gate in self.gates
            ],
        }

    def plan_path(self, repo_root: Path) -> Path:
        return _resolve(repo_root, self.project.plan_file)

    def guide_path(self, repo_root: Path) -> Path:
        return _resolve(repo_root, self.project.guide_file)

    def state_path(self, repo_root: Path) -> Path:
        return _resolve(repo_root, self.project.state_dir)


def _resolve(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RalphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "loop", "worker", "validation", "session"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for gate in data["gates"]:
        lines.append("[[gates]]")
        for key, value in gate.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RalphConfig:
    if not path.exists():
        return RalphConfig.default()
    return RalphConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: RalphConfig) -> None:
    atomic_write_text(path, dumps_toml(config))


def _gate_name_for(command: str) -> str:
    try:
        tokens = shlex.split(command)
    except ValueError:
        tokens = command.split()
    for token in tokens:
        if token in COMMAND_WRAPPERS or token.startswith("-"):
            continue
        name = Path(token).name
        slug = re.sub(r"[^A-Za-z0-9_.-]+", "-", name).strip("-")
        if slug:
            return slug
    return "gate"


def _split_guide_line(line: str) -> str:
    text = re.sub(r"^(?:[-*]|\d+[.)])\s+", "", line.strip())
    if "`" in text:
        match = re.search(r"`([^`]+)`", text)
        return match.group(1).strip() if match else ""
    if text.startswith("$ "):
        text = text[2:]
    return re.split(r"\s+#", text, maxsplit=1)[0].strip()


def gates_from_guide(content: str) -> list[GateConfig]:
    """Read gate commands from the validation section of an operational guide.

    Every non-blank line below a heading that mentions validation is one
    command, optionally followed by a ``# comment``. Bulleted lines with an
    inline code span use the code span as the command.
    """
    gates: list[GateConfig] = []
    used_names: dict[str, int] = {}
    in_validation = False

    for raw_line in content.splitlines():
        stripped = raw_line.strip()
        heading = HEADING_PATTERN.match(stripped)
        if heading:
            title = heading.group("title").lower()
            in_validation = any(token in title for token in VALIDATION_HEADINGS)
            continue
        if not in_validation or not stripped or stripped.startswith(("```", ">")):
            continue
        if stripped.endswith(":"):
            continue
        command = _split_guide_line(stripped)
        if not command:
            continue
        base_name = _gate_name_for(command)
        used_names[base_name] = used_names.get(base_name, 0) + 1
        name = base_name if used_names[base_name] == 1 else f"{base_name}-{used_names[base_name]}"
        gates.append(GateConfig(name=name, command=command))

    return gates


def resolve_gate_configs(config: RalphConfig, repo_root: Path) -> list[GateConfig]:
    """Configured gates win; otherwise fall back to the operational guide."""
    if config.gates:
        return list(config.gates)
    guide_path = config.guide_path(repo_root)
    if not guide_path.exists():
        return []
    return gates_from_guide(guide_path.read_text(encoding="utf-8"))
