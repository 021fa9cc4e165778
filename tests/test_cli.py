import json
import re
import subprocess
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from ralph_mode.backends.base import AgentBackend
from ralph_mode.cli import _worker_budget, cli
from ralph_mode.config import GateConfig, WorkerConfig, load_config, save_config
from ralph_mode.lock import SessionGuard

PY = sys.executable

PLAN = """# Implementation Plan

- [ ] First feature
- [ ] Second feature
"""


class FakeBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt
        match = re.search(r"^Task (\S+):", user_prompt, re.MULTILINE)
        task_id = match.group(1) if match else "unknown"
        root = Path(context["_working_directory"])
        with (root / f"feature_{task_id}.py").open("a", encoding="utf-8") as handle:
            handle.write(f"TASK = {task_id!r}\n")
        yield f"implemented {task_id}\nNOTE: touched feature_{task_id}.py"


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _set_gate(config_path: Path, code: str) -> None:
    config = load_config(config_path)
    config.gates = [GateConfig(name="check", command=f'"{PY}" -c "{code}"')]
    save_config(config_path, config)


@pytest.fixture()
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    _init_git_repo(repo_path)
    monkeypatch.chdir(repo_path)
    monkeypatch.setattr("ralph_mode.cli._build_backend", lambda *args, **kwargs: FakeBackend())

    result = CliRunner().invoke(cli, ["init"])
    assert result.exit_code == 0, result.output
    (repo_path / "IMPLEMENTATION_PLAN.md").write_text(PLAN, encoding="utf-8")
    _set_gate(repo_path / "ralph.toml", "print('ok')")
    return repo_path


def test_init_writes_project_skeleton(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["init", "--worker", "codex"])

    assert result.exit_code == 0, result.output
    config = load_config(tmp_path / "ralph.toml")
    assert config.worker.primary == "codex"
    assert config.worker.fallback == "claude"
    assert "## Validation" in (tmp_path / "AGENTS.md").read_text(encoding="utf-8")
    assert "- [ ]" in (tmp_path / "IMPLEMENTATION_PLAN.md").read_text(encoding="utf-8")
    assert (tmp_path / ".ralph" / ".gitignore").read_text(encoding="utf-8") == "*\n"


def test_run_drains_plan_and_commits_each_task(repo: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["run"])

    assert result.exit_code == 0, result.output
    assert "All tasks completed!" in result.output
    assert "gate check: PASS" in result.output
    assert "Iterations: 2" in result.output
    plan_text = (repo / "IMPLEMENTATION_PLAN.md").read_text(encoding="utf-8")
    assert "- [x] First feature" in plan_text
    assert "- [x] Second feature" in plan_text
    assert "touched feature_1.py" in plan_text
    log = subprocess.run(
        ["git", "log", "--pretty=%s"], cwd=repo, check=True, text=True, capture_output=True
    )
    assert log.stdout.splitlines()[:2] == ["ralph: Second feature", "ralph: First feature"]
    status = subprocess.run(
        ["git", "status", "--porcelain"], cwd=repo, check=True, text=True, capture_output=True
    )
    assert status.stdout.strip() == ""

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    payload = json.loads(status_result.output)
    assert payload["tasks"] == {"total": 2, "done": 2, "pending": 0}
    assert payload["next_task"] is None
    assert payload["latest_record"]["status"] == "complete"
    assert payload["lock"] is None

    next_result = runner.invoke(cli, ["next"])
    assert "All tasks completed." in next_result.output


def test_run_respects_iteration_cap(repo: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "1"])

    assert result.exit_code == 0, result.output
    assert "Reached max iterations: 1" in result.output
    next_result = CliRunner().invoke(cli, ["next"])
    assert "- [ ] Second feature" in next_result.output


def test_failing_gate_keeps_task_pending(repo: Path) -> None:
    _set_gate(repo / "ralph.toml", "import sys; sys.exit(1)")

    result = CliRunner().invoke(cli, ["run", "2"])

    assert result.exit_code == 0, result.output
    assert result.output.count("blocked: check: FAIL") == 2
    assert "- [ ] First feature" in (repo / "IMPLEMENTATION_PLAN.md").read_text(encoding="utf-8")
    status = json.loads(CliRunner().invoke(cli, ["status"]).output)
    assert status["latest_record"]["status"] == "blocked"


def test_status_can_render_recent_records(repo: Path) -> None:
    CliRunner().invoke(cli, ["run", "1"])

    result = CliRunner().invoke(cli, ["status", "--log", "1"])

    assert result.exit_code == 0
    assert "## Iteration 1 (#2) - complete" in result.output


def test_confirm_decline_stops_the_loop(repo: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--confirm"], input="n\n")

    assert result.exit_code == 0, result.output
    assert "Stopped (declined)" in result.output
    assert "- [ ] First feature" in (repo / "IMPLEMENTATION_PLAN.md").read_text(encoding="utf-8")


def test_run_refuses_when_another_controller_holds_the_lock(repo: Path) -> None:
    SessionGuard(repo / ".ralph" / "session.lock").acquire("other-controller")

    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code != 0
    assert "locked by other-controller" in result.output


def test_run_requires_plan_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code != 0
    assert "IMPLEMENTATION_PLAN.md not found" in result.output


def test_run_creates_missing_guide(repo: Path) -> None:
    (repo / "AGENTS.md").unlink()

    result = CliRunner().invoke(cli, ["run", "1"])

    assert result.exit_code == 0, result.output
    assert "AGENTS.md not found. Creating default" in result.output
    assert (repo / "AGENTS.md").exists()


def test_malformed_plan_is_reported(repo: Path) -> None:
    (repo / "IMPLEMENTATION_PLAN.md").write_text("- [?] unclear\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code != 0
    assert "Unknown checkbox marker" in result.output
    assert not (repo / ".ralph" / "session.lock").exists()


def test_invalid_config_is_reported(repo: Path) -> None:
    (repo / "ralph.toml").write_text("[loop]\nmax_iteration = 3\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "Invalid config" in result.output


def test_validate_exit_code_follows_required_gates(repo: Path) -> None:
    passing = CliRunner().invoke(cli, ["validate"])
    assert passing.exit_code == 0, passing.output
    assert "All required gates passed." in passing.output

    _set_gate(repo / "ralph.toml", "import sys; sys.exit(1)")
    failing = CliRunner().invoke(cli, ["validate"])
    assert failing.exit_code != 0
    assert "Required gates failed: check" in failing.output


def test_worker_budget_outlasts_retries_and_fallback() -> None:
    settings = WorkerConfig(timeout_seconds=60.0, max_retries=1, retry_backoff_seconds=0.5)

    assert _worker_budget(settings) == 241.0
    single = WorkerConfig(primary="codex", fallback="codex", timeout_seconds=60.0, max_retries=0)
    assert _worker_budget(single) == 60.0
