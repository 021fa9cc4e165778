import tomllib
from pathlib import Path

import pytest

from ralph_mode import __version__
from ralph_mode.config import (
    DEFAULT_GUIDE,
    GateConfig,
    RalphConfig,
    dumps_toml,
    gates_from_guide,
    load_config,
    resolve_gate_configs,
    save_config,
)


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "ralph.toml"
    config = RalphConfig.default()
    config.project.name = "ralph-test"
    config.project.plan_file = "PLAN.md"
    config.loop.max_iterations = 7
    config.loop.auto_approve = False
    config.loop.commit_before_done = True
    config.worker.primary = "codex"
    config.worker.fallback = "claude"
    config.worker.max_retries = 3
    config.validation.fail_fast = True
    config.session.liveness_seconds = 90.0
    config.gates = [
        GateConfig(name="tests", command="pytest -q", timeout_seconds=120.0),
        GateConfig(name="review", kind="judge", criteria="No TODOs left", required=False),
    ]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "ralph-test"
    assert loaded.project.plan_file == "PLAN.md"
    assert loaded.loop.max_iterations == 7
    assert loaded.loop.auto_approve is False
    assert loaded.loop.commit_before_done is True
    assert loaded.worker.primary == "codex"
    assert loaded.worker.max_retries == 3
    assert loaded.validation.fail_fast is True
    assert loaded.session.liveness_seconds == 90.0
    assert loaded.gates[0] == GateConfig(name="tests", command="pytest -q", timeout_seconds=120.0)
    assert loaded.gates[1].kind == "judge"
    assert loaded.gates[1].required is False


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(RalphConfig.default())

    for section in ("[project]", "[loop]", "[worker]", "[validation]", "[session]"):
        assert section in rendered
    assert "heartbeat_interval_seconds = 30.0" in rendered
    assert "[[gates]]" not in rendered
    tomllib.loads(rendered)


def test_missing_config_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.project.plan_file == "IMPLEMENTATION_PLAN.md"
    assert config.loop.auto_approve is True
    assert config.gates == []


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "ralph.toml"
    config_path.write_text("[loop]\nmax_iteration = 3\n", encoding="utf-8")

    with pytest.raises(TypeError):
        load_config(config_path)


def test_default_guide_yields_validation_gates() -> None:
    gates = gates_from_guide(DEFAULT_GUIDE)

    assert [gate.command for gate in gates] == [
        "npm run test",
        "npm run typecheck",
        "npm run lint",
    ]
    assert [gate.name for gate in gates] == ["test", "typecheck", "lint"]
    assert all(gate.required for gate in gates)


def test_guide_parser_handles_bullets_code_spans_and_duplicates() -> None:
    guide = """# Ops

## Build
make build

## Validation
Run these before marking anything done:
- `pytest -q tests/unit`
- `pytest -q tests/integration`
```
ruff check .   # lint
```
> quoted hints are skipped
"""

    gates = gates_from_guide(guide)

    assert [gate.command for gate in gates] == [
        "pytest -q tests/unit",
        "pytest -q tests/integration",
        "ruff check .",
    ]
    assert [gate.name for gate in gates] == ["pytest", "pytest-2", "ruff"]


def test_configured_gates_take_precedence_over_guide(tmp_path: Path) -> None:
    (tmp_path / "AGENTS.md").write_text(DEFAULT_GUIDE, encoding="utf-8")
    config = RalphConfig.default()

    assert len(resolve_gate_configs(config, tmp_path)) == 3

    config.gates = [GateConfig(name="only", command="true")]
    assert [gate.name for gate in resolve_gate_configs(config, tmp_path)] == ["only"]


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
