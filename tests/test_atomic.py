import os
import stat
from pathlib import Path

from ralph_mode.atomic import atomic_write_text


def test_replacement_keeps_existing_mode(tmp_path: Path) -> None:
    target = tmp_path / "progress.jsonl"
    target.write_text("old\n", encoding="utf-8")
    target.chmod(0o640)

    atomic_write_text(target, "new\n")

    assert target.read_text(encoding="utf-8") == "new\n"
    assert stat.S_IMODE(target.stat().st_mode) == 0o640


def test_new_file_gets_umask_default_mode(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "plan.md"
    previous = os.umask(0o022)
    try:
        atomic_write_text(target, "content\n")
    finally:
        os.umask(previous)

    assert target.read_text(encoding="utf-8") == "content\n"
    assert stat.S_IMODE(target.stat().st_mode) == 0o644


def test_no_temp_files_are_left_behind(tmp_path: Path) -> None:
    target = tmp_path / "plan.md"

    atomic_write_text(target, "one\n")
    atomic_write_text(target, "two\n")

    assert [path.name for path in tmp_path.iterdir()] == ["plan.md"]
