from __future__ import annotations

import hashlib
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

Snapshot = dict[str, str]

HEAD_KEY = "\0HEAD"
SKIPPED_DIRECTORIES = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache"}


class WorkingTree:
    """Fingerprints of modified files, used to tell what a worker touched.

    In a git checkout only paths reported by ``git status`` are hashed; outside
    git every file under the root is fingerprinted by size and mtime.
    """

    def __init__(self, root: Path, *, ignored: list[Path] | None = None) -> None:
        self.root = root.resolve()
        self.ignored = [self._relative(path) for path in (ignored or [])]
        self._git_enabled = self._is_git_repo()

    @property
    def git_enabled(self) -> bool:
        return self._git_enabled

    def _relative(self, path: Path) -> str:
        candidate = path if path.is_absolute() else self.root / path
        try:
            return candidate.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return candidate.as_posix()

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise RuntimeError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _is_ignored(self, relative: str) -> bool:
        for prefix in self.ignored:
            if relative == prefix or relative.startswith(f"{prefix.rstrip('/')}/"):
                return True
        return False

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        return candidate.strip('"')

    def _fingerprint(self, relative: str) -> str:
        path = self.root / relative
        if not path.exists():
            return "deleted"
        if path.is_dir():
            return "directory"
        digest = hashlib.sha1()
        with path.open("rb") as handle:
            for block in iter(lambda: handle.read(65536), b""):
                digest.update(block)
        return digest.hexdigest()

    def dirty_paths(self) -> list[str]:
        if not self.git_enabled:
            return []
        proc = self.run_git(["status", "--porcelain", "--untracked-files=all"], check=True)
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            path = self._status_line_path(line)
            if path and not self._is_ignored(path):
                paths.append(path)
        return paths

    def head_revision(self) -> str | None:
        if not self.git_enabled:
            return None
        proc = self.run_git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        return proc.stdout.strip() or None

    def snapshot(self) -> Snapshot:
        if self.git_enabled:
            dirty = {path: self._fingerprint(path) for path in self.dirty_paths()}
            dirty[HEAD_KEY] = self.head_revision() or ""
            return dirty

        fingerprints: Snapshot = {}
        for directory, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [name for name in dirnames if name not in SKIPPED_DIRECTORIES]
            for filename in filenames:
                relative = (Path(directory) / filename).relative_to(self.root).as_posix()
                if self._is_ignored(relative):
                    continue
                stat = (Path(directory) / filename).stat()
                fingerprints[relative] = f"{stat.st_size}:{stat.st_mtime_ns}"
        return fingerprints

    def changed_since(self, before: Snapshot) -> set[str]:
        after = self.snapshot()
        changed = {path for path, value in after.items() if before.get(path) != value}
        # Dirty before and clean now: the worker reverted or removed it.
        changed.update(path for path in before if path not in after)
        changed.discard(HEAD_KEY)
        old_head = before.get(HEAD_KEY)
        new_head = after.get(HEAD_KEY)
        if old_head and new_head and old_head != new_head:
            # The worker committed on its own; count what those commits touched.
            proc = self.run_git(["diff", "--name-only", old_head, new_head], check=False)
            changed.update(
                line.strip()
                for line in proc.stdout.splitlines()
                if line.strip() and not self._is_ignored(line.strip())
            )
        return changed

    def diff_text(self, limit: int = 20000) -> str:
        if not self.git_enabled:
            return ""
        proc = self.run_git(["diff", "HEAD", "--stat", "--patch"], check=False)
        if proc.returncode != 0:
            proc = self.run_git(["diff", "--stat", "--patch"], check=False)
        return proc.stdout[:limit]


@dataclass(slots=True)
class CommitResult:
    ok: bool
    revision: str | None = None
    message: str = ""


class GitCommitter:
    """Commit collaborator: stages the whole tree and commits it."""

    def __init__(self, working_tree: WorkingTree) -> None:
        self.working_tree = working_tree

    def commit(self, message: str) -> CommitResult:
        if not self.working_tree.git_enabled:
            return CommitResult(ok=False, message="Working tree is not a git repository.")
        add = self.working_tree.run_git(["add", "-A"], check=False)
        if add.returncode != 0:
            return CommitResult(ok=False, message=add.stderr.strip() or add.stdout.strip())
        proc = self.working_tree.run_git(["commit", "-m", message], check=False)
        if proc.returncode != 0:
            output = proc.stdout.strip() or proc.stderr.strip()
            logger.warning("git commit failed: %s", output)
            return CommitResult(ok=False, message=output)
        revision = self.working_tree.run_git(["rev-parse", "HEAD"], check=False).stdout.strip()
        return CommitResult(ok=True, revision=revision or None, message=message)
