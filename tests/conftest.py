from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from taskforge.memory.store import WorkspaceStore  # noqa: E402
from taskforge.tools.vcs import GitRepository  # noqa: E402


def run_git(root: Path, *cmd: str) -> str:
    """Run ``git`` in ``root`` and return stdout."""

    result = subprocess.run(
        ["git", *cmd],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


@dataclass(slots=True)
class GitWorkspace:
    """Fixture payload: a git repository plus a store living outside it."""

    root: Path
    repo: GitRepository
    store: WorkspaceStore

    def write(self, rel: str, content: str) -> Path:
        path = self.root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def read(self, rel: str) -> str:
        return (self.root / rel).read_text(encoding="utf-8")

    def commit_all(self, message: str) -> None:
        run_git(self.root, "add", "-A")
        run_git(self.root, "commit", "-m", message)


@pytest.fixture()
def git_repo(tmp_path: Path) -> GitRepository:
    """Create a git repository with one tracked file and an initial commit."""

    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    run_git(repo_root, "init")
    run_git(repo_root, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(repo_root, "config", "user.email", "agent@example.com")
    run_git(repo_root, "config", "user.name", "Taskforge Tests")
    run_git(repo_root, "config", "commit.gpgsign", "false")
    (repo_root / "src").mkdir()
    (repo_root / "src" / "app.txt").write_text("hello\n", encoding="utf-8")
    (repo_root / ".gitignore").write_text(".taskforge/\n", encoding="utf-8")
    run_git(repo_root, "add", ".")
    run_git(repo_root, "commit", "-m", "Initial commit")
    return GitRepository(repo_root)


@pytest.fixture()
def workspace(tmp_path: Path, git_repo: GitRepository) -> Iterator[GitWorkspace]:
    store = WorkspaceStore(tmp_path / "store" / "taskforge.sqlite")
    try:
        yield GitWorkspace(root=git_repo.root, repo=git_repo, store=store)
    finally:
        store.close()
