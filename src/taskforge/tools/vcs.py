"""Thin git CLI wrappers used by the branch choreography.

Every command failure raises :class:`GitError` carrying the captured output so
callers can classify it with :func:`classify_git_error` instead of matching
strings inline.
"""

from __future__ import annotations

import re
import subprocess
import tempfile
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Pattern, Sequence, Set


class GitErrorKind(str, Enum):
    """Closed set of failure classes recognised in git output."""

    NON_FAST_FORWARD = "non_fast_forward"
    PERMISSION = "permission"
    HOOK_FAILURE = "hook_failure"
    GPG_FAILURE = "gpg_failure"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"


# Checked in order; permission wins over non-fast-forward because protected
# branch rejections also contain "rejected".
_KIND_PATTERNS: tuple[tuple[GitErrorKind, Pattern[str]], ...] = (
    (
        GitErrorKind.PERMISSION,
        re.compile(
            r"protected branch|gh006|permission denied|not authorized|not allowed to push|access denied|\berror: 403\b|\bforbidden\b",
            re.IGNORECASE,
        ),
    ),
    (
        GitErrorKind.NON_FAST_FORWARD,
        re.compile(
            r"non-fast-forward|fetch first|rejected|not possible to fast-forward|divergent",
            re.IGNORECASE,
        ),
    ),
    (
        GitErrorKind.CONFLICT,
        re.compile(r"\bCONFLICT\b|automatic merge failed|fix conflicts|unmerged files", re.IGNORECASE),
    ),
    (
        GitErrorKind.GPG_FAILURE,
        re.compile(r"gpg|signing key|signing failed|gpg failed|no secret key", re.IGNORECASE),
    ),
    (
        GitErrorKind.HOOK_FAILURE,
        re.compile(r"hook|pre-commit|commit-msg|husky", re.IGNORECASE),
    ),
)


def classify_git_error(text: str) -> GitErrorKind:
    """Map raw git output onto a :class:`GitErrorKind`."""
    if not text:
        return GitErrorKind.UNKNOWN
    for kind, pattern in _KIND_PATTERNS:
        if pattern.search(text):
            return kind
    return GitErrorKind.UNKNOWN


def matches_git_error(text: str, kind: GitErrorKind) -> bool:
    """Return ``True`` when ``text`` carries the signature of ``kind``."""
    for candidate, pattern in _KIND_PATTERNS:
        if candidate is kind:
            return bool(text and pattern.search(text))
    return False


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""

    def __init__(
        self,
        message: str,
        *,
        args: Sequence[str] = (),
        stdout: str = "",
        stderr: str = "",
        returncode: int | None = None,
    ) -> None:
        super().__init__(message)
        self.command = tuple(args)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode

    @property
    def text(self) -> str:
        """Captured output used for classification; the message when git printed nothing."""
        output = " ".join(part.strip() for part in (self.stderr, self.stdout) if part.strip())
        return output or str(self)

    @property
    def kind(self) -> GitErrorKind:
        return classify_git_error(self.text)


def _decode(payload: bytes | None) -> str:
    return payload.decode("utf-8", errors="replace") if payload else ""


def _unquote_path(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def ensure_repo(cls, root: Path | str) -> "GitRepository":
        """Open the repository at ``root``, running ``git init`` when missing."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        if not (path / ".git").exists():
            process = subprocess.run(["git", "init"], cwd=path, capture_output=True, check=False)
            if process.returncode != 0:
                message = _decode(process.stderr).strip() or "unknown git error"
                raise GitError(f"git init failed: {message}", args=("init",), stderr=_decode(process.stderr))
        return cls(path)

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        process = subprocess.run(
            command,
            cwd=self.root,
            capture_output=True,
            text=False,
            check=False,
            timeout=timeout,
        )
        stdout = _decode(process.stdout)
        stderr = _decode(process.stderr)
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(
                f"git {' '.join(args)} failed: {message}",
                args=tuple(args),
                stdout=stdout,
                stderr=stderr,
                returncode=result.returncode,
            )
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    def ensure_identity(self, name: str = "taskforge", email: str = "taskforge@localhost") -> None:
        """Configure a local commit identity when none is resolvable."""

        for key, value in (("user.name", name), ("user.email", email)):
            probe = self._run_git(["config", "--get", key], check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                self._run_git(["config", "--local", key, value])

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            # Unborn branch: fall back to the symbolic ref.
            symbolic = self._run_git(["symbolic-ref", "--short", "HEAD"], check=False)
            branch = symbolic.stdout.strip()
            return branch or None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def branch_exists(self, branch: str) -> bool:
        result = self._run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return result.returncode == 0

    def has_commits(self) -> bool:
        return self._run_git(["rev-parse", "--verify", "HEAD"], check=False).returncode == 0

    def ensure_base_branch(self, base: str) -> None:
        """Create ``base`` from the current branch when it does not exist yet."""

        if self.branch_exists(base):
            return
        if not self.has_commits():
            self._run_git(["commit", "--allow-empty", "-m", "Initial commit"])
        current = self.current_branch()
        args: List[str] = ["branch", base]
        if current:
            args.append(current)
        self._run_git(args)

    def checkout_branch(self, branch: str) -> None:
        self._run_git(["checkout", branch])

    def create_or_checkout_branch(self, branch: str, base: str) -> None:
        if self.branch_exists(branch):
            self.checkout_branch(branch)
            return
        self._run_git(["checkout", "-b", branch, base])

    # ------------------------------------------------------------- repo status
    def status(self) -> str:
        """Return ``git status --porcelain`` output."""

        return self._run_git(["status", "--porcelain", "--untracked-files=all"]).stdout

    def status_entries(self) -> List[tuple[str, Path]]:
        """Return raw porcelain status entries as ``(status, path)`` pairs."""

        entries: List[tuple[str, Path]] = []
        for line in self.status().splitlines():
            if not line.strip():
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(_unquote_path(raw_path))))
        return entries

    def dirty_paths(self, *, ignore_prefixes: Iterable[str] = ()) -> List[str]:
        """Return POSIX paths with pending changes, minus ``ignore_prefixes``."""

        prefixes = tuple(prefix.rstrip("/") for prefix in ignore_prefixes if prefix)
        paths: Set[str] = set()
        for _, path in self.status_entries():
            posix = path.as_posix()
            if any(posix == prefix or posix.startswith(f"{prefix}/") for prefix in prefixes):
                continue
            paths.add(posix)
        return sorted(paths)

    def ensure_clean(self, *, ignore_prefixes: Iterable[str] = ()) -> None:
        """Raise :class:`GitError` if the working tree has pending changes."""

        dirty = self.dirty_paths(ignore_prefixes=ignore_prefixes)
        if dirty:
            raise GitError(f"Working tree dirty: {', '.join(dirty)}")

    def conflict_paths(self) -> List[str]:
        """Return paths left unmerged by a conflicting merge."""

        result = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
        return sorted({line.strip() for line in result.stdout.splitlines() if line.strip()})

    def last_commit_sha(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    # ---------------------------------------------------------------- commits
    def stage(self, paths: Sequence[str]) -> None:
        if not paths:
            return
        self._run_git(["add", "-A", "--", *paths])

    def staged_changes(self) -> bool:
        return self._run_git(["diff", "--cached", "--quiet"], check=False).returncode != 0

    def commit(self, message: str, *, no_verify: bool = False, no_gpg_sign: bool = False) -> str:
        """Commit the index and return the new ``HEAD`` sha."""

        args: List[str] = ["commit", "-m", message]
        if no_verify:
            args.append("--no-verify")
        if no_gpg_sign:
            args.append("--no-gpg-sign")
        self._run_git(args)
        return self.last_commit_sha()

    def merge(self, source: str, target: str) -> None:
        """Check out ``target`` and merge ``source`` into it."""

        self.checkout_branch(target)
        self._run_git(["merge", "--no-edit", source])

    def abort_merge(self) -> bool:
        """Abort an in-progress merge; returns ``False`` when none was active."""

        result = self._run_git(["merge", "--abort"], check=False)
        return result.returncode == 0

    # ----------------------------------------------------------- diff helpers
    def apply_patch(self, patch: str, *, check_only: bool = False) -> None:
        """Apply ``patch`` with ``git apply`` via a temporary file."""

        text = patch if patch.endswith("\n") else f"{patch}\n"
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", suffix=".patch", delete=False) as handle:
            handle.write(text)
            temp_path = Path(handle.name)
        try:
            args: List[str] = ["apply", "--whitespace=nowarn"]
            if check_only:
                args.append("--check")
            args.append(str(temp_path))
            self._run_git(args)
        finally:
            temp_path.unlink(missing_ok=True)

    # -------------------------------------------------------------- remotes
    def has_remote(self, name: str | None = None) -> bool:
        result = self._run_git(["remote"], check=False)
        if result.returncode != 0:
            return False
        remotes = {line.strip() for line in result.stdout.splitlines() if line.strip()}
        if name is None:
            return bool(remotes)
        return name in remotes

    def push(
        self,
        remote: str,
        branch: str,
        *,
        set_upstream: bool = False,
        force: bool = False,
    ) -> None:
        """Push ``branch`` to ``remote`` applying requested flags."""

        args: List[str] = ["push"]
        if set_upstream:
            args.append("-u")
        if force:
            args.append("--force-with-lease")
        args.extend([remote, branch])
        self._run_git(args)

    def pull(self, remote: str, branch: str, *, ff_only: bool = True) -> None:
        args: List[str] = ["pull"]
        args.append("--ff-only" if ff_only else "--no-rebase")
        args.extend([remote, branch])
        self._run_git(args)


__all__ = [
    "GitError",
    "GitErrorKind",
    "GitRepository",
    "classify_git_error",
    "matches_git_error",
]
