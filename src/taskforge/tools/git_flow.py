"""Branch lifecycle for task attempts: prepare, commit, merge back, push."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence

from ..telemetry import emit_event
from .vcs import GitError, GitErrorKind, GitRepository, matches_git_error

LOGGER = logging.getLogger(__name__)

AUTO_COMMIT_MESSAGE = "[taskforge] auto-commit workspace changes"

GitFlowLog = Callable[[str, Dict[str, Any]], None]


class CommitError(RuntimeError):
    """Raised when a commit still fails after the bypass retry."""


class MergeConflictError(RuntimeError):
    """Raised when merging a task branch back into base conflicts."""

    def __init__(self, source: str, target: str, conflicts: Sequence[str]) -> None:
        self.source = source
        self.target = target
        self.conflicts = list(conflicts)
        listed = ", ".join(self.conflicts) or "unknown paths"
        super().__init__(f"Merge conflict merging {source} into {target}: {listed}")


@dataclass(slots=True)
class BranchInfo:
    branch: str
    base: str
    merge_conflicts: List[str] = field(default_factory=list)
    remote_sync_note: str | None = None


@dataclass(slots=True)
class PushOutcome:
    pushed: bool
    skipped: bool = False
    reason: str | None = None


def _remote_sync_note(branch: str, remote: str) -> str:
    return (
        f"Remote task branch {branch} is ahead/diverged. Sync it with {remote} (pull/rebase or merge) "
        "and resolve conflicts before continuing task work."
    )


class GitChoreographer:
    """Drive the branch, commit, merge and push sequence for task attempts."""

    def __init__(
        self,
        repo: GitRepository,
        *,
        state_dir: str = ".taskforge",
        remote: str = "origin",
        branch_prefix: str = "taskforge/task/",
        log: GitFlowLog | None = None,
    ) -> None:
        self.repo = repo
        self.state_dir = state_dir.strip("/")
        self.remote = remote
        self.branch_prefix = branch_prefix
        self._log = log
        self.warnings: List[str] = []

    # ------------------------------------------------------------ reporting
    def _report(self, message: str, **details: Any) -> None:
        LOGGER.info(message)
        if self._log is not None:
            self._log(message, details)

    def _warn(self, message: str, **details: Any) -> None:
        LOGGER.warning(message)
        self.warnings.append(message)
        if self._log is not None:
            self._log(message, details)

    # --------------------------------------------------------------- helpers
    def branch_name(self, task_key: str) -> str:
        return f"{self.branch_prefix}{task_key}"

    def has_remote(self) -> bool:
        return self.repo.has_remote(self.remote)

    def dirty_paths(self) -> List[str]:
        return self.repo.dirty_paths(ignore_prefixes=[self.state_dir])

    # -------------------------------------------------------------- commits
    def commit_with_recovery(self, message: str) -> str:
        """Commit the index, retrying once with hook/signing bypass when those fail."""

        try:
            return self.repo.commit(message)
        except GitError as error:
            text = error.text
            hook_failure = matches_git_error(text, GitErrorKind.HOOK_FAILURE)
            gpg_failure = matches_git_error(text, GitErrorKind.GPG_FAILURE)
            if not (hook_failure or gpg_failure):
                raise
            guidance = []
            if hook_failure:
                guidance.append("Commit hook failed; run hooks manually or configure a bypass if policy allows.")
            if gpg_failure:
                guidance.append("GPG signing failed; configure a signing key or disable commit.gpgsign for this repo.")
            self._warn(f"Commit failed; retrying with bypass flags. {' '.join(guidance)}", error=text)
            try:
                sha = self.repo.commit(message, no_verify=hook_failure, no_gpg_sign=gpg_failure)
            except GitError as retry_error:
                raise CommitError(f"Commit failed after retry: {retry_error.text}") from retry_error
            emit_event("commit_bypass", hook=hook_failure, gpg=gpg_failure, sha=sha)
            self._report("Commit succeeded after bypassing hook/signing checks.")
            return sha

    def commit_changes(self, message: str, *, fallback_paths: Sequence[str] = ()) -> str | None:
        """Stage pending work outside the state dir and commit it when the index is non-empty."""

        dirty = self.dirty_paths()
        to_stage = dirty or list(fallback_paths) or ["."]
        self.repo.stage(to_stage)
        if not self.repo.staged_changes():
            return None
        return self.commit_with_recovery(message)

    def commit_pending_changes(self, task_key: str, title: str, reason: str) -> str | None:
        """Safety-net commit of whatever the attempt left behind."""

        dirty = self.dirty_paths()
        if not dirty:
            return None
        self.repo.stage(dirty)
        if not self.repo.staged_changes():
            return None
        sha = self.commit_with_recovery(f"[{task_key}] {title} ({reason})")
        self._report(f"Auto-committed pending changes ({reason})", head=sha)
        return sha

    # ------------------------------------------------------------- branches
    def checkout_base_branch(self, base: str) -> None:
        """Switch to ``base``, committing stray work first and refusing a dirty tree."""

        self.repo.ensure_base_branch(base)
        stray = self.dirty_paths()
        if stray:
            self.repo.stage(stray)
            if self.repo.staged_changes():
                self.commit_with_recovery(AUTO_COMMIT_MESSAGE)
                self._report("Auto-committed stray workspace changes", paths=stray)
        remaining = self.dirty_paths()
        if remaining:
            raise GitError(f"Working tree dirty: {', '.join(remaining)}", args=("status",))
        if self.repo.current_branch() != base:
            self.repo.checkout_branch(base)

    def ensure_branches(self, task_key: str, base: str) -> BranchInfo:
        """Prepare the task branch on top of a refreshed ``base``."""

        branch = self.branch_name(task_key)
        info = BranchInfo(branch=branch, base=base)
        self.checkout_base_branch(base)
        has_remote = self.has_remote()
        if has_remote:
            try:
                self.repo.pull(self.remote, base, ff_only=True)
            except GitError as error:
                self._warn(
                    f"Failed to pull {base} from {self.remote}; continuing with local base.",
                    error=error.text,
                )

        if not self.repo.branch_exists(branch):
            self.repo.create_or_checkout_branch(branch, base)
            return info

        self.repo.checkout_branch(branch)
        dirty = self.dirty_paths()
        if dirty:
            raise GitError(f"Task branch {branch} has uncommitted changes: {', '.join(dirty)}", args=("status",))
        if has_remote:
            try:
                self.repo.pull(self.remote, branch, ff_only=True)
            except GitError as error:
                self._warn(
                    f"Failed to pull {branch} from {self.remote}; continuing with local branch.",
                    error=error.text,
                )
                if error.kind is GitErrorKind.NON_FAST_FORWARD:
                    info.remote_sync_note = _remote_sync_note(branch, self.remote)
        try:
            self.repo.merge(base, branch)
        except GitError as error:
            conflicts = self.repo.conflict_paths()
            if not conflicts and error.kind is not GitErrorKind.CONFLICT:
                raise
            self.repo.abort_merge()
            info.merge_conflicts = conflicts
            self._warn(f"Merge conflicts detected while merging {base} into {branch}.", conflicts=conflicts)
        return info

    def merge_back(self, info: BranchInfo) -> None:
        """Merge the task branch into its base; conflicts abort the merge and raise."""

        try:
            self.repo.merge(info.branch, info.base)
        except GitError as error:
            conflicts = self.repo.conflict_paths()
            if not conflicts and error.kind is not GitErrorKind.CONFLICT:
                raise
            self.repo.abort_merge()
            emit_event("merge_conflict", source=info.branch, target=info.base, conflicts=conflicts)
            raise MergeConflictError(info.branch, info.base, conflicts) from error
        self._report(f"Merged {info.branch} into {info.base}")

    # ---------------------------------------------------------------- push
    def _permission_skip(self, branch: str, text: str, *, after_sync: bool) -> PushOutcome:
        when = " after sync" if after_sync else ""
        self._warn(
            f"Remote rejected push for {branch}{when} due to permissions or branch protection; "
            "continuing with local commits.",
            error=text,
        )
        emit_event("push_skipped", branch=branch, reason="permission", after_sync=after_sync)
        return PushOutcome(pushed=False, skipped=True, reason="permission")

    def push_with_recovery(self, branch: str) -> PushOutcome:
        """Push ``branch``; pull-and-retry once on non-fast-forward, skip on permission errors."""

        try:
            self.repo.push(self.remote, branch)
            emit_event("push_succeeded", branch=branch)
            return PushOutcome(pushed=True)
        except GitError as error:
            kind = error.kind
            if kind is GitErrorKind.PERMISSION:
                return self._permission_skip(branch, error.text, after_sync=False)
            if kind is not GitErrorKind.NON_FAST_FORWARD:
                raise
            self._report(f"Non-fast-forward push rejected for {branch}; attempting to pull and retry.", error=error.text)

        original = self.repo.current_branch()
        switched = bool(original) and original != branch
        if switched:
            self.repo.ensure_clean(ignore_prefixes=[self.state_dir])
            self.repo.checkout_branch(branch)
        try:
            self.repo.pull(self.remote, branch, ff_only=False)
            self.repo.push(self.remote, branch)
        except GitError as retry_error:
            if retry_error.kind is GitErrorKind.PERMISSION:
                return self._permission_skip(branch, retry_error.text, after_sync=True)
            raise GitError(
                f"Non-fast-forward push rejected for {branch}; retry after pull failed: {retry_error.text}",
                args=retry_error.command,
                stdout=retry_error.stdout,
                stderr=retry_error.stderr,
                returncode=retry_error.returncode,
            ) from retry_error
        finally:
            if switched and original:
                self.repo.checkout_branch(original)
        emit_event("push_recovered", branch=branch)
        self._report(f"Push recovered after syncing {branch} from {self.remote}.")
        return PushOutcome(pushed=True)


__all__ = [
    "AUTO_COMMIT_MESSAGE",
    "BranchInfo",
    "CommitError",
    "GitChoreographer",
    "MergeConflictError",
    "PushOutcome",
]
