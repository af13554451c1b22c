"""Tool integrations used by the task phase machine."""

from .applier import ApplyResult, ScopeCheck, ScopeViolationError, apply_file_blocks, apply_patches, validate_scope
from .extract import ExtractedChange, FileBlock, extract_changes
from .git_flow import BranchInfo, CommitError, GitChoreographer, MergeConflictError, PushOutcome
from .patch import PatchError, normalize_patch
from .test_runner import (
    MAX_TEST_ATTEMPTS,
    TestRequirements,
    TestRunOutcome,
    TestRunResult,
    format_failure_summary,
    resolve_test_commands,
    run_test_commands,
)
from .vcs import GitError, GitErrorKind, GitRepository, classify_git_error
from .work_state import WorkStateEntry, load_work_state, write_work_checkpoint

__all__ = [
    "ApplyResult",
    "BranchInfo",
    "CommitError",
    "ExtractedChange",
    "FileBlock",
    "GitChoreographer",
    "GitError",
    "GitErrorKind",
    "GitRepository",
    "MAX_TEST_ATTEMPTS",
    "MergeConflictError",
    "PatchError",
    "PushOutcome",
    "ScopeCheck",
    "ScopeViolationError",
    "TestRequirements",
    "TestRunOutcome",
    "TestRunResult",
    "WorkStateEntry",
    "apply_file_blocks",
    "apply_patches",
    "classify_git_error",
    "extract_changes",
    "format_failure_summary",
    "load_work_state",
    "normalize_patch",
    "resolve_test_commands",
    "run_test_commands",
    "validate_scope",
    "write_work_checkpoint",
]
