"""Apply extracted agent changes to the working tree."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Sequence

from ..telemetry import emit_event
from .extract import FileBlock
from .patch import (
    PatchError,
    build_replacement_diff,
    is_add_segment,
    is_placeholder_patch,
    normalize_patch,
    parse_added_file_contents,
    split_patch_into_diffs,
    touched_files,
    validate_patch_paths,
)
from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)


class ScopeViolationError(RuntimeError):
    """Raised when changes land outside the task's declared file scope."""

    def __init__(self, violations: Sequence[str]) -> None:
        self.violations = list(violations)
        super().__init__(f"Changes outside allowed files: {', '.join(self.violations)}")


@dataclass(slots=True)
class ApplyResult:
    """Outcome of applying patches or file blocks."""

    touched: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: str | None = None
    applied_count: int = 0

    def add_touched(self, path: str) -> None:
        if path not in self.touched:
            self.touched.append(path)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class ScopeCheck:
    ok: bool
    violations: List[str] = field(default_factory=list)

    def raise_for_violations(self) -> None:
        if not self.ok:
            raise ScopeViolationError(self.violations)


# ---------------------------------------------------------------- helpers
def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def _normalise_rel(raw: str) -> str:
    text = raw.strip().replace("\\", "/")
    while text.startswith("./"):
        text = text[2:]
    return text.rstrip("/")


def _safe_target(root: Path, raw: str) -> Path | None:
    """Resolve ``raw`` under ``root``; ``None`` when it escapes or hits ``.git``."""
    rel = _normalise_rel(raw)
    if not rel or Path(rel).is_absolute():
        return None
    candidate = (root / rel).resolve()
    try:
        relative = candidate.relative_to(root)
    except ValueError:
        return None
    if relative.parts and relative.parts[0] == ".git":
        return None
    return candidate


def _write_file(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _prepare_segment(segment: str, root: Path, result: ApplyResult, *, dry_run: bool) -> str | None:
    """Return the segment to hand to git, or ``None`` when it is an idempotent no-op."""
    if not is_add_segment(segment):
        return segment
    additions = parse_added_file_contents(segment)
    for rel, desired in additions.items():
        target = root / rel
        if not target.exists():
            if not dry_run:
                target.parent.mkdir(parents=True, exist_ok=True)
            continue
        current = _read_text(target)
        if current == desired:
            result.warnings.append(f"Skipped no-op add for {rel}: content already present")
            emit_event("patch_skipped", path=rel, reason="no-op")
            return None
        LOGGER.info("Downgrading add of existing file %s to a full replacement", rel)
        return build_replacement_diff(rel, current, desired)
    return segment


# ------------------------------------------------------------------ patches
def apply_patches(patches: Iterable[str], root: Path | str, *, dry_run: bool = False) -> ApplyResult:
    """Normalize and apply ``patches`` one diff segment at a time."""

    root_path = Path(root).resolve()
    repo = GitRepository(root_path)
    result = ApplyResult()
    failures: List[str] = []

    for patch in patches:
        if not patch or not patch.strip():
            continue
        if is_placeholder_patch(patch):
            result.warnings.append("Skipped patch containing placeholder content")
            emit_event("patch_skipped", reason="placeholder")
            continue
        normalized = normalize_patch(patch, root=root_path)
        for segment in split_patch_into_diffs(normalized):
            paths = touched_files(segment)
            label = ", ".join(paths) or "<unknown>"
            try:
                validate_patch_paths(paths)
            except PatchError as exc:
                failures.append(str(exc))
                result.warnings.append(f"Rejected patch segment for {label}: {exc}")
                emit_event("patch_validation_failed", paths=paths, reason=str(exc))
                continue

            prepared = _prepare_segment(segment, root_path, result, dry_run=dry_run)
            if prepared is None:
                result.applied_count += 1
                for path in paths:
                    result.add_touched(path)
                continue

            try:
                repo.apply_patch(prepared, check_only=dry_run)
            except GitError as exc:
                if dry_run or not is_add_segment(prepared):
                    message = exc.text.strip() or str(exc)
                    failures.append(f"{label}: {message}")
                    result.warnings.append(f"Patch segment for {label} failed to apply: {message}")
                    emit_event("patch_apply_failed", paths=paths, error=message)
                    continue
                for rel, content in parse_added_file_contents(prepared).items():
                    _write_file(root_path / rel, content)
                result.warnings.append(f"Wrote {label} directly after git apply rejected the add")
                emit_event("patch_apply_fallback", paths=paths)
            else:
                emit_event("patch_apply_succeeded", paths=paths, dry_run=dry_run)

            result.applied_count += 1
            for path in paths:
                result.add_touched(path)

    if result.applied_count == 0 and failures:
        result.error = "; ".join(failures)
    return result


# -------------------------------------------------------------- file blocks
def apply_file_blocks(
    blocks: Iterable[FileBlock],
    root: Path | str,
    *,
    dry_run: bool = False,
    allow_noop: bool = True,
    allow_overwrite: bool = False,
    covered_paths: Iterable[str] = (),
) -> ApplyResult:
    """Write whole-file blocks, never outside ``root`` and never over patched paths."""

    root_path = Path(root).resolve()
    covered = {_normalise_rel(path) for path in covered_paths}
    result = ApplyResult()
    failures: List[str] = []

    for block in blocks:
        target = _safe_target(root_path, block.path)
        if target is None:
            failures.append(f"{block.path}: outside workspace")
            result.warnings.append(f"Rejected FILE block outside workspace: {block.path}")
            emit_event("file_block_rejected", path=block.path, reason="outside_workspace")
            continue
        rel = target.relative_to(root_path).as_posix()
        if rel in covered:
            result.warnings.append(f"Skipped FILE block for {rel}: already changed by a patch")
            continue

        if target.exists():
            current = _read_text(target)
            if current == block.content and allow_noop:
                result.applied_count += 1
                result.add_touched(rel)
                continue
            if not (allow_overwrite and block.content.strip()):
                failures.append(f"{rel}: file exists")
                result.warnings.append(f"Refused to overwrite existing file {rel}")
                emit_event("file_block_rejected", path=rel, reason="exists")
                continue
            LOGGER.warning("Overwriting %s from FILE block", rel)
            emit_event("file_block_overwrite", path=rel, dry_run=dry_run)

        if not dry_run:
            _write_file(target, block.content)
            emit_event("file_block_written", path=rel)
        result.applied_count += 1
        result.add_touched(rel)

    if result.applied_count == 0 and failures:
        result.error = "; ".join(failures)
    return result


# ------------------------------------------------------------------- scope
def _in_scope(path: str, allowed: Sequence[str]) -> bool:
    for entry in allowed:
        if path == entry or path.startswith(f"{entry}/"):
            return True
    return False


def validate_scope(allowed_files: Iterable[str] | None, touched: Iterable[str]) -> ScopeCheck:
    """Check that every touched path sits inside ``allowed_files``."""

    allowed = [entry for entry in (_normalise_rel(item) for item in allowed_files or ()) if entry]
    if not allowed:
        return ScopeCheck(ok=True)
    violations = sorted({_normalise_rel(path) for path in touched if not _in_scope(_normalise_rel(path), allowed)})
    return ScopeCheck(ok=not violations, violations=violations)


__all__ = [
    "ApplyResult",
    "ScopeCheck",
    "ScopeViolationError",
    "apply_file_blocks",
    "apply_patches",
    "validate_scope",
]
