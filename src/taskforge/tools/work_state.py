"""Per-job work checkpoint file under ``<state_dir>/jobs/<job_id>/work/state.json``."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping

__all__ = ["WorkStateEntry", "load_work_state", "work_state_path", "write_work_checkpoint"]


@dataclass(slots=True)
class WorkStateEntry:
    """In-memory view of a job's checkpoint file."""

    path: Path
    payload: Mapping[str, Any]

    @property
    def job_id(self) -> str | None:
        candidate = self.payload.get("job_id")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
        return None

    @property
    def checkpoints(self) -> List[Mapping[str, Any]]:
        value = self.payload.get("checkpoints")
        if isinstance(value, list):
            return [entry for entry in value if isinstance(entry, Mapping)]
        return []

    @property
    def last_stage(self) -> str | None:
        value = self.payload.get("last_stage")
        return value if isinstance(value, str) else None

    def stages(self) -> List[str]:
        return [str(entry.get("stage")) for entry in self.checkpoints]


def work_state_path(state_dir: Path | str, job_id: str) -> Path:
    return Path(state_dir) / "jobs" / job_id / "work" / "state.json"


def load_work_state(state_dir: Path | str, job_id: str) -> WorkStateEntry:
    """Load the checkpoint file, returning an empty entry when none exists."""
    path = work_state_path(state_dir, job_id).resolve()
    if not path.is_file():
        return WorkStateEntry(path=path, payload={"job_id": job_id, "checkpoints": []})
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return WorkStateEntry(path=path, payload=payload)


def write_work_checkpoint(
    state_dir: Path | str,
    job_id: str,
    stage: str,
    details: Mapping[str, Any] | None = None,
) -> WorkStateEntry:
    """Append ``stage`` to the job's checkpoint file and rewrite it atomically."""
    entry = load_work_state(state_dir, job_id)
    payload = dict(entry.payload)
    timestamp = datetime.now(timezone.utc).isoformat()
    checkpoints = list(entry.checkpoints)
    checkpoints.append({"stage": stage, "timestamp": timestamp, "details": dict(details or {})})
    payload.update({"job_id": job_id, "checkpoints": checkpoints, "last_stage": stage, "updated_at": timestamp})

    path = entry.path
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(".json.tmp")
    temp_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    os.replace(temp_path, path)
    return WorkStateEntry(path=path, payload=payload)
