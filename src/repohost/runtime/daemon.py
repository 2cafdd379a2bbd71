from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError


class SupervisorState(str, Enum):
    """Classification of supervisor metadata/liveness state."""

    ABSENT = "absent"
    RUNNING = "running"
    STALE = "stale"


class SupervisorMetadata(BaseModel):
    """Persisted supervisor liveness metadata, rewritten whenever the child is (re)started."""

    pid: int = Field(gt=0)
    child_pid: Optional[int] = Field(default=None, gt=0)
    revision: str
    release_path: str
    started_at: str


class SupervisorProbeResult(BaseModel):
    """Result payload from probing supervisor metadata/liveness."""

    state: SupervisorState
    metadata: SupervisorMetadata | None = None
    metadata_path: str
    child_alive: bool = False
    reason: str


def write_supervisor_metadata(metadata_file: Path, metadata: SupervisorMetadata) -> Path:
    """Persist supervisor metadata, replacing any previous file atomically."""
    metadata_file.parent.mkdir(parents=True, exist_ok=True)
    staging = metadata_file.with_name(f".{metadata_file.name}.{os.getpid()}.tmp")
    staging.write_text(metadata.model_dump_json(indent=2), encoding="utf-8")
    os.replace(staging, metadata_file)
    return metadata_file


def clear_supervisor_metadata(metadata_file: Path) -> bool:
    """Remove supervisor metadata and return whether anything was removed."""
    if metadata_file.exists():
        metadata_file.unlink()
        return True
    return False


def is_process_alive(pid: int) -> bool:
    """Return True when a process id appears to be alive on this host."""
    if pid <= 0:
        return False

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False

    return True


def probe_supervisor_state(metadata_file: Path) -> SupervisorProbeResult:
    """Classify supervisor state as absent, running, or stale."""
    if not metadata_file.exists():
        return SupervisorProbeResult(
            state=SupervisorState.ABSENT,
            metadata=None,
            metadata_path=str(metadata_file),
            reason="Supervisor metadata file not found.",
        )

    try:
        payload = json.loads(metadata_file.read_text(encoding="utf-8"))
        metadata = SupervisorMetadata.model_validate(payload)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        return SupervisorProbeResult(
            state=SupervisorState.STALE,
            metadata=None,
            metadata_path=str(metadata_file),
            reason=f"Invalid supervisor metadata payload: {exc}",
        )

    child_alive = metadata.child_pid is not None and is_process_alive(metadata.child_pid)

    if not is_process_alive(metadata.pid):
        return SupervisorProbeResult(
            state=SupervisorState.STALE,
            metadata=metadata,
            metadata_path=str(metadata_file),
            child_alive=child_alive,
            reason=f"Supervisor process pid={metadata.pid} is not alive.",
        )

    return SupervisorProbeResult(
        state=SupervisorState.RUNNING,
        metadata=metadata,
        metadata_path=str(metadata_file),
        child_alive=child_alive,
        reason="Supervisor process is alive.",
    )
