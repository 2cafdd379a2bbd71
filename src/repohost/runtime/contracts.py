from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ProcessState(str, Enum):
    """Lifecycle states of the supervised child process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ProcessEvent(str, Enum):
    """Events that drive process state transitions."""

    LAUNCH = "launch"
    LAUNCHED = "launched"
    LAUNCH_FAILED = "launch_failed"
    TERMINATE = "terminate"
    EXITED = "exited"


class CycleOutcome(str, Enum):
    """What one supervisor loop cycle did."""

    RESTARTED = "restarted"
    RESTART_SKIPPED = "restart_skipped"
    FETCH_FAILED = "fetch_failed"
    UNCHANGED = "unchanged"
    DEPLOYED = "deployed"
    BUILD_FAILED = "build_failed"
    SKIPPED_FAILED_REVISION = "skipped_failed_revision"
    CANCELLED = "cancelled"


class CycleResult(BaseModel):
    """Result payload for a single supervisor loop cycle."""

    model_config = ConfigDict(extra="forbid")

    outcome: CycleOutcome
    revision: Optional[str] = None
    message: str = ""


def transition_process_state(current: ProcessState, event: ProcessEvent) -> ProcessState:
    """Compute the next process state for a given event.

    Stopped -> Starting -> Running -> Stopping -> Stopped is the normal cycle.
    A relaunch is allowed while a previous stop is still settling, and an exit
    observed from any live state lands in Stopped.
    Invalid transitions raise ValueError.
    """

    if event == ProcessEvent.EXITED:
        return ProcessState.STOPPED

    if current in {ProcessState.STOPPED, ProcessState.STOPPING}:
        if event == ProcessEvent.LAUNCH:
            return ProcessState.STARTING
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    if current == ProcessState.STARTING:
        if event == ProcessEvent.LAUNCHED:
            return ProcessState.RUNNING
        if event == ProcessEvent.LAUNCH_FAILED:
            return ProcessState.STOPPED
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    if current == ProcessState.RUNNING:
        if event == ProcessEvent.TERMINATE:
            return ProcessState.STOPPING
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    raise ValueError(f"Unknown process state: {current}")
