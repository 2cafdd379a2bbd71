"""Runtime lifecycle contracts and components."""

from repohost.runtime.contracts import (
	CycleOutcome,
	CycleResult,
	ProcessEvent,
	ProcessState,
	transition_process_state,
)
from repohost.runtime.daemon import (
	SupervisorMetadata,
	SupervisorProbeResult,
	SupervisorState,
	clear_supervisor_metadata,
	is_process_alive,
	probe_supervisor_state,
	write_supervisor_metadata,
)
from repohost.runtime.process import ProcessHandle, ProcessSupervisor, build_child_env

__all__ = [
	"CycleOutcome",
	"CycleResult",
	"ProcessEvent",
	"ProcessHandle",
	"ProcessState",
	"ProcessSupervisor",
	"SupervisorMetadata",
	"SupervisorProbeResult",
	"SupervisorState",
	"build_child_env",
	"clear_supervisor_metadata",
	"is_process_alive",
	"probe_supervisor_state",
	"transition_process_state",
	"write_supervisor_metadata",
]
