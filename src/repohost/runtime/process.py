from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, Mapping, Optional

from repohost.cli.formatter import OutputFormatter
from repohost.core.models import CommandSpec, utc_now_iso
from repohost.runtime.contracts import ProcessEvent, ProcessState, transition_process_state
from repohost.runtime.daemon import is_process_alive

# Variables that are noise in the start-up listing of forwarded environment.
SYSTEM_ENV_NAMES: FrozenSet[str] = frozenset(
    {"PATH", "HOME", "HOSTNAME", "PWD", "SHLVL", "_", "OLDPWD", "TERM"}
)

# Upper bound on waiting for an orphan to vanish after SIGKILL.
ORPHAN_KILL_WAIT = 5.0


@dataclass
class ProcessHandle:
    """The one supervised child process and the release it is bound to."""

    release_path: Path
    pid: Optional[int] = None
    state: ProcessState = ProcessState.STOPPED
    started_at: Optional[str] = None
    process: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    def transition(self, event: ProcessEvent) -> None:
        self.state = transition_process_state(self.state, event)


def build_child_env(
    base_env: Mapping[str, str],
    reserved_names: Iterable[str],
    extra_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Return `base_env` minus supervisor control variables, overlaid with `extra_env`."""
    reserved = {name.upper() for name in reserved_names}
    env = {key: value for key, value in base_env.items() if key.upper() not in reserved}
    env.update(extra_env or {})
    return env


def _pid_running(pid: int) -> bool:
    # Reap first when the pid is our own child, otherwise its zombie still answers signal 0.
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        reaped = 0
    if reaped == pid:
        return False
    return is_process_alive(pid)


class ProcessSupervisor:
    """Starts, probes and stops the single supervised child process."""

    def __init__(
        self,
        start_command: CommandSpec,
        grace_period: float = 10,
        port_release_delay: float = 2,
        reserved_env: Iterable[str] = (),
        extra_env: Optional[Mapping[str, str]] = None,
        poll_interval: float = 1.0,
        log: Optional[Callable[..., None]] = None,
    ) -> None:
        self.start_command = start_command
        self.grace_period = grace_period
        self.port_release_delay = port_release_delay
        self.reserved_env = frozenset(reserved_env)
        self.extra_env = dict(extra_env or {})
        self.poll_interval = poll_interval
        self.log = log or OutputFormatter.log

    def child_env(self) -> Dict[str, str]:
        return build_child_env(os.environ, self.reserved_env, self.extra_env)

    def start(
        self,
        release_dir: Path,
        command: Optional[CommandSpec] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessHandle:
        """Launch the child in `release_dir` and return as soon as it is spawned.

        A launch error (missing program, unreadable directory) is logged and
        returned as a stopped handle, so the next liveness check retries it.
        """
        command = command or self.start_command
        child_env = dict(env) if env is not None else self.child_env()
        handle = ProcessHandle(release_path=release_dir)
        handle.transition(ProcessEvent.LAUNCH)

        self.log(f"Starting application with: {command}", severity="info")
        self.log(f"Working directory: {release_dir}", severity="info")
        self._log_forwarded_env(child_env)

        try:
            process = subprocess.Popen(
                command.argv,
                cwd=str(release_dir),
                env=child_env,
                start_new_session=True,
            )
        except OSError as exc:
            handle.transition(ProcessEvent.LAUNCH_FAILED)
            self.log(f"Application failed to start: {exc}", severity="error")
            return handle

        handle.process = process
        handle.pid = process.pid
        handle.started_at = utc_now_iso()
        handle.transition(ProcessEvent.LAUNCHED)
        self.log(f"Application started with PID: {process.pid}", severity="success")
        return handle

    def is_alive(self, handle: Optional[ProcessHandle]) -> bool:
        """Probe the child without disturbing it; a dead child moves the handle to Stopped."""
        if handle is None or handle.process is None:
            return False
        if handle.state == ProcessState.STOPPED:
            return False
        if handle.process.poll() is None:
            return True
        handle.transition(ProcessEvent.EXITED)
        return False

    def stop(self, handle: Optional[ProcessHandle], grace_period: Optional[float] = None) -> None:
        """Terminate gracefully, escalate to SIGKILL after the grace period, and reap.

        Stopping an absent or already-stopped handle does nothing.
        """
        if handle is None or handle.process is None or handle.state == ProcessState.STOPPED:
            return

        process = handle.process
        if process.poll() is not None:
            handle.transition(ProcessEvent.EXITED)
            return

        grace = self.grace_period if grace_period is None else grace_period
        handle.transition(ProcessEvent.TERMINATE)
        self.log(f"Stopping application gracefully (PID: {process.pid})...", severity="info")
        self._signal_group(process, signal.SIGTERM)

        waited = 0.0
        while process.poll() is None and waited < grace:
            time.sleep(self.poll_interval)
            waited += self.poll_interval

        if process.poll() is None:
            self.log("Process didn't stop gracefully, forcing shutdown...", severity="warning")
            self._signal_group(process, signal.SIGKILL)

        process.wait()
        handle.transition(ProcessEvent.EXITED)
        self.log("Application stopped", severity="info")

        if self.port_release_delay > 0:
            self.log("Waiting for ports to be released...", severity="info")
            time.sleep(self.port_release_delay)

    def stop_orphan(self, pid: int, grace_period: Optional[float] = None) -> bool:
        """Terminate a child left behind by an earlier supervisor, known only by pid.

        The child led its own session, so its process group is signalled the same
        way `stop` does. Returns True once the pid is gone.
        """
        grace = self.grace_period if grace_period is None else grace_period
        self.log(f"Stopping application left running by a previous supervisor (PID: {pid})...", severity="warning")
        self._signal_pid_group(pid, signal.SIGTERM)

        waited = 0.0
        while _pid_running(pid) and waited < grace:
            time.sleep(self.poll_interval)
            waited += self.poll_interval

        if _pid_running(pid):
            self.log("Orphaned process didn't stop gracefully, forcing shutdown...", severity="warning")
            self._signal_pid_group(pid, signal.SIGKILL)
            waited = 0.0
            while _pid_running(pid) and waited < ORPHAN_KILL_WAIT:
                time.sleep(self.poll_interval)
                waited += self.poll_interval

        gone = not _pid_running(pid)
        if gone and self.port_release_delay > 0:
            self.log("Waiting for ports to be released...", severity="info")
            time.sleep(self.port_release_delay)
        return gone

    @staticmethod
    def _signal_pid_group(pid: int, sig: signal.Signals) -> None:
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            try:
                os.kill(pid, sig)
            except (ProcessLookupError, PermissionError):
                pass

    @staticmethod
    def _signal_group(process: subprocess.Popen, sig: signal.Signals) -> None:
        # The child leads its own session, so its process group id equals its pid.
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            process.send_signal(sig)

    def _log_forwarded_env(self, env: Mapping[str, str]) -> None:
        names = sorted(name for name in env if name not in SYSTEM_ENV_NAMES)
        self.log("Environment variables being passed to app:", severity="info")
        for name in names:
            self.log(f"  {name}=***", severity="info")
