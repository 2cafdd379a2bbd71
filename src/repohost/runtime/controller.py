from __future__ import annotations

import os
import threading
from typing import Callable, Optional

from repohost.cli.formatter import OutputFormatter
from repohost.core.models import HostSettings, Revision, RuntimeConfig, utc_now_iso
from repohost.core.releases import ReleaseManager, SourceRepository
from repohost.infrastructure.git_source import GitSource
from repohost.infrastructure.installer import DependencyInstaller
from repohost.runtime.contracts import CycleOutcome, CycleResult
from repohost.runtime.daemon import (
    SupervisorMetadata,
    SupervisorState,
    clear_supervisor_metadata,
    probe_supervisor_state,
    write_supervisor_metadata,
)
from repohost.runtime.process import ProcessHandle, ProcessSupervisor
from repohost.utils.diagnostics import (
    BuildFailed,
    DeployCancelled,
    FetchUnreachable,
    InitialDeployFailed,
)

EXIT_OK = 0
EXIT_INITIAL_DEPLOY_FAILED = 1


class SupervisorLoop:
    """Polls the tracked branch and keeps one child process running the current release.

    `stop_event` is the cancellation token: setting it ends the interval sleep,
    and it is checked between the top-level steps of each cycle.
    """

    def __init__(
        self,
        settings: HostSettings,
        source: SourceRepository,
        releases: ReleaseManager,
        supervisor: ProcessSupervisor,
        stop_event: Optional[threading.Event] = None,
        log: Optional[Callable[..., None]] = None,
    ) -> None:
        self.settings = settings
        self.source = source
        self.releases = releases
        self.supervisor = supervisor
        self.stop_event = stop_event or threading.Event()
        self.log = log or OutputFormatter.log

        self.handle: Optional[ProcessHandle] = None
        self.current_revision: Optional[Revision] = None
        self.last_failed_revision: Optional[Revision] = None

    def request_stop(self) -> None:
        self.stop_event.set()

    def startup(self) -> None:
        """Resume the existing deployment, or build the branch head as the first release."""
        self._stop_orphaned_child()

        existing = self.releases.current_release()
        if existing is not None:
            self.log(f"Found existing deployment at {existing.revision}", severity="info")
            self.current_revision = existing.revision
            self.handle = self.supervisor.start(existing.path)
            self._record_state()
            return

        self.log("No existing deployment, performing initial deployment...", severity="info")
        try:
            head = self.source.fetch_head_revision(self.settings.branch)
            self.log(f"Initial commit: {head}", severity="info")
            result = self.releases.deploy(head, running=None, cancel=self.stop_event)
        except (FetchUnreachable, BuildFailed) as exc:
            raise InitialDeployFailed(f"Initial deployment failed: {exc.message}", revision=exc.revision) from exc

        self.handle = result.handle
        self.current_revision = result.release.revision
        self._record_state()

    def run_cycle(self) -> CycleResult:
        """Run one liveness check and drift check; never raises for transient failures."""
        if not self.supervisor.is_alive(self.handle):
            return self._restart_current()

        if self.stop_event.is_set():
            return CycleResult(outcome=CycleOutcome.CANCELLED)

        try:
            head = self.source.fetch_head_revision(self.settings.branch)
        except FetchUnreachable as exc:
            self.log(f"Failed to fetch from remote, will retry next cycle: {exc.message}", severity="warning")
            return CycleResult(outcome=CycleOutcome.FETCH_FAILED, message=exc.message)

        if head == self.current_revision:
            return CycleResult(outcome=CycleOutcome.UNCHANGED, revision=head)

        if not self.settings.retry_failed_revisions and head == self.last_failed_revision:
            return CycleResult(
                outcome=CycleOutcome.SKIPPED_FAILED_REVISION,
                revision=head,
                message="Waiting for a new revision before retrying.",
            )

        if self.stop_event.is_set():
            return CycleResult(outcome=CycleOutcome.CANCELLED, revision=head)

        self.log(f"New commit detected: {head}", severity="info")
        try:
            result = self.releases.deploy(head, running=self.handle, cancel=self.stop_event)
        except BuildFailed as exc:
            self.last_failed_revision = head
            self.log("Deployment failed, keeping current version running", severity="error")
            if not self.supervisor.is_alive(self.handle):
                self._restart_current()
            return CycleResult(outcome=CycleOutcome.BUILD_FAILED, revision=head, message=exc.message)
        except DeployCancelled as exc:
            return CycleResult(outcome=CycleOutcome.CANCELLED, revision=head, message=exc.message)

        self.handle = result.handle
        self.current_revision = result.release.revision
        self.last_failed_revision = None
        self._record_state()
        self.log("Application updated and restarted successfully", severity="success")
        return CycleResult(outcome=CycleOutcome.DEPLOYED, revision=head)

    def run(self) -> int:
        """Run until the stop event is set; returns the process exit code."""
        try:
            self.startup()
        except InitialDeployFailed as exc:
            self.log(exc.message, severity="critical")
            return EXIT_INITIAL_DEPLOY_FAILED
        except DeployCancelled:
            self.shutdown()
            return EXIT_OK

        self.log(
            f"Starting monitoring loop (checking every {self.settings.check_interval:g}s)...",
            severity="info",
        )
        try:
            while not self.stop_event.wait(self.settings.check_interval):
                result = self.run_cycle()
                if result.outcome == CycleOutcome.CANCELLED:
                    break
        finally:
            self.shutdown()
        return EXIT_OK

    def shutdown(self) -> None:
        """Stop the child and forget the supervisor state file."""
        self.log("Shutting down...", severity="info")
        self.supervisor.stop(self.handle)
        try:
            clear_supervisor_metadata(self.settings.state_path)
        except OSError as exc:
            self.log(f"Could not remove supervisor state file: {exc}", severity="warning")

    def _restart_current(self) -> CycleResult:
        current = self.releases.current_release()
        if current is None:
            # Unreachable after a successful startup unless the pointer was removed by hand.
            self.log("Current release pointer is missing; cannot restart", severity="error")
            return CycleResult(outcome=CycleOutcome.RESTART_SKIPPED, message="no current release")

        self.log("Application process died unexpectedly, restarting...", severity="warning")
        self.handle = self.supervisor.start(current.path)
        self.current_revision = current.revision
        self._record_state()
        return CycleResult(outcome=CycleOutcome.RESTARTED, revision=current.revision)

    def _stop_orphaned_child(self) -> None:
        """Stop a child recorded by a supervisor that died without shutting it down."""
        observed = probe_supervisor_state(self.settings.state_path)
        metadata = observed.metadata
        if metadata is None or metadata.child_pid is None or not observed.child_alive:
            return

        if observed.state == SupervisorState.RUNNING and metadata.pid != os.getpid():
            self.log(
                f"Supervisor pid={metadata.pid} is still running; leaving its application (PID: {metadata.child_pid}) alone",
                severity="warning",
            )
            return

        if not self.supervisor.stop_orphan(metadata.child_pid):
            self.log(f"Could not stop orphaned application (PID: {metadata.child_pid})", severity="error")

    def _record_state(self) -> None:
        if self.handle is None or self.current_revision is None:
            return
        metadata = SupervisorMetadata(
            pid=os.getpid(),
            child_pid=self.handle.pid,
            revision=self.current_revision,
            release_path=str(self.handle.release_path),
            started_at=self.handle.started_at or utc_now_iso(),
        )
        try:
            write_supervisor_metadata(self.settings.state_path, metadata)
        except OSError as exc:
            self.log(f"Could not write supervisor state file: {exc}", severity="warning")


def build_release_manager(
    config: RuntimeConfig,
    source: Optional[SourceRepository] = None,
    log: Optional[Callable[..., None]] = None,
) -> ReleaseManager:
    """Wire the release manager and its collaborators from configuration."""
    settings = config.settings
    supervisor = ProcessSupervisor(
        start_command=settings.start_spec,
        grace_period=settings.grace_period,
        port_release_delay=settings.port_release_delay,
        reserved_env=HostSettings.reserved_env_names(),
        extra_env=config.child_env,
        log=log,
    )
    return ReleaseManager(
        releases_dir=settings.releases_dir,
        current_link=settings.current_link,
        source=source or GitSource(settings.repo_url, log=log),
        installer=DependencyInstaller.from_settings(settings, log=log),
        supervisor=supervisor,
        keep_releases=settings.keep_releases,
        log=log,
    )


def build_supervisor_loop(
    config: RuntimeConfig,
    stop_event: Optional[threading.Event] = None,
    log: Optional[Callable[..., None]] = None,
) -> SupervisorLoop:
    """Build a SupervisorLoop with git, installer and process adapters from configuration."""
    releases = build_release_manager(config, log=log)
    return SupervisorLoop(
        settings=config.settings,
        source=releases.source,
        releases=releases,
        supervisor=releases.supervisor,
        stop_event=stop_event,
        log=log,
    )
