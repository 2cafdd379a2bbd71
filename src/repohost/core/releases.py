from __future__ import annotations

import json
import os
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from pydantic import ValidationError

from repohost.cli.formatter import OutputFormatter
from repohost.core.models import (
    RELEASE_METADATA_FILE,
    Release,
    ReleaseMetadata,
    Revision,
    utc_now_iso,
)
from repohost.runtime.process import ProcessHandle, ProcessSupervisor
from repohost.utils.diagnostics import (
    BuildFailed,
    DeployCancelled,
    InstallFailed,
    MaterializeFailed,
    RepohostError,
)


class SourceRepository(Protocol):
    def fetch_head_revision(self, branch: str) -> Revision: ...

    def materialize(self, revision: Revision, target_dir: Path) -> None: ...


class Installer(Protocol):
    def install(self, release_dir: Path) -> None: ...


@dataclass(frozen=True)
class DeployResult:
    """The release now current and the process serving it."""

    release: Release
    handle: ProcessHandle


def _mtime_iso(path: Path) -> str:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc).isoformat(timespec="microseconds")


class ReleaseManager:
    """Builds content-addressed release directories and owns the current pointer.

    Layout::

        <releases_dir>/<revision>/   one directory per revision
        <current_link>               symlink to the active release directory

    The pointer only ever moves to a release whose dependencies finished
    installing, and it is replaced with a single rename so it is never missing
    once it exists.
    """

    def __init__(
        self,
        releases_dir: Path,
        current_link: Path,
        source: SourceRepository,
        installer: Installer,
        supervisor: ProcessSupervisor,
        keep_releases: int = 3,
        log: Optional[Callable[..., None]] = None,
    ) -> None:
        if keep_releases < 1:
            raise ValueError("keep_releases must be at least 1")
        self.releases_dir = releases_dir
        self.current_link = current_link
        self.source = source
        self.installer = installer
        self.supervisor = supervisor
        self.keep_releases = keep_releases
        self.log = log or OutputFormatter.log

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def release_dir(self, revision: Revision) -> Path:
        if not revision or revision.startswith(".") or "/" in revision or "\\" in revision:
            raise ValueError(f"Revision '{revision}' cannot name a release directory")
        return self.releases_dir / revision

    def current_release(self) -> Optional[Release]:
        """Resolve the current pointer; None before the first successful deploy."""
        if not self.current_link.is_symlink():
            return None
        target = self.current_link.resolve()
        if not target.is_dir():
            return None
        return self._read_release(target)

    def list_releases(self) -> List[Release]:
        """Return releases on disk, newest first."""
        if not self.releases_dir.is_dir():
            return []
        releases = [
            self._read_release(entry)
            for entry in self.releases_dir.iterdir()
            if entry.is_dir() and not entry.is_symlink() and not entry.name.startswith(".")
        ]
        return sorted(releases, key=lambda release: release.created_at, reverse=True)

    def _read_release(self, path: Path) -> Release:
        metadata_file = path / RELEASE_METADATA_FILE
        try:
            metadata = ReleaseMetadata.model_validate(
                json.loads(metadata_file.read_text(encoding="utf-8"))
            )
            return Release(revision=metadata.revision, path=path, created_at=metadata.created_at)
        except (OSError, json.JSONDecodeError, ValidationError):
            # Unmarked directories (e.g. laid down by an older deployer) are named by revision.
            return Release(revision=path.name, path=path, created_at=_mtime_iso(path))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build(self, revision: Revision) -> Release:
        """Materialize and install `revision` into its release directory.

        Any failure removes the partial directory and raises BuildFailed; the
        current pointer and running process are never touched here.
        """
        try:
            target = self.release_dir(revision)
        except ValueError as exc:
            raise BuildFailed(str(exc), revision=revision, cause=exc) from exc

        if self.current_link.exists() and not self.current_link.is_symlink():
            raise BuildFailed(
                f"Current pointer {self.current_link} exists and is not a symlink",
                revision=revision,
            )

        self.log(f"Deploying release: {revision}", severity="info")

        try:
            self.releases_dir.mkdir(parents=True, exist_ok=True)
            self.source.materialize(revision, target)
            self.installer.install(target)
            metadata = ReleaseMetadata(revision=revision, created_at=utc_now_iso())
            (target / RELEASE_METADATA_FILE).write_text(metadata.model_dump_json(indent=2), encoding="utf-8")
        except (MaterializeFailed, InstallFailed, OSError) as exc:
            reason = exc.message if isinstance(exc, RepohostError) else str(exc)
            self.log(f"Build failed for {revision}: {reason}", severity="error")
            shutil.rmtree(target, ignore_errors=True)
            raise BuildFailed(f"Build failed: {reason}", revision=revision, cause=exc) from exc

        return Release(revision=revision, path=target, created_at=metadata.created_at)

    def activate(self, release: Release) -> None:
        """Point the current link at `release` with one atomic rename."""
        self._swap_pointer(self._stage_pointer(release), release)

    def _stage_pointer(self, release: Release) -> Path:
        self.current_link.parent.mkdir(parents=True, exist_ok=True)
        staging = self.current_link.with_name(f".{self.current_link.name}.{os.getpid()}.tmp")
        if staging.is_symlink() or staging.exists():
            staging.unlink()
        os.symlink(release.path.resolve(), staging)
        return staging

    def _swap_pointer(self, staging: Path, release: Release) -> None:
        try:
            os.replace(staging, self.current_link)
        except OSError:
            staging.unlink(missing_ok=True)
            raise
        self.log(f"Symlink updated to release {release.revision}", severity="info")

    def deploy(
        self,
        revision: Revision,
        running: Optional[ProcessHandle] = None,
        cancel: Optional[threading.Event] = None,
    ) -> DeployResult:
        """Build `revision`, then stop the old child, swap the pointer, start and prune.

        The old process is stopped only after the new release has fully built,
        so a failed build never costs any downtime. A cancellation observed
        after the build leaves the new release unpointed and raises DeployCancelled.
        If the final rename fails, BuildFailed is raised with the old process
        already stopped and the pointer unchanged.
        """
        current = self.current_release()
        if current is not None and current.revision == revision:
            self.log(f"Release {revision} is already current", severity="info")
            if running is not None and self.supervisor.is_alive(running):
                return DeployResult(release=current, handle=running)
            return DeployResult(release=current, handle=self.supervisor.start(current.path))

        release = self.build(revision)

        if cancel is not None and cancel.is_set():
            self.log(f"Shutdown requested, not activating {revision}", severity="warning")
            raise DeployCancelled("Deploy cancelled before activation", revision=revision)

        # The staging link is laid down while the old process still serves.
        try:
            staging = self._stage_pointer(release)
        except OSError as exc:
            self.log(f"Could not prepare current pointer for {revision}: {exc}", severity="error")
            raise BuildFailed(f"Could not prepare current pointer: {exc}", revision=revision, cause=exc) from exc

        self.supervisor.stop(running)
        try:
            self._swap_pointer(staging, release)
        except OSError as exc:
            # The old process is already stopped; the caller restarts the unchanged current release.
            self.log(f"Could not repoint current to {revision}: {exc}", severity="error")
            raise BuildFailed(f"Could not repoint current: {exc}", revision=revision, cause=exc) from exc

        handle = self.supervisor.start(release.path)
        self.prune()
        return DeployResult(release=release, handle=handle)

    def prune(self) -> List[Path]:
        """Delete releases beyond the retention count; the current release is always kept."""
        current = self.current_release()
        current_path = current.path.resolve() if current is not None else None

        others = [
            release for release in self.list_releases()
            if current_path is None or release.path.resolve() != current_path
        ]
        budget = self.keep_releases - 1 if current_path is not None else self.keep_releases

        removed: List[Path] = []
        for release in others[budget:]:
            self.log(f"Removing old release: {release.path.name}", severity="info")
            shutil.rmtree(release.path, ignore_errors=True)
            removed.append(release.path)
        return removed
