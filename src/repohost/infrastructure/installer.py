from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, Optional

from repohost.cli.formatter import OutputFormatter
from repohost.core.models import CommandSpec, HostSettings
from repohost.utils.diagnostics import InstallFailed, VerificationFailed

STDERR_TAIL_CHARS = 400


class DependencyInstaller:
    """Installs a release's dependencies with the configured package-manager commands."""

    def __init__(
        self,
        install_command: CommandSpec,
        strict_command: Optional[CommandSpec] = None,
        allow_fallback: bool = True,
        manifest_file: str = "package.json",
        lockfile: str = "package-lock.json",
        dependency_artifact: str = "node_modules",
        log: Optional[Callable[..., None]] = None,
    ) -> None:
        self.install_command = install_command
        self.strict_command = strict_command
        self.allow_fallback = allow_fallback
        self.manifest_file = manifest_file
        self.lockfile = lockfile
        self.dependency_artifact = dependency_artifact
        self.log = log or OutputFormatter.log

    @classmethod
    def from_settings(
        cls, settings: HostSettings, log: Optional[Callable[..., None]] = None
    ) -> "DependencyInstaller":
        return cls(
            install_command=settings.install_spec,
            strict_command=settings.strict_install_spec,
            allow_fallback=settings.install_fallback,
            manifest_file=settings.manifest_file,
            lockfile=settings.lockfile,
            dependency_artifact=settings.dependency_artifact,
            log=log,
        )

    def install(self, release_dir: Path) -> None:
        """Install dependencies in `release_dir`, then verify the artifact directory exists.

        Releases without a manifest need nothing installed. When a lockfile is
        present and a strict command is configured, the strict command runs first
        and falls back to the regular install command only if allowed.
        """
        if not (release_dir / self.manifest_file).exists():
            self.log(f"No {self.manifest_file} found, skipping dependency installation", severity="warning")
            return

        if self.strict_command is not None and (release_dir / self.lockfile).exists():
            self.log(f"Found {self.lockfile}, trying: {self.strict_command}", severity="info")
            try:
                self._run(self.strict_command, release_dir)
            except InstallFailed as exc:
                if not self.allow_fallback:
                    raise
                self.log(
                    f"{self.strict_command} failed ({exc.message}), falling back to {self.install_command}",
                    severity="warning",
                )
                self._run(self.install_command, release_dir)
        else:
            self.log(f"Installing dependencies with: {self.install_command}", severity="info")
            self._run(self.install_command, release_dir)

        artifact = release_dir / self.dependency_artifact
        if not artifact.is_dir():
            raise VerificationFailed(
                f"{self.dependency_artifact} directory not created after installation"
            )
        self.log(f"{self.dependency_artifact} directory verified", severity="success")

    def _run(self, command: CommandSpec, release_dir: Path) -> None:
        try:
            result = subprocess.run(
                command.argv,
                cwd=str(release_dir),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise InstallFailed(f"Could not run '{command}': {exc}") from exc

        if result.returncode != 0:
            tail = (result.stderr or result.stdout).strip()[-STDERR_TAIL_CHARS:]
            raise InstallFailed(f"'{command}' exited with code {result.returncode}: {tail}")
