from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Callable, Optional

from repohost.cli.formatter import OutputFormatter
from repohost.core.models import Revision
from repohost.utils.diagnostics import CheckoutFailed, CloneFailed, FetchUnreachable

STDERR_TAIL_CHARS = 400


def _tail(output: str) -> str:
    return output.strip()[-STDERR_TAIL_CHARS:]


class GitSource:
    """Source repository adapter backed by the git command-line client."""

    def __init__(
        self,
        repo_url: str,
        git_executable: str = "git",
        log: Optional[Callable[..., None]] = None,
    ) -> None:
        self.repo_url = repo_url
        self.git_executable = git_executable
        self.log = log or OutputFormatter.log

    def _git(self, *args: str, cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        """Run a git command, returning the completed process without raising on exit code."""
        return subprocess.run(
            [self.git_executable, *args],
            cwd=str(cwd) if cwd is not None else None,
            capture_output=True,
            text=True,
            check=False,
        )

    def fetch_head_revision(self, branch: str) -> Revision:
        """Resolve the current head of `branch` on the remote without touching local state."""
        try:
            result = self._git("ls-remote", "--exit-code", self.repo_url, f"refs/heads/{branch}")
        except OSError as exc:
            raise FetchUnreachable(f"Could not run git ls-remote: {exc}") from exc

        if result.returncode != 0:
            raise FetchUnreachable(
                f"git ls-remote failed for branch '{branch}' (exit {result.returncode}): {_tail(result.stderr)}"
            )

        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == f"refs/heads/{branch}":
                return parts[0]

        raise FetchUnreachable(f"Branch '{branch}' not found on remote.")

    def materialize(self, revision: Revision, target_dir: Path) -> None:
        """Produce a clean working copy of `revision` inside `target_dir`.

        An existing checkout of the same remote is refreshed in place (fetch, hard
        reset, clean of untracked files) so the result matches a fresh clone.
        Anything else in `target_dir` is discarded and cloned again.
        """
        if self._is_reusable_checkout(target_dir):
            self.log(f"Release directory exists, updating {target_dir.name}...", severity="info")
            try:
                self._refresh_checkout(revision, target_dir)
                return
            except CheckoutFailed as exc:
                self.log(f"In-place update failed, recloning: {exc.message}", severity="warning")

        if target_dir.exists() or target_dir.is_symlink():
            shutil.rmtree(target_dir, ignore_errors=True)
        target_dir.parent.mkdir(parents=True, exist_ok=True)

        self.log(f"Cloning repository into {target_dir}...", severity="info")
        try:
            clone = self._git("clone", "--quiet", self.repo_url, str(target_dir))
        except OSError as exc:
            raise CloneFailed(f"Could not run git clone: {exc}", revision=revision) from exc
        if clone.returncode != 0:
            raise CloneFailed(f"git clone failed: {_tail(clone.stderr)}", revision=revision)

        checkout = self._git("checkout", "--quiet", "--detach", revision, cwd=target_dir)
        if checkout.returncode != 0:
            raise CheckoutFailed(f"git checkout failed: {_tail(checkout.stderr)}", revision=revision)

        self._verify_head(revision, target_dir)

    def _is_reusable_checkout(self, target_dir: Path) -> bool:
        if not (target_dir / ".git").is_dir():
            return False
        try:
            origin = self._git("config", "--get", "remote.origin.url", cwd=target_dir)
        except OSError:
            return False
        return origin.returncode == 0 and origin.stdout.strip() == self.repo_url

    def _refresh_checkout(self, revision: Revision, target_dir: Path) -> None:
        steps = [
            ("fetch", "--quiet", "origin"),
            ("reset", "--quiet", "--hard", revision),
            ("clean", "-ffdxq"),
        ]
        for step in steps:
            try:
                result = self._git(*step, cwd=target_dir)
            except OSError as exc:
                raise CheckoutFailed(f"Could not run git {step[0]}: {exc}", revision=revision) from exc
            if result.returncode != 0:
                raise CheckoutFailed(f"git {step[0]} failed: {_tail(result.stderr)}", revision=revision)

        self._verify_head(revision, target_dir)

    def _verify_head(self, revision: Revision, target_dir: Path) -> None:
        head = self._git("rev-parse", "HEAD", cwd=target_dir)
        resolved = head.stdout.strip()
        if head.returncode != 0 or not resolved.startswith(revision):
            raise CheckoutFailed(
                f"Working copy is at '{resolved or 'unknown'}', expected '{revision}'",
                revision=revision,
            )
