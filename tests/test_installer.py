import sys

import pytest

from repohost.core.models import CommandSpec, HostSettings
from repohost.infrastructure.installer import DependencyInstaller
from repohost.utils.diagnostics import InstallFailed, VerificationFailed

CREATE_MODULES = "os.makedirs('node_modules', exist_ok=True)"


def _python(code: str) -> CommandSpec:
    return CommandSpec(argv=[sys.executable, "-c", code])


def _record(name: str) -> CommandSpec:
    """A command that leaves a marker file and creates the dependency directory."""
    return _python(f"import os, pathlib; pathlib.Path('{name}.ran').touch(); {CREATE_MODULES}")


@pytest.fixture
def release_dir(tmp_path):
    path = tmp_path / "abc123"
    path.mkdir()
    (path / "package.json").write_text('{"name": "app"}')
    return path


def test_install_skipped_without_manifest(tmp_path, log_sink):
    installer = DependencyInstaller(install_command=_record("install"), log=log_sink)

    installer.install(tmp_path)

    assert not (tmp_path / "install.ran").exists()
    assert any("skipping" in m for m in log_sink.messages("warning"))


def test_install_runs_command_and_verifies_artifact(release_dir, log_sink):
    installer = DependencyInstaller(install_command=_record("install"), log=log_sink)

    installer.install(release_dir)

    assert (release_dir / "install.ran").exists()
    assert (release_dir / "node_modules").is_dir()
    assert "node_modules directory verified" in log_sink.messages("success")


def test_install_without_artifact_fails_verification(release_dir, log_sink):
    installer = DependencyInstaller(install_command=_python("pass"), log=log_sink)

    with pytest.raises(VerificationFailed):
        installer.install(release_dir)


def test_failing_install_command_raises_with_output_tail(release_dir, log_sink):
    installer = DependencyInstaller(
        install_command=_python("import sys; sys.stderr.write('ERESOLVE could not resolve'); sys.exit(1)"),
        log=log_sink,
    )

    with pytest.raises(InstallFailed) as excinfo:
        installer.install(release_dir)

    assert "exited with code 1" in excinfo.value.message
    assert "ERESOLVE" in excinfo.value.message


def test_missing_install_program_raises(release_dir, log_sink):
    installer = DependencyInstaller(
        install_command=CommandSpec(argv=[str(release_dir / "no-such-npm"), "install"]),
        log=log_sink,
    )

    with pytest.raises(InstallFailed) as excinfo:
        installer.install(release_dir)

    assert "Could not run" in excinfo.value.message


def test_strict_install_used_when_lockfile_present(release_dir, log_sink):
    (release_dir / "package-lock.json").write_text("{}")
    installer = DependencyInstaller(
        install_command=_record("install"),
        strict_command=_record("ci"),
        log=log_sink,
    )

    installer.install(release_dir)

    assert (release_dir / "ci.ran").exists()
    assert not (release_dir / "install.ran").exists()


def test_strict_install_skipped_without_lockfile(release_dir, log_sink):
    installer = DependencyInstaller(
        install_command=_record("install"),
        strict_command=_record("ci"),
        log=log_sink,
    )

    installer.install(release_dir)

    assert not (release_dir / "ci.ran").exists()
    assert (release_dir / "install.ran").exists()


def test_strict_install_failure_falls_back(release_dir, log_sink):
    (release_dir / "package-lock.json").write_text("{}")
    installer = DependencyInstaller(
        install_command=_record("install"),
        strict_command=_python("import sys; sys.exit(1)"),
        log=log_sink,
    )

    installer.install(release_dir)

    assert (release_dir / "install.ran").exists()
    assert any("falling back" in m for m in log_sink.messages("warning"))


def test_strict_install_failure_without_fallback_raises(release_dir, log_sink):
    (release_dir / "package-lock.json").write_text("{}")
    installer = DependencyInstaller(
        install_command=_record("install"),
        strict_command=_python("import sys; sys.exit(1)"),
        allow_fallback=False,
        log=log_sink,
    )

    with pytest.raises(InstallFailed):
        installer.install(release_dir)

    assert not (release_dir / "install.ran").exists()


def test_from_settings_maps_install_fields(tmp_path):
    settings = HostSettings(
        repo_url="https://example.invalid/app.git",
        install_command="yarn install",
        strict_install_command=None,
        install_fallback=False,
        manifest_file="pyproject.toml",
        lockfile="poetry.lock",
        dependency_artifact=".venv",
    )

    installer = DependencyInstaller.from_settings(settings)

    assert installer.install_command.argv == ["yarn", "install"]
    assert installer.strict_command is None
    assert installer.allow_fallback is False
    assert installer.manifest_file == "pyproject.toml"
    assert installer.lockfile == "poetry.lock"
    assert installer.dependency_artifact == ".venv"
