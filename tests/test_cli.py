import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from repohost.cli.main import EXIT_CONFIG_INVALID, app
from repohost.core.models import RELEASE_METADATA_FILE

runner = CliRunner()


def _write_config(tmp_path: Path, **overrides) -> Path:
    settings = {
        "repo_url": "https://example.invalid/app.git",
        "releases_dir": str(tmp_path / "releases"),
        "current_link": str(tmp_path / "current"),
        "state_file": str(tmp_path / "supervisor.json"),
    }
    settings.update(overrides)
    config_file = tmp_path / "repohost.yaml"
    lines = ["repohost:"] + [f"  {key}: {json.dumps(value)}" for key, value in settings.items()]
    config_file.write_text("\n".join(lines) + "\n")
    return config_file


def _make_release(tmp_path: Path, revision: str, day: int) -> Path:
    path = tmp_path / "releases" / revision
    path.mkdir(parents=True)
    (path / RELEASE_METADATA_FILE).write_text(
        json.dumps({"revision": revision, "created_at": f"2026-01-{day:02d}T00:00:00.000000+00:00"})
    )
    return path


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    for command in ("run", "status", "prune"):
        assert command in result.stdout


def test_run_with_invalid_config_exits_2(tmp_path):
    config_file = _write_config(tmp_path, check_interval=0)

    result = runner.invoke(app, ["run", "--config", str(config_file)])

    assert result.exit_code == EXIT_CONFIG_INVALID
    assert "Invalid configuration" in result.output


def test_run_without_repository_exits_2(tmp_path):
    result = runner.invoke(app, ["run", "--config", str(tmp_path / "missing.yaml")])

    assert result.exit_code == EXIT_CONFIG_INVALID


def test_run_propagates_loop_exit_code(tmp_path, monkeypatch):
    config_file = _write_config(tmp_path)
    captured = {}

    class StubLoop:
        def run(self):
            return 1

    def fake_build_supervisor_loop(config, stop_event=None, log=None):
        captured["config"] = config
        captured["stop_event"] = stop_event
        return StubLoop()

    monkeypatch.setattr("repohost.cli.main.build_supervisor_loop", fake_build_supervisor_loop)
    monkeypatch.setattr("repohost.cli.main.signal.signal", lambda signum, handler: None)

    result = runner.invoke(app, ["run", f"--config={config_file}"])

    assert result.exit_code == 1
    assert captured["config"].settings.repo_url == "https://example.invalid/app.git"
    assert captured["stop_event"].is_set() is False


def test_status_json_reports_current_and_releases(tmp_path):
    config_file = _write_config(tmp_path)
    _make_release(tmp_path, "abc123", day=1)
    current = _make_release(tmp_path, "def456", day=2)
    (tmp_path / "current").symlink_to(current)

    result = runner.invoke(app, ["status", "-c", str(config_file), "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["current"]["revision"] == "def456"
    assert [r["revision"] for r in payload["releases"]] == ["def456", "abc123"]
    assert payload["supervisor"]["state"] == "absent"


def test_status_text_without_releases(tmp_path):
    config_file = _write_config(tmp_path)

    result = runner.invoke(app, ["status", "--config", str(config_file)])

    assert result.exit_code == 0
    assert "No current release." in result.output
    assert "No releases on disk." in result.output


def test_prune_keeps_current_and_newest(tmp_path):
    config_file = _write_config(tmp_path, keep_releases=2)
    oldest = _make_release(tmp_path, "r1", day=1)
    for day, revision in enumerate(["r2", "r3", "r4"], start=2):
        _make_release(tmp_path, revision, day=day)
    (tmp_path / "current").symlink_to(oldest)

    result = runner.invoke(app, ["prune", "--config", str(config_file)])

    assert result.exit_code == 0
    assert sorted(p.name for p in (tmp_path / "releases").iterdir()) == ["r1", "r4"]


@pytest.mark.parametrize("command", ["run", "status", "prune"])
def test_unknown_option_is_rejected(command, tmp_path):
    config_file = _write_config(tmp_path)

    result = runner.invoke(app, [command, "--config", str(config_file), "--bogus"])

    assert result.exit_code != 0
