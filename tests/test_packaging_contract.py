import tomllib
from pathlib import Path


def _pyproject() -> dict:
    pyproject_path = Path(__file__).resolve().parents[1] / "pyproject.toml"
    return tomllib.loads(pyproject_path.read_text(encoding="utf-8"))


def test_pyproject_declares_runtime_dependencies_and_test_extra():
    payload = _pyproject()

    dependencies = " ".join(payload["project"]["dependencies"])
    for name in ("typer", "rich", "pydantic", "pydantic-settings", "pyyaml"):
        assert name in dependencies

    extras = payload["project"]["optional-dependencies"]
    assert any(dep.startswith("pytest") for dep in extras["test"])


def test_pyproject_exposes_console_script():
    payload = _pyproject()

    assert payload["project"]["scripts"]["repohost"] == "repohost.cli.main:app"
    assert payload["tool"]["poetry"]["packages"] == [{"include": "repohost", "from": "src"}]
