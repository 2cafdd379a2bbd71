import signal
import threading
import typer
from pathlib import Path
from typing import Optional

from repohost.config.loader import DEFAULT_CONFIG_FILE, load_config
from repohost.core.models import RuntimeConfig, build_runtime_config
from repohost.cli.formatter import OutputFormatter
from repohost.runtime.controller import build_release_manager, build_supervisor_loop
from repohost.runtime.daemon import SupervisorState, probe_supervisor_state
from repohost.utils.diagnostics import ConfigInvalid

EXIT_CONFIG_INVALID = 2

app = typer.Typer(name="repohost", help="Self-updating application supervisor", rich_markup_mode=None)


def _read_option_value(tokens: list[str], index: int, option_name: str) -> tuple[str, int]:
    if index + 1 >= len(tokens):
        raise typer.BadParameter(f"Option {option_name} requires a value.")
    return tokens[index + 1], index + 2


def _parse_options(ctx: typer.Context, allow_json: bool = False) -> tuple[Path, bool]:
    config_path = Path(DEFAULT_CONFIG_FILE)
    as_json = False

    tokens = list(ctx.args)
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token in ("--config", "-c"):
            config_value, index = _read_option_value(tokens, index, token)
            config_path = Path(config_value)
            continue
        if token.startswith("--config="):
            config_path = Path(token.split("=", 1)[1])
            index += 1
            continue
        if allow_json and token == "--json":
            as_json = True
            index += 1
            continue
        if token.startswith("-"):
            raise typer.BadParameter(f"Unknown option: {token}")
        raise typer.BadParameter(f"Unexpected argument: {token}")

    return config_path, as_json


def _load_runtime_config(config_path: Path) -> RuntimeConfig:
    try:
        return build_runtime_config(load_config(config_path))
    except ConfigInvalid as exc:
        OutputFormatter.log(f"Invalid configuration: {exc.message}", severity="error")
        raise typer.Exit(code=EXIT_CONFIG_INVALID)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def run(
    ctx: typer.Context,
):
    """
    Run the supervisor: deploy the tracked branch and keep the application running.
    """
    config_path, _ = _parse_options(ctx)
    config = _load_runtime_config(config_path)
    settings = config.settings

    OutputFormatter.log("Starting repository supervisor", severity="info")
    OutputFormatter.log(f"Repository: {settings.repo_url}", severity="info")
    OutputFormatter.log(f"Branch: {settings.branch}", severity="info")
    OutputFormatter.log(f"Check interval: {settings.check_interval:g}s", severity="info")
    OutputFormatter.log(f"Start command: {settings.start_spec}", severity="info")
    OutputFormatter.log(f"Install command: {settings.install_spec}", severity="info")

    stop_event = threading.Event()

    def _request_shutdown(signum: int, _frame: Optional[object]) -> None:
        OutputFormatter.log(f"Received {signal.Signals(signum).name}, shutting down...", severity="info")
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_shutdown)
    signal.signal(signal.SIGINT, _request_shutdown)

    loop = build_supervisor_loop(config, stop_event=stop_event)
    exit_code = loop.run()
    raise typer.Exit(code=exit_code)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def status(
    ctx: typer.Context,
):
    """Show the current release, releases on disk and supervisor liveness."""
    config_path, as_json = _parse_options(ctx, allow_json=True)
    config = _load_runtime_config(config_path)

    releases = build_release_manager(config)
    current = releases.current_release()
    on_disk = releases.list_releases()
    probe = probe_supervisor_state(config.settings.state_path)

    if as_json:
        OutputFormatter.print_data(
            {
                "current": current,
                "releases": on_disk,
                "supervisor": probe,
            }
        )
        return

    if current is None:
        OutputFormatter.log("No current release.", severity="warning")
    else:
        OutputFormatter.log(f"Current release: {current.revision} ({current.path})", severity="info")

    if probe.state == SupervisorState.RUNNING and probe.metadata is not None:
        child = "alive" if probe.child_alive else "not running"
        OutputFormatter.log(
            f"Supervisor running (pid={probe.metadata.pid}); application {child} (pid={probe.metadata.child_pid}).",
            severity="success" if probe.child_alive else "warning",
        )
    elif probe.state == SupervisorState.STALE:
        OutputFormatter.log(f"Stale supervisor state: {probe.reason}", severity="warning")
    else:
        OutputFormatter.log("Supervisor is not running.", severity="info")

    OutputFormatter.print_releases(on_disk, current)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def prune(
    ctx: typer.Context,
):
    """Delete releases beyond the retention count, never the current one."""
    config_path, _ = _parse_options(ctx)
    config = _load_runtime_config(config_path)

    removed = build_release_manager(config).prune()
    if removed:
        OutputFormatter.log(f"Removed {len(removed)} release(s).", severity="success")
    else:
        OutputFormatter.log("Nothing to prune.", severity="info")


if __name__ == "__main__":
    app()
