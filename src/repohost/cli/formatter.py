import json
import typer
from typing import Any, List, Optional
from pydantic import BaseModel
from rich.console import Console
from rich.table import Table
from repohost.core.models import Release

# Create a stderr console for logging
error_console = Console(stderr=True)

class OutputFormatter:
    """
    Handles output formatting for the supervisor and its CLI.
    Ensures separation of concerns between System Logs (stderr) and Data (stdout).
    """

    @staticmethod
    def log(message: str, severity: str = "info") -> None:
        """
        Print system messages to stderr with color coding.
        """
        style = "white"
        prefix = "[REPOHOST]"

        if severity == "warning":
            style = "yellow"
        elif severity == "error":
            style = "red"
        elif severity == "critical":
            style = "bold red"
        elif severity == "success":
            style = "green"

        error_console.print(f"[{style}]{prefix} {message}[/{style}]", highlight=False)

    @staticmethod
    def print_releases(releases: List[Release], current: Optional[Release]) -> None:
        """
        Prints the releases kept on disk, newest first, marking the current one.
        """
        table = Table(title="Releases", border_style="cyan", header_style="bold cyan")
        table.add_column("Current", justify="center")
        table.add_column("Revision")
        table.add_column("Created")
        table.add_column("Path")

        current_path = current.path.resolve() if current is not None else None
        for release in releases:
            marker = "[green]*[/green]" if release.path.resolve() == current_path else ""
            table.add_row(marker, release.revision, release.created_at, str(release.path))

        if not releases:
            error_console.print("No releases on disk.")
            return

        error_console.print(table)

    @staticmethod
    def print_data(data: Any) -> None:
        """
        Print a result to stdout.
        Handles Pydantic models and complex types.
        """
        if isinstance(data, str):
            typer.echo(data)
            return

        def json_serializer(obj):
            if isinstance(obj, BaseModel):
                return obj.model_dump(mode='json')
            if hasattr(obj, "isoformat"):
                return obj.isoformat()
            return str(obj)

        try:
            output = json.dumps(data, indent=2, default=json_serializer)
            typer.echo(output)
        except TypeError as e:
            OutputFormatter.log(f"JSON Serialization failed: {e}", severity="error")
            typer.echo(str(data))
