"""
Output rendering for bt commands.

Commands hand structured data to :class:`OutputFormatter`, which prints it as
a rich table, JSON or YAML depending on the global ``--output`` option.
Errors go to stderr so machine-readable stdout stays clean.
"""

import json
from typing import Any

import yaml
from rich.console import Console
from rich.table import Table

FORMATS = ("text", "json", "yaml")


class OutputFormatter:
    """Prints command results in the selected output format."""

    def __init__(
        self,
        format_type: str = "text",
        console: Console | None = None,
        err_console: Console | None = None,
    ) -> None:
        """
        Args:
            format_type: One of 'text', 'json' or 'yaml'
            console: Console for regular output
            err_console: Console for errors, stderr by default
        """
        self.format_type = format_type.lower()
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)

    @property
    def structured(self) -> bool:
        return self.format_type in ("json", "yaml")

    def _dump(self, data: Any, console: Console) -> None:
        if self.format_type == "json":
            console.print_json(json.dumps(data, default=str))
        else:
            console.print(yaml.safe_dump(data, default_flow_style=False, allow_unicode=True).rstrip(), markup=False)

    def format_output(self, data: dict[str, Any], title: str | None = None) -> None:
        """Print a mapping as a key/value table, or dump it in a structured format."""
        if self.structured:
            self._dump(data, self.console)
            return

        if title:
            self.console.print(f"\n[bold green]{title}[/bold green]")
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="cyan", no_wrap=True)
        table.add_column("Value")
        for key, value in data.items():
            if value is None:
                continue
            shown = json.dumps(value) if isinstance(value, (dict, list)) else str(value)
            table.add_row(key.replace("_", " ").title(), shown)
        self.console.print(table)

    def _message(self, status: str, message: str, style: str, details: dict[str, Any] | None = None) -> None:
        console = self.err_console if status == "error" else self.console
        if self.structured:
            self._dump({"status": status, "message": message, **(details or {})}, console)
            return
        console.print(f"[{style}]{message}[/{style}]")
        if details:
            self.format_output(details)

    def success(self, message: str, details: dict[str, Any] | None = None) -> None:
        self._message("success", message, "green", details)

    def error(self, message: str, details: dict[str, Any] | None = None) -> None:
        self._message("error", message, "red", details)

    def warning(self, message: str) -> None:
        self._message("warning", message, "yellow")

    def info(self, message: str) -> None:
        self._message("info", message, "blue")
