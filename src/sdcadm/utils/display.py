"""
Display utilities for presenting update plans and results.
"""

from typing import Any

from rich.console import Console
from rich.table import Table

from ..models import Plan

console = Console()


def display_plan(plan: Plan) -> None:
    """Display the planned changes in a formatted table."""
    for change in plan.changes:
        image = change.image
        table = Table(title=f"{change.service} -> {image.name}@{image.version} ({image.uuid})")
        table.add_column("Server", style="cyan")
        table.add_column("Hostname", style="magenta")
        table.add_column("Current Version", style="yellow")

        for inst in change.insts:
            table.add_row(inst.server, inst.hostname or "N/A", inst.version or "N/A")

        console.print(table)


def display_progress(fmt: str, *args: Any) -> None:
    """Progress sink for procedures: %-style message printed on its own line."""
    console.print(fmt % args if args else fmt, markup=False, highlight=False)


def display_error(message: str) -> None:
    """Display error message."""
    console.print(message, style="red", markup=False, highlight=False)


def display_warning(message: str) -> None:
    """Display warning message."""
    console.print(f"[yellow]{message}[/yellow]")


def display_success(message: str) -> None:
    """Display success message."""
    console.print(f"[green]{message}[/green]")
