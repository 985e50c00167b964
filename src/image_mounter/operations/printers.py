"""
Human-readable output formatting.

Centralizes all CLI output formatting while keeping CLI commands thin and
focused.
"""
from __future__ import annotations

import typer
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from rich.console import Console
from rich.table import Table

_console = Console()
_err_console = Console(stderr=True)


def print_mount_result(image_name: str, path: Path) -> None:
    """
    Print the filesystem path of a mounted image.

    The path is printed alone on stdout so scripts can capture it.
    """
    typer.echo(str(path))


def print_digest(image_name: str, digest: str) -> None:
    typer.echo(digest)


def print_mirrors(image_name: str, candidates: Sequence[str]) -> None:
    """
    Print the candidate names for an image, in the order they are tried.

    Args:
        image_name: Name that was resolved
        candidates: Ordered candidate names
    """
    table = Table(title=f"Candidates for {image_name}")
    table.add_column("#", style="dim")
    table.add_column("Image", style="cyan")
    for i, candidate in enumerate(candidates, start=1):
        table.add_row(str(i), candidate)
    _console.print(table)


def print_status(image_name: str, marker: Optional[str], fs_path: Path) -> None:
    """
    Print the cache state of an image.

    Args:
        image_name: Image name
        marker: Cached digest, or None when nothing is cached
        fs_path: Filesystem directory of the cache entry
    """
    typer.echo(f"Image: {image_name}")
    if marker is None:
        typer.echo("Cached: no")
        return
    typer.echo(f"Cached: {marker}")
    typer.echo(f"Filesystem: {fs_path}")


def print_error(exc: BaseException) -> None:
    _err_console.print(f"[bold red]Error:[/] {exc}", highlight=False)


def print_mirror_failures(failures: List[Tuple[str, BaseException]]) -> None:
    """
    Print per-mirror failures of an exhausted mount.

    Args:
        failures: (candidate, error) pairs in the order they were tried
    """
    table = Table(title=f"Mirror failures ({len(failures)})")
    table.add_column("Image", style="red")
    table.add_column("Error", style="yellow")
    for candidate, error in failures:
        table.add_row(candidate, f"{type(error).__name__}: {error}")
    _err_console.print(table)
