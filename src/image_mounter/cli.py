"""
Image Mounter CLI

Implements 4 CLI verbs with Operations facade integration:
- mount: Sync an image (or one of its mirrors) to disk and print the path
- digest: Print the registry digest of an image
- mirrors: Print the candidate names tried for an image
- status: Print the cache state of an image
"""
from __future__ import annotations

import logging
import typer
from typing import Optional

from .cli_context import CLIContext
from .operations import Operations, OpsConfig, run_and_exit
from .operations.printers import (
    print_digest, print_mirrors, print_mount_result, print_status
)

app = typer.Typer(name="image-mounter", help="Sync container images to local disk")


@app.callback()
def _configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def mount(
    image: str = typer.Argument(..., help="Image name, e.g. quay.io/org/kmod:v1"),
    insecure: Optional[bool] = typer.Option(None, "--insecure/--secure", help="Skip TLS verification and allow plain HTTP"),
    platform: Optional[str] = typer.Option(None, "--platform", help="Platform for multi-arch images (os/arch[/variant])"),
    base_dir: Optional[str] = typer.Option(None, "--base-dir", help="Cache base directory"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Overall deadline in seconds")
) -> None:
    """Pull and extract an image, printing the filesystem path."""

    def _mount() -> None:
        config = OpsConfig(insecure=insecure, platform=platform, timeout=timeout)
        context = CLIContext.from_env(base_dir=base_dir)
        ops = Operations(config=config, mounter=context.mounter, settings=context.settings)

        path = ops.mount(image)
        print_mount_result(image, path)

    run_and_exit(_mount)


@app.command()
def digest(
    image: str = typer.Argument(..., help="Image name"),
    insecure: Optional[bool] = typer.Option(None, "--insecure/--secure", help="Skip TLS verification and allow plain HTTP"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Request deadline in seconds")
) -> None:
    """Print the registry digest of an image without pulling it."""

    def _digest() -> None:
        config = OpsConfig(insecure=insecure, timeout=timeout)
        context = CLIContext.from_env()
        ops = Operations(config=config, registry=context.registry, settings=context.settings)

        print_digest(image, ops.digest(image))

    run_and_exit(_digest)


@app.command()
def mirrors(
    image: str = typer.Argument(..., help="Image name")
) -> None:
    """Print the names tried for an image, in order."""

    def _mirrors() -> None:
        context = CLIContext.from_env()
        ops = Operations(config=OpsConfig(), resolver=context.resolver, settings=context.settings)

        print_mirrors(image, ops.mirrors(image))

    run_and_exit(_mirrors)


@app.command()
def status(
    image: str = typer.Argument(..., help="Image name"),
    base_dir: Optional[str] = typer.Option(None, "--base-dir", help="Cache base directory")
) -> None:
    """Print the cached digest and filesystem path of an image."""

    def _status() -> None:
        context = CLIContext.from_env(base_dir=base_dir)
        ops = Operations(config=OpsConfig(), settings=context.settings)

        marker, fs_path = ops.status(image)
        print_status(image, marker, fs_path)

    run_and_exit(_status)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
