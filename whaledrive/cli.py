"""Thin CLI wrapper for whaledrive.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Every command prints exactly one JSON object: the result on stdout, or
{"error": "..."} on stderr with exit code 1. Logs go to stderr.
"""

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from pydantic import BaseModel
from rich.console import Console
from rich.logging import RichHandler

from whaledrive import __version__
from whaledrive.config import Settings, get_settings, print_settings_json
from whaledrive.errors import WhaledriveError
from whaledrive.registry.client import RegistryClient
from whaledrive.types import DEFAULT_ARCHITECTURE, DEFAULT_OS, Platform

app = typer.Typer(
    name="whaledrive",
    help="Build bootable VM disk images from container registry images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def _print_json(target: Console, payload: str) -> None:
    target.print(
        payload, soft_wrap=True, markup=False, highlight=False, emoji=False
    )


def _emit(result: BaseModel) -> None:
    _print_json(console, result.model_dump_json(indent=2))


def _fail(error: Exception) -> NoReturn:
    payload: dict[str, object] = {"error": str(error)}
    if isinstance(error, WhaledriveError) and error.teardown_errors:
        payload["teardown_errors"] = [str(e) for e in error.teardown_errors]
    _print_json(err_console, json.dumps(payload, indent=2))
    raise typer.Exit(code=1)


def _run(action: Callable[[], BaseModel]) -> None:
    """Run a command body, mapping any failure to a JSON error."""
    try:
        result = action()
    except Exception as e:
        logger.debug("Command failed", exc_info=True)
        _fail(e)
    _emit(result)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def create_registry_client(settings: Settings) -> RegistryClient:
    """Create the registry client for the effective settings."""
    return RegistryClient(
        registry_url=settings.registry_url,
        auth_url=settings.auth_url,
        auth_service=settings.auth_service,
        timeout=settings.download_timeout,
    )


def _platform(os_name: str | None, architecture: str | None) -> Platform:
    return Platform(
        os=os_name or DEFAULT_OS,
        architecture=architecture or DEFAULT_ARCHITECTURE,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"whaledrive version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    base_path: Annotated[
        Path | None,
        typer.Option(
            "--base-path",
            "-b",
            help="Folder where whaledrive stores state, layers and images",
        ),
    ] = None,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Build bootable VM disk images from container registry images."""
    try:
        settings = get_settings(base_path=base_path)
    except Exception as e:
        _fail(e)
    _configure_logging(settings.log_level)
    ctx.obj = settings


OsOption = Annotated[
    str,
    typer.Option("--os", help="The operating system the image is for"),
]
ArchOption = Annotated[
    str,
    typer.Option("--architecture", help="The architecture the image is for"),
]
ImageArgument = Annotated[str, typer.Argument(help="Image reference, e.g. nginx:latest")]


@app.command()
def info(
    ctx: typer.Context,
    image: ImageArgument,
    os_name: OsOption = DEFAULT_OS,
    architecture: ArchOption = DEFAULT_ARCHITECTURE,
) -> None:
    """Get info about an image."""
    from whaledrive.images.service import image_info
    from whaledrive.registry.models import ImageReference
    from whaledrive.state.store import open_state

    settings: Settings = ctx.obj

    def action() -> BaseModel:
        ref = ImageReference.parse(image)
        platform = _platform(os_name, architecture)
        with (
            open_state(settings.state_path) as store,
            create_registry_client(settings) as registry,
        ):
            return image_info(store, registry, ref, platform)

    _run(action)


@app.command()
def build(
    ctx: typer.Context,
    image: ImageArgument,
    os_name: OsOption = DEFAULT_OS,
    architecture: ArchOption = DEFAULT_ARCHITECTURE,
    outfile: Annotated[
        Path | None,
        typer.Option("--outfile", "-o", help="Write the disk image to this path"),
    ] = None,
) -> None:
    """Create a disk image from a registry image."""
    from whaledrive.disk.commands import check_required_commands
    from whaledrive.images.service import build_image
    from whaledrive.registry.models import ImageReference
    from whaledrive.state.store import open_state

    settings: Settings = ctx.obj

    def action() -> BaseModel:
        check_required_commands()
        ref = ImageReference.parse(image)
        platform = _platform(os_name, architecture)
        with (
            open_state(settings.state_path) as store,
            create_registry_client(settings) as registry,
        ):
            return build_image(
                store,
                registry,
                settings,
                ref,
                platform,
                outfile=outfile.resolve() if outfile else None,
            )

    _run(action)


@app.command()
def images(ctx: typer.Context) -> None:
    """List all images that are currently stored."""
    from whaledrive.images.service import list_images
    from whaledrive.state.store import open_state

    settings: Settings = ctx.obj

    def action() -> BaseModel:
        with open_state(settings.state_path) as store:
            return list_images(store)

    _run(action)


@app.command("rm")
def remove(
    ctx: typer.Context,
    image: ImageArgument,
    prune: Annotated[
        bool,
        typer.Option(
            "--prune",
            help="Also remove layers no other image references",
        ),
    ] = False,
    os_name: Annotated[
        str | None,
        typer.Option("--os", help="The operating system the image is for"),
    ] = None,
    architecture: Annotated[
        str | None,
        typer.Option("--architecture", help="The architecture the image is for"),
    ] = None,
) -> None:
    """Remove an image."""
    from whaledrive.images.service import remove_image
    from whaledrive.registry.models import ImageReference
    from whaledrive.state.store import open_state

    settings: Settings = ctx.obj

    def action() -> BaseModel:
        ref = ImageReference.parse(image)
        platform = _platform(os_name, architecture)
        with open_state(settings.state_path) as store:
            return remove_image(store, settings, ref, platform, prune=prune)

    _run(action)


@app.command("prune")
def prune_command(ctx: typer.Context) -> None:
    """Remove all layers not associated with an image."""
    from whaledrive.images.service import prune
    from whaledrive.state.store import open_state

    settings: Settings = ctx.obj

    def action() -> BaseModel:
        with open_state(settings.state_path) as store:
            return prune(store, settings)

    _run(action)


@app.command()
def config(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings: Settings = ctx.obj
    if json_output:
        _print_json(console, print_settings_json(settings))
        return

    tmp_dir_display = str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Base path:           {settings.base_path}")
    console.print(f"  State file:          {settings.state_path}")
    console.print(f"  Layers directory:    {settings.layers_dir}")
    console.print(f"  Images directory:    {settings.images_dir}")
    console.print(f"  Temp directory:      {tmp_dir_display}")
    console.print()
    console.print("[bold]Registry:[/bold]")
    console.print(f"  Registry URL:        {settings.registry_url}")
    console.print(f"  Auth URL:            {settings.auth_url}")
    console.print(f"  Auth service:        {settings.auth_service}")
    console.print(f"  Bootloader label:    {settings.bootloader_label}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Max downloads:       {settings.max_concurrent_downloads}")
    console.print(f"  Download timeout:    {settings.download_timeout}")


__all__ = ["app", "create_registry_client"]
