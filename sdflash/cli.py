"""Thin CLI wrapper for sdflash.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from sdflash import __version__
from sdflash.config import get_settings, print_settings_json
from sdflash.errors import SdFlashError
from sdflash.state import RunState, format_size, render_state

app = typer.Typer(
    name="sdflash",
    help="sdflash - safely write disk images to SD cards",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sdflash version {__version__}")
        raise typer.Exit()


def _configure_logging(level: str) -> None:
    root = logging.getLogger()
    root.handlers = [
        RichHandler(console=err_console, show_path=False, rich_tracebacks=True)
    ]
    root.setLevel(level)


def _fail(error: SdFlashError, state: RunState) -> NoReturn:
    err_console.print(f"[red]Error: {escape(error.message)}[/red]")
    if state.verbose:
        err_console.print(render_state(state))
    raise typer.Exit(code=1) from None


@app.callback()
def main(
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
    """sdflash - safely write disk images to SD cards."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Helpers:[/bold]")
        console.print(
            f"  Search directories:  {', '.join(str(d) for d in settings.search_dirs)}"
        )
        console.print(f"  Elevation:           {settings.elevate}")
        console.print()
        console.print("[bold]Devices:[/bold]")
        console.print(f"  Sysfs root:          {settings.sysfs_root}")
        console.print(f"  Mount root:          {settings.mount_root}")
        console.print(f"  Block size:          {settings.block_size}")
        console.print(
            "  NOOBS minimum:       "
            f"{format_size(settings.bootstrap_min_device_bytes)}"
        )
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")


@app.command()
def write(
    input_path: Annotated[
        str, typer.Argument(help="Image file (.img, .gz, .xz, .zip)")
    ],
    device: Annotated[str, typer.Argument(help="Device path (e.g., /dev/mmcblk0)")],
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log details and dump state on failure"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show what would be done without writing"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the confirmation prompt"),
    ] = False,
) -> None:
    """Write an image to an SD card.

    Requires an explicit whole-device path (e.g., /dev/sdb, /dev/mmcblk0).
    Refuses partitions, mounted devices, swap and anything that does not
    look like an SD card.
    """
    from sdflash.device.classifier import classify_device
    from sdflash.flash.service import flash, plan_flash
    from sdflash.image.classifier import classify_image
    from sdflash.process.runner import ProcessRunner

    settings = get_settings()
    _configure_logging("DEBUG" if verbose else settings.log_level)

    state = RunState(verbose=verbose)
    runner = ProcessRunner(settings, state)

    try:
        image = classify_image(input_path, runner)
        state.image = image
        target = classify_device(device, runner, settings)
        state.device = target

        plan = plan_flash(image, target, settings, state)

        console.print(f"  Image:  {escape(image.path)} ({image.detected_kind.value})")
        if image.is_bootstrap_package:
            console.print(f"  NOOBS:  {escape(image.bootstrap_version or '')}")
        elif image.embedded_image_name:
            console.print(f"  Inner:  {escape(image.embedded_image_name)}")
        console.print(f"  Writes: {format_size(image.payload_size_bytes)}")
        console.print(
            f"  Device: {escape(target.path)} "
            f"({escape(target.model) or 'unknown model'}, "
            f"{format_size(target.size_bytes)})"
        )

        if dry_run:
            console.print("[blue]Dry-run mode: nothing will be written[/blue]")
            for number, step in enumerate(plan.steps, start=1):
                console.print(f"  {number}. {step.description}: ", end="")
                console.print(escape(step.command_line), soft_wrap=True)
            return

        if not yes:
            console.print(
                "[bold red]WARNING:[/bold red] This will OVERWRITE "
                f"{escape(target.path)}"
            )
            confirm = typer.confirm("Are you sure you want to continue?", default=False)
            if not confirm:
                console.print("[yellow]Aborted[/yellow]")
                raise typer.Exit(code=0)

        result = flash(image, target, runner, settings, state)
    except SdFlashError as e:
        _fail(e, state)

    console.print("[green]✓ Flash succeeded[/green]")
    console.print(f"  Bytes written: {result.bytes_written}")
    if result.message:
        console.print(f"  {escape(result.message)}")


@app.command()
def search(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log details and dump state on failure"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List devices that look like SD cards and could be written.

    Never writes anything.
    """
    from sdflash.device.search import search_sd_cards
    from sdflash.process.runner import ProcessRunner

    settings = get_settings()
    _configure_logging("DEBUG" if verbose else settings.log_level)

    state = RunState(verbose=verbose)
    runner = ProcessRunner(settings, state)

    try:
        devices = search_sd_cards(runner, settings, state)
    except SdFlashError as e:
        _fail(e, state)

    if json_output:
        output = [
            {
                "name": d.name,
                "path": d.path,
                "model": d.model,
                "size_bytes": d.size_bytes,
                "bus_subsystems": sorted(d.bus_subsystems),
                "mmc_type": d.mmc_type,
            }
            for d in devices
        ]
        console.print(json.dumps(output, indent=2))
        return

    if not devices:
        console.print("[yellow]No SD cards found[/yellow]")
        return

    console.print(f"[bold]Found {len(devices)} SD card(s):[/bold]")
    for d in devices:
        console.print(
            f"  [green]{escape(d.path)}[/green]  {format_size(d.size_bytes)}  "
            f"{escape(d.model) or 'unknown model'}"
        )


if __name__ == "__main__":
    app()
