"""Thin CLI wrapper for kernel_xtask.

This module provides the command-line interface using Typer.
All business logic is delegated to the dispatcher.
"""

import json
import logging
import shlex
from pathlib import Path
from typing import Annotated

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from kernel_xtask import __version__
from kernel_xtask.config import Settings, get_settings, print_settings_json
from kernel_xtask.dispatcher import OVERLAY_COMMANDS, CommandRequest, Dispatcher
from kernel_xtask.errors import XtaskError
from kernel_xtask.types import FsKind, OperationResult

app = typer.Typer(
    name="xtask",
    help="Kernel xtask - build rootfs trees, images and kernels, and launch them",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

ArchOption = Annotated[str, typer.Option("--arch", "-a", help="Target architecture")]
BoardOption = Annotated[
    str | None, typer.Option("--board", "-b", help="Board variant (default per arch)")
]
FeatureOption = Annotated[
    list[str] | None,
    typer.Option("--feature", "-f", help="Feature flag (can be repeated)"),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kernel-xtask version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.addHandler(
        RichHandler(console=err_console, show_path=False, rich_tracebacks=True)
    )
    root.setLevel(level)


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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Kernel xtask - build rootfs trees, images and kernels, and launch them."""
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level)


def _print_raw(text: str, end: str = "\n") -> None:
    """Print machine-readable output: no markup, highlighting or wrapping."""
    console.print(text, end=end, markup=False, highlight=False, soft_wrap=True)


def _dispatcher(settings: Settings | None = None) -> Dispatcher:
    return Dispatcher(settings or get_settings())


def _report(result: OperationResult, json_output: bool) -> None:
    if json_output:
        output = {
            "success": result.success,
            "message": result.message,
            "code": result.code,
            "details": result.details,
            "warnings": result.warnings,
        }
        _print_raw(json.dumps(output, indent=2, default=str))
        return
    mark = "[green]✓" if result.success else "[red]✗"
    console.print(f"{mark} {escape(result.message)}[/]")
    for warning in result.warnings:
        console.print(f"[yellow]! {escape(warning)}[/yellow]")


def _run(
    name: str,
    request: CommandRequest,
    json_output: bool = False,
    exit_with_child: bool = False,
) -> OperationResult:
    """Dispatch a command, reporting failures as ``[stage] code: message``."""
    try:
        result = _dispatcher().dispatch(name, request)
    except XtaskError as e:
        if json_output:
            output = {
                "success": False,
                "stage": e.stage,
                "code": e.code,
                "message": e.message,
            }
            _print_raw(json.dumps(output, indent=2))
        else:
            err_console.print(f"[red]✗ {escape(e.describe())}[/red]")
        raise typer.Exit(code=1) from None

    _report(result, json_output)
    if exit_with_child:
        exit_code = int(result.details.get("exit_code", 0) or 0)
        if exit_code:
            raise typer.Exit(code=exit_code)
    elif not result.success:
        raise typer.Exit(code=1)
    return result


@app.command()
def config(
    json_output: JsonOption = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        _print_raw(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Repository root:     {settings.repo_root}")
        console.print(f"  Rootfs directory:    {settings.rootfs_dir}")
        console.print(f"  Image directory:     {settings.image_dir}")
        console.print(f"  Prebuilt directory:  {settings.prebuilt_dir}")
        console.print(f"  Download cache:      {settings.cache_dir}")
        console.print(f"  Toolchain directory: {settings.toolchain_dir}")
        console.print(f"  Log directory:       {settings.log_dir}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Offline mode:        {settings.offline}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Image:[/bold]")
        console.print(f"  Filesystem:          {settings.image_fs}")
        console.print(f"  Pad size:            {settings.image_pad}")
        console.print(f"  Guest memory:        {settings.qemu_memory}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Build timeout:       {settings.build_timeout}")


@app.command()
def init(json_output: JsonOption = False) -> None:
    """Create the working layout and fetch prebuilt archives (idempotent)."""
    result = _run("init", CommandRequest(), json_output)
    if not json_output:
        for action in result.details.get("actions", []):
            console.print(f"  {action}")


@app.command()
def update(json_output: JsonOption = False) -> None:
    """Update the Rust toolchain and dependencies."""
    _run("update", CommandRequest(), json_output)


@app.command()
def dump(
    arch: ArchOption,
    board: BoardOption = None,
    features: FeatureOption = None,
    json_output: JsonOption = False,
) -> None:
    """Print the resolved target and build configuration (read-only)."""
    request = CommandRequest(arch=arch, board=board, features=features or [])
    try:
        result = _dispatcher().dispatch("dump", request)
    except XtaskError as e:
        err_console.print(f"[red]✗ {escape(e.describe())}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_raw(json.dumps(result.details, indent=2))
    else:
        _print_raw(yaml.safe_dump(result.details, sort_keys=False), end="")


@app.command()
def build(
    arch: ArchOption,
    board: BoardOption = None,
    features: FeatureOption = None,
    json_output: JsonOption = False,
) -> None:
    """Build the kernel."""
    request = CommandRequest(arch=arch, board=board, features=features or [])
    _run("build", request, json_output)


@app.command()
def asm(
    arch: ArchOption,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Output path")
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """Dump the disassembly of the built kernel."""
    _run("asm", CommandRequest(arch=arch, output=output), json_output)


@app.command("bin")
def bin_(
    arch: ArchOption,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Output path")
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """Write a stripped raw binary of the built kernel."""
    _run("bin", CommandRequest(arch=arch, output=output), json_output)


@app.command()
def qemu(
    arch: ArchOption,
    smp: Annotated[int, typer.Option("--smp", help="Number of cores")] = 1,
    gdb: Annotated[
        int | None,
        typer.Option("--gdb", help="Start halted, waiting for a debugger on this port"),
    ] = None,
    board: BoardOption = None,
    features: FeatureOption = None,
) -> None:
    """Build everything and run the kernel in the emulator."""
    request = CommandRequest(
        arch=arch, board=board, features=features or [], smp=smp, gdb_port=gdb
    )
    _run("qemu", request, exit_with_child=True)


@app.command("gdb")
def gdb_attach(
    arch: ArchOption,
    port: Annotated[int, typer.Option("--port", "-p", help="Emulator debug port")],
) -> None:
    """Attach a debugger to a running emulator."""
    _run("gdb", CommandRequest(arch=arch, port=port), exit_with_child=True)


@app.command()
def rootfs(
    arch: ArchOption,
    features: FeatureOption = None,
    json_output: JsonOption = False,
) -> None:
    """Rebuild the rootfs tree from a clean slate."""
    _run("rootfs", CommandRequest(arch=arch, features=features or []), json_output)


def _register_overlay_command(name: str) -> None:
    def command(
        arch: ArchOption,
        json_output: JsonOption = False,
    ) -> None:
        _run(name, CommandRequest(arch=arch), json_output)

    command.__doc__ = f"Rebuild the rootfs with the {name} overlay."
    app.command(name)(command)


for _name in OVERLAY_COMMANDS:
    _register_overlay_command(_name)


@app.command()
def image(
    arch: ArchOption,
    features: FeatureOption = None,
    fs: Annotated[
        FsKind | None, typer.Option("--fs", help="Image filesystem kind")
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """Rebuild the rootfs and pack it into zCore/<arch>.img."""
    request = CommandRequest(arch=arch, features=features or [], fs_kind=fs)
    _run("image", request, json_output)


@app.command("linux-libos")
def linux_libos(
    args: Annotated[
        str,
        typer.Option(
            "--args",
            help='User binary and its arguments, e.g. "/bin/busybox ls"',
        ),
    ],
) -> None:
    """Run one user binary under the libos kernel."""
    request = CommandRequest(libos_args=shlex.split(args))
    _run("linux-libos", request, exit_with_child=True)


if __name__ == "__main__":
    app()
