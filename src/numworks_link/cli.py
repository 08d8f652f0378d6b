"""
NumWorks Link CLI

Inspect, back up and flash NumWorks calculators over USB DFU.
"""

import json
import logging
import sys
import threading
from functools import partial
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from numworks_link.core.actions import (
    backup_storage_image,
    flash_image,
    read_info,
    restore_storage_image,
)
from numworks_link.core.link import CalculatorLink, DisconnectEvent
from numworks_link.core.parsing import load_object, parse_flash_target, parse_int
from numworks_link.core.results import OperationResult
from numworks_link.core.safety import (
    CONFIRMATION_TOKEN,
    WritePermissionError,
    create_cli_safety_context,
)
from numworks_link.core.session import Session
from numworks_link.errors import NumworksLinkError
from numworks_link.models import get_profile, list_profiles
from numworks_link.protocol import UsbDfuTransport, find_dfu_interfaces

logger = logging.getLogger("numworks_link")

console = Console()

app = typer.Typer(help="NumWorks Link - driverless DFU access to NumWorks calculators")


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def print_header(text: str) -> None:
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def print_result(result: OperationResult) -> None:
    for warning in result.warnings:
        print_warning(warning)
    if result.ok:
        print_success(result.to_summary())
    else:
        print_error(result.to_summary())


def parse_usb_id(value: Optional[str], label: str) -> Optional[int]:
    """CLI wrapper around parse_int for USB ids."""
    try:
        parsed = parse_int(value)
    except ValueError as e:
        raise typer.BadParameter(f"Invalid {label}: {e}")
    if parsed is not None and not 0 <= parsed <= 0xFFFF:
        raise typer.BadParameter(f"Invalid {label}: {value} is not a 16-bit id")
    return parsed


def build_link(
    recovery: bool,
    engine_ref: Optional[str],
    poll_interval: float = 1.0,
) -> CalculatorLink:
    """Create a link for the selected mode, loading the DFU engine if configured."""
    engine = None
    if engine_ref:
        try:
            engine = load_object(engine_ref)()
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--engine")

    profile = get_profile("recovery" if recovery else "normal")
    return CalculatorLink(
        profile=profile,
        transport_factory=partial(UsbDfuTransport, engine=engine),
        poll_interval=poll_interval,
    )


def connect_or_exit(link: CalculatorLink, serial: Optional[str]) -> Session:
    try:
        session = link.detect(serial_number=serial)
    except NumworksLinkError as e:
        print_error(str(e))
        raise typer.Exit(code=1)
    console.print(f"Connected to [cyan]{session.identity}[/cyan] ({link.profile.name} mode)")
    return session


def confirm_write(
    write_flag: bool,
    confirm_token: Optional[str],
    dry_run: bool,
):
    """Build the CLI safety context, wiring interactive prompts on a TTY."""
    ctx = create_cli_safety_context(
        write_flag,
        dry_run=dry_run,
        confirmation_token=confirm_token,
    )

    def show_details(details: dict) -> None:
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Model:   {details.get('model', 'Unknown')}\n"
            f"Target:  {details.get('target', 'Unknown')}\n"
            f"Bytes:   {details.get('bytes_length', 0):,}\n",
            title="Calculator Write Operation",
            expand=False,
        ))

    ctx.show_details = show_details
    ctx.prompt_confirmation = lambda text: typer.prompt(text)
    return ctx


SERIAL_OPTION = typer.Option(None, "--serial", "-s", envvar="NUMWORKS_SERIAL", help="Only connect to this serial number")
RECOVERY_OPTION = typer.Option(False, "--recovery", help="Talk to the STM32 ROM bootloader (recovery mode)")
ENGINE_OPTION = typer.Option(
    None,
    "--engine",
    envvar="NUMWORKS_DFU_ENGINE",
    help="DFU block transfer engine as 'package.module:factory'",
)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Debug logging")


@app.command()
def devices(
    vendor: Optional[str] = typer.Option(None, "--vid", help="Filter by vendor id (e.g. 0x0483)"),
    product: Optional[str] = typer.Option(None, "--pid", help="Filter by product id (e.g. 0xa291)"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """List attached DFU interfaces."""
    setup_logging(verbose)
    vid = parse_usb_id(vendor, "vendor id")
    pid = parse_usb_id(product, "product id")

    print_header("DFU Interfaces")
    try:
        interfaces = find_dfu_interfaces()
    except Exception as e:
        print_error(f"USB enumeration failed: {e}")
        raise typer.Exit(code=1)

    interfaces = [
        i for i in interfaces
        if (vid is None or i.vendor_id == vid) and (pid is None or i.product_id == pid)
    ]
    if not interfaces:
        print_warning("No DFU interfaces found")
        return

    table = Table(title="DFU Interfaces")
    table.add_column("Bus/Addr", style="dim")
    table.add_column("VID:PID", style="cyan")
    table.add_column("Serial", style="magenta")
    table.add_column("Cfg/If/Alt", style="yellow")
    table.add_column("Name", style="green")

    for interface in interfaces:
        table.add_row(
            f"{interface.identity.bus}/{interface.identity.address}",
            f"{interface.vendor_id:04x}:{interface.product_id:04x}",
            interface.serial_number or "-",
            "/".join(str(part) for part in interface.key),
            interface.name or "-",
        )
    console.print(table)


@app.command()
def profiles() -> None:
    """List device modes and the operations they support."""
    print_header("Link Profiles")

    table = Table(title="Profiles")
    table.add_column("Name", style="cyan")
    table.add_column("VID:PID", style="yellow")
    table.add_column("Capabilities", style="green")
    table.add_column("Notes", style="dim")

    for profile in list_profiles():
        table.add_row(
            profile.name,
            f"{profile.vendor_id:04x}:{profile.product_id:04x}",
            ", ".join(sorted(c.name.lower() for c in profile.capabilities)),
            "\n".join(profile.notes),
        )
    console.print(table)


@app.command()
def info(
    serial: Optional[str] = SERIAL_OPTION,
    recovery: bool = RECOVERY_OPTION,
    engine: Optional[str] = ENGINE_OPTION,
    show_modded: bool = typer.Option(True, "--show-modded/--factory-only", help="Report modded flash layouts distinctly"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Identify the calculator and print its platform information."""
    setup_logging(verbose)
    with build_link(recovery, engine) as link:
        connect_or_exit(link, serial)
        result = read_info(link, exclude_modded=not show_modded)

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        print_result(result)
        platform_info = result.metadata.get("platform_info")
        if platform_info:
            table = Table(title="Platform Info")
            table.add_column("Field", style="cyan")
            table.add_column("Value", style="green")
            table.add_row("Model", result.metadata.get("model_description", ""))
            table.add_row("Version", platform_info["version"])
            table.add_row("Commit", platform_info["commit"])
            table.add_row("Storage", f"{platform_info['storage']['address']} ({platform_info['storage']['size']:,} bytes)")
            table.add_row("Layout", "legacy" if platform_info["legacy_layout"] else "current")
            for fork in ("omega", "upsilon"):
                fork_info = platform_info.get(fork)
                if fork_info and fork_info.get("installed"):
                    table.add_row(fork.capitalize(), fork_info.get("version", ""))
            console.print(table)

    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def backup(
    output: Path = typer.Option(..., "--output", "-o", help="File to write the raw storage image to"),
    serial: Optional[str] = SERIAL_OPTION,
    engine: Optional[str] = ENGINE_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Save the calculator's raw storage area to a file."""
    setup_logging(verbose)
    print_header("Storage Backup")

    with build_link(False, engine) as link:
        connect_or_exit(link, serial)
        result = backup_storage_image(link)

    if result.ok:
        output.write_bytes(result.metadata["storage_image"])
        console.print(f"Saved to [cyan]{output}[/cyan]")
    print_result(result)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def restore(
    image_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Raw storage image"),
    serial: Optional[str] = SERIAL_OPTION,
    engine: Optional[str] = ENGINE_OPTION,
    write: bool = typer.Option(False, "--write", help="Actually write to the calculator"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help=f"Non-interactive confirmation ('{CONFIRMATION_TOKEN}')"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Check everything but do not write"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Write a raw storage image back to the calculator."""
    setup_logging(verbose)
    print_header("Storage Restore")
    image = image_path.read_bytes()

    with build_link(False, engine) as link:
        connect_or_exit(link, serial)
        try:
            result = restore_storage_image(link, image, confirm_write(write, confirm, dry_run))
        except WritePermissionError as e:
            print_error(e.reason)
            raise typer.Exit(code=1)

    print_result(result)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def flash(
    image_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Firmware image (.bin)"),
    target: str = typer.Option("internal", "--target", "-t", help="internal, external or recovery"),
    serial: Optional[str] = SERIAL_OPTION,
    engine: Optional[str] = ENGINE_OPTION,
    write: bool = typer.Option(False, "--write", help="Actually write to the calculator"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help=f"Non-interactive confirmation ('{CONFIRMATION_TOKEN}')"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Check everything but do not write"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Flash a firmware image to internal flash, external flash or recovery RAM."""
    setup_logging(verbose)
    try:
        flash_target = parse_flash_target(target)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--target")

    print_header(f"Flash {flash_target.value}")
    image = image_path.read_bytes()
    recovery = flash_target.value == "recovery"

    with build_link(recovery, engine) as link:
        connect_or_exit(link, serial)
        try:
            result = flash_image(link, image, flash_target, confirm_write(write, confirm, dry_run))
        except WritePermissionError as e:
            print_error(e.reason)
            raise typer.Exit(code=1)

    print_result(result)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def watch(
    serial: Optional[str] = SERIAL_OPTION,
    recovery: bool = RECOVERY_OPTION,
    engine: Optional[str] = ENGINE_OPTION,
    poll_interval: float = typer.Option(1.0, "--poll-interval", envvar="NUMWORKS_POLL_INTERVAL", help="Seconds between USB scans"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Wait for calculators and report connects/disconnects until interrupted."""
    setup_logging(verbose)
    print_header("Watching for calculators (Ctrl-C to stop)")
    link = build_link(recovery, engine, poll_interval)
    stopped = threading.Event()

    def on_connected(session: Session) -> None:
        tag = link.identify(exclude_modded=False)
        print_success(f"Connected: {session.identity} - {tag.description}")

    def on_error(error: Exception) -> None:
        print_error(f"Connection failed: {error}")
        stopped.set()

    def on_disconnected(event: DisconnectEvent) -> None:
        print_warning(f"Disconnected: {event.identity}")
        link.auto_connect(on_connected, serial_number=serial, on_error=on_error)

    link.auto_connect(on_connected, serial_number=serial, on_error=on_error)
    try:
        while not stopped.wait(poll_interval):
            link.check_connection(on_disconnected)
    finally:
        link.close()

    raise typer.Exit(code=1)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
