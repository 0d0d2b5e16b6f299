"""
MCP CAN Flasher CLI

Command-line interface for flashing and reading AVR microcontrollers running
the MCP-CAN-Boot bootloader over a CAN bus.
"""

import sys
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from mcp_can_flasher import __version__
from mcp_can_flasher.core.actions import (
    detect_bootloaders as core_detect_bootloaders,
    flash_firmware as core_flash_firmware,
    inspect_hex as core_inspect_hex,
    read_flash as core_read_flash,
)
from mcp_can_flasher.core.messages import MessageLevel, WarningItem
from mcp_can_flasher.core.parsing import parse_bounded
from mcp_can_flasher.core.results import OperationResult
from mcp_can_flasher.memory_image import MemoryImage, MemoryImageError
from mcp_can_flasher.models import get_part, list_parts as registry_list_parts
from mcp_can_flasher.protocol.can_transport import BusConfig, list_interfaces
from mcp_can_flasher.protocol.codec import (
    CAN_EXT_ID_MAX,
    CAN_ID_MCU_TO_REMOTE_DEFAULT,
    CAN_ID_REMOTE_TO_MCU_DEFAULT,
)
from mcp_can_flasher.protocol.session import SessionConfig, SessionOutcome

# Rich consoles: logs and anything that may share a pipe with hex output go to stderr
console = Console()
err_console = Console(stderr=True)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(console=err_console, rich_tracebacks=True)],
)
logger = logging.getLogger("mcp_can_flasher")

app = typer.Typer(help="🔧 MCP CAN Flasher - flash AVR MCUs over CAN with MCP-CAN-Boot")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ABORTED = 2
EXIT_STALLED = 3


def print_header(text: str, out: Optional[Console] = None) -> None:
    """Print fancy header."""
    (out or console).print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str, out: Optional[Console] = None) -> None:
    """Print success message."""
    (out or console).print(f"✓ {text}", style="green")


def print_warning(text: str, out: Optional[Console] = None) -> None:
    """Print warning message."""
    (out or console).print(f"⚠️  {text}", style="yellow")


def print_error(text: str, out: Optional[Console] = None) -> None:
    """Print error message."""
    (out or console).print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False, out: Optional[Console] = None) -> None:
    """Print a structured warning with optional remediation."""
    out = out or console
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    out.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.detail:
        out.print(f"   {warning.detail}", style="dim")
    if verbose and warning.remediation:
        out.print(f"   → {warning.remediation}", style="cyan")


def exit_code_for(result: OperationResult) -> int:
    """Map an operation result onto the process exit code."""
    if result.ok:
        return EXIT_OK
    if result.outcome == SessionOutcome.ABORTED.name:
        return EXIT_ABORTED
    if result.outcome == SessionOutcome.STALLED.name:
        return EXIT_STALLED
    return EXIT_ERROR


def parse_number_option(value: Optional[str], label: str, maximum: int, out: Optional[Console] = None) -> Optional[int]:
    """
    Parse a numeric option (decimal, 0x hex or h-suffix hex).

    Invalid input is reported and exits with status 1.
    """
    try:
        return parse_bounded(value, maximum, label)
    except ValueError as e:
        print_error(str(e), out)
        sys.exit(EXIT_ERROR)


def _or_default(value: Optional[int], default: int) -> int:
    return default if value is None else value


def set_verbose(verbose: bool) -> None:
    if verbose:
        logger.setLevel(logging.DEBUG)


def build_session_config(
    partno: str,
    mcuid: str,
    can_id_mcu: str,
    can_id_remote: str,
    out: Optional[Console] = None,
    **kwargs,
) -> SessionConfig:
    """Assemble and validate the session settings from CLI options."""
    mcu_id = parse_number_option(mcuid, "MCU ID", 0xFFFF, out)
    if mcu_id is None:
        print_error("MCU ID must not be empty", out)
        sys.exit(EXIT_ERROR)
    try:
        return SessionConfig(
            mcu_id=mcu_id,
            part=partno,
            can_id_mcu=_or_default(
                parse_number_option(can_id_mcu, "CAN ID (MCU)", CAN_EXT_ID_MAX, out),
                CAN_ID_MCU_TO_REMOTE_DEFAULT,
            ),
            can_id_remote=_or_default(
                parse_number_option(can_id_remote, "CAN ID (remote)", CAN_EXT_ID_MAX, out),
                CAN_ID_REMOTE_TO_MCU_DEFAULT,
            ),
            **kwargs,
        )
    except ValueError as e:
        print_error(str(e), out)
        sys.exit(EXIT_ERROR)


def warn_unknown_part(partno: str, out: Optional[Console] = None) -> None:
    """Unknown parts announce a zero signature, which no bootloader will accept."""
    if get_part(partno) is None:
        print_warning(
            f"Unknown part '{partno}'. No bootloader will match its signature; "
            "use list-parts to see supported parts.",
            out,
        )


def report_result(result: OperationResult, verbose: bool, out: Optional[Console] = None) -> None:
    """Print the result summary table and any recorded warnings."""
    out = out or console

    table = Table(title="Result")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Operation", result.operation)
    if result.part:
        table.add_row("Part", result.part)
    if result.outcome:
        table.add_row("Outcome", result.outcome)
    table.add_row("Bytes", f"{result.bytes_len:,}")
    if result.elapsed_ms:
        table.add_row("Time", f"{result.elapsed_ms} ms")
    if "frames_sent" in result.metadata:
        table.add_row("Frames sent", str(result.metadata["frames_sent"]))
    out.print(table)

    for item in result.items:
        print_structured_warning(item, verbose=verbose, out=out)

    if result.ok:
        print_success(f"{result.operation} completed", out)
    else:
        for err in result.errors:
            print_error(err, out)


# ============================================================================
# Bus / protocol commands
# ============================================================================

@app.command()
def flash(
    file: str = typer.Argument(..., help="Intel HEX file to flash ('-' for stdin)"),
    partno: str = typer.Option(..., "--partno", "-p", help="Part name (e.g., atmega328p, m328p)"),
    mcuid: str = typer.Option(..., "--mcuid", "-m", help="MCU ID of the bootloader (e.g., 0x0042)"),
    iface: str = typer.Option("can0", "--iface", "-i", help="CAN channel (e.g., can0)"),
    interface: str = typer.Option("socketcan", "--interface", help="python-can interface type"),
    bitrate: Optional[int] = typer.Option(None, "--bitrate", help="Bus bitrate in bit/s"),
    erase: bool = typer.Option(False, "--erase", "-e", help="Erase the whole flash before flashing"),
    no_verify: bool = typer.Option(False, "--no-verify", "-V", help="Skip reading back the flash"),
    force: bool = typer.Option(False, "--force", "-F", help="Flash despite a bootloader version mismatch"),
    can_id_mcu: str = typer.Option(hex(CAN_ID_MCU_TO_REMOTE_DEFAULT), "--can-id-mcu", help="CAN ID of frames sent by the MCU"),
    can_id_remote: str = typer.Option(hex(CAN_ID_REMOTE_TO_MCU_DEFAULT), "--can-id-remote", help="CAN ID of frames sent to the MCU"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Give up after this many seconds without a reply (default: wait forever)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging and detailed warnings"),
) -> None:
    """Flash an Intel HEX file into an MCU waiting in the bootloader."""
    set_verbose(verbose)
    print_header("Flash Firmware over CAN")

    warn_unknown_part(partno)
    config = build_session_config(
        partno, mcuid, can_id_mcu, can_id_remote,
        erase=erase, verify=not no_verify, force=force,
    )
    bus = BusConfig(interface=interface, channel=iface, bitrate=bitrate)

    try:
        image = MemoryImage.from_hex_file(file)
    except MemoryImageError as e:
        print_error(str(e))
        sys.exit(EXIT_ERROR)
    if image.total_size == 0:
        print_error(f"{file} contains no data")
        sys.exit(EXIT_ERROR)

    console.print(f"File: {file} ({image.total_size:,} bytes in {len(image)} range(s))")
    console.print(f"Bus: {bus.describe()}  MCU ID: 0x{config.mcu_id:04X}")
    console.print("Reset the MCU to start the bootloader ...")

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    ) as progress:
        tasks = {}

        def on_progress(phase: str, done: int, total: int) -> None:
            if phase not in tasks:
                label = "Flashing" if phase == "flash" else "Verifying"
                tasks[phase] = progress.add_task(label, total=total or None)
            progress.update(tasks[phase], completed=done)

        result = core_flash_firmware(
            image, config, bus, idle_timeout=timeout, progress_cb=on_progress,
        )

    report_result(result, verbose)
    sys.exit(exit_code_for(result))


@app.command()
def read(
    file: str = typer.Argument(..., help="Output Intel HEX file ('-' for stdout)"),
    partno: str = typer.Option(..., "--partno", "-p", help="Part name (e.g., atmega328p, m328p)"),
    mcuid: str = typer.Option(..., "--mcuid", "-m", help="MCU ID of the bootloader (e.g., 0x0042)"),
    iface: str = typer.Option("can0", "--iface", "-i", help="CAN channel (e.g., can0)"),
    interface: str = typer.Option("socketcan", "--interface", help="python-can interface type"),
    bitrate: Optional[int] = typer.Option(None, "--bitrate", help="Bus bitrate in bit/s"),
    max_address: Optional[str] = typer.Option(None, "--max-address", "-r", help="Stop reading after this address (default: whole flash)"),
    force: bool = typer.Option(False, "--force", "-F", help="Read despite a bootloader version mismatch"),
    can_id_mcu: str = typer.Option(hex(CAN_ID_MCU_TO_REMOTE_DEFAULT), "--can-id-mcu", help="CAN ID of frames sent by the MCU"),
    can_id_remote: str = typer.Option(hex(CAN_ID_REMOTE_TO_MCU_DEFAULT), "--can-id-remote", help="CAN ID of frames sent to the MCU"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Give up after this many seconds without a reply (default: wait forever)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging and detailed warnings"),
) -> None:
    """Read the MCU flash into an Intel HEX file."""
    set_verbose(verbose)
    # stdout may carry the hex output, so all chatter goes to stderr
    out = err_console
    print_header("Read Flash over CAN", out)

    warn_unknown_part(partno, out)
    limit = parse_number_option(max_address, "max address", 0xFFFFFFFF, out)
    config = build_session_config(
        partno, mcuid, can_id_mcu, can_id_remote, out,
        read=True, max_read_address=limit, force=force,
    )
    bus = BusConfig(interface=interface, channel=iface, bitrate=bitrate)

    out.print(f"Bus: {bus.describe()}  MCU ID: 0x{config.mcu_id:04X}")

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("{task.completed:,.0f} bytes"),
        console=out,
    ) as progress:
        task = progress.add_task("Reading", total=(limit + 1) if limit else None)

        def on_progress(phase: str, done: int, total: int) -> None:
            progress.update(task, completed=done)

        result = core_read_flash(
            file, config, bus, idle_timeout=timeout, progress_cb=on_progress,
        )

    report_result(result, verbose, out)
    if result.ok and file != "-":
        print_success(f"Flash saved to {file}", out)
    sys.exit(exit_code_for(result))


@app.command()
def detect(
    iface: str = typer.Option("can0", "--iface", "-i", help="CAN channel (e.g., can0)"),
    interface: str = typer.Option("socketcan", "--interface", help="python-can interface type"),
    bitrate: Optional[int] = typer.Option(None, "--bitrate", help="Bus bitrate in bit/s"),
    duration: float = typer.Option(5.0, "--duration", "-d", help="Seconds to listen"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Listen for bootloader announcements (never sends frames)."""
    set_verbose(verbose)
    print_header("Detect Bootloaders")

    bus = BusConfig(interface=interface, channel=iface, bitrate=bitrate)
    console.print(f"Listening on {bus.describe()} for {duration:g} s. Reset your MCUs now ...")

    result = core_detect_bootloaders(bus, duration=duration)
    if not result.ok:
        for err in result.errors:
            print_error(err)
        sys.exit(EXIT_ERROR)

    bootloaders = result.metadata.get("bootloaders", [])
    if not bootloaders:
        print_warning(result.warnings[0] if result.warnings else "No bootloaders found")
        return

    table = Table(title="Bootloaders")
    table.add_column("CAN ID", style="cyan")
    table.add_column("MCU ID", style="magenta")
    table.add_column("Signature", style="green")
    table.add_column("Part", style="yellow")
    table.add_column("Version", style="blue")

    for entry in bootloaders:
        table.add_row(
            f"0x{entry['can_id']:08X}",
            f"0x{entry['mcu_id']:04X}",
            " ".join(f"{b:02X}" for b in entry["signature"]),
            entry["part"] or "unknown",
            f"0x{entry['version']:02X}",
        )

    console.print(table)
    print_success(f"Found {len(bootloaders)} bootloader(s)")


@app.command()
def interfaces() -> None:
    """List CAN interfaces python-can can detect."""
    print_header("Available CAN Interfaces")

    configs = list_interfaces()
    if not configs:
        print_warning("No CAN interfaces detected")
        return

    table = Table(title="CAN Interfaces")
    table.add_column("Interface", style="cyan")
    table.add_column("Channel", style="green")

    for cfg in configs:
        table.add_row(str(cfg.get("interface", "-")), str(cfg.get("channel", "-")))

    console.print(table)


# ============================================================================
# Offline commands
# ============================================================================

@app.command("list-parts")
def list_parts() -> None:
    """List supported parts and their device signatures."""
    print_header("Supported Parts")

    table = Table(title="Parts")
    table.add_column("Part", style="cyan")
    table.add_column("Signature", style="green")
    table.add_column("Flash", style="yellow")
    table.add_column("Aliases", style="magenta")

    for name in registry_list_parts():
        part = get_part(name)
        table.add_row(
            part.name,
            part.signature_hex,
            f"{part.flash_size // 1024} KiB",
            ", ".join(part.aliases),
        )

    console.print(table)
    console.print()
    console.print("Use [cyan]show-part <name>[/cyan] for details.")


@app.command("show-part")
def show_part(
    name: str = typer.Argument(..., help="Part name or alias (e.g., m328p)"),
) -> None:
    """Show details for one part."""
    part = get_part(name)
    if part is None:
        print_error(f"Unknown part '{name}'. Use list-parts to see supported parts.")
        sys.exit(EXIT_ERROR)

    print_header(f"Part: {part.name}")

    table = Table(title=part.name)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Vendor", part.vendor)
    table.add_row("Signature", part.signature_hex)
    table.add_row("Flash size", f"{part.flash_size:,} bytes (0x{part.flash_size:X})")
    table.add_row("Aliases", ", ".join(part.aliases) or "-")
    for note in part.notes:
        table.add_row("Note", note)

    console.print(table)


@app.command("inspect-hex")
def inspect_hex(
    file: str = typer.Argument(..., help="Intel HEX file"),
    partno: Optional[str] = typer.Option(None, "--partno", "-p", help="Check the image fits this part"),
) -> None:
    """Show the address ranges of an Intel HEX file."""
    print_header(f"Inspect: {file}")

    result = core_inspect_hex(file, partno)
    ranges = result.metadata.get("ranges")
    if ranges is None:
        for err in result.errors:
            print_error(err)
        sys.exit(EXIT_ERROR)

    table = Table(title="Ranges")
    table.add_column("Start", style="cyan")
    table.add_column("End", style="cyan")
    table.add_column("Size", style="green")

    for start, end, size in ranges:
        table.add_row(f"0x{start:08X}", f"0x{end - 1:08X}", f"{size:,}")

    console.print(table)
    console.print(f"Total: {result.bytes_len:,} bytes in {len(ranges)} range(s)")

    for item in result.items:
        print_structured_warning(item)

    if not result.ok:
        sys.exit(EXIT_ERROR)
    if result.part:
        print_success(f"Image fits {result.part}")


@app.command()
def version() -> None:
    """Show the tool version."""
    console.print(f"mcp-can-flasher {__version__}")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        err_console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
