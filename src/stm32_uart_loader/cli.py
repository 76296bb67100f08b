"""
stm32-uart-loader CLI

Command-line front end for the STM32 USART bootloader driver.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from stm32_uart_loader.config import FLASH_BASE, SerialSettings
from stm32_uart_loader.core.actions import (
    dump_memory,
    erase_flash,
    identify,
    program_memory,
)
from stm32_uart_loader.core.parsing import parse_int as _parse_int_core
from stm32_uart_loader.core.parsing import parse_page_list as _parse_page_list_core
from stm32_uart_loader.core.results import OperationResult
from stm32_uart_loader.devices import list_devices as registry_list_devices
from stm32_uart_loader.errors import BootloaderError
from stm32_uart_loader.protocol import NullLine, SerialControlLine, SerialTransport
from stm32_uart_loader.session import BootloaderSession

console = Console()

app = typer.Typer(help="STM32 USART bootloader tool (AN3155)")

PortOption = typer.Option(..., "--port", "-p", help="Serial port (e.g., /dev/ttyUSB0)")
BaudOption = typer.Option(115200, "--baud", "-b", help="Baud rate")
ResetLineOption = typer.Option("rts", "--reset-line", help="Modem line wired to NRST: rts|dtr|none")
Boot0LineOption = typer.Option("dtr", "--boot0-line", help="Modem line wired to BOOT0: rts|dtr|none")
InvertResetOption = typer.Option(True, "--invert-reset/--no-invert-reset", help="Reset line is active-low")
InvertBoot0Option = typer.Option(False, "--invert-boot0/--no-invert-boot0", help="Invert BOOT0 line")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log wire traffic"),
) -> None:
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def print_result(result: OperationResult) -> None:
    """Print an OperationResult summary and exit non-zero on failure."""
    style = "green" if result.ok else "red"
    console.print(result.to_summary(), style=style)
    if not result.ok:
        raise typer.Exit(1)


def parse_int(value: Optional[str], label: str) -> int:
    """Parse a required integer option, converting errors to typer.BadParameter."""
    try:
        parsed = _parse_int_core(value)
    except ValueError as e:
        raise typer.BadParameter(f"Invalid {label}: {e}")
    if parsed is None:
        raise typer.BadParameter(f"Invalid {label}: value is empty")
    return parsed


def parse_page_list(value: str, label: str = "pages") -> list:
    try:
        return _parse_page_list_core(value)
    except ValueError as e:
        raise typer.BadParameter(f"Invalid {label}: {e}")


def confirm_destructive(yes: bool, prompt: str) -> None:
    """Require --yes or an interactive confirmation."""
    if yes:
        return
    if not typer.confirm(prompt):
        raise typer.Abort()


def _control_line(transport: SerialTransport, signal: str, inverted: bool):
    if signal.lower() == "none":
        return NullLine()
    try:
        return SerialControlLine(transport, signal, inverted=inverted)
    except ValueError as e:
        raise typer.BadParameter(str(e))


@contextmanager
def open_session(
    port: str,
    baud: int,
    reset_line: str,
    boot0_line: str,
    invert_reset: bool,
    invert_boot0: bool,
) -> Iterator[BootloaderSession]:
    """Open the port, build a session and close the port afterwards."""
    transport = SerialTransport(port, settings=SerialSettings(baudrate=baud))
    try:
        transport.open()
    except BootloaderError as e:
        print_error(str(e))
        raise typer.Exit(1)
    try:
        session = BootloaderSession(
            transport,
            reset_line=_control_line(transport, reset_line, invert_reset),
            boot0_line=_control_line(transport, boot0_line, invert_boot0),
        )
        yield session
    except BootloaderError as e:
        print_error(str(e))
        raise typer.Exit(1)
    finally:
        transport.close()


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    import serial.tools.list_ports

    ports_list = list(serial.tools.list_ports.comports())
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Description", style="green")
    table.add_column("HWID", style="magenta")
    for port in ports_list:
        table.add_row(port.device, port.description or "-", port.hwid or "-")
    console.print(table)


@app.command("list-devices")
def list_devices() -> None:
    """List parts known to the device registry."""
    table = Table(title="Known Devices")
    table.add_column("PID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Flash", justify="right")
    table.add_column("Erase", style="magenta")
    for profile in registry_list_devices():
        table.add_row(
            f"0x{profile.product_id:04X}",
            profile.name,
            f"{profile.flash_size // 1024} KiB",
            profile.erase_mode.value + (" (dual bank)" if profile.dual_bank else ""),
        )
    console.print(table)


@app.command()
def info(
    port: str = PortOption,
    baud: int = BaudOption,
    reset_line: str = ResetLineOption,
    boot0_line: str = Boot0LineOption,
    invert_reset: bool = InvertResetOption,
    invert_boot0: bool = InvertBoot0Option,
) -> None:
    """Show bootloader version, commands and product ID."""
    print_header("Bootloader Info")
    with open_session(port, baud, reset_line, boot0_line, invert_reset, invert_boot0) as session:
        result = identify(session)

    if result.ok:
        table = Table(show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Device", result.device)
        table.add_row("Bootloader", result.metadata["bootloader_version"])
        table.add_row("Erase", "extended (0x44)" if result.metadata["extended_erase"] else "legacy (0x43)")
        table.add_row("Commands", ", ".join(result.metadata["command_names"]))
        console.print(table)
        for warning in result.warnings:
            print_warning(warning)
    else:
        print_result(result)


@app.command()
def read(
    port: str = PortOption,
    output: Path = typer.Option(..., "--out", "-o", help="Output binary file"),
    address: str = typer.Option(hex(FLASH_BASE), "--address", "-a", help="Start address"),
    length: str = typer.Option(..., "--length", "-l", help="Number of bytes"),
    baud: int = BaudOption,
    reset_line: str = ResetLineOption,
    boot0_line: str = Boot0LineOption,
    invert_reset: bool = InvertResetOption,
    invert_boot0: bool = InvertBoot0Option,
) -> None:
    """Read memory into a raw binary file."""
    print_header("Read Memory")
    address_val = parse_int(address, "address")
    length_val = parse_int(length, "length")

    with open_session(port, baud, reset_line, boot0_line, invert_reset, invert_boot0) as session:
        with Progress(
            TextColumn("[{task.description}]"),
            BarColumn(),
            TextColumn("[{task.percentage:.0f}%]"),
            console=console,
        ) as progress:
            task = progress.add_task("Reading", total=length_val)
            result = dump_memory(
                session,
                address_val,
                length_val,
                progress_cb=lambda done, total: progress.update(task, completed=done),
            )

    if result.ok:
        output.write_bytes(result.metadata["data"])
        print_success(f"Saved {result.bytes_len:,} bytes to {output}")
    print_result(result)


@app.command()
def write(
    port: str = PortOption,
    input_file: Path = typer.Option(..., "--in", "-i", exists=True, dir_okay=False, help="Raw binary to write"),
    address: str = typer.Option(hex(FLASH_BASE), "--address", "-a", help="Start address"),
    erase: bool = typer.Option(True, "--erase/--no-erase", help="Mass erase before writing"),
    verify: bool = typer.Option(True, "--verify/--no-verify", help="Read back and compare"),
    go: bool = typer.Option(False, "--go", help="Start the application afterwards"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    baud: int = BaudOption,
    reset_line: str = ResetLineOption,
    boot0_line: str = Boot0LineOption,
    invert_reset: bool = InvertResetOption,
    invert_boot0: bool = InvertBoot0Option,
) -> None:
    """Program a raw binary image."""
    print_header("Write Memory")
    address_val = parse_int(address, "address")
    data = input_file.read_bytes()
    if not data:
        print_error(f"{input_file} is empty")
        raise typer.Exit(1)

    console.print(f"Image: {input_file} ({len(data):,} bytes) -> 0x{address_val:08X}")
    confirm_destructive(yes, "Erase and program the target flash?" if erase else "Program the target flash?")

    with open_session(port, baud, reset_line, boot0_line, invert_reset, invert_boot0) as session:
        if erase:
            erase_result = erase_flash(session)
            if not erase_result.ok:
                print_result(erase_result)
            print_success(f"Flash erased ({erase_result.metadata['mode']})")

        with Progress(
            TextColumn("[{task.description}]"),
            BarColumn(),
            TextColumn("[{task.percentage:.0f}%]"),
            console=console,
        ) as progress:
            task = progress.add_task("Writing", total=len(data))
            result = program_memory(
                session,
                address_val,
                data,
                verify=verify,
                progress_cb=lambda done, total: progress.update(task, completed=done),
            )

        if result.ok and go:
            session.go(address_val)
            print_success(f"Started application at 0x{address_val:08X}")

    print_result(result)


@app.command("erase")
def erase_cmd(
    port: str = PortOption,
    pages: Optional[str] = typer.Option(None, "--pages", help="Page list, e.g. 0-3,7 (default: everything)"),
    bank: Optional[int] = typer.Option(None, "--bank", help="Erase flash bank 1 or 2 (extended erase only)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    baud: int = BaudOption,
    reset_line: str = ResetLineOption,
    boot0_line: str = Boot0LineOption,
    invert_reset: bool = InvertResetOption,
    invert_boot0: bool = InvertBoot0Option,
) -> None:
    """Erase pages, a bank, or the whole flash."""
    print_header("Erase Flash")
    if pages is not None and bank is not None:
        raise typer.BadParameter("Use either --pages or --bank, not both")
    if bank is not None and bank not in (1, 2):
        raise typer.BadParameter("--bank must be 1 or 2")
    page_list = parse_page_list(pages) if pages is not None else None

    target = f"pages {pages}" if page_list else (f"bank {bank}" if bank else "the whole flash")
    confirm_destructive(yes, f"Erase {target}?")

    with open_session(port, baud, reset_line, boot0_line, invert_reset, invert_boot0) as session:
        if bank is not None:
            if bank == 1:
                session.erase_bank1_extended()
            else:
                session.erase_bank2_extended()
            print_success(f"Bank {bank} erased")
            return
        result = erase_flash(session, page_list)
    print_result(result)


@app.command()
def protect(
    port: str = PortOption,
    write_sectors: Optional[str] = typer.Option(None, "--write", help="Write-protect these sectors, e.g. 0-3"),
    readout: bool = typer.Option(False, "--read", help="Enable readout protection"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    baud: int = BaudOption,
    reset_line: str = ResetLineOption,
    boot0_line: str = Boot0LineOption,
    invert_reset: bool = InvertResetOption,
    invert_boot0: bool = InvertBoot0Option,
) -> None:
    """Enable write and/or readout protection."""
    print_header("Protect Flash")
    if write_sectors is None and not readout:
        raise typer.BadParameter("Nothing to do: give --write SECTORS and/or --read")
    sectors = parse_page_list(write_sectors, "sectors") if write_sectors is not None else None
    confirm_destructive(yes, "Change flash protection? The target will reset.")

    with open_session(port, baud, reset_line, boot0_line, invert_reset, invert_boot0) as session:
        if sectors is not None:
            session.set_write_protection(sectors)
            print_success(f"Write protection set on {len(sectors)} sector(s)")
        if readout:
            session.set_read_protection()
            print_success("Readout protection enabled")


@app.command()
def unprotect(
    port: str = PortOption,
    write_protection: bool = typer.Option(True, "--write/--no-write", help="Clear write protection"),
    readout: bool = typer.Option(False, "--read", help="Clear readout protection (mass-erases flash)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    baud: int = BaudOption,
    reset_line: str = ResetLineOption,
    boot0_line: str = Boot0LineOption,
    invert_reset: bool = InvertResetOption,
    invert_boot0: bool = InvertBoot0Option,
) -> None:
    """Clear write and/or readout protection."""
    print_header("Unprotect Flash")
    if readout:
        print_warning("Clearing readout protection erases the whole flash")
    confirm_destructive(yes, "Change flash protection? The target will reset.")

    with open_session(port, baud, reset_line, boot0_line, invert_reset, invert_boot0) as session:
        if readout:
            session.clear_read_protection()
            print_success("Readout protection cleared")
        if write_protection:
            session.clear_write_protection()
            print_success("Write protection cleared")


@app.command()
def go(
    port: str = PortOption,
    address: str = typer.Option(hex(FLASH_BASE), "--address", "-a", help="Jump address"),
    baud: int = BaudOption,
    reset_line: str = ResetLineOption,
    boot0_line: str = Boot0LineOption,
    invert_reset: bool = InvertResetOption,
    invert_boot0: bool = InvertBoot0Option,
) -> None:
    """Jump to the application."""
    address_val = parse_int(address, "address")
    with open_session(port, baud, reset_line, boot0_line, invert_reset, invert_boot0) as session:
        session.go(address_val)
    print_success(f"Started application at 0x{address_val:08X}")


@app.command()
def reset(
    port: str = PortOption,
    baud: int = BaudOption,
    reset_line: str = ResetLineOption,
    boot0_line: str = Boot0LineOption,
    invert_reset: bool = InvertResetOption,
    invert_boot0: bool = InvertBoot0Option,
) -> None:
    """Reset the target into its application."""
    with open_session(port, baud, reset_line, boot0_line, invert_reset, invert_boot0) as session:
        session.reset()
    print_success("Target reset")


if __name__ == "__main__":
    app()
