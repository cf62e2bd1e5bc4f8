"""
k230boot - K230 USB Boot Command-Line Interface
===============================================

This module implements the command-line interface for loading code into a
Kendryte K230/K230D through its mask ROM USB boot protocol.

Boot Mode
---------
The chip enters USB boot mode when it cannot boot from its configured
media, or when the BOOT0/BOOT1 straps select USB. In that mode it
enumerates as 29F1:0230 and waits for a host to send it code.

Usage Examples
--------------
List devices in USB boot mode:
    $ k230boot devices

Show the chip identity:
    $ k230boot info

Read the CPU info block over EP0:
    $ k230boot cpu-info

Load a first-stage image into SRAM and jump to it:
    $ k230boot run u-boot-spl.bin

Load without executing, at an explicit address:
    $ k230boot load -a 0x80300000 blob.bin

Run a multi-stage boot plan:
    $ k230boot boot k230d.json -i spl=build/u-boot-spl.bin

Re-enter the mask ROM:
    $ k230boot rom

Linux Permissions
-----------------
Without a udev rule the device is only accessible to root:

    SUBSYSTEM=="usb", ATTR{idVendor}=="29f1", ATTR{idProduct}=="0230", MODE="0666"

Exit Codes
----------
0 - Success
1 - Device, transport or protocol error
2 - Invalid arguments, missing files or an invalid boot plan
3 - Internal error
"""

import logging
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

import click

from k230_boot import __version__
from k230_boot.cli.errors import handle_cli_exception
from k230_boot.comms import (
    BootSession,
    CancelToken,
    SessionSummary,
    format_device_list,
    list_devices,
    open_usb_transport,
    read_cpu_info,
)
from k230_boot.comms.transport import CONTROL_TIMEOUT
from k230_boot.config import BootConfig
from k230_boot.staging import (
    SRAM_RUN_BASE,
    BootPlan,
    FileImageSource,
    ImageSource,
    StageSequencer,
    WriteSequence,
    load_plan,
    single_image_plan,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CLI Context and Utilities
# =============================================================================

class Context:
    """
    Shared context for CLI commands.

    Stores device selection, timing overrides and verbosity.
    """

    def __init__(self) -> None:
        self.verbose: bool = False
        self.timeout: Optional[float] = None
        self.chunk_size: Optional[int] = None
        self.bus: Optional[int] = None
        self.address: Optional[int] = None

    def setup_logging(self) -> None:
        """Configure logging based on verbosity."""
        level = logging.DEBUG if self.verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(levelname)s: %(message)s" if self.verbose else "%(message)s",
        )

    def build_config(self) -> BootConfig:
        """Environment settings with command-line overrides applied."""
        config = BootConfig.from_env()
        if self.timeout is not None:
            config.command_timeout = self.timeout
        if self.chunk_size is not None:
            config.chunk_size = self.chunk_size
        config.validate()
        return config


pass_context = click.make_pass_decorator(Context, ensure=True)


class AddressType(click.ParamType):
    """
    Click parameter type for target addresses.

    Accepts any integer literal Python accepts: 0x80360000, 2153119744, ...
    """
    name = "address"

    def convert(self, value, param: Optional[click.Parameter],
                ctx: Optional[click.Context]) -> int:
        if isinstance(value, int):
            return value
        try:
            address = int(value, 0)
        except ValueError:
            self.fail(f"'{value}' is not a valid address", param, ctx)
        if not 0 <= address <= 0xFFFFFFFF:
            self.fail(f"address 0x{address:X} is outside the 32-bit range", param, ctx)
        return address


ADDRESS = AddressType()


def progress_bar(stage: str, current: int, total: int) -> None:
    """Simple text progress bar for stage writes."""
    if total == 0:
        return
    percent = current * 100 // total
    filled = percent // 2
    bar = "=" * filled + "-" * (50 - filled)
    click.echo(f"\r{stage}: [{bar}] {percent:3d}% ({current}/{total} bytes)", nl=False)
    if current >= total:
        click.echo()


def print_summary(summary: SessionSummary) -> None:
    click.echo(f"Device: {summary.identity}")
    click.echo("Protocol: %d.%d" % summary.protocol_version)
    if summary.stages_completed:
        names = ", ".join(summary.stage_names)
        click.echo(
            f"Stages: {summary.stages_completed} ({names}), "
            f"{summary.bytes_written} bytes written"
        )
    if summary.executed:
        click.echo(f"Execution handed off to 0x{summary.entry_address:08X}")


@contextmanager
def cancel_on_interrupt(token: CancelToken) -> Iterator[None]:
    """
    Turn Ctrl+C into a cancellation request for the duration of the block.

    The session stops before its next command, so a chunk already on the
    wire is never cut short.
    """
    def request_cancel(signum, frame) -> None:
        click.echo("\nCancelling after the current command...", err=True)
        token.cancel()

    previous = signal.signal(signal.SIGINT, request_cancel)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def run_session(ctx: Context, action: Callable[[BootSession], SessionSummary]) -> None:
    """Open the device, run action in a session and report the outcome."""
    token = CancelToken()
    try:
        config = ctx.build_config()
        transport = open_usb_transport(bus=ctx.bus, address=ctx.address)
        with BootSession(transport, config, cancel=token, owns_transport=True) as session:
            with cancel_on_interrupt(token):
                summary = action(session)
        print_summary(summary)
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose, error_type="Boot")


def build_sequence(ctx: Context, plan: BootPlan,
                   sources: dict[str, ImageSource]) -> WriteSequence:
    """Validate plan against its sources; no device is touched."""
    config = ctx.build_config()
    return StageSequencer(sources, config.chunk_size).build(plan)


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output (per-frame debug logging)",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Per-transfer timeout in seconds (default: 5)",
)
@click.option(
    "--chunk-size",
    type=click.IntRange(min=1),
    default=None,
    help="Payload bytes per write command (default: 4096)",
)
@click.option(
    "--bus",
    type=int,
    default=None,
    help="USB bus number of the device to use",
)
@click.option(
    "--address",
    "device_address",
    type=int,
    default=None,
    help="USB device address of the device to use",
)
@click.version_option(version=__version__, prog_name="k230boot")
@pass_context
def main(ctx: Context, verbose: bool, timeout: Optional[float],
         chunk_size: Optional[int], bus: Optional[int],
         device_address: Optional[int]) -> None:
    """
    Load and run code on a Kendryte K230/K230D in USB boot mode.

    Timing and retry defaults can be changed with K230_BOOT_* environment
    variables (for example K230_BOOT_WRITE_ATTEMPTS=5).

    Use 'k230boot devices' to list attached devices.
    """
    ctx.verbose = verbose
    ctx.timeout = timeout
    ctx.chunk_size = chunk_size
    ctx.bus = bus
    ctx.address = device_address
    ctx.setup_logging()


# =============================================================================
# Devices Command
# =============================================================================

@main.command()
@click.option(
    "--detailed", "-d",
    is_flag=True,
    help="Show detailed device information",
)
@pass_context
def devices(ctx: Context, detailed: bool) -> None:
    """
    List K230 devices in USB boot mode.

    Example:
        k230boot devices
        k230boot devices --detailed
    """
    try:
        found = list_devices()
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose)

    if not found:
        click.echo(format_device_list(found))
        click.echo("\nTips:")
        click.echo("  - Hold the board in USB boot mode while powering it on")
        click.echo("  - On Linux, check the udev rule for 29f1:0230")
        return

    click.echo("K230 devices in USB boot mode:")
    click.echo(format_device_list(found, verbose=detailed))


# =============================================================================
# Info Command
# =============================================================================

@main.command()
@pass_context
def info(ctx: Context) -> None:
    """
    Handshake with the mask ROM and show the chip identity.

    Nothing is written to the device.
    """
    def action(session: BootSession) -> SessionSummary:
        session.open()
        session.finish()
        return session.summary()

    run_session(ctx, action)


@main.command("cpu-info")
@pass_context
def cpu_info(ctx: Context) -> None:
    """
    Read the CPU info block over the EP0 control pipe.

    Goes through the ROM's vendor control request rather than the boot
    frame protocol. Nothing is written to the device.
    """
    try:
        with open_usb_transport(bus=ctx.bus, address=ctx.address) as transport:
            reply = read_cpu_info(transport, ctx.timeout or CONTROL_TIMEOUT)
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose)

    click.echo(f"Device says: {reply}")


# =============================================================================
# Load and Run Commands
# =============================================================================

def _single_image(ctx: Context, file: str, address: int, execute: bool) -> None:
    path = Path(file)
    try:
        plan = single_image_plan(path.name, address, execute=execute)
        sequence = build_sequence(ctx, plan, {path.name: FileImageSource(path)})
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose)

    verb = "Running" if execute else "Loading"
    click.echo(f"{verb} {path.name} ({sequence.total_bytes} bytes) at 0x{address:08X}")
    run_session(ctx, lambda session: session.run(sequence, progress=progress_bar))


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-a", "--addr",
    type=ADDRESS,
    default=SRAM_RUN_BASE,
    show_default="0x80360000",
    help="Load address",
)
@pass_context
def load(ctx: Context, file: str, addr: int) -> None:
    """
    Load FILE into device memory without executing it.

    Example:
        k230boot load u-boot-spl.bin
        k230boot load -a 0x80300000 blob.bin
    """
    _single_image(ctx, file, addr, execute=False)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-a", "--addr",
    type=ADDRESS,
    default=SRAM_RUN_BASE,
    show_default="0x80360000",
    help="Load and entry address",
)
@pass_context
def run(ctx: Context, file: str, addr: int) -> None:
    """
    Load FILE into device memory and jump to it.

    DRAM addresses are rejected: DRAM is not usable until a DRAM-init
    stage has run, which needs a boot plan.

    Example:
        k230boot run u-boot-spl.bin
    """
    _single_image(ctx, file, addr, execute=True)


# =============================================================================
# ROM Command
# =============================================================================

@main.command()
@pass_context
def rom(ctx: Context) -> None:
    """
    Jump back into the mask ROM.

    Useful to restart the ROM boot flow without a power cycle.
    """
    run_session(ctx, lambda session: session.jump_to_rom())


# =============================================================================
# Boot Command
# =============================================================================

def _parse_image_option(value: str) -> tuple[str, str]:
    name, sep, path = value.partition("=")
    if not sep or not name or not path:
        raise click.BadParameter(f"expected NAME=PATH, got '{value}'", param_hint="'-i'")
    return name, path


def resolve_sources(plan: BootPlan, plan_path: Path,
                    images: dict[str, str]) -> dict[str, ImageSource]:
    """
    Map every source named by plan to a file.

    Sources given with -i win; the rest are paths relative to the plan file.

    Raises:
        FileNotFoundError: If a source file does not exist.
    """
    sources: dict[str, ImageSource] = {}
    for name in sorted(plan.sources):
        path = Path(images[name]) if name in images else plan_path.parent / name
        sources[name] = FileImageSource(path)
    unused = set(images) - plan.sources
    if unused:
        logger.warning("Ignoring images not used by the plan: %s", ", ".join(sorted(unused)))
    return sources


@main.command()
@click.argument("plan_file", metavar="PLAN", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-i", "--image",
    "images",
    multiple=True,
    metavar="NAME=PATH",
    help="Use PATH for plan source NAME (repeatable)",
)
@pass_context
def boot(ctx: Context, plan_file: str, images: tuple[str, ...]) -> None:
    """
    Run a multi-stage boot plan from a JSON file.

    The whole plan is validated before the device is touched.

    Example:
        k230boot boot k230d.json
        k230boot boot k230d.json -i spl=build/u-boot-spl.bin
    """
    plan_path = Path(plan_file)
    try:
        mapping = dict(_parse_image_option(value) for value in images)
        plan = load_plan(plan_path)
        sequence = build_sequence(ctx, plan, resolve_sources(plan, plan_path, mapping))
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose)

    click.echo(
        f"Boot plan '{plan.name}': {len(sequence)} stages, {sequence.total_bytes} bytes"
    )
    run_session(ctx, lambda session: session.run(sequence, progress=progress_bar))


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    main()
