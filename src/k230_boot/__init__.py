"""
k230_boot - USB Boot Loader for the Kendryte K230 Mask ROM
==========================================================

This package drives a Kendryte K230 or K230D sitting in USB boot mode: it
talks to the chip's mask ROM over USB, stages one or more firmware images
into on-chip SRAM (and, once DRAM is initialised, into DRAM) and hands
execution to the loaded code.

Main Components
---------------
- **comms**: Talking to the mask ROM
    Frame codec, CRC-16, USB transport and the boot session state machine

- **staging**: Deciding what to write
    Memory map, image sources, boot plans and the stage sequencer that
    validates a plan before any USB traffic

- **config**: Timing, retry and chunking settings (BootConfig)

- **cli**: The k230boot command-line tool

Quick Start
-----------
Load and run a first-stage image in SRAM:
    >>> from k230_boot import (
    ...     BootSession, FileImageSource, StageSequencer,
    ...     open_usb_transport, single_image_plan, SRAM_RUN_BASE,
    ... )
    >>> plan = single_image_plan("u-boot-spl.bin", SRAM_RUN_BASE, execute=True)
    >>> sources = {"u-boot-spl.bin": FileImageSource("u-boot-spl.bin")}
    >>> sequence = StageSequencer(sources).build(plan)
    >>> with BootSession(open_usb_transport(), owns_transport=True) as session:
    ...     summary = session.run(sequence)

Or use the command-line tool:
    $ k230boot devices
    $ k230boot run u-boot-spl.bin
    $ k230boot boot plan.json

Version History
---------------
1.0.0 - Initial release
"""

__version__ = "1.0.0"

# =============================================================================
# Public API Exports
# =============================================================================

from k230_boot.errors import (
    K230Error,
    PlanError,
    SourceRangeError,
    RegionSizeError,
    RegionOverlapError,
    StageOrderError,
    CommsError,
    TransportError,
    TimeoutError,
    DisconnectedError,
    DeviceNotFoundError,
    FrameError,
    ChecksumMismatchError,
    TruncatedFrameError,
    MalformedFrameError,
    UnknownStatusError,
    UnknownOpcodeError,
    ProtocolError,
    HandshakeError,
    UnsupportedDeviceError,
    UnexpectedResponseError,
    WriteFailedError,
    SessionStateError,
    BootCancelled,
)
from k230_boot.config import BootConfig
from k230_boot.comms import (
    BootSession,
    CancelToken,
    ChipIdentity,
    CommandFrame,
    Opcode,
    ResponseFrame,
    SessionState,
    SessionSummary,
    Status,
    Transport,
    UsbTransport,
    decode,
    encode,
    list_devices,
    open_usb_transport,
)
from k230_boot.staging import (
    DRAM,
    MASK_ROM_BASE,
    SRAM,
    SRAM_RUN_BASE,
    BootPlan,
    BytesImageSource,
    FileImageSource,
    ImageSource,
    MemoryRegion,
    RegionKind,
    StageDescriptor,
    StageSequencer,
    WriteSequence,
    load_plan,
    single_image_plan,
)

__all__ = [
    "__version__",
    # Errors
    "K230Error",
    "PlanError",
    "SourceRangeError",
    "RegionSizeError",
    "RegionOverlapError",
    "StageOrderError",
    "CommsError",
    "TransportError",
    "TimeoutError",
    "DisconnectedError",
    "DeviceNotFoundError",
    "FrameError",
    "ChecksumMismatchError",
    "TruncatedFrameError",
    "MalformedFrameError",
    "UnknownStatusError",
    "UnknownOpcodeError",
    "ProtocolError",
    "HandshakeError",
    "UnsupportedDeviceError",
    "UnexpectedResponseError",
    "WriteFailedError",
    "SessionStateError",
    "BootCancelled",
    # Configuration
    "BootConfig",
    # Comms
    "BootSession",
    "CancelToken",
    "ChipIdentity",
    "CommandFrame",
    "Opcode",
    "ResponseFrame",
    "SessionState",
    "SessionSummary",
    "Status",
    "Transport",
    "UsbTransport",
    "decode",
    "encode",
    "list_devices",
    "open_usb_transport",
    # Staging
    "DRAM",
    "MASK_ROM_BASE",
    "SRAM",
    "SRAM_RUN_BASE",
    "BootPlan",
    "BytesImageSource",
    "FileImageSource",
    "ImageSource",
    "MemoryRegion",
    "RegionKind",
    "StageDescriptor",
    "StageSequencer",
    "WriteSequence",
    "load_plan",
    "single_image_plan",
]
