"""
K230 Mask ROM Communication
===========================

This module provides everything needed to talk to a K230 held in USB boot
mode.

Module Structure
----------------
- **crc**: CRC-16/CCITT-FALSE used by the frame codec
- **frame**: Command/response frame encoding and decoding
- **transport**: Transport interface and the pyusb bulk and EP0 implementation
- **session**: The boot session state machine

Quick Start
-----------
    from k230_boot.comms import BootSession, open_usb_transport

    with BootSession(open_usb_transport(), owns_transport=True) as session:
        identity = session.open()
        print(f"Connected to {identity}")

Thread Safety
-------------
A BootSession is not thread-safe and must be driven from one thread. The
only thing another thread may touch is the session's CancelToken.
Sessions for different devices share no state.
"""

# =============================================================================
# Public API Exports
# =============================================================================

# CRC utilities
from k230_boot.comms.crc import (
    CRC_INITIAL,
    CRC_SIZE,
    CRC_TABLE,
    REFERENCE_CRC_VALUES,
    crc16,
    crc16_bitwise,
    crc_from_bytes,
    crc_to_bytes,
    verify_crc,
)

# Frame codec
from k230_boot.comms.frame import (
    COMMAND_MAGIC,
    FRAME_OVERHEAD,
    HEADER_SIZE,
    MAX_PAYLOAD_SIZE,
    RESPONSE_MAGIC,
    CommandFrame,
    Opcode,
    ResponseFrame,
    Status,
    decode,
    decode_command,
    decode_response,
    encode,
    encode_response,
)

# USB transport
from k230_boot.comms.transport import (
    CPU_INFO_SIZE,
    K230_ROM_PID,
    KENDRYTE_VID,
    DeviceInfo,
    Transport,
    UsbTransport,
    VendorRequest,
    find_device,
    format_device_list,
    list_devices,
    open_usb_transport,
    read_cpu_info,
    send_address,
    split_address,
)

# Boot session
from k230_boot.comms.session import (
    CHIP_INFO_SIZE,
    HANDSHAKE_REQUEST,
    HANDSHAKE_SIGNATURE,
    SUPPORTED_PRODUCTS,
    BootSession,
    CancelToken,
    ChipIdentity,
    ProgressCallback,
    SessionState,
    SessionSummary,
)

__all__ = [
    # CRC
    "CRC_INITIAL",
    "CRC_SIZE",
    "CRC_TABLE",
    "REFERENCE_CRC_VALUES",
    "crc16",
    "crc16_bitwise",
    "crc_from_bytes",
    "crc_to_bytes",
    "verify_crc",
    # Frames
    "COMMAND_MAGIC",
    "FRAME_OVERHEAD",
    "HEADER_SIZE",
    "MAX_PAYLOAD_SIZE",
    "RESPONSE_MAGIC",
    "CommandFrame",
    "Opcode",
    "ResponseFrame",
    "Status",
    "decode",
    "decode_command",
    "decode_response",
    "encode",
    "encode_response",
    # Transport
    "CPU_INFO_SIZE",
    "K230_ROM_PID",
    "KENDRYTE_VID",
    "DeviceInfo",
    "Transport",
    "UsbTransport",
    "VendorRequest",
    "find_device",
    "format_device_list",
    "list_devices",
    "open_usb_transport",
    "read_cpu_info",
    "send_address",
    "split_address",
    # Session
    "CHIP_INFO_SIZE",
    "HANDSHAKE_REQUEST",
    "HANDSHAKE_SIGNATURE",
    "SUPPORTED_PRODUCTS",
    "BootSession",
    "CancelToken",
    "ChipIdentity",
    "ProgressCallback",
    "SessionState",
    "SessionSummary",
]
