"""
K230 Boot Frame Codec
=====================

This module encodes and decodes the byte frames exchanged with the K230
mask ROM over the bulk endpoints. It is a pure transformation layer: no
I/O, no retries, no state.

Frame Layout
------------
Every frame, in both directions, has the same shape (all fields
little-endian):

    ┌───────┬──────┬─────┬─────────┬────────┬─────────┬─────────┬─────────┐
    │ Magic │ Code │ Tag │ Address │ Length │ Hdr CRC │ Payload │ Pay CRC │
    │ 2 B   │ 1 B  │ 1 B │ 4 B     │ 4 B    │ 2 B     │ 0-64 KiB│ 2 B     │
    └───────┴──────┴─────┴─────────┴────────┴─────────┴─────────┴─────────┘

- Magic is b"KC" for host commands and b"KR" for ROM responses
- Code is the opcode (command) or status (response)
- Tag is zero in commands; responses echo the command opcode there
- Address is the target address; responses echo it
- Hdr CRC covers the 12 bytes before it, Pay CRC covers the payload

Checking the header CRC before trusting the length field means a
corrupted length is reported as a checksum mismatch, never as a
truncated or oversized frame.

Opcodes
-------
The low opcode values follow the ROM's EP0 vendor requests
(GET_CPU_INFO=0, SET_DATA_ADDRESS=1, FLUSH_CACHES=3, PROG_START=4).
WRITE_MEMORY carries both address and data in one frame.
"""

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Final, Union

from k230_boot.comms.crc import CRC_SIZE, crc16, crc_from_bytes, crc_to_bytes
from k230_boot.errors import (
    ChecksumMismatchError,
    MalformedFrameError,
    TruncatedFrameError,
    UnknownOpcodeError,
    UnknownStatusError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Frame Constants
# =============================================================================

COMMAND_MAGIC: Final[bytes] = b"KC"
RESPONSE_MAGIC: Final[bytes] = b"KR"

# magic, code, tag, address, length
_HEADER_FIELDS: Final[struct.Struct] = struct.Struct("<2sBBII")

HEADER_SIZE: Final[int] = _HEADER_FIELDS.size + CRC_SIZE

# Header plus payload CRC trailer
FRAME_OVERHEAD: Final[int] = HEADER_SIZE + CRC_SIZE

MAX_PAYLOAD_SIZE: Final[int] = 64 * 1024

MAX_ADDRESS: Final[int] = 0xFFFFFFFF


class Opcode(IntEnum):
    """Host-to-ROM command codes."""

    READ_INFO = 0x00
    WRITE_MEMORY = 0x01
    FLUSH_CACHES = 0x03
    EXECUTE = 0x04
    HANDSHAKE = 0x10


class Status(IntEnum):
    """
    ROM response status codes.

    CHECKSUM_ERROR means the ROM saw a corrupted command and discarded
    it; it is the only non-OK status the host may answer by re-sending.
    """

    OK = 0x00
    CHECKSUM_ERROR = 0x01
    INVALID_ADDRESS = 0x02
    INVALID_LENGTH = 0x03
    INVALID_COMMAND = 0x04


# =============================================================================
# Frame Classes
# =============================================================================

@dataclass(frozen=True)
class CommandFrame:
    """
    An outbound request to the mask ROM.

    Attributes:
        opcode: Command code
        address: Target address for memory operations (0 otherwise)
        payload: Command data (may be empty)

    Example:
        frame = CommandFrame(Opcode.WRITE_MEMORY, 0x80360000, b"\\x13\\x00")
        wire = frame.to_bytes()
    """

    opcode: Opcode
    address: int = 0
    payload: bytes = b""

    def __post_init__(self) -> None:
        _check_fields(self.address, self.payload)
        object.__setattr__(self, "payload", bytes(self.payload))

    @property
    def checksum(self) -> int:
        """CRC of the payload, as carried in the frame trailer."""
        return crc16(self.payload)

    def to_bytes(self) -> bytes:
        return _build_frame(COMMAND_MAGIC, self.opcode, 0, self.address, self.payload)

    @classmethod
    def from_bytes(cls, data: bytes) -> "CommandFrame":
        return decode_command(data)

    def __repr__(self) -> str:
        return (
            f"CommandFrame({_code_name(self.opcode)}, address=0x{self.address:08X}, "
            f"payload[{len(self.payload)}], crc={self.checksum:04X})"
        )


@dataclass(frozen=True)
class ResponseFrame:
    """
    An inbound acknowledgment from the mask ROM.

    Attributes:
        status: Response status
        opcode: Opcode of the command being answered
        address: Address of the command being answered
        payload: Response data (chip info, echoed checksum, ...)
    """

    status: Status
    opcode: int
    address: int = 0
    payload: bytes = b""

    def __post_init__(self) -> None:
        _check_fields(self.address, self.payload)
        object.__setattr__(self, "payload", bytes(self.payload))

    @property
    def ok(self) -> bool:
        return self.status == Status.OK

    def to_bytes(self) -> bytes:
        return _build_frame(RESPONSE_MAGIC, self.status, self.opcode,
                            self.address, self.payload)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ResponseFrame":
        return decode_response(data)

    def __repr__(self) -> str:
        return (
            f"ResponseFrame({_code_name(self.status)}, opcode={_code_name(self.opcode)}, "
            f"address=0x{self.address:08X}, payload[{len(self.payload)}])"
        )


# =============================================================================
# Encoding
# =============================================================================

def encode(opcode: int, address: int = 0, payload: bytes = b"") -> bytes:
    """
    Encode a command frame.

    Args:
        opcode: Command opcode.
        address: Target address (0 for commands without one).
        payload: Command data.

    Returns:
        Complete frame bytes ready for a bulk OUT transfer.

    Raises:
        ValueError: If the opcode, address or payload size is out of range.
    """
    return CommandFrame(_as_opcode(opcode), address, payload).to_bytes()


def encode_response(status: int, opcode: int, address: int = 0,
                    payload: bytes = b"") -> bytes:
    """Encode a response frame, as the ROM would send it."""
    return ResponseFrame(Status(status), opcode, address, payload).to_bytes()


def _build_frame(magic: bytes, code: int, tag: int, address: int,
                 payload: bytes) -> bytes:
    fields = _HEADER_FIELDS.pack(magic, int(code), int(tag), address, len(payload))
    frame = bytearray(fields)
    frame.extend(crc_to_bytes(crc16(fields)))
    frame.extend(payload)
    frame.extend(crc_to_bytes(crc16(payload)))

    logger.debug(
        "Encoded frame: magic=%s code=0x%02X addr=0x%08X len=%d wire_len=%d",
        magic.decode("ascii"), int(code), address, len(payload), len(frame)
    )
    return bytes(frame)


# =============================================================================
# Decoding
# =============================================================================

def decode_command(data: bytes) -> CommandFrame:
    """
    Decode a command frame.

    Raises:
        TruncatedFrameError: Fewer bytes than the frame declares.
        ChecksumMismatchError: Header or payload CRC mismatch.
        MalformedFrameError: Wrong magic or surplus bytes.
        UnknownOpcodeError: Opcode outside Opcode.
    """
    code, _tag, address, payload = _split_frame(data, COMMAND_MAGIC)
    try:
        opcode = Opcode(code)
    except ValueError:
        raise UnknownOpcodeError(code) from None
    return CommandFrame(opcode, address, payload)


def decode_response(data: bytes) -> ResponseFrame:
    """
    Decode a response frame.

    Raises:
        TruncatedFrameError: Fewer bytes than the frame declares.
        ChecksumMismatchError: Header or payload CRC mismatch.
        MalformedFrameError: Wrong magic or surplus bytes.
        UnknownStatusError: Status outside Status.
    """
    code, tag, address, payload = _split_frame(data, RESPONSE_MAGIC)
    try:
        status = Status(code)
    except ValueError:
        raise UnknownStatusError(code) from None
    return ResponseFrame(status, _as_code(tag), address, payload)


# The session only ever decodes what the ROM sends back
decode = decode_response


def _split_frame(data: bytes, magic: bytes) -> tuple[int, int, int, bytes]:
    """Validate a raw frame and return (code, tag, address, payload)."""
    data = bytes(data)

    if len(data) < HEADER_SIZE:
        raise TruncatedFrameError(HEADER_SIZE, len(data))

    fields = data[:_HEADER_FIELDS.size]
    received = crc_from_bytes(data[_HEADER_FIELDS.size:HEADER_SIZE])
    calculated = crc16(fields)
    if received != calculated:
        raise ChecksumMismatchError(
            calculated, received,
            f"header checksum mismatch: calculated {calculated:04X}, "
            f"received {received:04X}"
        )

    frame_magic, code, tag, address, length = _HEADER_FIELDS.unpack(fields)
    if frame_magic != magic:
        raise MalformedFrameError(
            f"invalid frame magic: got {frame_magic.hex()}, expected {magic.hex()}"
        )
    if length > MAX_PAYLOAD_SIZE:
        raise MalformedFrameError(
            f"declared payload too large: {length} bytes, max {MAX_PAYLOAD_SIZE}"
        )

    total = HEADER_SIZE + length + CRC_SIZE
    if len(data) < total:
        raise TruncatedFrameError(total, len(data))
    if len(data) > total:
        raise MalformedFrameError(
            f"{len(data) - total} surplus bytes after frame of {total} bytes"
        )

    payload = data[HEADER_SIZE:HEADER_SIZE + length]
    received = crc_from_bytes(data[HEADER_SIZE + length:])
    calculated = crc16(payload)
    if received != calculated:
        raise ChecksumMismatchError(calculated, received)

    logger.debug(
        "Decoded frame: code=0x%02X tag=0x%02X addr=0x%08X len=%d",
        code, tag, address, length
    )
    return code, tag, address, payload


# =============================================================================
# Helpers
# =============================================================================

def _check_fields(address: int, payload: Union[bytes, bytearray]) -> None:
    if not 0 <= address <= MAX_ADDRESS:
        raise ValueError(f"Address out of range: 0x{address:X}")
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise TypeError(f"Payload must be bytes, got {type(payload).__name__}")
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ValueError(
            f"Payload too large: {len(payload)} bytes, max {MAX_PAYLOAD_SIZE}"
        )


def _as_opcode(opcode: int) -> Opcode:
    try:
        return Opcode(opcode)
    except ValueError:
        raise ValueError(f"Unknown opcode: 0x{opcode:02X}") from None


def _as_code(tag: int) -> int:
    try:
        return Opcode(tag)
    except ValueError:
        return tag


def _code_name(code: int) -> str:
    return code.name if isinstance(code, IntEnum) else f"0x{code:02X}"
