"""
K230 Boot Error Hierarchy
=========================

This module defines the exception hierarchy for the whole package.
All exceptions inherit from K230Error, allowing callers to catch every
boot-related failure with a single except clause if desired.

Exception Hierarchy
-------------------
K230Error (base)
├── PlanError (boot plan validation, raised before any USB I/O)
│   ├── SourceRangeError - stage source range missing or wrong length
│   ├── RegionSizeError - stage does not fit its target region
│   ├── RegionOverlapError - two stages claim overlapping regions
│   └── StageOrderError - bad predecessor, cycle, or DRAM before init
├── CommsError (talking to the mask ROM)
│   ├── TransportError - USB transfer failed
│   │   ├── TimeoutError - no transfer completion within the timeout
│   │   ├── DisconnectedError - device left the bus
│   │   └── DeviceNotFoundError - no ROM-mode device on the bus
│   ├── FrameError - received bytes are not a valid frame
│   │   ├── ChecksumMismatchError
│   │   ├── TruncatedFrameError
│   │   ├── MalformedFrameError
│   │   ├── UnknownStatusError
│   │   └── UnknownOpcodeError
│   └── ProtocolError - the ROM conversation cannot continue
│       ├── HandshakeError
│       ├── UnsupportedDeviceError
│       ├── UnexpectedResponseError
│       ├── WriteFailedError
│       └── SessionStateError
└── BootCancelled - cooperative cancellation between commands

Retry Policy
------------
Only TransportError timeouts, ChecksumMismatchError and TruncatedFrameError
are ever retried, and only as structurally identical re-sends of the same
command. A response with an unknown status or a malformed layout is turned
into UnexpectedResponseError at once. ProtocolError is always fatal for the
session.
"""

from typing import Optional


# =============================================================================
# Base Exception Class
# =============================================================================

class K230Error(Exception):
    """
    Base exception for all k230_boot errors.

        try:
            session.run(sequence)
        except K230Error as e:
            print(f"Boot failed: {e}")
    """
    pass


# =============================================================================
# Boot Plan Exceptions
# =============================================================================

class PlanError(K230Error):
    """
    Base exception for boot plan validation errors.

    Raised by the stage sequencer while building a write sequence. A
    PlanError always means no command has been sent to the device.

    Attributes:
        message: The error description
        stage: Name of the offending stage (optional)
    """

    def __init__(self, message: str, stage: Optional[str] = None):
        self.message = message
        self.stage = stage
        if stage:
            super().__init__(f"stage '{stage}': {message}")
        else:
            super().__init__(message)


class SourceRangeError(PlanError):
    """
    Stage source range does not exist or does not match its length.

    Raised when:
    - The stage names a source that was not supplied
    - offset + length runs past the end of the source
    - The source returned a different number of bytes than requested
    """
    pass


class RegionSizeError(PlanError):
    """Stage payload is larger than its target memory region."""
    pass


class RegionOverlapError(PlanError):
    """Two stages claim overlapping target memory regions."""

    def __init__(self, first: str, second: str, message: str = ""):
        self.first = first
        self.second = second
        if not message:
            message = f"target regions of '{first}' and '{second}' overlap"
        super().__init__(message)


class StageOrderError(PlanError):
    """
    Stage dependency ordering is invalid.

    Raised when:
    - A stage requires an unknown predecessor
    - Dependencies form a cycle
    - A predecessor is listed after the stage that requires it
    - A DRAM-targeted stage is not preceded by the DRAM-init stage
    """
    pass


# =============================================================================
# Communication Exceptions
# =============================================================================

class CommsError(K230Error):
    """Base exception for mask ROM communication errors."""
    pass


class TransportError(CommsError):
    """
    USB transfer failed.

    Transport errors are surfaced to the caller. The session only re-sends
    the same command after a timeout, never after a disconnect.
    """
    pass


class TimeoutError(TransportError):
    """
    Transfer did not complete within its timeout.

    Note:
        This is a package-specific TimeoutError, distinct from the
        Python builtin TimeoutError. It inherits from TransportError
        for consistent error handling in the comms module.
    """
    pass


class DisconnectedError(TransportError):
    """
    The device is no longer reachable.

    Raised when:
    - The device was unplugged or reset
    - The USB handle was closed
    - Permission to the device was lost
    """
    pass


class DeviceNotFoundError(TransportError):
    """
    No K230 in mask ROM mode was found.

    Raised when enumeration finds no matching VID:PID, or when the
    requested bus/address does not hold one.
    """
    pass


class FrameError(CommsError):
    """Received bytes do not form a valid frame."""
    pass


class ChecksumMismatchError(FrameError):
    """
    Frame checksum verification failed.

    Raised when the header or trailer CRC in a received frame doesn't
    match the recomputed value. This indicates corruption on the wire.
    """

    def __init__(self, expected: int, actual: int, message: str = ""):
        self.expected = expected
        self.actual = actual
        if not message:
            message = f"checksum mismatch: expected {expected:04X}, got {actual:04X}"
        super().__init__(message)


class TruncatedFrameError(FrameError):
    """Fewer bytes were received than the frame declares."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"truncated frame: expected {expected} bytes, got {actual}")


class MalformedFrameError(FrameError):
    """Frame passed its header checksum but has an invalid layout."""
    pass


class UnknownStatusError(FrameError):
    """Response status byte is outside the recognised set."""

    def __init__(self, status: int):
        self.status = status
        super().__init__(f"unknown response status 0x{status:02X}")


class UnknownOpcodeError(FrameError):
    """Command opcode byte is outside the recognised set."""

    def __init__(self, opcode: int):
        self.opcode = opcode
        super().__init__(f"unknown command opcode 0x{opcode:02X}")


class ProtocolError(CommsError):
    """
    Mask ROM protocol error.

    Raised when the device sends a response the state machine cannot
    account for, or the session is driven out of order. Always fatal.
    """
    pass


class HandshakeError(ProtocolError):
    """The ROM did not answer the handshake within the attempt bound."""

    def __init__(self, attempts: int, message: str = ""):
        self.attempts = attempts
        if not message:
            message = f"no valid handshake response after {attempts} attempts"
        super().__init__(message)


class UnsupportedDeviceError(ProtocolError):
    """The device identified itself as a chip this tool cannot boot."""

    def __init__(self, product: str, message: str = ""):
        self.product = product
        if not message:
            message = f"unsupported device '{product}'"
        super().__init__(message)


class UnexpectedResponseError(ProtocolError):
    """
    The device answered with a response that does not match the command.

    Attributes:
        status: Response status code, when one was decoded
    """

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class WriteFailedError(ProtocolError):
    """
    A WRITE-MEMORY chunk could not be confirmed.

    Carries enough context to identify exactly which part of which image
    was not written.

    Attributes:
        stage: Name of the stage being written
        offset: Byte offset of the chunk within the stage
        address: Target address of the chunk
        attempts: Number of attempts made
    """

    def __init__(self, stage: str, offset: int, address: int, attempts: int,
                 reason: str = ""):
        self.stage = stage
        self.offset = offset
        self.address = address
        self.attempts = attempts
        self.reason = reason
        message = (
            f"write failed: stage '{stage}' offset 0x{offset:X} "
            f"(address 0x{address:08X}) after {attempts} attempts"
        )
        if reason:
            message += f": {reason}"
        super().__init__(message)


class SessionStateError(ProtocolError):
    """An operation was requested in a state that does not allow it."""
    pass


# =============================================================================
# Cancellation
# =============================================================================

class BootCancelled(K230Error):
    """Boot was cancelled between two commands."""
    pass
