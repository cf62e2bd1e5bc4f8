"""
k230_boot Test Configuration
============================

Shared fixtures for the k230_boot test suite.

It provides:
- FakeRomTransport, an in-memory stand-in for a K230 mask ROM that speaks
  the boot frame protocol and can inject faults on chosen commands
- A fixture that replaces the session's backoff sleep with a Mock
- Helpers for building plans and sequences
"""

from dataclasses import dataclass
from typing import Optional
from unittest.mock import patch

import pytest

from k230_boot.comms.crc import crc16, crc_to_bytes
from k230_boot.comms.frame import (
    CommandFrame,
    Opcode,
    ResponseFrame,
    Status,
    decode_command,
)
from k230_boot.comms.session import HANDSHAKE_SIGNATURE
from k230_boot.comms.transport import Transport, VendorRequest
from k230_boot.errors import DisconnectedError, TimeoutError

# Status byte no ROM build defines
UNKNOWN_STATUS = 0x7F


# ═══════════════════════════════════════════════════════════════════════════════
# SIMULATED MASK ROM
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class Fault:
    """
    A fault to inject on matching commands.

    Actions:
        timeout: swallow the command, the next read times out
        corrupt: answer with one byte of the response flipped
        nack: answer with Status.CHECKSUM_ERROR
        reject: answer with Status.INVALID_ADDRESS
        bad_echo: acknowledge a write with the wrong checksum
        partial: acknowledge a write with a 1-byte payload
        wrong_address: answer with a different echoed address
        bad_signature: answer a handshake with a foreign signature
        disconnect: fail the write with DisconnectedError
        unknown_status: answer with status byte 0x7F
        bad_magic: answer with a command magic instead of a response magic
    """

    opcode: Opcode
    action: str
    address: Optional[int] = None
    times: int = 1

    def matches(self, frame: CommandFrame) -> bool:
        if self.times <= 0 or frame.opcode != self.opcode:
            return False
        return self.address is None or frame.address == self.address


class FakeRomTransport(Transport):
    """
    Transport backed by a simulated K230 mask ROM.

    Every successfully written command is decoded and recorded in
    `commands`; accepted WRITE_MEMORY payloads land in simulated memory.
    """

    def __init__(self, info: str = "K230D-V1.1", version: tuple[int, int] = (1, 0)):
        self.info = info
        self.version = version
        self.faults: list[Fault] = []
        self.commands: list[CommandFrame] = []
        self.write_calls = 0
        self.writes: list[tuple[int, bytes]] = []
        self.executed_at: Optional[int] = None
        self.control_requests: list[tuple[int, int, int]] = []
        self.closed = False
        self._pending: Optional[bytes] = None

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def inject(self, opcode: Opcode, action: str, address: Optional[int] = None,
               times: int = 1) -> None:
        self.faults.append(Fault(opcode, action, address, times))

    def opcodes(self) -> list[Opcode]:
        return [c.opcode for c in self.commands]

    def write_addresses(self) -> list[int]:
        return [c.address for c in self.commands if c.opcode == Opcode.WRITE_MEMORY]

    def read_memory(self, address: int, length: int) -> bytes:
        out = bytearray(length)
        for base, data in self.writes:
            for i, value in enumerate(data):
                pos = base + i - address
                if 0 <= pos < length:
                    out[pos] = value
        return bytes(out)

    # -------------------------------------------------------------------------
    # Transport interface
    # -------------------------------------------------------------------------

    def write(self, data: bytes, timeout: float) -> None:
        self.write_calls += 1
        frame = decode_command(data)
        fault = self._take_fault(frame)
        action = fault.action if fault else None

        if action == "disconnect":
            raise DisconnectedError("device disconnected during bulk write")

        self.commands.append(frame)
        self._pending = None
        if action == "timeout":
            return
        self._pending = self._respond(frame, action)

    def read(self, size: int, timeout: float) -> bytes:
        if self._pending is None:
            raise TimeoutError("USB bulk read timed out")
        data, self._pending = self._pending, None
        return data

    def control_in(self, request: int, value: int, index: int, length: int,
                   timeout: float) -> bytes:
        self.control_requests.append((request, value, index))
        if request == VendorRequest.GET_CPU_INFO:
            return self.info.encode("ascii").ljust(length, b"\x00")[:length]
        return b""

    def control_out(self, request: int, value: int, index: int,
                    timeout: float) -> None:
        self.control_requests.append((request, value, index))

    def close(self) -> None:
        self.closed = True

    # -------------------------------------------------------------------------
    # ROM behaviour
    # -------------------------------------------------------------------------

    def _take_fault(self, frame: CommandFrame) -> Optional[Fault]:
        for fault in self.faults:
            if fault.matches(frame):
                fault.times -= 1
                return fault
        return None

    def _respond(self, frame: CommandFrame, action: Optional[str]) -> Optional[bytes]:
        status = Status.OK
        address = frame.address
        payload = b""

        if action == "nack":
            status = Status.CHECKSUM_ERROR
        elif action == "reject":
            status = Status.INVALID_ADDRESS
        elif action == "wrong_address":
            address = frame.address + 0x100

        if status == Status.OK:
            if frame.opcode == Opcode.HANDSHAKE:
                signature = b"K510ROM\x00" if action == "bad_signature" else HANDSHAKE_SIGNATURE
                payload = signature + bytes(self.version)
            elif frame.opcode == Opcode.READ_INFO:
                payload = self.info.encode("ascii").ljust(32, b"\x00")
            elif frame.opcode == Opcode.WRITE_MEMORY:
                checksum = crc16(frame.payload)
                if action == "bad_echo":
                    checksum ^= 0x5A5A
                payload = crc_to_bytes(checksum)
                if action == "partial":
                    payload = payload[:1]
                elif action != "bad_echo":
                    self.writes.append((frame.address, frame.payload))
            elif frame.opcode == Opcode.EXECUTE:
                self.executed_at = frame.address
                return None

        if action == "unknown_status":
            status = UNKNOWN_STATUS

        response = ResponseFrame(status, frame.opcode, address, payload).to_bytes()
        if action == "bad_magic":
            response = CommandFrame(frame.opcode, address, payload).to_bytes()
        if action == "corrupt":
            corrupted = bytearray(response)
            corrupted[-3] ^= 0xFF
            response = bytes(corrupted)
        return response


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def rom() -> FakeRomTransport:
    """Fixture: a healthy simulated K230D mask ROM."""
    return FakeRomTransport()


@pytest.fixture(autouse=True)
def backoff_sleep():
    """Fixture: replace the session backoff sleep with a Mock."""
    with patch("k230_boot.comms.session.time.sleep") as sleep:
        yield sleep
