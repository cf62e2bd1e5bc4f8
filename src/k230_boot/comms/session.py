"""
K230 Mask ROM Boot Session
==========================

This module implements the protocol state machine that drives one K230
in USB boot mode from first contact to execution handoff:

    DISCONNECTED ──open()──► HANDSHAKING ──► IDENTIFIED
                                                 │
                                       stage()   ▼
                                  ┌──────── STAGING(0..N)
                                  │              │ execute()
                      (load only) │              ▼
                                  └──────►  EXECUTING ──► DONE

    Any fatal error from a non-terminal state ──► FAULTED

Protocol Flow
-------------
1. HANDSHAKE with a fixed request; the ROM answers with a fixed signature
   and its protocol version
2. READ_INFO returns a 32-byte ASCII block naming the chip
3. WRITE_MEMORY per chunk, in plan order; every ack echoes the address and
   the CRC of the chunk the ROM received
4. FLUSH_CACHES, then EXECUTE at the entry address

Retry Policy
------------
- Handshake: timeouts, corrupted frames and bad signatures are retried up to
  handshake_attempts times with linear backoff, then HandshakeError
- Other commands: timeouts, corrupted or truncated frames and ROM-reported
  checksum errors are retried in place (same command, same address) with
  linear backoff
- A chunk that still fails raises WriteFailedError with its stage and
  offset; nothing is ever skipped
- Disconnects, unsupported chips, unknown status bytes, malformed frames
  and responses that do not match their command are never retried

EXECUTE is the one command with no response. The ROM jumps to the new
code and may stop answering, so the session does not read after it and
treats a completed send as success.

Cancellation is checked only between a resolved response and the next
command, never in the middle of a chunk.
"""

import logging
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Final, Iterator, Optional

from k230_boot.comms.crc import crc_from_bytes
from k230_boot.comms.frame import (
    FRAME_OVERHEAD,
    MAX_PAYLOAD_SIZE,
    CommandFrame,
    Opcode,
    ResponseFrame,
    Status,
    decode_response,
)
from k230_boot.comms.transport import Transport
from k230_boot.config import BootConfig
from k230_boot.errors import (
    BootCancelled,
    ChecksumMismatchError,
    FrameError,
    HandshakeError,
    K230Error,
    MalformedFrameError,
    SessionStateError,
    TimeoutError,
    TruncatedFrameError,
    UnexpectedResponseError,
    UnknownStatusError,
    UnsupportedDeviceError,
    WriteFailedError,
)
from k230_boot.staging.memmap import MASK_ROM_BASE
from k230_boot.staging.sequencer import StageWrite, WriteSequence

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol Constants
# =============================================================================

HANDSHAKE_REQUEST: Final[bytes] = b"K230BOOT"

# Signature at the start of the handshake response, followed by major/minor
HANDSHAKE_SIGNATURE: Final[bytes] = b"K230ROM\x00"

# Size of the READ_INFO response block
CHIP_INFO_SIZE: Final[int] = 32

SUPPORTED_PRODUCTS: Final[frozenset[str]] = frozenset({"K230", "K230D"})

# (stage name, bytes written, stage total)
ProgressCallback = Callable[[str, int, int], None]


# =============================================================================
# Session Types
# =============================================================================

class SessionState(Enum):
    """Boot session states."""

    DISCONNECTED = "disconnected"
    HANDSHAKING = "handshaking"
    IDENTIFIED = "identified"
    STAGING = "staging"
    EXECUTING = "executing"
    DONE = "done"
    FAULTED = "faulted"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.DONE, SessionState.FAULTED)


_TRANSITIONS: Final[dict[SessionState, frozenset[SessionState]]] = {
    SessionState.DISCONNECTED: frozenset({SessionState.HANDSHAKING}),
    SessionState.HANDSHAKING: frozenset({SessionState.IDENTIFIED}),
    SessionState.IDENTIFIED: frozenset({
        SessionState.STAGING, SessionState.EXECUTING, SessionState.DONE,
    }),
    SessionState.STAGING: frozenset({
        SessionState.STAGING, SessionState.EXECUTING, SessionState.DONE,
    }),
    SessionState.EXECUTING: frozenset({SessionState.DONE}),
    SessionState.DONE: frozenset(),
    SessionState.FAULTED: frozenset(),
}


@dataclass(frozen=True)
class ChipIdentity:
    """
    Chip identity reported by READ_INFO.

    Attributes:
        product: Product code, e.g. "K230D"
        variant: Anything after the product code (revision, ROM build)
        raw: The info string as sent, without NUL padding
    """

    product: str
    variant: str
    raw: str

    @classmethod
    def from_info(cls, payload: bytes) -> "ChipIdentity":
        raw = payload.split(b"\x00", 1)[0].decode("ascii", errors="replace").strip()
        parts = re.split(r"[\s\-]+", raw, maxsplit=1)
        product = parts[0].upper()
        variant = parts[1] if len(parts) > 1 else ""
        return cls(product=product, variant=variant, raw=raw)

    @property
    def supported(self) -> bool:
        return self.product in SUPPORTED_PRODUCTS

    def __str__(self) -> str:
        return self.raw or "<empty>"


@dataclass(frozen=True)
class SessionSummary:
    """
    Outcome of a completed boot session.

    Attributes:
        identity: Chip identity read during identify
        protocol_version: ROM protocol version (major, minor)
        stages_completed: Number of stages fully written
        stage_names: Names of the completed stages, in order
        bytes_written: Total payload bytes acknowledged
        entry_address: Address execution was handed to, if any
        executed: True if EXECUTE was sent
    """

    identity: ChipIdentity
    protocol_version: tuple[int, int]
    stages_completed: int
    stage_names: tuple[str, ...]
    bytes_written: int
    entry_address: Optional[int]
    executed: bool


class CancelToken:
    """
    Cooperative cancellation flag shared with another thread.

    Example:
        token = CancelToken()
        session = BootSession(transport, cancel=token)
        # elsewhere: token.cancel()
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# =============================================================================
# Boot Session
# =============================================================================

class BootSession:
    """
    Mask ROM protocol state machine for one device.

    A session owns its transport exclusively and issues exactly one command
    at a time. Sessions for different boards share nothing and may run in
    separate threads.

    Usage:
        sequence = StageSequencer(sources).build(plan)
        with BootSession(open_usb_transport(), owns_transport=True) as session:
            summary = session.run(sequence, progress=report)
        print(summary.identity, summary.stages_completed)
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[BootConfig] = None,
        cancel: Optional[CancelToken] = None,
        owns_transport: bool = False,
    ):
        """
        Args:
            transport: Opened transport to the ROM.
            config: Timing and retry settings (defaults if None).
            cancel: Optional cancellation token.
            owns_transport: Close the transport when the session closes.

        Raises:
            ValueError: If the configuration is invalid.
        """
        self.transport = transport
        self.config = config or BootConfig()
        self.config.validate()
        self.cancel = cancel
        self.owns_transport = owns_transport

        self._state = SessionState.DISCONNECTED
        self._current_stage: Optional[int] = None
        self._identity: Optional[ChipIdentity] = None
        self._protocol_version: Optional[tuple[int, int]] = None
        self._completed: list[str] = []
        self._bytes_written = 0
        self._entry: Optional[int] = None
        self.fault: Optional[K230Error] = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def current_stage(self) -> Optional[int]:
        """Index of the stage being written while STAGING."""
        return self._current_stage

    @property
    def identity(self) -> Optional[ChipIdentity]:
        return self._identity

    @property
    def protocol_version(self) -> Optional[tuple[int, int]]:
        return self._protocol_version

    @property
    def stages_completed(self) -> int:
        return len(self._completed)

    # -------------------------------------------------------------------------
    # Session Operations
    # -------------------------------------------------------------------------

    def open(self) -> ChipIdentity:
        """
        Handshake with the ROM and identify the chip.

        Returns:
            The chip identity.

        Raises:
            HandshakeError: No valid handshake within the attempt bound.
            UnsupportedDeviceError: The chip is not a K230/K230D.
            TransportError: The device disconnected, or READ_INFO timed out
                            on every attempt.
        """
        with self._guard(SessionState.DISCONNECTED):
            self._transition(SessionState.HANDSHAKING)
            self._handshake()
        return self.identify()

    def identify(self) -> ChipIdentity:
        """
        Read and check the chip identity after a successful handshake.

        Raises:
            UnsupportedDeviceError: The chip is not a K230/K230D.
        """
        with self._guard(SessionState.HANDSHAKING):
            response = self._request(
                CommandFrame(Opcode.READ_INFO),
                self.config.command_timeout,
                self.config.command_attempts,
            )
            identity = ChipIdentity.from_info(response.payload[:CHIP_INFO_SIZE])
            if not identity.supported:
                raise UnsupportedDeviceError(
                    identity.product, f"unsupported device '{identity}'"
                )
            self._identity = identity
            logger.info("Device says: %s", identity)
            self._transition(SessionState.IDENTIFIED)
            return identity

    def stage(self, sequence: WriteSequence,
              progress: Optional[ProgressCallback] = None) -> None:
        """
        Write every stage of sequence, in order.

        Raises:
            WriteFailedError: A chunk could not be confirmed.
            UnexpectedResponseError: The ROM answered out of protocol.
            BootCancelled: Cancellation was requested between chunks.
        """
        with self._guard(SessionState.IDENTIFIED):
            chunk_size = self._chunk_size(sequence)
            for index, write in enumerate(sequence):
                self._current_stage = index
                self._transition(SessionState.STAGING)
                logger.info(
                    "Stage %d/%d '%s': %d bytes -> 0x%08X",
                    index + 1, len(sequence), write.name, write.size, write.address,
                )
                self._write_stage(write, chunk_size, progress)
                self._completed.append(write.name)

    def execute(self, address: int) -> None:
        """
        Flush caches and hand execution to address.

        No response is read after EXECUTE; the session moves to DONE as
        soon as the command has been sent.
        """
        with self._guard(SessionState.IDENTIFIED, SessionState.STAGING):
            self._request(
                CommandFrame(Opcode.FLUSH_CACHES),
                self.config.command_timeout,
                self.config.command_attempts,
            )
            self._transition(SessionState.EXECUTING)
            self._check_cancel()

            frame = CommandFrame(Opcode.EXECUTE, address)
            self.transport.write(frame.to_bytes(), self.config.command_timeout)
            self._entry = address
            logger.info("Handed off execution to 0x%08X", address)
            self._transition(SessionState.DONE)

    def finish(self) -> None:
        """End a load-only session without executing anything."""
        with self._guard(SessionState.IDENTIFIED, SessionState.STAGING):
            self._transition(SessionState.DONE)

    def run(self, sequence: WriteSequence,
            progress: Optional[ProgressCallback] = None) -> SessionSummary:
        """
        Open (if needed), stage, and execute the sequence entry if it has one.

        Returns:
            SessionSummary of the completed session.

        Raises:
            K230Error: Any fatal error; the session is FAULTED afterwards.
        """
        if self._state is SessionState.DISCONNECTED:
            self.open()
        self.stage(sequence, progress)
        if sequence.entry is not None:
            self.execute(sequence.entry)
        else:
            self.finish()
        return self.summary()

    def jump_to_rom(self) -> SessionSummary:
        """Re-enter the mask ROM without loading anything."""
        if self._state is SessionState.DISCONNECTED:
            self.open()
        self.execute(MASK_ROM_BASE)
        return self.summary()

    def summary(self) -> SessionSummary:
        """
        Summarise the session.

        Raises:
            SessionStateError: If the chip has not been identified yet.
        """
        if self._identity is None or self._protocol_version is None:
            raise SessionStateError("session has not identified a device")
        return SessionSummary(
            identity=self._identity,
            protocol_version=self._protocol_version,
            stages_completed=len(self._completed),
            stage_names=tuple(self._completed),
            bytes_written=self._bytes_written,
            entry_address=self._entry,
            executed=self._entry is not None,
        )

    def close(self) -> None:
        if self.owns_transport:
            self.transport.close()

    def __enter__(self) -> "BootSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Protocol Steps
    # -------------------------------------------------------------------------

    def _handshake(self) -> None:
        def check(response: ResponseFrame) -> Optional[str]:
            if not response.payload.startswith(HANDSHAKE_SIGNATURE):
                return f"bad handshake signature {response.payload[:8].hex()}"
            if len(response.payload) < len(HANDSHAKE_SIGNATURE) + 2:
                return "handshake response has no protocol version"
            return None

        response = self._request(
            CommandFrame(Opcode.HANDSHAKE, 0, HANDSHAKE_REQUEST),
            self.config.handshake_timeout,
            self.config.handshake_attempts,
            check=check,
            exhausted=lambda attempts, error: HandshakeError(
                attempts, f"no valid handshake response after {attempts} attempts: {error}"
            ),
        )
        offset = len(HANDSHAKE_SIGNATURE)
        self._protocol_version = (response.payload[offset], response.payload[offset + 1])
        logger.info("Mask ROM answered, protocol version %d.%d", *self._protocol_version)

    def _write_stage(self, write: StageWrite, chunk_size: int,
                     progress: Optional[ProgressCallback]) -> None:
        for offset, chunk in write.chunks(chunk_size):
            address = write.address + offset
            frame = CommandFrame(Opcode.WRITE_MEMORY, address, chunk)

            def check(response: ResponseFrame, expected: int = frame.checksum) -> Optional[str]:
                if len(response.payload) != 2:
                    raise UnexpectedResponseError(
                        f"partial write acknowledgment at 0x{response.address:08X}: "
                        f"{len(response.payload)} payload bytes"
                    )
                echoed = crc_from_bytes(response.payload)
                if echoed != expected:
                    return f"echoed checksum {echoed:04X}, sent {expected:04X}"
                return None

            self._request(
                frame,
                self.config.command_timeout,
                self.config.write_attempts,
                check=check,
                exhausted=lambda attempts, error, offset=offset, address=address: (
                    WriteFailedError(write.name, offset, address, attempts, str(error))
                ),
            )
            self._bytes_written += len(chunk)
            if progress:
                progress(write.name, offset + len(chunk), write.size)

    # -------------------------------------------------------------------------
    # Command Exchange
    # -------------------------------------------------------------------------

    def _request(
        self,
        frame: CommandFrame,
        timeout: float,
        attempts: int,
        check: Optional[Callable[[ResponseFrame], Optional[str]]] = None,
        exhausted: Optional[Callable[[int, K230Error], K230Error]] = None,
    ) -> ResponseFrame:
        """
        Send frame and return its validated response, re-sending in place.

        check may return a reason string to request a retry, or raise to
        fail outright. When every attempt fails, exhausted builds the error
        to raise; without it the last error is raised as is.
        """
        last_error: Optional[K230Error] = None

        for attempt in range(1, attempts + 1):
            try:
                response = self._exchange(frame, timeout)
            except (UnknownStatusError, MalformedFrameError) as e:
                raise UnexpectedResponseError(
                    f"unrecognised response to {frame.opcode.name} "
                    f"at 0x{frame.address:08X}: {e}",
                    status=getattr(e, "status", None),
                ) from e
            except (TimeoutError, ChecksumMismatchError, TruncatedFrameError) as e:
                last_error = e
            else:
                self._check_echo(frame, response)
                if response.status == Status.CHECKSUM_ERROR:
                    last_error = FrameError("ROM reported a checksum error")
                elif response.status != Status.OK:
                    raise UnexpectedResponseError(
                        f"{frame.opcode.name} rejected at 0x{frame.address:08X}: "
                        f"{response.status.name}",
                        status=response.status,
                    )
                else:
                    reason = check(response) if check else None
                    if reason is None:
                        return response
                    last_error = FrameError(reason)

            logger.warning(
                "%s at 0x%08X failed (attempt %d/%d): %s",
                frame.opcode.name, frame.address, attempt, attempts, last_error,
            )
            if attempt < attempts:
                time.sleep(self.config.retry_backoff * attempt)

        if exhausted is not None:
            raise exhausted(attempts, last_error) from last_error
        raise last_error

    def _exchange(self, frame: CommandFrame, timeout: float) -> ResponseFrame:
        self._check_cancel()
        self.transport.write(frame.to_bytes(), timeout)
        data = self.transport.read(self._read_size(frame), timeout)
        response = decode_response(data)
        logger.debug("TX %r -> RX %r", frame, response)
        return response

    def _read_size(self, frame: CommandFrame) -> int:
        if frame.opcode is Opcode.READ_INFO:
            return max(self.config.response_size, FRAME_OVERHEAD + CHIP_INFO_SIZE)
        return self.config.response_size

    @staticmethod
    def _check_echo(frame: CommandFrame, response: ResponseFrame) -> None:
        if response.opcode != frame.opcode or response.address != frame.address:
            opcode = getattr(response.opcode, "name", f"0x{response.opcode:02X}")
            raise UnexpectedResponseError(
                f"response to {opcode} at 0x{response.address:08X} does not match "
                f"{frame.opcode.name} at 0x{frame.address:08X}",
                status=response.status,
            )

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.cancelled:
            raise BootCancelled("boot cancelled")

    def _chunk_size(self, sequence: WriteSequence) -> int:
        limit = min(self.transport.max_transfer_size - FRAME_OVERHEAD, MAX_PAYLOAD_SIZE)
        if limit <= 0:
            raise SessionStateError(
                f"transport cannot carry a frame ({self.transport.max_transfer_size} bytes)"
            )
        return min(sequence.chunk_size, limit)

    # -------------------------------------------------------------------------
    # State Handling
    # -------------------------------------------------------------------------

    def _transition(self, new: SessionState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise SessionStateError(
                f"invalid transition {self._state.value} -> {new.value}"
            )
        if new is not self._state:
            logger.info("Session %s -> %s", self._state.value, new.value)
        self._state = new

    @contextmanager
    def _guard(self, *allowed: SessionState) -> Iterator[None]:
        """Check the starting state and fault the session on any error."""
        if self._state not in allowed:
            detail = f" ({self.fault})" if self.fault is not None else ""
            raise SessionStateError(
                f"operation not allowed in state {self._state.value}{detail}"
            )
        try:
            yield
        except K230Error as e:
            if not self._state.terminal:
                self.fault = e
                self._state = SessionState.FAULTED
                logger.error("Session faulted: %s", e)
            raise
