"""
Tests for the Mask ROM Communication Module
===========================================

This module tests the K230 communication components:
- CRC-16/CCITT-FALSE implementation
- Frame encoding/decoding and corruption detection
- Chip identity parsing
- Boot session state machine against a simulated ROM
- USB transport error translation and enumeration (mocked pyusb)

Test Categories
---------------
1. CRC Tests: Verify the CRC algorithm against known values
2. Frame Tests: Verify layout, decoding and error precedence
3. Session Tests: Handshake, identify, staging, execution and faults
4. Transport Tests: pyusb errors, endpoint setup, bulk and control transfers,
   device lookup
"""

import errno
import itertools
import struct
from array import array
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, call, patch

import pytest
import usb.core
import usb.util

from k230_boot.comms.crc import (
    CRC_INITIAL,
    CRC_TABLE,
    REFERENCE_CRC_VALUES,
    crc16,
    crc16_bitwise,
    crc_from_bytes,
    crc_to_bytes,
    verify_crc,
)
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
from k230_boot.comms.session import (
    BootSession,
    CancelToken,
    ChipIdentity,
    SessionState,
)
from k230_boot.comms.transport import (
    CONTROL_IN_REQUEST_TYPE,
    CONTROL_OUT_REQUEST_TYPE,
    K230_ROM_PID,
    KENDRYTE_VID,
    DeviceInfo,
    UsbTransport,
    VendorRequest,
    _translate_usb_error,
    find_device,
    format_device_list,
    list_devices,
    read_cpu_info,
    send_address,
    split_address,
)
from k230_boot.config import BootConfig
from k230_boot.errors import (
    BootCancelled,
    ChecksumMismatchError,
    DeviceNotFoundError,
    DisconnectedError,
    HandshakeError,
    MalformedFrameError,
    SessionStateError,
    TimeoutError,
    TransportError,
    TruncatedFrameError,
    UnexpectedResponseError,
    UnknownOpcodeError,
    UnknownStatusError,
    UnsupportedDeviceError,
    WriteFailedError,
)
from k230_boot.staging import (
    DRAM_BASE,
    MASK_ROM_BASE,
    SRAM_RUN_BASE,
    BootPlan,
    BytesImageSource,
    MemoryRegion,
    RegionKind,
    StageDescriptor,
    StageSequencer,
    single_image_plan,
)

from conftest import UNKNOWN_STATUS, FakeRomTransport


# =============================================================================
# Helpers
# =============================================================================

SPL = bytes(range(256)) * 10                    # 2560 bytes
FIRMWARE = bytes(i * 7 & 0xFF for i in range(5000))


def spl_sequence(chunk_size: int = 1024, execute: bool = True):
    plan = single_image_plan("spl", SRAM_RUN_BASE, execute=execute)
    return StageSequencer({"spl": BytesImageSource(SPL)}, chunk_size).build(plan)


def two_stage_sequence(chunk_size: int = 1024):
    plan = BootPlan("k230d", (
        StageDescriptor(
            name="spl",
            region=MemoryRegion("sram", 0x8030_0000, 0x6_0000),
            source="spl",
            initializes_dram=True,
        ),
        StageDescriptor(
            name="firmware",
            region=MemoryRegion("dram", DRAM_BASE, 0x20_0000, RegionKind.DRAM),
            source="firmware",
            requires="spl",
            execute=True,
        ),
    ))
    sources = {"spl": BytesImageSource(SPL), "firmware": BytesImageSource(FIRMWARE)}
    return StageSequencer(sources, chunk_size).build(plan)


def response_with_code(code: int, tag: int = Opcode.READ_INFO) -> bytes:
    fields = struct.pack("<2sBBII", RESPONSE_MAGIC, code, tag, 0, 0)
    return fields + crc_to_bytes(crc16(fields)) + crc_to_bytes(crc16(b""))


# =============================================================================
# CRC Tests
# =============================================================================

class TestCrc:
    """Tests for the CRC-16/CCITT-FALSE implementation."""

    @pytest.mark.parametrize("data,expected", list(REFERENCE_CRC_VALUES.items()))
    def test_reference_values(self, data, expected):
        """Table and bitwise implementations match published check values."""
        assert crc16(data) == expected
        assert crc16_bitwise(data) == expected

    def test_empty_data_is_initial_value(self):
        assert crc16(b"") == CRC_INITIAL

    def test_table_size(self):
        assert len(CRC_TABLE) == 256
        assert CRC_TABLE[0] == 0

    def test_incremental(self):
        """CRC can be continued from a previous value."""
        assert crc16(b"6789", crc16(b"12345")) == crc16(b"123456789")

    def test_bytes_are_little_endian(self):
        assert crc_to_bytes(0x29B1) == b"\xb1\x29"
        assert crc_from_bytes(b"\xb1\x29") == 0x29B1

    def test_from_bytes_requires_two_bytes(self):
        with pytest.raises(ValueError):
            crc_from_bytes(b"\x01")

    def test_verify(self):
        assert verify_crc(b"123456789", 0x29B1)
        assert not verify_crc(b"123456780", 0x29B1)


# =============================================================================
# Frame Tests
# =============================================================================

class TestFrameEncoding:
    """Tests for command and response frame layout."""

    def test_command_layout(self):
        data = encode(Opcode.WRITE_MEMORY, 0x80360000, b"\x13\x00\x00\x00")
        assert len(data) == FRAME_OVERHEAD + 4
        assert data[:2] == COMMAND_MAGIC
        assert data[2] == Opcode.WRITE_MEMORY
        assert data[3] == 0
        assert struct.unpack_from("<II", data, 4) == (0x80360000, 4)
        assert crc_from_bytes(data[12:14]) == crc16(data[:12])
        assert data[HEADER_SIZE:-2] == b"\x13\x00\x00\x00"
        assert crc_from_bytes(data[-2:]) == crc16(b"\x13\x00\x00\x00")

    def test_empty_payload(self):
        data = encode(Opcode.READ_INFO)
        assert len(data) == FRAME_OVERHEAD

    def test_command_decodes_to_same_frame(self):
        frame = CommandFrame(Opcode.WRITE_MEMORY, 0x80360000, b"hello")
        assert decode_command(frame.to_bytes()) == frame

    def test_response_decodes_to_same_frame(self):
        frame = ResponseFrame(Status.OK, Opcode.WRITE_MEMORY, 0x80360000, b"\x01\x02")
        decoded = decode_response(frame.to_bytes())
        assert decoded == frame
        assert decoded.ok
        assert decoded.opcode is Opcode.WRITE_MEMORY

    def test_decode_is_response_decoder(self):
        data = encode_response(Status.OK, Opcode.FLUSH_CACHES)
        assert decode(data).opcode == Opcode.FLUSH_CACHES

    def test_checksum_property_covers_payload(self):
        frame = CommandFrame(Opcode.WRITE_MEMORY, 0, b"123456789")
        assert frame.checksum == 0x29B1

    def test_unknown_opcode_rejected(self):
        with pytest.raises(ValueError):
            encode(0x7F)

    def test_payload_too_large(self):
        with pytest.raises(ValueError):
            encode(Opcode.WRITE_MEMORY, 0, bytes(MAX_PAYLOAD_SIZE + 1))

    def test_address_out_of_range(self):
        with pytest.raises(ValueError):
            CommandFrame(Opcode.WRITE_MEMORY, 0x1_0000_0000)


class TestFrameDecoding:
    """Tests for decode errors and their precedence."""

    FRAME = encode_response(Status.OK, Opcode.WRITE_MEMORY, 0x80360000, b"\xaa\x55\x01")

    @pytest.mark.parametrize("position", range(len(FRAME)))
    def test_any_flipped_byte_is_checksum_mismatch(self, position):
        tampered = bytearray(self.FRAME)
        tampered[position] ^= 0x01
        with pytest.raises(ChecksumMismatchError):
            decode_response(bytes(tampered))

    def test_shorter_than_header(self):
        with pytest.raises(TruncatedFrameError) as exc_info:
            decode_response(self.FRAME[:HEADER_SIZE - 1])
        assert exc_info.value.expected == HEADER_SIZE

    def test_missing_payload_bytes(self):
        with pytest.raises(TruncatedFrameError) as exc_info:
            decode_response(self.FRAME[:-1])
        assert exc_info.value.expected == len(self.FRAME)

    def test_surplus_bytes(self):
        with pytest.raises(MalformedFrameError):
            decode_response(self.FRAME + b"\x00")

    def test_wrong_magic(self):
        with pytest.raises(MalformedFrameError):
            decode_command(self.FRAME)

    def test_unknown_status(self):
        with pytest.raises(UnknownStatusError) as exc_info:
            decode_response(response_with_code(0x7F))
        assert exc_info.value.status == 0x7F

    def test_unknown_opcode(self):
        fields = struct.pack("<2sBBII", COMMAND_MAGIC, 0x42, 0, 0, 0)
        data = fields + crc_to_bytes(crc16(fields)) + crc_to_bytes(crc16(b""))
        with pytest.raises(UnknownOpcodeError):
            decode_command(data)

    def test_unknown_echoed_opcode_kept_as_int(self):
        frame = decode_response(response_with_code(Status.OK, tag=0x55))
        assert frame.opcode == 0x55
        assert not isinstance(frame.opcode, Opcode)


# =============================================================================
# Chip Identity Tests
# =============================================================================

class TestChipIdentity:
    """Tests for READ_INFO parsing."""

    def test_product_and_variant(self):
        identity = ChipIdentity.from_info(b"K230D-V1.1".ljust(32, b"\x00"))
        assert identity.product == "K230D"
        assert identity.variant == "V1.1"
        assert identity.supported

    def test_space_separator_and_case(self):
        identity = ChipIdentity.from_info(b"k230 rev2\x00\x00")
        assert identity.product == "K230"
        assert identity.variant == "rev2"
        assert identity.supported

    def test_unsupported(self):
        assert not ChipIdentity.from_info(b"K510\x00").supported

    def test_empty(self):
        identity = ChipIdentity.from_info(bytes(32))
        assert not identity.supported
        assert str(identity) == "<empty>"


# =============================================================================
# Session Tests
# =============================================================================

class TestSessionOpen:
    """Tests for handshake and identification."""

    def test_open(self, rom):
        session = BootSession(rom)
        identity = session.open()
        assert identity.product == "K230D"
        assert session.state is SessionState.IDENTIFIED
        assert session.protocol_version == (1, 0)
        assert rom.opcodes() == [Opcode.HANDSHAKE, Opcode.READ_INFO]

    def test_handshake_timeout_retried_with_backoff(self, rom, backoff_sleep):
        rom.inject(Opcode.HANDSHAKE, "timeout", times=2)
        session = BootSession(rom, BootConfig(retry_backoff=0.1))
        session.open()
        assert rom.opcodes().count(Opcode.HANDSHAKE) == 3
        assert [c.args[0] for c in backoff_sleep.call_args_list] == [0.1, 0.2]

    def test_handshake_attempts_bounded(self, rom):
        """A silent ROM is given up on after exactly handshake_attempts."""
        rom.inject(Opcode.HANDSHAKE, "timeout", times=100)
        session = BootSession(rom, BootConfig(handshake_attempts=4))
        with pytest.raises(HandshakeError) as exc_info:
            session.open()
        assert exc_info.value.attempts == 4
        assert rom.opcodes() == [Opcode.HANDSHAKE] * 4
        assert session.state is SessionState.FAULTED
        assert session.fault is exc_info.value

    def test_bad_signature_retried(self, rom):
        rom.inject(Opcode.HANDSHAKE, "bad_signature")
        BootSession(rom).open()
        assert rom.opcodes().count(Opcode.HANDSHAKE) == 2

    def test_corrupt_handshake_retried(self, rom):
        rom.inject(Opcode.HANDSHAKE, "corrupt")
        BootSession(rom).open()
        assert rom.opcodes().count(Opcode.HANDSHAKE) == 2

    def test_disconnect_not_retried(self, rom):
        rom.inject(Opcode.HANDSHAKE, "disconnect")
        session = BootSession(rom)
        with pytest.raises(DisconnectedError):
            session.open()
        assert rom.write_calls == 1
        assert session.state is SessionState.FAULTED

    def test_unsupported_device(self):
        rom = FakeRomTransport(info="K510-V2")
        session = BootSession(rom)
        with pytest.raises(UnsupportedDeviceError) as exc_info:
            session.open()
        assert exc_info.value.product == "K510"
        assert rom.opcodes().count(Opcode.READ_INFO) == 1
        assert session.state is SessionState.FAULTED
        with pytest.raises(SessionStateError):
            session.stage(spl_sequence())
        assert rom.write_addresses() == []

    def test_read_info_timeout_retried(self, rom):
        rom.inject(Opcode.READ_INFO, "timeout")
        BootSession(rom).open()
        assert rom.opcodes().count(Opcode.READ_INFO) == 2

    def test_open_twice_rejected(self, rom):
        session = BootSession(rom)
        session.open()
        with pytest.raises(SessionStateError):
            session.open()
        assert session.state is SessionState.IDENTIFIED

    def test_invalid_config_rejected(self, rom):
        with pytest.raises(ValueError):
            BootSession(rom, BootConfig(write_attempts=0))


class TestSessionRun:
    """End-to-end boot sessions."""

    def test_two_stage_boot(self, rom):
        """SPL into SRAM, then firmware into DRAM, then execute."""
        sequence = two_stage_sequence(chunk_size=1024)
        progress = Mock()

        summary = BootSession(rom).run(sequence, progress=progress)

        assert summary.identity.product == "K230D"
        assert summary.protocol_version == (1, 0)
        assert summary.stages_completed == 2
        assert summary.stage_names == ("spl", "firmware")
        assert summary.bytes_written == len(SPL) + len(FIRMWARE)
        assert summary.executed
        assert summary.entry_address == DRAM_BASE

        assert rom.read_memory(0x8030_0000, len(SPL)) == SPL
        assert rom.read_memory(DRAM_BASE, len(FIRMWARE)) == FIRMWARE
        assert rom.executed_at == DRAM_BASE
        assert rom.opcodes()[:2] == [Opcode.HANDSHAKE, Opcode.READ_INFO]
        assert rom.opcodes()[-2:] == [Opcode.FLUSH_CACHES, Opcode.EXECUTE]

        # SPL is written completely before any DRAM write
        addresses = rom.write_addresses()
        assert addresses[:3] == [0x8030_0000, 0x8030_0400, 0x8030_0800]
        assert addresses[3] == DRAM_BASE

        progress.assert_any_call("spl", len(SPL), len(SPL))
        assert progress.call_args_list[-1].args == ("firmware", len(FIRMWARE), len(FIRMWARE))

    def test_sram_then_dram_init_stage(self, rom):
        """4 KiB SRAM stage followed by a 1 KiB DRAM-init stage that executes."""
        plan = BootPlan("scenario", (
            StageDescriptor("sram", MemoryRegion("sram", 0x8000_0000, 0x1000), "sram"),
            StageDescriptor("ddr-init", MemoryRegion("ddr-init", 0x8000_4000, 0x400),
                            "ddr-init", initializes_dram=True, execute=True),
        ))
        images = {"sram": BytesImageSource(bytes(0x1000)),
                  "ddr-init": BytesImageSource(b"\x6f" * 0x400)}
        sequence = StageSequencer(images).build(plan)

        session = BootSession(rom)
        summary = session.run(sequence)

        assert session.state is SessionState.DONE
        assert summary.stages_completed == 2
        assert rom.executed_at == 0x8000_4000

    def test_session_done_after_execute(self, rom):
        session = BootSession(rom)
        session.run(spl_sequence())
        assert session.state is SessionState.DONE
        with pytest.raises(SessionStateError):
            session.execute(SRAM_RUN_BASE)

    def test_load_only(self, rom):
        session = BootSession(rom)
        summary = session.run(spl_sequence(execute=False))
        assert session.state is SessionState.DONE
        assert not summary.executed
        assert Opcode.EXECUTE not in rom.opcodes()
        assert Opcode.FLUSH_CACHES not in rom.opcodes()
        assert rom.read_memory(SRAM_RUN_BASE, len(SPL)) == SPL

    def test_current_stage_tracked(self, rom):
        session = BootSession(rom)
        seen = []
        session.open()
        session.stage(two_stage_sequence(),
                      progress=lambda name, done, total: seen.append(session.current_stage))
        assert seen[0] == 0
        assert seen[-1] == 1
        assert session.state is SessionState.STAGING

    def test_stage_before_open_rejected(self, rom):
        session = BootSession(rom)
        with pytest.raises(SessionStateError):
            session.stage(spl_sequence())
        assert session.state is SessionState.DISCONNECTED
        assert rom.commands == []

    def test_chunks_bounded_by_transport(self, rom):
        rom.max_transfer_size = FRAME_OVERHEAD + 256
        BootSession(rom).run(spl_sequence(chunk_size=4096))
        writes = [c for c in rom.commands if c.opcode == Opcode.WRITE_MEMORY]
        assert len(writes) == len(SPL) // 256
        assert all(len(c.payload) == 256 for c in writes)

    def test_jump_to_rom(self, rom):
        summary = BootSession(rom).jump_to_rom()
        assert rom.executed_at == MASK_ROM_BASE
        assert summary.stages_completed == 0
        assert summary.entry_address == MASK_ROM_BASE

    def test_owned_transport_closed(self, rom):
        with BootSession(rom, owns_transport=True):
            pass
        assert rom.closed

    def test_borrowed_transport_left_open(self, rom):
        with BootSession(rom):
            pass
        assert not rom.closed

    def test_summary_before_identify(self, rom):
        with pytest.raises(SessionStateError):
            BootSession(rom).summary()


class TestSessionWriteFaults:
    """Tests for write acknowledgment validation and retries."""

    SECOND_CHUNK = SRAM_RUN_BASE + 1024

    @pytest.mark.parametrize("action", ["nack", "corrupt", "bad_echo", "timeout"])
    def test_retried_in_place(self, rom, action):
        """A failed chunk is re-sent at the same address, nothing skipped."""
        rom.inject(Opcode.WRITE_MEMORY, action, address=self.SECOND_CHUNK)
        BootSession(rom).run(spl_sequence(chunk_size=1024))
        assert rom.write_addresses() == [
            SRAM_RUN_BASE, self.SECOND_CHUNK, self.SECOND_CHUNK, SRAM_RUN_BASE + 2048,
        ]
        assert rom.read_memory(SRAM_RUN_BASE, len(SPL)) == SPL

    def test_exhausted_retries(self, rom):
        rom.inject(Opcode.WRITE_MEMORY, "nack", address=self.SECOND_CHUNK, times=10)
        session = BootSession(rom, BootConfig(write_attempts=3))
        with pytest.raises(WriteFailedError) as exc_info:
            session.run(spl_sequence(chunk_size=1024))

        error = exc_info.value
        assert error.stage == "spl"
        assert error.offset == 1024
        assert error.address == self.SECOND_CHUNK
        assert error.attempts == 3
        assert rom.write_addresses() == [SRAM_RUN_BASE] + [self.SECOND_CHUNK] * 3
        assert session.state is SessionState.FAULTED
        assert rom.executed_at is None

    def test_disconnect_not_retried(self, rom):
        rom.inject(Opcode.WRITE_MEMORY, "disconnect", address=self.SECOND_CHUNK)
        session = BootSession(rom)
        with pytest.raises(DisconnectedError):
            session.run(spl_sequence(chunk_size=1024))
        assert rom.write_addresses() == [SRAM_RUN_BASE]
        assert session.state is SessionState.FAULTED

    def test_rejected_write_is_fatal(self, rom):
        rom.inject(Opcode.WRITE_MEMORY, "reject")
        session = BootSession(rom)
        with pytest.raises(UnexpectedResponseError) as exc_info:
            session.run(spl_sequence())
        assert exc_info.value.status == Status.INVALID_ADDRESS
        assert rom.write_addresses() == [SRAM_RUN_BASE]

    def test_wrong_echoed_address_is_fatal(self, rom):
        rom.inject(Opcode.WRITE_MEMORY, "wrong_address")
        with pytest.raises(UnexpectedResponseError):
            BootSession(rom).run(spl_sequence())

    def test_partial_ack_is_fatal(self, rom):
        rom.inject(Opcode.WRITE_MEMORY, "partial")
        with pytest.raises(UnexpectedResponseError):
            BootSession(rom).run(spl_sequence())
        assert len(rom.write_addresses()) == 1

    def test_unknown_status_is_fatal(self, rom):
        """An unrecognised status byte faults at once instead of being re-sent."""
        rom.inject(Opcode.WRITE_MEMORY, "unknown_status", times=10)
        session = BootSession(rom)
        with pytest.raises(UnexpectedResponseError) as exc_info:
            session.run(spl_sequence())
        assert exc_info.value.status == UNKNOWN_STATUS
        assert isinstance(exc_info.value.__cause__, UnknownStatusError)
        assert rom.write_addresses() == [SRAM_RUN_BASE]
        assert session.state is SessionState.FAULTED
        assert rom.executed_at is None

    def test_wrong_magic_is_fatal(self, rom):
        rom.inject(Opcode.WRITE_MEMORY, "bad_magic", times=10)
        with pytest.raises(UnexpectedResponseError) as exc_info:
            BootSession(rom).run(spl_sequence())
        assert isinstance(exc_info.value.__cause__, MalformedFrameError)
        assert exc_info.value.status is None
        assert rom.write_addresses() == [SRAM_RUN_BASE]

    def test_unknown_status_on_handshake_not_retried(self, rom, backoff_sleep):
        rom.inject(Opcode.HANDSHAKE, "unknown_status", times=10)
        session = BootSession(rom)
        with pytest.raises(UnexpectedResponseError):
            session.open()
        assert rom.opcodes() == [Opcode.HANDSHAKE]
        backoff_sleep.assert_not_called()
        assert session.state is SessionState.FAULTED

    def test_operations_after_fault_rejected(self, rom):
        rom.inject(Opcode.WRITE_MEMORY, "reject")
        session = BootSession(rom)
        with pytest.raises(UnexpectedResponseError):
            session.run(spl_sequence())
        with pytest.raises(SessionStateError):
            session.execute(SRAM_RUN_BASE)
        assert isinstance(session.fault, UnexpectedResponseError)


class TestSessionCancel:
    """Tests for cooperative cancellation."""

    def test_cancel_between_chunks(self, rom):
        token = CancelToken()
        session = BootSession(rom, cancel=token)

        def progress(name, done, total):
            token.cancel()

        with pytest.raises(BootCancelled):
            session.run(spl_sequence(chunk_size=1024), progress=progress)
        assert rom.write_addresses() == [SRAM_RUN_BASE]
        assert session.state is SessionState.FAULTED
        assert rom.executed_at is None

    def test_cancel_before_open(self, rom):
        token = CancelToken()
        token.cancel()
        with pytest.raises(BootCancelled):
            BootSession(rom, cancel=token).open()
        assert rom.commands == []

    def test_token(self):
        token = CancelToken()
        assert not token.cancelled
        token.cancel()
        assert token.cancelled


# =============================================================================
# Transport Tests
# =============================================================================

def _usb_device(bus: int, address: int) -> Mock:
    device = Mock(bus=bus, address=address, idVendor=KENDRYTE_VID,
                  idProduct=K230_ROM_PID, iManufacturer=0, iProduct=0,
                  iSerialNumber=0, speed=usb.util.SPEED_HIGH)
    return device


class TestUsbErrors:
    """Tests for pyusb error translation."""

    def test_timeout(self):
        error = _translate_usb_error(usb.core.USBTimeoutError("timeout"), "bulk read")
        assert isinstance(error, TimeoutError)

    def test_timeout_errno(self):
        error = _translate_usb_error(usb.core.USBError("t", errno=errno.ETIMEDOUT), "read")
        assert isinstance(error, TimeoutError)

    def test_no_device(self):
        error = _translate_usb_error(usb.core.USBError("gone", errno=errno.ENODEV), "write")
        assert isinstance(error, DisconnectedError)

    def test_other(self):
        error = _translate_usb_error(usb.core.USBError("pipe", errno=errno.EPIPE), "write")
        assert type(error) is TransportError


def _rom_device() -> Mock:
    device = _usb_device(1, 9)
    device.get_active_configuration.return_value = MagicMock()
    return device


def _busy() -> usb.core.USBError:
    return usb.core.USBError("Resource busy", errno=errno.EBUSY)


@pytest.fixture
def pyusb():
    """Fixture: the pyusb helpers UsbTransport calls, with a bulk endpoint pair."""
    ep_out = Mock(bEndpointAddress=0x01, wMaxPacketSize=512)
    ep_out.write.side_effect = lambda data, timeout: len(data)
    ep_in = Mock(bEndpointAddress=0x81, wMaxPacketSize=512)
    with patch("k230_boot.comms.transport.usb.util.find_descriptor",
               side_effect=[ep_out, ep_in]) as find, \
         patch("k230_boot.comms.transport.usb.util.claim_interface") as claim, \
         patch("k230_boot.comms.transport.usb.util.release_interface") as release, \
         patch("k230_boot.comms.transport.usb.util.dispose_resources") as dispose, \
         patch("k230_boot.comms.transport.time.sleep"):
        yield SimpleNamespace(find=find, claim=claim, release=release,
                              dispose=dispose, ep_out=ep_out, ep_in=ep_in)


class TestUsbTransportOpen:
    """Tests for configuring the device and claiming the ROM interface."""

    def test_endpoints_and_claim(self, pyusb):
        device = _rom_device()
        transport = UsbTransport(device)
        assert transport.ep_out is pyusb.ep_out
        assert transport.ep_in is pyusb.ep_in
        assert transport.packet_size == 512
        pyusb.claim.assert_called_once_with(device, 0)
        pyusb.dispose.assert_not_called()

    def test_unconfigured_device_configured(self, pyusb):
        device = _rom_device()
        device.get_active_configuration.side_effect = [
            usb.core.USBError("not configured"), MagicMock(),
        ]
        UsbTransport(device)
        device.set_configuration.assert_called_once_with()

    def test_claim_retried_while_busy(self, pyusb):
        pyusb.claim.side_effect = [_busy(), _busy(), None]
        transport = UsbTransport(_rom_device())
        assert pyusb.claim.call_count == 3
        assert transport.packet_size == 512

    def test_claim_gives_up_after_window(self, pyusb):
        pyusb.claim.side_effect = _busy()
        device = _rom_device()
        with patch("k230_boot.comms.transport.time.monotonic",
                   side_effect=itertools.count(0.0, 0.25)):
            with pytest.raises(TransportError) as exc_info:
                UsbTransport(device)
        assert type(exc_info.value) is TransportError
        assert "claiming" in str(exc_info.value)
        assert pyusb.claim.call_count >= 2
        pyusb.release.assert_not_called()
        pyusb.dispose.assert_called_once_with(device)

    def test_device_gone_while_claiming(self, pyusb):
        pyusb.claim.side_effect = usb.core.USBError("No such device", errno=errno.ENODEV)
        device = _rom_device()
        with pytest.raises(DisconnectedError):
            UsbTransport(device)
        assert pyusb.claim.call_count == 1
        pyusb.dispose.assert_called_once_with(device)

    def test_missing_endpoint_releases_device(self, pyusb):
        pyusb.find.side_effect = [pyusb.ep_out, None]
        device = _rom_device()
        with pytest.raises(TransportError):
            UsbTransport(device)
        pyusb.claim.assert_not_called()
        pyusb.dispose.assert_called_once_with(device)

    def test_close(self, pyusb):
        device = _rom_device()
        with UsbTransport(device):
            pass
        pyusb.release.assert_called_once_with(device, 0)
        pyusb.dispose.assert_called_once_with(device)


class TestUsbTransportTransfers:
    """Tests for bulk and EP0 transfers on an opened transport."""

    @pytest.fixture
    def transport(self, pyusb):
        return UsbTransport(_rom_device())

    def test_write(self, transport, pyusb):
        transport.write(b"\x01" * 100, 1.0)
        pyusb.ep_out.write.assert_called_once_with(b"\x01" * 100, timeout=1000)

    def test_short_write(self, transport, pyusb):
        pyusb.ep_out.write.side_effect = lambda data, timeout: len(data) - 1
        with pytest.raises(TransportError, match="Short bulk write"):
            transport.write(bytes(100), 1.0)

    def test_zero_length_packet_after_full_packets(self, transport, pyusb):
        """A frame ending on a packet boundary is terminated explicitly."""
        transport.write(bytes(1024), 1.0)
        assert pyusb.ep_out.write.call_args_list == [
            call(bytes(1024), timeout=1000),
            call(b"", timeout=1000),
        ]

    def test_write_timeout(self, transport, pyusb):
        pyusb.ep_out.write.side_effect = usb.core.USBTimeoutError("Operation timed out")
        with pytest.raises(TimeoutError):
            transport.write(bytes(16), 0.5)

    def test_read(self, transport, pyusb):
        pyusb.ep_in.read.return_value = array("B", b"KR\x00")
        assert transport.read(512, 2.0) == b"KR\x00"
        pyusb.ep_in.read.assert_called_once_with(512, timeout=2000)

    def test_read_disconnect(self, transport, pyusb):
        pyusb.ep_in.read.side_effect = usb.core.USBError("gone", errno=errno.ENODEV)
        with pytest.raises(DisconnectedError):
            transport.read(512, 1.0)

    def test_cpu_info(self, transport):
        transport.device.ctrl_transfer.return_value = array("B", b"K230D".ljust(32, b"\x00"))
        assert read_cpu_info(transport) == "K230D"
        transport.device.ctrl_transfer.assert_called_once_with(
            CONTROL_IN_REQUEST_TYPE, VendorRequest.GET_CPU_INFO, 0, 0, 32, timeout=5000
        )

    def test_control_request_types(self):
        """Vendor requests addressed to the device."""
        assert CONTROL_IN_REQUEST_TYPE == 0xC0
        assert CONTROL_OUT_REQUEST_TYPE == 0x40

    def test_address_request(self, transport):
        send_address(transport, VendorRequest.PROG_START, MASK_ROM_BASE, timeout=1.0)
        transport.device.ctrl_transfer.assert_called_once_with(
            CONTROL_OUT_REQUEST_TYPE, VendorRequest.PROG_START, 0x9120, 0x0000, timeout=1000
        )

    def test_control_failure(self, transport):
        transport.device.ctrl_transfer.side_effect = usb.core.USBError(
            "Pipe error", errno=errno.EPIPE
        )
        with pytest.raises(TransportError):
            read_cpu_info(transport)

    def test_control_timeout(self, transport):
        transport.device.ctrl_transfer.side_effect = usb.core.USBTimeoutError("timed out")
        with pytest.raises(TimeoutError):
            send_address(transport, VendorRequest.SET_DATA_ADDRESS, SRAM_RUN_BASE)


class TestVendorRequests:
    """Tests for EP0 helpers independent of pyusb."""

    def test_split_address(self):
        assert split_address(SRAM_RUN_BASE) == (0x8036, 0x0000)
        assert split_address(0x1234_5678) == (0x1234, 0x5678)

    def test_split_address_out_of_range(self):
        with pytest.raises(ValueError):
            split_address(0x1_0000_0000)

    def test_request_numbers(self):
        assert [int(r) for r in VendorRequest] == [0, 1, 2, 3, 4]

    def test_cpu_info_from_simulated_rom(self, rom):
        assert read_cpu_info(rom) == "K230D-V1.1"
        assert rom.control_requests == [(VendorRequest.GET_CPU_INFO, 0, 0)]
        assert rom.commands == []

    def test_address_request_on_simulated_rom(self, rom):
        send_address(rom, VendorRequest.SET_DATA_ADDRESS, 0x8030_1234)
        assert rom.control_requests == [(VendorRequest.SET_DATA_ADDRESS, 0x8030, 0x1234)]


class TestDeviceLookup:
    """Tests for enumeration with a mocked pyusb backend."""

    @patch("k230_boot.comms.transport.usb.core.find")
    def test_find_by_address(self, mock_find):
        first, second = _usb_device(1, 4), _usb_device(2, 7)
        mock_find.return_value = iter([first, second])
        assert find_device(bus=2, address=7) is second

    @patch("k230_boot.comms.transport.usb.core.find")
    def test_not_found(self, mock_find):
        mock_find.return_value = iter([])
        with pytest.raises(DeviceNotFoundError):
            find_device()

    @patch("k230_boot.comms.transport.usb.core.find")
    def test_no_backend(self, mock_find):
        mock_find.side_effect = usb.core.NoBackendError("No backend available")
        with pytest.raises(TransportError):
            list_devices()

    @patch("k230_boot.comms.transport.usb.core.find")
    def test_list_devices(self, mock_find):
        mock_find.return_value = iter([_usb_device(3, 12)])
        devices = list_devices()
        assert len(devices) == 1
        assert devices[0].location == "003:012"
        assert devices[0].speed_name == "high"

    def test_format_empty(self):
        assert "No K230 devices" in format_device_list([])

    def test_format_verbose(self):
        info = DeviceInfo(1, 5, KENDRYTE_VID, K230_ROM_PID, "Canaan", None, "ABC",
                          usb.util.SPEED_HIGH)
        text = format_device_list([info], verbose=True)
        assert "29F1:0230" in text
        assert "Manufacturer: Canaan" in text
        assert "Serial: ABC" in text
