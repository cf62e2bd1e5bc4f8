"""
CRC-16 Implementation for K230 Boot Frames
==========================================

This module implements the CRC-16 checksum protecting every boot frame
exchanged with the K230 mask ROM. Each frame carries two checksums: one
over the fixed header and one over the payload.

Technical Details
-----------------
- Variant: CRC-16/CCITT-FALSE
- Polynomial: x^16 + x^12 + x^5 + 1 (0x1021), not reflected
- Initial value: 0xFFFF, no final XOR
- Transmitted little-endian, like every other multi-byte frame field

Any single corrupted byte changes the CRC, which is what lets the frame
codec report a tampered frame as a checksum mismatch rather than decoding
garbage.

Usage
-----
    from k230_boot.comms.crc import crc16, crc_to_bytes

    checksum = crc16(b"123456789")   # 0x29B1
    trailer = crc_to_bytes(checksum)  # b'\\xb1\\x29'
"""

from typing import Final

# =============================================================================
# CRC Constants
# =============================================================================

CRC_POLYNOMIAL: Final[int] = 0x1021

CRC_INITIAL: Final[int] = 0xFFFF

CRC_MASK: Final[int] = 0xFFFF

# Size of a CRC on the wire
CRC_SIZE: Final[int] = 2


# =============================================================================
# Lookup Table Generation
# =============================================================================

def _generate_crc_table() -> tuple[int, ...]:
    """
    Generate the 256-entry MSB-first lookup table for CRC_POLYNOMIAL.

    Returns:
        Tuple of 256 CRC values, one per possible leading byte.
    """
    table = []
    for byte_val in range(256):
        crc = byte_val << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ CRC_POLYNOMIAL
            else:
                crc <<= 1
        table.append(crc & CRC_MASK)
    return tuple(table)


# Pre-computed CRC lookup table - generated once at import time
CRC_TABLE: Final[tuple[int, ...]] = _generate_crc_table()


# =============================================================================
# Table Implementation
# =============================================================================

def crc16(data: bytes, initial: int = CRC_INITIAL) -> int:
    """
    Calculate CRC-16/CCITT-FALSE using the lookup table.

    Args:
        data: Input bytes to calculate CRC over.
        initial: Initial CRC value. Pass a previous result to continue a
                 calculation across several buffers.

    Returns:
        16-bit CRC value (0x0000 to 0xFFFF).

    Example:
        >>> hex(crc16(b"123456789"))
        '0x29b1'
    """
    crc = initial
    for byte in data:
        crc = ((crc << 8) & 0xFF00) ^ CRC_TABLE[((crc >> 8) ^ byte) & 0xFF]
    return crc


# =============================================================================
# Bitwise Reference Implementation
# =============================================================================

def crc16_bitwise(data: bytes, initial: int = CRC_INITIAL) -> int:
    """
    Calculate the same CRC one bit at a time.

    Slow, and only kept as an independent check of the table.
    """
    crc = initial
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ CRC_POLYNOMIAL) & CRC_MASK
            else:
                crc = (crc << 1) & CRC_MASK
    return crc


# =============================================================================
# Utility Functions
# =============================================================================

def crc_to_bytes(crc: int) -> bytes:
    """
    Convert a CRC value to little-endian bytes for transmission.

    Example:
        >>> crc_to_bytes(0x29B1)
        b'\\xb1)'
    """
    return bytes([crc & 0xFF, (crc >> 8) & 0xFF])


def crc_from_bytes(data: bytes) -> int:
    """
    Convert little-endian bytes to a CRC value.

    Args:
        data: At least two bytes; only the first two are used.

    Raises:
        ValueError: If data is less than 2 bytes.
    """
    if len(data) < CRC_SIZE:
        raise ValueError(f"CRC requires 2 bytes, got {len(data)}")
    return data[0] | (data[1] << 8)


def verify_crc(data: bytes, expected_crc: int) -> bool:
    """Return True if the CRC of data equals expected_crc."""
    return crc16(data) == expected_crc


# =============================================================================
# Reference Values for Testing
# =============================================================================

# Published CRC-16/CCITT-FALSE check values
REFERENCE_CRC_VALUES: Final[dict[bytes, int]] = {
    b"": 0xFFFF,
    b"A": 0xB915,
    b"123456789": 0x29B1,
}
