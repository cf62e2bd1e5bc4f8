"""
K230 Memory Map
===============

The handful of address windows the boot loader has to know about. The
mask ROM can write to on-chip SRAM at any time, but DRAM is only usable
after a DRAM-init stage has run.

    0x00000000 ┌──────────────────────┐
               │ DRAM window          │ populated size is board specific
    0x80000000 ├──────────────────────┤
               │ ...                  │
    0x80200000 ├──────────────────────┤
               │ SRAM (2 MiB)         │ default load address 0x80360000
    0x80400000 ├──────────────────────┤
               │ ...                  │
    0x91200000 ├──────────────────────┤
               │ Mask ROM             │ EXECUTE here re-enters the ROM
               └──────────────────────┘
"""

from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional


class RegionKind(Enum):
    """Kind of memory behind a region."""

    SRAM = "sram"
    DRAM = "dram"


@dataclass(frozen=True)
class MemoryRegion:
    """
    A contiguous window of target memory.

    Attributes:
        name: Label used in logs and error messages
        base: First address of the region
        size: Maximum number of bytes that may be written
        kind: SRAM (always writable) or DRAM (needs init first)
    """

    name: str
    base: int
    size: int
    kind: RegionKind = RegionKind.SRAM

    def __post_init__(self) -> None:
        if self.base < 0 or self.size <= 0:
            raise ValueError(
                f"Invalid region '{self.name}': base=0x{self.base:X} size={self.size}"
            )
        if self.end > 0x1_0000_0000:
            raise ValueError(f"Region '{self.name}' extends past the 32-bit address space")

    @property
    def end(self) -> int:
        """First address after the region."""
        return self.base + self.size

    @property
    def is_dram(self) -> bool:
        return self.kind is RegionKind.DRAM

    def contains(self, address: int, length: int = 1) -> bool:
        return self.base <= address and address + length <= self.end

    def overlaps(self, other: "MemoryRegion") -> bool:
        return self.base < other.end and other.base < self.end

    def __str__(self) -> str:
        return f"{self.name} [0x{self.base:08X}-0x{self.end:08X}) {self.kind.value}"


# =============================================================================
# K230 Address Windows
# =============================================================================

SRAM_BASE: Final[int] = 0x8020_0000
SRAM_SIZE: Final[int] = 0x0020_0000

# Where the ROM tooling conventionally loads first-stage code
SRAM_RUN_BASE: Final[int] = 0x8036_0000

# Address space DRAM is mapped into, not the populated size (128 MiB on a
# K230D); plans give each DRAM region its real size
DRAM_BASE: Final[int] = 0x0000_0000
DRAM_WINDOW_SIZE: Final[int] = 0x8000_0000

MASK_ROM_BASE: Final[int] = 0x9120_0000

SRAM: Final[MemoryRegion] = MemoryRegion("sram", SRAM_BASE, SRAM_SIZE, RegionKind.SRAM)
DRAM: Final[MemoryRegion] = MemoryRegion("dram", DRAM_BASE, DRAM_WINDOW_SIZE, RegionKind.DRAM)

K230_MEMORY_MAP: Final[tuple[MemoryRegion, ...]] = (SRAM, DRAM)


def window_for(address: int) -> Optional[MemoryRegion]:
    """Return the K230 window containing address, or None."""
    for window in K230_MEMORY_MAP:
        if window.contains(address):
            return window
    return None


def load_region(address: int, name: str = "image") -> MemoryRegion:
    """
    Build a region for an ad-hoc load at address.

    The region runs from address to the end of the enclosing window, so
    the stage size check reduces to "does the image fit before the window
    ends".

    Raises:
        ValueError: If address is not inside a known SRAM or DRAM window.
    """
    window = window_for(address)
    if window is None:
        raise ValueError(f"Address 0x{address:08X} is not in SRAM or DRAM")
    return MemoryRegion(name, address, window.end - address, window.kind)
