"""
Boot Staging
============

Everything that happens before the first USB command: where things may be
written, where the bytes come from, and whether a plan is safe to run.

- **memmap**: K230 SRAM/DRAM windows and ad-hoc load regions
- **image**: Image sources (in-memory bytes and files)
- **plan**: Stage descriptors, boot plans and their JSON form
- **sequencer**: Plan validation and the resulting write sequence
"""

from k230_boot.staging.memmap import (
    DRAM,
    DRAM_BASE,
    DRAM_WINDOW_SIZE,
    K230_MEMORY_MAP,
    MASK_ROM_BASE,
    SRAM,
    SRAM_BASE,
    SRAM_RUN_BASE,
    SRAM_SIZE,
    MemoryRegion,
    RegionKind,
    load_region,
    window_for,
)
from k230_boot.staging.image import BytesImageSource, FileImageSource, ImageSource
from k230_boot.staging.plan import BootPlan, StageDescriptor, load_plan, single_image_plan
from k230_boot.staging.sequencer import (
    DEFAULT_CHUNK_SIZE,
    StageSequencer,
    StageWrite,
    WriteSequence,
)

__all__ = [
    # Memory map
    "DRAM",
    "DRAM_BASE",
    "DRAM_WINDOW_SIZE",
    "K230_MEMORY_MAP",
    "MASK_ROM_BASE",
    "SRAM",
    "SRAM_BASE",
    "SRAM_RUN_BASE",
    "SRAM_SIZE",
    "MemoryRegion",
    "RegionKind",
    "load_region",
    "window_for",
    # Images
    "BytesImageSource",
    "FileImageSource",
    "ImageSource",
    # Plans
    "BootPlan",
    "StageDescriptor",
    "load_plan",
    "single_image_plan",
    # Sequencing
    "DEFAULT_CHUNK_SIZE",
    "StageSequencer",
    "StageWrite",
    "WriteSequence",
]
