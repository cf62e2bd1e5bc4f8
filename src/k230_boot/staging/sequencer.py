"""
Stage Sequencer
===============

Turns a BootPlan plus its image sources into a validated, ordered
WriteSequence. All validation happens here, before any USB I/O: a plan
that would hang the chip is rejected while the chip is still untouched.

Checks, in order:

1. The plan has stages, unique names and at most one execute stage
2. Every predecessor exists, dependencies are acyclic, and each
   predecessor is listed before the stage that requires it
3. Regions inside the DRAM window are declared DRAM; at most one stage
   initialises DRAM, it does not itself target DRAM, and every DRAM stage
   depends on it (directly or transitively)
4. Every stage fits its region, and its entry lies inside that region
5. No two stages claim overlapping target regions
6. Every source range exists and yields exactly the declared length

The plan order is the write order. The sequencer never reorders stages
for throughput.
"""

import logging
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter
from typing import Final, Iterator, Mapping, Optional, Union

from k230_boot.comms.frame import MAX_PAYLOAD_SIZE
from k230_boot.errors import (
    PlanError,
    RegionOverlapError,
    RegionSizeError,
    SourceRangeError,
    StageOrderError,
)
from k230_boot.staging.image import ImageSource
from k230_boot.staging.memmap import DRAM
from k230_boot.staging.plan import BootPlan, StageDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE: Final[int] = 4096


# =============================================================================
# Write Sequence
# =============================================================================

@dataclass(frozen=True)
class StageWrite:
    """A validated stage together with the bytes to write."""

    stage: StageDescriptor
    data: bytes

    @property
    def name(self) -> str:
        return self.stage.name

    @property
    def address(self) -> int:
        return self.stage.load_address

    @property
    def size(self) -> int:
        return len(self.data)

    def chunks(self, chunk_size: int) -> Iterator[tuple[int, bytes]]:
        """Yield (offset, chunk) pairs covering the whole stage, in order."""
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        for offset in range(0, len(self.data), chunk_size):
            yield offset, self.data[offset:offset + chunk_size]


@dataclass(frozen=True)
class WriteSequence:
    """
    Ordered writes ready for a boot session.

    Attributes:
        plan_name: Name of the plan this was built from
        writes: Stage writes in plan order
        chunk_size: Maximum payload per WRITE-MEMORY frame
        entry: Address to EXECUTE after staging, or None for load-only
    """

    plan_name: str
    writes: tuple[StageWrite, ...]
    chunk_size: int = DEFAULT_CHUNK_SIZE
    entry: Optional[int] = None

    def __iter__(self) -> Iterator[StageWrite]:
        return iter(self.writes)

    def __len__(self) -> int:
        return len(self.writes)

    @property
    def total_bytes(self) -> int:
        return sum(w.size for w in self.writes)


# =============================================================================
# Sequencer
# =============================================================================

class StageSequencer:
    """
    Validates boot plans and reads their images.

    Example:
        sources = {"spl": FileImageSource("u-boot-spl.bin")}
        sequence = StageSequencer(sources).build(plan)
        session.run(sequence)
    """

    def __init__(
        self,
        sources: Union[ImageSource, Mapping[str, ImageSource]],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """
        Args:
            sources: Either a mapping from source name to ImageSource, or a
                     single ImageSource used for every stage.
            chunk_size: Maximum payload bytes per WRITE-MEMORY frame.

        Raises:
            ValueError: If chunk_size is not in 1..MAX_PAYLOAD_SIZE.
        """
        if not 0 < chunk_size <= MAX_PAYLOAD_SIZE:
            raise ValueError(
                f"chunk_size must be between 1 and {MAX_PAYLOAD_SIZE}, got {chunk_size}"
            )
        self.sources = sources
        self.chunk_size = chunk_size

    def build(self, plan: BootPlan) -> WriteSequence:
        """
        Validate plan and produce its write sequence.

        Raises:
            PlanError: If the plan is invalid (see module docstring). The
                       subclass says which rule was broken.
        """
        stages = list(plan)
        self._check_structure(stages)
        self._check_dependencies(stages)
        self._check_kinds(stages)
        self._check_dram_init(stages)
        self._check_regions(stages)
        self._check_overlaps(stages)

        writes = tuple(StageWrite(stage, self._read_stage(stage)) for stage in stages)
        for write in writes:
            self._check_fits(write)

        execute = [s for s in stages if s.execute]
        entry = execute[0].entry_address if execute else None

        sequence = WriteSequence(plan.name, writes, self.chunk_size, entry)
        logger.info(
            "Boot plan '%s' validated: %d stages, %d bytes, entry %s",
            plan.name, len(writes), sequence.total_bytes,
            f"0x{entry:08X}" if entry is not None else "none",
        )
        return sequence

    # -------------------------------------------------------------------------
    # Structure
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_structure(stages: list[StageDescriptor]) -> None:
        if not stages:
            raise PlanError("boot plan has no stages")

        seen = set()
        for stage in stages:
            if stage.name in seen:
                raise PlanError("duplicate stage name", stage=stage.name)
            seen.add(stage.name)

        execute = [s.name for s in stages if s.execute]
        if len(execute) > 1:
            raise PlanError(f"more than one execute stage: {', '.join(execute)}")

    # -------------------------------------------------------------------------
    # Dependencies
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_dependencies(stages: list[StageDescriptor]) -> None:
        position = {stage.name: index for index, stage in enumerate(stages)}

        for stage in stages:
            if stage.requires is not None and stage.requires not in position:
                raise StageOrderError(
                    f"requires unknown stage '{stage.requires}'", stage=stage.name
                )

        graph = {s.name: ({s.requires} if s.requires else set()) for s in stages}
        try:
            tuple(TopologicalSorter(graph).static_order())
        except CycleError as e:
            cycle = " -> ".join(e.args[1])
            raise StageOrderError(f"dependency cycle: {cycle}") from None

        for stage in stages:
            if stage.requires is not None and position[stage.requires] > position[stage.name]:
                raise StageOrderError(
                    f"listed before its predecessor '{stage.requires}'",
                    stage=stage.name,
                )

    @staticmethod
    def _check_kinds(stages: list[StageDescriptor]) -> None:
        # DRAM is unusable until init has run, whatever the plan calls it
        for stage in stages:
            if not stage.targets_dram and stage.region.overlaps(DRAM):
                raise PlanError(
                    f"region {stage.region} lies in the DRAM window "
                    f"[0x{DRAM.base:08X}-0x{DRAM.end:08X}) but is not declared dram",
                    stage=stage.name,
                )

    @staticmethod
    def _check_dram_init(stages: list[StageDescriptor]) -> None:
        init = [s for s in stages if s.initializes_dram]
        if len(init) > 1:
            names = ", ".join(s.name for s in init)
            raise StageOrderError(f"more than one DRAM-init stage: {names}")
        if init and init[0].targets_dram:
            raise StageOrderError("DRAM-init stage cannot target DRAM", stage=init[0].name)

        by_name = {s.name: s for s in stages}
        for stage in stages:
            if not stage.targets_dram:
                continue
            if not init:
                raise StageOrderError(
                    "targets DRAM but the plan has no DRAM-init stage", stage=stage.name
                )
            if not _depends_on(stage, init[0].name, by_name):
                raise StageOrderError(
                    f"targets DRAM but does not depend on DRAM-init stage '{init[0].name}'",
                    stage=stage.name,
                )

    # -------------------------------------------------------------------------
    # Regions
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_regions(stages: list[StageDescriptor]) -> None:
        for stage in stages:
            if stage.length is not None and stage.length > stage.region.size:
                raise RegionSizeError(
                    f"{stage.length} bytes do not fit region {stage.region} "
                    f"({stage.region.size} bytes)",
                    stage=stage.name,
                )

    @staticmethod
    def _check_fits(write: StageWrite) -> None:
        stage = write.stage
        if write.size == 0:
            raise SourceRangeError("stage is empty", stage=stage.name)
        if stage.execute and not stage.region.contains(stage.entry_address):
            raise RegionSizeError(
                f"entry 0x{stage.entry_address:08X} is outside region {stage.region}",
                stage=stage.name,
            )

    @staticmethod
    def _check_overlaps(stages: list[StageDescriptor]) -> None:
        ordered = sorted(stages, key=lambda s: (s.region.base, s.region.end))
        for previous, current in zip(ordered, ordered[1:]):
            if previous.region.overlaps(current.region):
                raise RegionOverlapError(previous.name, current.name)

    # -------------------------------------------------------------------------
    # Sources
    # -------------------------------------------------------------------------

    def _source_for(self, stage: StageDescriptor) -> ImageSource:
        if not isinstance(self.sources, Mapping):
            return self.sources
        try:
            return self.sources[stage.source]
        except KeyError:
            raise SourceRangeError(
                f"unknown image source '{stage.source}'", stage=stage.name
            ) from None

    def _read_stage(self, stage: StageDescriptor) -> bytes:
        source = self._source_for(stage)
        length = stage.length
        if length is None:
            length = max(source.size - stage.offset, 0)

        if stage.offset + length > source.size:
            raise SourceRangeError(
                f"source '{stage.source}' has {source.size} bytes, range "
                f"0x{stage.offset:X}+0x{length:X} does not exist",
                stage=stage.name,
            )
        if length > stage.region.size:
            raise RegionSizeError(
                f"{length} bytes do not fit region {stage.region} "
                f"({stage.region.size} bytes)",
                stage=stage.name,
            )

        try:
            data = source.read(stage.offset, length)
        except SourceRangeError as e:
            raise SourceRangeError(e.message, stage=stage.name) from e
        except OSError as e:
            raise SourceRangeError(
                f"cannot read source '{stage.source}': {e}", stage=stage.name
            ) from e

        if len(data) != length:
            raise SourceRangeError(
                f"source '{stage.source}' returned {len(data)} bytes, expected {length}",
                stage=stage.name,
            )
        logger.debug("Stage '%s': read %d bytes from '%s'", stage.name, length, stage.source)
        return bytes(data)


def _depends_on(stage: StageDescriptor, target: str,
                by_name: Mapping[str, StageDescriptor]) -> bool:
    """True if target is among stage's transitive predecessors."""
    current = stage.requires
    seen = set()
    while current is not None and current not in seen:
        if current == target:
            return True
        seen.add(current)
        current = by_name[current].requires
    return False
