"""
Boot Plan Definitions
=====================

A boot plan is the ordered list of stages to load for one board/firmware
combination. It is built once per run, before the device is touched, and
is read-only while the session executes it.

Typical K230 Plan
-----------------
    ┌─────────────┬────────────┬────────────────┬─────────┐
    │ Stage       │ Region     │ Requires       │ Execute │
    ├─────────────┼────────────┼────────────────┼─────────┤
    │ spl         │ SRAM       │ -              │ no      │
    │ ddr-init    │ SRAM       │ spl            │ no      │
    │ opensbi     │ DRAM       │ ddr-init       │ yes     │
    └─────────────┴────────────┴────────────────┴─────────┘

Stages name a source (a key into the image sources given to the
sequencer) and a byte range of it. The plan never holds file paths.

JSON Form
---------
    {
      "name": "k230d-spl",
      "stages": [
        {
          "name": "spl",
          "region": {"name": "sram", "base": "0x80360000", "size": "0xA0000"},
          "source": "u-boot-spl.bin",
          "execute": true
        }
      ]
    }

Integers may be JSON numbers or strings in any base Python accepts
("0x80360000", "4096"). A missing length means "the rest of the source".
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from k230_boot.errors import PlanError
from k230_boot.staging.memmap import MemoryRegion, RegionKind, load_region

logger = logging.getLogger(__name__)


# =============================================================================
# Stage Descriptor
# =============================================================================

@dataclass(frozen=True)
class StageDescriptor:
    """
    One unit of the boot sequence.

    Attributes:
        name: Unique stage name
        region: Target memory region (base address and maximum size)
        source: Name of the image source to read from
        length: Number of bytes to load; None means to the end of the source
        offset: Start offset within the source
        requires: Name of the stage that must complete first
        execute: Jump to this stage's entry once everything is written
        initializes_dram: This stage is the DRAM-init code
        entry: Entry address; defaults to the region base
    """

    name: str
    region: MemoryRegion
    source: str
    length: Optional[int] = None
    offset: int = 0
    requires: Optional[str] = None
    execute: bool = False
    initializes_dram: bool = False
    entry: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Stage name must not be empty")
        if self.offset < 0:
            raise ValueError(f"Stage '{self.name}': negative offset {self.offset}")
        if self.length is not None and self.length < 0:
            raise ValueError(f"Stage '{self.name}': negative length {self.length}")

    @property
    def load_address(self) -> int:
        return self.region.base

    @property
    def entry_address(self) -> int:
        return self.entry if self.entry is not None else self.region.base

    @property
    def targets_dram(self) -> bool:
        return self.region.is_dram

    # -------------------------------------------------------------------------
    # Serialisation
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageDescriptor":
        """
        Build a stage from its JSON form.

        Raises:
            PlanError: If a required key is missing or a value is invalid.
        """
        if not isinstance(data, dict):
            raise PlanError(f"stage must be an object, got {type(data).__name__}")
        name = data.get("name", "")
        try:
            region_data = data["region"]
            if not isinstance(region_data, dict):
                raise PlanError(
                    f"region must be an object, got {type(region_data).__name__}",
                    stage=name or None,
                )
            region = MemoryRegion(
                name=region_data.get("name", name),
                base=_parse_int(region_data["base"]),
                size=_parse_int(region_data["size"]),
                kind=RegionKind(region_data.get("kind", "sram")),
            )
            return cls(
                name=name,
                region=region,
                source=data["source"],
                length=_parse_optional_int(data.get("length")),
                offset=_parse_int(data.get("offset", 0)),
                requires=data.get("requires"),
                execute=bool(data.get("execute", False)),
                initializes_dram=bool(data.get("initializes_dram", False)),
                entry=_parse_optional_int(data.get("entry")),
            )
        except KeyError as e:
            raise PlanError(f"missing key {e.args[0]!r}", stage=name or None) from None
        except (TypeError, ValueError) as e:
            raise PlanError(str(e), stage=name or None) from None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "region": {
                "name": self.region.name,
                "base": f"0x{self.region.base:08X}",
                "size": f"0x{self.region.size:X}",
                "kind": self.region.kind.value,
            },
            "source": self.source,
            "offset": self.offset,
        }
        if self.length is not None:
            data["length"] = self.length
        if self.requires is not None:
            data["requires"] = self.requires
        if self.execute:
            data["execute"] = True
        if self.initializes_dram:
            data["initializes_dram"] = True
        if self.entry is not None:
            data["entry"] = f"0x{self.entry:08X}"
        return data


# =============================================================================
# Boot Plan
# =============================================================================

@dataclass(frozen=True)
class BootPlan:
    """
    Ordered, immutable sequence of stages.

    The order given here is the order of writes. The sequencer validates
    it but never reorders it.
    """

    name: str
    stages: tuple[StageDescriptor, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))

    def __iter__(self) -> Iterator[StageDescriptor]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    def stage(self, name: str) -> StageDescriptor:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    @property
    def sources(self) -> set[str]:
        return {stage.source for stage in self.stages}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BootPlan":
        if not isinstance(data, dict) or not isinstance(data.get("stages"), list):
            raise PlanError("boot plan must be an object with a 'stages' list")
        stages = tuple(StageDescriptor.from_dict(s) for s in data["stages"])
        return cls(name=data.get("name", "plan"), stages=stages)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "stages": [s.to_dict() for s in self.stages]}


def load_plan(path: Union[str, Path]) -> BootPlan:
    """
    Load a boot plan from a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        PlanError: If the document is not a valid plan.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise PlanError(f"{path}: invalid JSON: {e}") from None

    plan = BootPlan.from_dict(data)
    logger.info("Loaded boot plan '%s' from %s (%d stages)", plan.name, path, len(plan))
    return plan


def single_image_plan(
    source: str,
    address: int,
    execute: bool = False,
    length: Optional[int] = None,
) -> BootPlan:
    """
    Plan that loads one image at address, optionally jumping to it.

    This is what the `load` and `run` commands use. An address in DRAM
    produces a plan the sequencer rejects, because nothing initialises
    DRAM first.

    Raises:
        PlanError: If address is outside SRAM and DRAM.
    """
    try:
        region = load_region(address)
    except ValueError as e:
        raise PlanError(str(e)) from None
    stage = StageDescriptor(
        name=source,
        region=region,
        source=source,
        length=length,
        execute=execute,
    )
    return BootPlan(name=source, stages=(stage,))


# =============================================================================
# Helpers
# =============================================================================

def _parse_int(value: Union[int, str]) -> int:
    if isinstance(value, bool):
        raise TypeError(f"expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 0)
    raise TypeError(f"expected an integer, got {value!r}")


def _parse_optional_int(value: Optional[Union[int, str]]) -> Optional[int]:
    return None if value is None else _parse_int(value)
