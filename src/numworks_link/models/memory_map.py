"""
Device memory map model.

A session's memory map is the ordered list of regions the DfuSe interface
advertises (plus the RAM region injected during negotiation). Flash sizes are
always derived from the regions, never stored.

The DfuSe interface name carries the layout, e.g.::

    @Internal Flash  /0x08000000/04*016Kg,01*064Kg,07*128Kg
    @Flash/0x08000000/04*016Kg/0x90000000/64*064Kg
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)

# Address windows used to classify regions (inclusive on the region start)
INTERNAL_FLASH_WINDOW = (0x08000000, 0x080FFFFF)
EXTERNAL_FLASH_WINDOW = (0x90000000, 0x9FFFFFFF)

INTERNAL_FLASH_BASE = 0x08000000
EXTERNAL_FLASH_BASE = 0x90000000

# The bootloader never lists RAM, so negotiation injects it
RAM_START = 0x20000000
RAM_END = 0x20040000
RAM_SECTOR_SIZE = 1024

_SECTOR_MULTIPLIERS = {" ": 1, "B": 1, "K": 1024, "M": 1048576}

_SEGMENT_GROUP_RE = re.compile(
    r"/\s*(0x[0-9a-fA-F]{1,8})\s*/"
    r"((?:\s*[0-9]+\s*\*\s*[0-9]+\s?[ BKM]\s*[a-g]\s*,?\s*)+)"
)
_SEGMENT_RE = re.compile(r"([0-9]+)\s*\*\s*([0-9]+)\s?([ BKM])\s*([a-g])\s*,?\s*")


@dataclass(frozen=True)
class MemoryRegion:
    """One contiguous region of device memory."""
    start: int
    end: int
    sector_size: int
    readable: bool = True
    erasable: bool = False
    writable: bool = False

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError(
                f"Invalid region 0x{self.start:08X}-0x{self.end:08X}: start must precede end"
            )

    @property
    def size(self) -> int:
        return self.end - self.start

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end


RAM_REGION = MemoryRegion(
    start=RAM_START,
    end=RAM_END,
    sector_size=RAM_SECTOR_SIZE,
    readable=True,
    erasable=False,
    writable=True,
)


def _window_size(regions: Iterable[MemoryRegion], window) -> int:
    low, high = window
    return sum(r.end - r.start for r in regions if low <= r.start <= high)


def internal_flash_size(regions: Iterable[MemoryRegion]) -> int:
    """Total size of regions starting inside the internal flash window."""
    return _window_size(regions, INTERNAL_FLASH_WINDOW)


def external_flash_size(regions: Iterable[MemoryRegion]) -> int:
    """Total size of regions starting inside the external (QSPI) flash window."""
    return _window_size(regions, EXTERNAL_FLASH_WINDOW)


@dataclass
class MemoryMap:
    """Ordered sequence of memory regions owned by a single session."""
    name: str = ""
    regions: List[MemoryRegion] = field(default_factory=list)

    def __iter__(self) -> Iterator[MemoryRegion]:
        return iter(self.regions)

    def __len__(self) -> int:
        return len(self.regions)

    def prepend(self, region: MemoryRegion) -> None:
        self.regions.insert(0, region)

    def find(self, address: int) -> Optional[MemoryRegion]:
        """Return the first region containing address, in map order."""
        for region in self.regions:
            if region.contains(address):
                return region
        return None

    @property
    def internal_flash_size(self) -> int:
        return internal_flash_size(self.regions)

    @property
    def external_flash_size(self) -> int:
        return external_flash_size(self.regions)


def parse_memory_descriptor(descriptor: Optional[str]) -> Optional[MemoryMap]:
    """
    Parse a DfuSe memory layout string (the DFU interface name).

    Args:
        descriptor: Interface name as reported by the device

    Returns:
        MemoryMap, or None if the string is not a DfuSe layout descriptor
    """
    if not descriptor:
        return None

    name_end = descriptor.find("/")
    if not descriptor.startswith("@") or name_end == -1:
        logger.debug(f"Not a DfuSe memory descriptor: {descriptor!r}")
        return None

    memory_map = MemoryMap(name=descriptor[1:name_end].strip())

    for group in _SEGMENT_GROUP_RE.finditer(descriptor[name_end:]):
        address = int(group.group(1), 16)
        for segment in _SEGMENT_RE.finditer(group.group(2)):
            count = int(segment.group(1), 10)
            sector_size = int(segment.group(2), 10) * _SECTOR_MULTIPLIERS[segment.group(3)]
            props = ord(segment.group(4)) - ord("a") + 1
            length = sector_size * count
            if length == 0:
                continue
            memory_map.regions.append(MemoryRegion(
                start=address,
                end=address + length,
                sector_size=sector_size,
                readable=bool(props & 0x1),
                erasable=bool(props & 0x2),
                writable=bool(props & 0x4),
            ))
            address += length

    return memory_map
