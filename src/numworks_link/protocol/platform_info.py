"""
Platform information block decoder.

Epsilon (the stock firmware) and its forks embed a fixed record in internal
flash at 0x080001C4. The record is magic-prefixed but not self-describing:
the only layout probe is whether the magic repeats at 0x1C.

Current layout (magic repeated at 0x1C)::

    0x00  F00DC0DE              magic (BE)
    0x04  version[8]            NUL-terminated ASCII
    0x0C  commit[8]
    0x14  storage address       LE32
    0x18  storage size          LE32
    0x1C  F00DC0DE              magic (BE)
    0x20  DEADBEEF              Omega magic (BE)
    0x24  omega version[16]
    0x34  omega user[16]
    0x44  DEADBEEF              Omega magic (BE)
    0x48  "Upsi" tag            Upsilon magic (BE 0x69737055)
    0x4C  upsilon version[16]
    0x5C  os type               BE32, 0x78718279 for official builds
    0x60  "Upsi" tag

Legacy layout (anything else at 0x1C): the Omega block sits between the
version and the commit, shifting the commit and storage fields by 8, 16 or
32 bytes. The shift is found by looking for the repeated F00DC0DE.

Address/size words are little-endian while every magic is compared
big-endian; this mirrors the firmware and is intentional.
"""

import logging
import struct
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from numworks_link.errors import NotRecognized

logger = logging.getLogger(__name__)

PLATFORM_INFO_ADDRESS = 0x080001C4
PLATFORM_INFO_SIZE = 0x64

MAGIC = 0xF00DC0DE
OMEGA_MAGIC = 0xDEADBEEF
UPSILON_MAGIC = 0x69737055
UPSILON_OFFICIAL_OS_TYPE = 0x78718279

OFFSET_MAGIC = 0x00
OFFSET_VERSION = 0x04
OFFSET_COMMIT = 0x0C
OFFSET_STORAGE_ADDRESS = 0x14
OFFSET_STORAGE_SIZE = 0x18
OFFSET_LAYOUT_PROBE = 0x1C

VERSION_LENGTH = 8
COMMIT_LENGTH = 8
FORK_STRING_LENGTH = 16

# Legacy layout: candidate shifts of the trailing fields, probed in order
LEGACY_OFFSETS = (8, 16, 32)

OFFSET_OMEGA_HEAD = 0x20
OFFSET_OMEGA_VERSION = 0x24
OFFSET_OMEGA_USER = 0x34
OFFSET_OMEGA_TAIL = 0x44
OFFSET_UPSILON_HEAD = 0x48
OFFSET_UPSILON_VERSION = 0x4C
OFFSET_UPSILON_OS_TYPE = 0x5C
OFFSET_UPSILON_TAIL = 0x60


@dataclass(frozen=True)
class StorageRegion:
    """Location of the user storage area in flash."""
    address: int
    size: int


@dataclass(frozen=True)
class OmegaInfo:
    installed: bool
    version: str = ""
    user: str = ""


@dataclass(frozen=True)
class UpsilonInfo:
    installed: bool
    version: str = ""
    os_type: int = 0
    official: bool = False


@dataclass(frozen=True)
class PlatformMetadata:
    """Decoded platform information block."""
    version: str
    commit: str
    storage: StorageRegion
    legacy_layout: bool
    omega: Optional[OmegaInfo] = None
    upsilon: Optional[UpsilonInfo] = None

    @property
    def upsilon_installed(self) -> bool:
        return self.upsilon is not None and self.upsilon.installed

    @property
    def omega_installed(self) -> bool:
        return self.omega is not None and self.omega.installed

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "version": self.version,
            "commit": self.commit,
            "storage": {
                "address": f"0x{self.storage.address:08X}",
                "size": self.storage.size,
            },
            "legacy_layout": self.legacy_layout,
            "omega": asdict(self.omega) if self.omega is not None else None,
            "upsilon": asdict(self.upsilon) if self.upsilon is not None else None,
        }


def read_fixed_string(data: bytes, offset: int, length: int) -> str:
    """Read a NUL-terminated string from a fixed-width field."""
    field = data[offset:offset + length]
    end = field.find(b"\x00")
    if end != -1:
        field = field[:end]
    return field.decode("latin-1")


def _be32(data: bytes, offset: int) -> int:
    return struct.unpack_from(">I", data, offset)[0]


def _le32(data: bytes, offset: int) -> int:
    return struct.unpack_from("<I", data, offset)[0]


def _decode_legacy(data: bytes) -> PlatformMetadata:
    omega_installed = (
        _be32(data, OFFSET_LAYOUT_PROBE + 8) == MAGIC
        or _be32(data, OFFSET_LAYOUT_PROBE + 16) == OMEGA_MAGIC
        or _be32(data, OFFSET_LAYOUT_PROBE + 32) == OMEGA_MAGIC
    )
    if omega_installed:
        omega = OmegaInfo(
            installed=True,
            version=read_fixed_string(data, OFFSET_COMMIT, FORK_STRING_LENGTH),
        )
    else:
        omega = OmegaInfo(installed=False)

    # First match wins, even if a later candidate would also match
    offset = 0
    for candidate in LEGACY_OFFSETS:
        if _be32(data, OFFSET_LAYOUT_PROBE + candidate) == MAGIC:
            offset = candidate
            break

    logger.debug(f"Legacy platform info layout, field shift {offset}")

    return PlatformMetadata(
        version=read_fixed_string(data, OFFSET_VERSION, VERSION_LENGTH),
        commit=read_fixed_string(data, OFFSET_COMMIT + offset, COMMIT_LENGTH),
        storage=StorageRegion(
            address=_le32(data, OFFSET_STORAGE_ADDRESS + offset),
            size=_le32(data, OFFSET_STORAGE_SIZE + offset),
        ),
        legacy_layout=True,
        omega=omega,
        upsilon=None,
    )


def _decode_current(data: bytes) -> PlatformMetadata:
    if _be32(data, OFFSET_OMEGA_HEAD) == OMEGA_MAGIC and _be32(data, OFFSET_OMEGA_TAIL) == OMEGA_MAGIC:
        omega = OmegaInfo(
            installed=True,
            version=read_fixed_string(data, OFFSET_OMEGA_VERSION, FORK_STRING_LENGTH),
            user=read_fixed_string(data, OFFSET_OMEGA_USER, FORK_STRING_LENGTH),
        )
    else:
        omega = OmegaInfo(installed=False)

    if (
        _be32(data, OFFSET_UPSILON_HEAD) == UPSILON_MAGIC
        and _be32(data, OFFSET_UPSILON_TAIL) == UPSILON_MAGIC
    ):
        os_type = _be32(data, OFFSET_UPSILON_OS_TYPE)
        upsilon = UpsilonInfo(
            installed=True,
            version=read_fixed_string(data, OFFSET_UPSILON_VERSION, FORK_STRING_LENGTH),
            os_type=os_type,
            official=os_type == UPSILON_OFFICIAL_OS_TYPE,
        )
    else:
        upsilon = UpsilonInfo(installed=False)

    return PlatformMetadata(
        version=read_fixed_string(data, OFFSET_VERSION, VERSION_LENGTH),
        commit=read_fixed_string(data, OFFSET_COMMIT, COMMIT_LENGTH),
        storage=StorageRegion(
            address=_le32(data, OFFSET_STORAGE_ADDRESS),
            size=_le32(data, OFFSET_STORAGE_SIZE),
        ),
        legacy_layout=False,
        omega=omega,
        upsilon=upsilon,
    )


def decode_platform_info(data: bytes) -> PlatformMetadata:
    """
    Decode the platform information block.

    Args:
        data: At least PLATFORM_INFO_SIZE bytes read from PLATFORM_INFO_ADDRESS

    Returns:
        PlatformMetadata

    Raises:
        NotRecognized: If the buffer is truncated or the magic does not match
    """
    data = bytes(data)
    if len(data) < PLATFORM_INFO_SIZE:
        raise NotRecognized(
            f"Platform info truncated: {len(data)} bytes, need {PLATFORM_INFO_SIZE}"
        )

    magic = _be32(data, OFFSET_MAGIC)
    if magic != MAGIC:
        raise NotRecognized(
            f"Platform info magic mismatch (0x{magic:08X}); "
            "not a NumWorks calculator or flash is erased"
        )

    if _be32(data, OFFSET_LAYOUT_PROBE) != MAGIC:
        return _decode_legacy(data)
    return _decode_current(data)
