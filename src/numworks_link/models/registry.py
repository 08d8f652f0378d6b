"""
Model registry for NumWorks calculators.

Provides a single source of truth for:
- Hardware model tags and the flash-size table that identifies them
- Link profiles (USB ids, identification strategy, capabilities) for the
  normal firmware mode and the STM32 ROM recovery mode

Usage:
    from numworks_link.models import identify_model, get_profile

    tag = identify_model(session.memory_map, exclude_modded=False)
    profile = get_profile("recovery")
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from numworks_link.errors import UnknownModel
from numworks_link.models.memory_map import (
    MemoryRegion,
    external_flash_size,
    internal_flash_size,
)
from numworks_link.protocol.descriptors import FunctionalDescriptor, dfuse_capable

KIB = 1024
MIB = 1024 * 1024

# USB ids
STM_VENDOR_ID = 0x0483
NUMWORKS_PRODUCT_ID = 0xA291
RECOVERY_PRODUCT_ID = 0xDF11


class ModelTag(Enum):
    """Hardware model of a connected calculator."""
    N0100 = "0100"
    N0110 = "0110"
    N0110_UNEXPANDABLE = "0110-0M"
    N0110_EXTENDED = "0110-16M"
    N0100_EXPANDED_8M = "0100-8M"
    N0100_EXPANDED_16M = "0100-16M"
    UNKNOWN = "????"

    @property
    def is_known(self) -> bool:
        return self is not ModelTag.UNKNOWN

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    ModelTag.N0100: "N0100",
    ModelTag.N0110: "N0110",
    ModelTag.N0110_UNEXPANDABLE: "N0110, unexpandable (no external flash)",
    ModelTag.N0110_EXTENDED: "N0110, extended (16M external flash)",
    ModelTag.N0100_EXPANDED_8M: "N0100, expanded 8M",
    ModelTag.N0100_EXPANDED_16M: "N0100, expanded 16M",
    ModelTag.UNKNOWN: "Unknown device",
}


@dataclass(frozen=True)
class FlashLayout:
    """
    One row of the identification table.

    `factory_tag` is what the layout collapses to when non-factory variants
    are hidden; UNKNOWN means the layout has no factory counterpart.
    """
    internal_size: int
    external_size: int
    tag: ModelTag
    factory_tag: ModelTag


# Flash packages on these boards are SOIC-8, so only 0M, 8M and 16M exist.
FLASH_LAYOUTS: Tuple[FlashLayout, ...] = (
    FlashLayout(64 * KIB, 0, ModelTag.N0110_UNEXPANDABLE, ModelTag.UNKNOWN),
    FlashLayout(64 * KIB, 8 * MIB, ModelTag.N0110, ModelTag.N0110),
    FlashLayout(64 * KIB, 16 * MIB, ModelTag.N0110_EXTENDED, ModelTag.N0110),
    FlashLayout(1 * MIB, 0, ModelTag.N0100, ModelTag.N0100),
    FlashLayout(1 * MIB, 8 * MIB, ModelTag.N0100_EXPANDED_8M, ModelTag.N0100),
    FlashLayout(1 * MIB, 16 * MIB, ModelTag.N0100_EXPANDED_16M, ModelTag.N0100),
)

_LAYOUT_INDEX: Dict[Tuple[int, int], FlashLayout] = {
    (layout.internal_size, layout.external_size): layout for layout in FLASH_LAYOUTS
}

# The STM32F73x ROM bootloader advertises 512K whatever the real part is
RECOVERY_LAYOUTS: Dict[int, ModelTag] = {
    512 * KIB: ModelTag.N0110,
    1 * MIB: ModelTag.N0100,
}


def classify_flash(internal_size: int, external_size: int, exclude_modded: bool = True) -> ModelTag:
    """Classify a (internal, external) flash size pair."""
    layout = _LAYOUT_INDEX.get((internal_size, external_size))
    if layout is None:
        return ModelTag.UNKNOWN
    return layout.factory_tag if exclude_modded else layout.tag


def identify_model(
    regions: Optional[Iterable[MemoryRegion]],
    exclude_modded: bool = True,
) -> ModelTag:
    """
    Identify a calculator from its memory map.

    Args:
        regions: Memory regions of the session (None is treated as empty)
        exclude_modded: Report only models that can be purchased; modded
                        layouts collapse to their factory model

    Returns:
        ModelTag (UNKNOWN when the layout is not in the table)
    """
    regions = list(regions or ())
    return classify_flash(
        internal_flash_size(regions),
        external_flash_size(regions),
        exclude_modded,
    )


def identify_recovery_model(
    regions: Optional[Iterable[MemoryRegion]],
    exclude_modded: bool = True,
) -> ModelTag:
    """
    Approximate the model from the ROM bootloader's memory map.

    Only internal flash is visible in recovery mode; exclude_modded is
    accepted for signature compatibility and has no effect.
    """
    return RECOVERY_LAYOUTS.get(internal_flash_size(regions or ()), ModelTag.UNKNOWN)


def require_known_model(
    tag: ModelTag,
    regions: Optional[Iterable[MemoryRegion]] = None,
) -> ModelTag:
    """Return tag, or raise UnknownModel if the layout was not recognized."""
    if tag.is_known:
        return tag
    regions = list(regions or ())
    internal = internal_flash_size(regions)
    external = external_flash_size(regions)
    raise UnknownModel(
        f"Unsupported device (internal flash {internal:#x}, external flash {external:#x})",
        internal_size=internal,
        external_size=external,
    )


class Capability(Enum):
    """Operations a link profile can offer."""
    IDENTIFY = auto()
    READ_PLATFORM_INFO = auto()
    FLASH_INTERNAL = auto()
    FLASH_EXTERNAL = auto()
    FLASH_RECOVERY = auto()
    BACKUP_STORAGE = auto()
    INSTALL_STORAGE = auto()


ModelIdentifier = Callable[[Optional[Iterable[MemoryRegion]], bool], ModelTag]
ExtendedModeDetector = Callable[[FunctionalDescriptor, int], bool]


@dataclass(frozen=True)
class LinkProfile:
    """
    Device-mode configuration for a link.

    Normal and recovery modes differ only in USB ids, the way the model is
    inferred and which operations make sense; everything else is shared.
    """
    name: str
    vendor_id: int
    product_id: int
    identify: ModelIdentifier
    extended_mode: ExtendedModeDetector = dfuse_capable
    capabilities: FrozenSet[Capability] = frozenset()
    notes: List[str] = field(default_factory=list)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities


_PROFILE_REGISTRY: Dict[str, LinkProfile] = {}


def _register_profile(profile: LinkProfile) -> None:
    _PROFILE_REGISTRY[profile.name] = profile


NORMAL_PROFILE = LinkProfile(
    name="normal",
    vendor_id=STM_VENDOR_ID,
    product_id=NUMWORKS_PRODUCT_ID,
    identify=identify_model,
    capabilities=frozenset({
        Capability.IDENTIFY,
        Capability.READ_PLATFORM_INFO,
        Capability.FLASH_INTERNAL,
        Capability.FLASH_EXTERNAL,
        Capability.BACKUP_STORAGE,
        Capability.INSTALL_STORAGE,
    }),
    notes=[
        "Calculator running its own DFU bootloader (plugged in, screen shows the USB logo)",
        "Model is identified from internal + external flash sizes",
    ],
)

RECOVERY_PROFILE = LinkProfile(
    name="recovery",
    vendor_id=STM_VENDOR_ID,
    product_id=RECOVERY_PRODUCT_ID,
    identify=identify_recovery_model,
    capabilities=frozenset({
        Capability.IDENTIFY,
        Capability.FLASH_RECOVERY,
    }),
    notes=[
        "STM32 ROM bootloader (reset + 6 key held)",
        "Only internal flash is visible; model is approximate",
        "Recovery images are loaded into RAM at 0x20030000",
    ],
)

_register_profile(NORMAL_PROFILE)
_register_profile(RECOVERY_PROFILE)


def list_profiles() -> List[LinkProfile]:
    """Return all registered profiles in registration order."""
    return list(_PROFILE_REGISTRY.values())


def get_profile(name: str) -> LinkProfile:
    """
    Look up a profile by name (case-insensitive).

    Raises:
        KeyError: If no profile has that name
    """
    try:
        return _PROFILE_REGISTRY[name.strip().lower()]
    except KeyError:
        valid = ", ".join(sorted(_PROFILE_REGISTRY))
        raise KeyError(f"Unknown profile '{name}'. Valid profiles: {valid}")
