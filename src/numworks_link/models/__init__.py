"""
Memory map model and hardware model registry.
"""

from .memory_map import (
    MemoryRegion,
    MemoryMap,
    RAM_REGION,
    internal_flash_size,
    external_flash_size,
    parse_memory_descriptor,
)
from .registry import (
    ModelTag,
    FlashLayout,
    Capability,
    LinkProfile,
    NORMAL_PROFILE,
    RECOVERY_PROFILE,
    classify_flash,
    identify_model,
    identify_recovery_model,
    require_known_model,
    list_profiles,
    get_profile,
)

__all__ = [
    "MemoryRegion",
    "MemoryMap",
    "RAM_REGION",
    "internal_flash_size",
    "external_flash_size",
    "parse_memory_descriptor",
    "ModelTag",
    "FlashLayout",
    "Capability",
    "LinkProfile",
    "NORMAL_PROFILE",
    "RECOVERY_PROFILE",
    "classify_flash",
    "identify_model",
    "identify_recovery_model",
    "require_known_model",
    "list_profiles",
    "get_profile",
]
