"""
Core module for NumWorks Link.

- Session bring-up (session.py)
- Discovery and autoconnect (discovery.py)
- Calculator link facade (link.py)
- Write gating (safety.py), input parsing (parsing.py), results (results.py)
- Front-end workflows (actions.py)
"""

from .session import Session, negotiate_session, DEFAULT_TRANSFER_SIZE
from .discovery import (
    AutoConnector,
    DeviceFilter,
    DiscoveryMatch,
    DiscoveryState,
    find_matching_devices,
    fix_interface_names,
)
from .link import CalculatorLink, DisconnectEvent, StorageCodec, RECOVERY_LOAD_ADDRESS
from .safety import SafetyContext, require_write_permission, WritePermissionError
from .parsing import FlashTarget, parse_int, parse_flash_target, load_object
from .results import OperationResult
from .actions import read_info, backup_storage_image, restore_storage_image, flash_image

__all__ = [
    # Session
    "Session",
    "negotiate_session",
    "DEFAULT_TRANSFER_SIZE",
    # Discovery
    "AutoConnector",
    "DeviceFilter",
    "DiscoveryMatch",
    "DiscoveryState",
    "find_matching_devices",
    "fix_interface_names",
    # Link
    "CalculatorLink",
    "DisconnectEvent",
    "StorageCodec",
    "RECOVERY_LOAD_ADDRESS",
    # Safety
    "SafetyContext",
    "require_write_permission",
    "WritePermissionError",
    # Parsing
    "FlashTarget",
    "parse_int",
    "parse_flash_target",
    "load_object",
    # Results
    "OperationResult",
    # Actions
    "read_info",
    "backup_storage_image",
    "restore_storage_image",
    "flash_image",
]
