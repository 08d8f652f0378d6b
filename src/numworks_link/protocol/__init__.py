"""USB DFU layer - enumeration, descriptors, transport and platform info codec."""

from .descriptors import FunctionalDescriptor, parse_functional_descriptor, dfuse_capable
from .platform_info import (
    PlatformMetadata,
    StorageRegion,
    OmegaInfo,
    UpsilonInfo,
    decode_platform_info,
    PLATFORM_INFO_ADDRESS,
    PLATFORM_INFO_SIZE,
)
from .transport import DfuTransport, DfuEngine, TransportFactory, UsbDfuTransport
from .usb_dfu import DeviceIdentity, DfuInterface, find_dfu_interfaces

__all__ = [
    # Descriptors
    "FunctionalDescriptor",
    "parse_functional_descriptor",
    "dfuse_capable",
    # Platform info
    "PlatformMetadata",
    "StorageRegion",
    "OmegaInfo",
    "UpsilonInfo",
    "decode_platform_info",
    "PLATFORM_INFO_ADDRESS",
    "PLATFORM_INFO_SIZE",
    # Transport
    "DfuTransport",
    "DfuEngine",
    "TransportFactory",
    "UsbDfuTransport",
    # Enumeration
    "DeviceIdentity",
    "DfuInterface",
    "find_dfu_interfaces",
]
