"""
DFU functional descriptor parsing.

The functional descriptor lives inside the configuration descriptor blob
returned by GET_DESCRIPTOR(CONFIGURATION). Layout (DFU 1.1, section 4.1.3)::

    bLength | bDescriptorType (0x21) | bmAttributes | wDetachTimeOut (LE16)
    | wTransferSize (LE16) | bcdDFUVersion (LE16)
"""

import logging
import struct
from dataclasses import dataclass
from typing import Iterator, Tuple

from numworks_link.errors import DescriptorUnavailable

logger = logging.getLogger(__name__)

DESCRIPTOR_TYPE_CONFIGURATION = 0x02
DESCRIPTOR_TYPE_DFU_FUNCTIONAL = 0x21
CONFIGURATION_HEADER_SIZE = 9
FUNCTIONAL_DESCRIPTOR_SIZE = 9

ATTR_CAN_DOWNLOAD = 0x01
ATTR_CAN_UPLOAD = 0x02
ATTR_MANIFESTATION_TOLERANT = 0x04
ATTR_WILL_DETACH = 0x08

# bcdDFUVersion values announcing the ST DfuSe extension
DFUSE_VERSIONS = (0x0100, 0x011A)
DFUSE_INTERFACE_PROTOCOL = 0x02


@dataclass(frozen=True)
class FunctionalDescriptor:
    """Parsed DFU functional descriptor."""
    will_detach: bool
    manifestation_tolerant: bool
    can_upload: bool
    can_download: bool
    transfer_size: int
    detach_timeout: int
    dfu_version: int

    @classmethod
    def from_bytes(cls, raw: bytes) -> "FunctionalDescriptor":
        if len(raw) < FUNCTIONAL_DESCRIPTOR_SIZE:
            raise DescriptorUnavailable(
                f"Functional descriptor too short ({len(raw)} bytes)"
            )
        _, _, attributes, detach_timeout, transfer_size, dfu_version = struct.unpack_from(
            "<BBBHHH", raw
        )
        return cls(
            will_detach=bool(attributes & ATTR_WILL_DETACH),
            manifestation_tolerant=bool(attributes & ATTR_MANIFESTATION_TOLERANT),
            can_upload=bool(attributes & ATTR_CAN_UPLOAD),
            can_download=bool(attributes & ATTR_CAN_DOWNLOAD),
            transfer_size=transfer_size,
            detach_timeout=detach_timeout,
            dfu_version=dfu_version,
        )


def iter_descriptors(raw: bytes) -> Iterator[Tuple[int, bytes]]:
    """Yield (bDescriptorType, descriptor bytes) for each descriptor in a blob."""
    offset = 0
    while offset + 2 <= len(raw):
        length = raw[offset]
        if length < 2 or offset + length > len(raw):
            raise DescriptorUnavailable(
                f"Malformed descriptor at offset {offset} (bLength={length})"
            )
        yield raw[offset + 1], bytes(raw[offset:offset + length])
        offset += length


def parse_functional_descriptor(raw: bytes, configuration_value: int) -> FunctionalDescriptor:
    """
    Extract the DFU functional descriptor from a configuration descriptor.

    Args:
        raw: Full configuration descriptor (header + interface/class descriptors)
        configuration_value: bConfigurationValue of the selected configuration

    Returns:
        FunctionalDescriptor

    Raises:
        DescriptorUnavailable: If the blob is malformed, belongs to another
            configuration, or contains no functional descriptor
    """
    if len(raw) < CONFIGURATION_HEADER_SIZE or raw[1] != DESCRIPTOR_TYPE_CONFIGURATION:
        raise DescriptorUnavailable("Not a configuration descriptor")

    if raw[5] != configuration_value:
        raise DescriptorUnavailable(
            f"Configuration descriptor is for configuration {raw[5]}, "
            f"interface uses {configuration_value}"
        )

    for descriptor_type, descriptor in iter_descriptors(raw):
        if (
            descriptor_type == DESCRIPTOR_TYPE_DFU_FUNCTIONAL
            and len(descriptor) >= FUNCTIONAL_DESCRIPTOR_SIZE
        ):
            return FunctionalDescriptor.from_bytes(descriptor)

    raise DescriptorUnavailable("No DFU functional descriptor in configuration")


def dfuse_capable(descriptor: FunctionalDescriptor, interface_protocol: int) -> bool:
    """True if the interface speaks ST's extended-addressing DfuSe variant."""
    return (
        descriptor.dfu_version in DFUSE_VERSIONS
        and interface_protocol == DFUSE_INTERFACE_PROTOCOL
    )
