"""
DFU interface enumeration over pyusb.

Lists every DFU-class interface (class 0xFE, subclass 0x01) of every attached
USB device. Each alternate setting is reported separately since NumWorks
bootloaders expose one alternate per flash bank.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

import usb.core
import usb.util

logger = logging.getLogger(__name__)

DFU_INTERFACE_CLASS = 0xFE
DFU_INTERFACE_SUBCLASS = 0x01


@dataclass(frozen=True)
class DeviceIdentity:
    """Identifies one physical attachment (changes when the device re-enumerates)."""
    bus: int
    address: int
    vendor_id: int
    product_id: int

    @classmethod
    def from_device(cls, device) -> "DeviceIdentity":
        return cls(
            bus=device.bus,
            address=device.address,
            vendor_id=device.idVendor,
            product_id=device.idProduct,
        )

    def __str__(self) -> str:
        return (
            f"{self.vendor_id:04x}:{self.product_id:04x} "
            f"(bus {self.bus}, address {self.address})"
        )


@dataclass(frozen=True)
class DfuInterface:
    """One DFU alternate setting of an attached device."""
    identity: DeviceIdentity
    serial_number: Optional[str]
    configuration_value: int
    interface_number: int
    alternate_setting: int
    interface_protocol: int
    name: Optional[str] = None
    device: Any = field(default=None, compare=False, repr=False)

    @property
    def vendor_id(self) -> int:
        return self.identity.vendor_id

    @property
    def product_id(self) -> int:
        return self.identity.product_id

    @property
    def key(self):
        """(configuration, interface, alternate) triple naming this setting."""
        return (self.configuration_value, self.interface_number, self.alternate_setting)


def read_string(device, index: int) -> Optional[str]:
    """
    Read a string descriptor, returning None when it cannot be read.

    Reading strings needs the device opened, which fails without access
    rights (udev rules, WinUSB driver), so a missing string is expected.
    """
    if not index:
        return None
    try:
        return usb.util.get_string(device, index)
    except (usb.core.USBError, ValueError, NotImplementedError) as e:
        logger.debug(f"Cannot read string descriptor {index}: {e}")
        return None


def device_dfu_interfaces(device) -> List[DfuInterface]:
    """List the DFU alternate settings of one pyusb device, in descriptor order."""
    identity = DeviceIdentity.from_device(device)
    serial_number = read_string(device, device.iSerialNumber)

    interfaces = []
    for configuration in device:
        for setting in configuration:
            if (
                setting.bInterfaceClass != DFU_INTERFACE_CLASS
                or setting.bInterfaceSubClass != DFU_INTERFACE_SUBCLASS
            ):
                continue
            interfaces.append(DfuInterface(
                identity=identity,
                serial_number=serial_number,
                configuration_value=configuration.bConfigurationValue,
                interface_number=setting.bInterfaceNumber,
                alternate_setting=setting.bAlternateSetting,
                interface_protocol=setting.bInterfaceProtocol,
                name=read_string(device, setting.iInterface),
                device=device,
            ))
    return interfaces


def find_dfu_interfaces(backend=None) -> List[DfuInterface]:
    """
    Enumerate all DFU interfaces currently attached.

    Args:
        backend: Optional pyusb backend (defaults to pyusb's discovery)

    Returns:
        DfuInterface list, grouped by device in enumeration order
    """
    interfaces: List[DfuInterface] = []
    for device in usb.core.find(find_all=True, backend=backend):
        interfaces.extend(device_dfu_interfaces(device))
    logger.debug(f"Found {len(interfaces)} DFU interface(s)")
    return interfaces
