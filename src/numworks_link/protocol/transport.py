"""
DFU transport layer.

The library consumes a transport per open session. DfuTransport describes
that contract; UsbDfuTransport is the pyusb implementation used by default.

UsbDfuTransport handles interface claiming and descriptor reads itself. The
DFU block state machine (erase/program/upload, manifestation wait) is not
part of this library: bulk transfers are delegated to a DfuEngine supplied
by the host application.

Example:
    transport = UsbDfuTransport(interface, engine=my_engine)
    transport.open()
    raw = transport.read_configuration_descriptor(0)
    data = transport.upload(0x080001C4, 0x64, transfer_size=2048)
    transport.close()
"""

import logging
from typing import Callable, Dict, Optional, Protocol, Tuple

import usb.core
import usb.util

from numworks_link.errors import DescriptorReadFailed, DfuTransportError, TransportOpenFailed
from numworks_link.protocol.descriptors import (
    CONFIGURATION_HEADER_SIZE,
    DESCRIPTOR_TYPE_CONFIGURATION,
)
from numworks_link.protocol.usb_dfu import DfuInterface, read_string

logger = logging.getLogger(__name__)

REQUEST_TYPE_STANDARD_IN = 0x80
REQUEST_GET_DESCRIPTOR = 0x06
DEFAULT_TIMEOUT_MS = 5000

InterfaceNames = Dict[Tuple[int, int, int], Optional[str]]


class DfuTransport(Protocol):
    """Transport collaborator bound to one DFU interface."""

    interface: DfuInterface

    def open(self) -> None:
        ...

    def close(self) -> None:
        ...

    def read_configuration_descriptor(self, index: int) -> bytes:
        ...

    def read_interface_names(self) -> InterfaceNames:
        ...

    def upload(self, address: int, length: int, transfer_size: int) -> bytes:
        ...

    def download(
        self,
        address: int,
        data: bytes,
        transfer_size: int,
        wait_manifestation: bool,
    ) -> None:
        ...


class DfuEngine(Protocol):
    """DFU/DfuSe block transfer state machine provided by the host application."""

    def upload(
        self,
        device,
        interface: DfuInterface,
        address: int,
        length: int,
        transfer_size: int,
    ) -> bytes:
        ...

    def download(
        self,
        device,
        interface: DfuInterface,
        address: int,
        data: bytes,
        transfer_size: int,
        wait_manifestation: bool,
    ) -> None:
        ...


TransportFactory = Callable[[DfuInterface], DfuTransport]


class UsbDfuTransport:
    """
    pyusb-backed transport for a single DFU interface.

    Handles:
    - Claiming the interface and selecting its alternate setting
    - Configuration descriptor and string descriptor reads
    - Delegating block transfers to the configured DfuEngine
    """

    def __init__(
        self,
        interface: DfuInterface,
        engine: Optional[DfuEngine] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ):
        """
        Args:
            interface: Enumerated DFU interface (must carry its pyusb device)
            engine: Block transfer engine; uploads/downloads fail without one
            timeout_ms: Control transfer timeout in milliseconds
        """
        self.interface = interface
        self.engine = engine
        self.timeout_ms = timeout_ms
        self._opened = False

    @property
    def device(self):
        return self.interface.device

    def open(self) -> None:
        """
        Claim the interface and select its alternate setting.

        Raises:
            TransportOpenFailed: If the device is gone or access is denied
        """
        if self.device is None:
            raise TransportOpenFailed(f"No USB device behind interface {self.interface.key}")

        try:
            usb.util.claim_interface(self.device, self.interface.interface_number)
            self.device.set_interface_altsetting(
                interface=self.interface.interface_number,
                alternate_setting=self.interface.alternate_setting,
            )
        except (usb.core.USBError, ValueError) as e:
            raise TransportOpenFailed(f"Cannot open {self.interface.identity}: {e}") from e

        self._opened = True
        logger.debug(
            f"Opened {self.interface.identity} interface {self.interface.interface_number} "
            f"alt {self.interface.alternate_setting}"
        )

    def close(self) -> None:
        """Release the interface and free pyusb resources."""
        if not self._opened:
            return
        self._opened = False
        try:
            usb.util.release_interface(self.device, self.interface.interface_number)
            usb.util.dispose_resources(self.device)
        except usb.core.USBError as e:
            # Expected when the device already vanished
            logger.warning(f"Error closing {self.interface.identity}: {e}")
        else:
            logger.debug(f"Closed {self.interface.identity}")

    def _require_open(self) -> None:
        if not self._opened:
            raise DfuTransportError("Transport not open")

    def read_configuration_descriptor(self, index: int) -> bytes:
        """
        Read the full configuration descriptor blob.

        Raises:
            DescriptorReadFailed: If the control transfers fail
        """
        self._require_open()
        w_value = (DESCRIPTOR_TYPE_CONFIGURATION << 8) | index
        try:
            header = self.device.ctrl_transfer(
                REQUEST_TYPE_STANDARD_IN,
                REQUEST_GET_DESCRIPTOR,
                w_value,
                0,
                CONFIGURATION_HEADER_SIZE,
                timeout=self.timeout_ms,
            )
            if len(header) < 4:
                raise DescriptorReadFailed(
                    f"Short configuration descriptor header ({len(header)} bytes)"
                )
            total_length = header[2] | (header[3] << 8)
            data = self.device.ctrl_transfer(
                REQUEST_TYPE_STANDARD_IN,
                REQUEST_GET_DESCRIPTOR,
                w_value,
                0,
                total_length,
                timeout=self.timeout_ms,
            )
        except usb.core.USBError as e:
            raise DescriptorReadFailed(
                f"Cannot read configuration descriptor {index}: {e}"
            ) from e

        logger.debug(f"Configuration descriptor {index}: {bytes(data).hex()}")
        return bytes(data)

    def read_interface_names(self) -> InterfaceNames:
        """Read the name of every interface alternate setting of the device."""
        self._require_open()
        names: InterfaceNames = {}
        for configuration in self.device:
            for setting in configuration:
                key = (
                    configuration.bConfigurationValue,
                    setting.bInterfaceNumber,
                    setting.bAlternateSetting,
                )
                names[key] = read_string(self.device, setting.iInterface)
        return names

    def _require_engine(self) -> DfuEngine:
        if self.engine is None:
            raise DfuTransportError(
                "No DFU engine configured for block transfers (see --engine)"
            )
        return self.engine

    def upload(self, address: int, length: int, transfer_size: int) -> bytes:
        self._require_open()
        engine = self._require_engine()
        logger.debug(f"Upload {length} bytes from 0x{address:08X} (xfer {transfer_size})")
        try:
            return bytes(engine.upload(self.device, self.interface, address, length, transfer_size))
        except usb.core.USBError as e:
            raise DfuTransportError(f"Upload from 0x{address:08X} failed: {e}") from e

    def download(
        self,
        address: int,
        data: bytes,
        transfer_size: int,
        wait_manifestation: bool,
    ) -> None:
        self._require_open()
        engine = self._require_engine()
        logger.debug(
            f"Download {len(data)} bytes to 0x{address:08X} "
            f"(xfer {transfer_size}, manifestation wait {wait_manifestation})"
        )
        try:
            engine.download(
                self.device, self.interface, address, bytes(data), transfer_size, wait_manifestation
            )
        except usb.core.USBError as e:
            raise DfuTransportError(f"Download to 0x{address:08X} failed: {e}") from e
