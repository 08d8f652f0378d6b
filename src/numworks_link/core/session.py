"""
Session bring-up for a discovered DFU interface.

negotiate_session() turns an enumerated interface into a ready Session:

1. Open the transport (failure propagates, nothing is returned)
2. Read configuration descriptor 0 and extract the DFU functional
   descriptor; an unparseable descriptor degrades to defaults
3. Adopt the descriptor's transfer size and manifestation tolerance
4. Upgrade to extended (DfuSe) addressing when the device supports it,
   exposing the memory map with the RAM region prepended
"""

import logging
from typing import Optional

from numworks_link.errors import (
    DescriptorUnavailable,
    DfuTransportError,
    SessionInvalidated,
)
from numworks_link.models.memory_map import RAM_REGION, MemoryMap, parse_memory_descriptor
from numworks_link.protocol.descriptors import (
    FunctionalDescriptor,
    dfuse_capable,
    parse_functional_descriptor,
)
from numworks_link.protocol.transport import DfuTransport, TransportFactory
from numworks_link.protocol.usb_dfu import DeviceIdentity, DfuInterface

logger = logging.getLogger(__name__)

DEFAULT_TRANSFER_SIZE = 2048


class Session:
    """
    A ready DFU session with one calculator.

    The session exclusively owns its transport and memory map. Once the
    device disconnects the session is dead for good: every transfer raises
    SessionInvalidated.
    """

    def __init__(
        self,
        transport: DfuTransport,
        interface: DfuInterface,
        descriptor: Optional[FunctionalDescriptor] = None,
        memory_map: Optional[MemoryMap] = None,
        transfer_size: int = DEFAULT_TRANSFER_SIZE,
        manifestation_tolerant: bool = False,
        extended: bool = False,
    ):
        self.transport = transport
        self.interface = interface
        self.descriptor = descriptor
        self.memory_map = memory_map
        self.transfer_size = transfer_size
        self.manifestation_tolerant = manifestation_tolerant
        self.extended = extended
        self.disconnected = False
        self.closed = False

    @property
    def identity(self) -> DeviceIdentity:
        return self.interface.identity

    def _check_alive(self) -> None:
        if self.disconnected:
            raise SessionInvalidated(f"Device {self.identity} was disconnected")
        if self.closed:
            raise SessionInvalidated(f"Session with {self.identity} is closed")

    def upload(self, address: int, length: int) -> bytes:
        """Read length bytes starting at address."""
        self._check_alive()
        return self.transport.upload(address, length, self.transfer_size)

    def download(self, address: int, data: bytes, wait_manifestation: bool) -> None:
        """Write data starting at address."""
        self._check_alive()
        self.transport.download(address, data, self.transfer_size, wait_manifestation)

    def mark_disconnected(self) -> None:
        """Flag the session as dead; only the first call has an effect."""
        if self.disconnected:
            return
        self.disconnected = True
        logger.info(f"Device {self.identity} disconnected")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.transport.close()

    def __repr__(self) -> str:
        return (
            f"Session({self.identity}, extended={self.extended}, "
            f"transfer_size={self.transfer_size}, disconnected={self.disconnected})"
        )


def read_functional_descriptor(
    transport: DfuTransport,
    interface: DfuInterface,
) -> Optional[FunctionalDescriptor]:
    """
    Read and parse the functional descriptor of configuration 0.

    Returns:
        FunctionalDescriptor, or None if the device does not provide a usable one

    Raises:
        DescriptorReadFailed: If the descriptor read itself fails
    """
    raw = transport.read_configuration_descriptor(0)
    try:
        descriptor = parse_functional_descriptor(raw, interface.configuration_value)
    except DescriptorUnavailable as e:
        logger.warning(f"No DFU functional descriptor, using defaults: {e}")
        return None

    logger.debug(f"Functional descriptor: {descriptor}")
    return descriptor


def negotiate_session(
    interface: DfuInterface,
    transport_factory: TransportFactory,
    extended_mode=dfuse_capable,
) -> Session:
    """
    Bring up a session on a DFU interface.

    Args:
        interface: Interface to connect to
        transport_factory: Builds the transport for the interface
        extended_mode: Strategy deciding whether to enable DfuSe addressing,
                       called with (descriptor, interface protocol)

    Returns:
        Ready Session

    Raises:
        TransportOpenFailed: If the transport cannot be opened
        DescriptorReadFailed: If the configuration descriptor cannot be read
    """
    transport = transport_factory(interface)
    transport.open()

    try:
        descriptor = read_functional_descriptor(transport, interface)
    except DfuTransportError:
        transport.close()
        raise

    session = Session(transport, interface)
    if descriptor is None:
        return session

    session.descriptor = descriptor
    session.transfer_size = descriptor.transfer_size
    if descriptor.can_download:
        session.manifestation_tolerant = descriptor.manifestation_tolerant

    if extended_mode(descriptor, interface.interface_protocol):
        session.extended = True
        memory_map = parse_memory_descriptor(interface.name)
        if memory_map is not None:
            memory_map.prepend(RAM_REGION)
            session.memory_map = memory_map
        else:
            logger.warning(f"Interface name {interface.name!r} carries no memory layout")
        logger.info(
            f"Extended addressing enabled for {interface.identity} "
            f"(DFU {descriptor.dfu_version:#06x})"
        )

    return session
