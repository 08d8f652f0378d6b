"""
Calculator link: the operations a front end needs, on top of one session.

CalculatorLink owns at most one active Session. Discovery (one-shot detect
or background autoconnect) creates it, disconnect handling drops it, and
every operation runs under the link lock so transfers never interleave.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol

from numworks_link.core.discovery import (
    AUTOCONNECT_DELAY,
    AutoConnector,
    DeviceFilter,
    DiscoveryMatch,
    find_matching_devices,
    fix_interface_names,
)
from numworks_link.core.session import Session, negotiate_session
from numworks_link.errors import (
    DeviceNotFound,
    NotConnected,
    SessionBusy,
    StorageTooLarge,
    UnsupportedOperation,
)
from numworks_link.models.memory_map import EXTERNAL_FLASH_BASE, INTERNAL_FLASH_BASE
from numworks_link.models.registry import NORMAL_PROFILE, Capability, LinkProfile, ModelTag
from numworks_link.protocol.platform_info import (
    PLATFORM_INFO_ADDRESS,
    PLATFORM_INFO_SIZE,
    PlatformMetadata,
    decode_platform_info,
)
from numworks_link.protocol.transport import TransportFactory, UsbDfuTransport
from numworks_link.protocol.usb_dfu import DeviceIdentity, DfuInterface, find_dfu_interfaces

logger = logging.getLogger(__name__)

RECOVERY_LOAD_ADDRESS = 0x20030000

# The storage upload includes 8 bytes past the advertised size
STORAGE_TRAILER_SIZE = 8


class StorageCodec(Protocol):
    """Encoder/decoder for the on-device record storage."""

    def decode(self, data: bytes, extended: bool) -> Any:
        ...

    def encode(self, storage: Any, max_size: int, extended: bool) -> bytes:
        ...


@dataclass(frozen=True)
class DisconnectEvent:
    """A device went away."""
    identity: DeviceIdentity


class CalculatorLink:
    """
    Link to a NumWorks calculator in the mode described by a LinkProfile.

    Example:
        link = CalculatorLink(transport_factory=partial(UsbDfuTransport, engine=engine))
        link.detect()
        print(link.identify(exclude_modded=False))
        info = link.read_metadata()
        link.close()
    """

    def __init__(
        self,
        profile: LinkProfile = NORMAL_PROFILE,
        transport_factory: Optional[TransportFactory] = None,
        enumerate_interfaces: Optional[Callable[[], List[DfuInterface]]] = None,
        storage_codec: Optional[StorageCodec] = None,
        poll_interval: float = AUTOCONNECT_DELAY,
    ):
        self.profile = profile
        self.transport_factory = transport_factory or UsbDfuTransport
        self.enumerate_interfaces = enumerate_interfaces or find_dfu_interfaces
        self.storage_codec = storage_codec
        self.poll_interval = poll_interval

        self._lock = threading.RLock()
        self._session: Optional[Session] = None
        self._autoconnector: Optional[AutoConnector] = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def connected(self) -> bool:
        return self._session is not None

    def device_filter(self, serial_number: Optional[str] = None) -> DeviceFilter:
        return DeviceFilter(
            vendor_id=self.profile.vendor_id,
            product_id=self.profile.product_id,
            serial_number=serial_number,
        )

    def _connect(self, match: DiscoveryMatch) -> Session:
        """Repair the matched interface's name if needed, then negotiate."""
        with self._lock:
            if self._session is not None:
                raise SessionBusy(f"Already connected to {self._session.identity}")
            interface = match.interface
            if interface.name is None:
                interface = fix_interface_names([interface], self.transport_factory)[0]
            session = negotiate_session(
                interface,
                self.transport_factory,
                extended_mode=self.profile.extended_mode,
            )
            self._session = session
        logger.info(f"Connected to {session.identity} ({self.profile.name} mode)")
        return session

    def detect(
        self,
        on_success: Optional[Callable[[Session], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        serial_number: Optional[str] = None,
    ) -> Optional[Session]:
        """
        Connect to the first attached matching device.

        Errors go to on_error when given, otherwise they are raised.

        Raises:
            SessionBusy: If a session is already active
            DeviceNotFound: If no attached device matches
            TransportOpenFailed, DescriptorReadFailed: From negotiation
        """
        try:
            with self._lock:
                if self._session is not None:
                    raise SessionBusy(f"Already connected to {self._session.identity}")
                matches = find_matching_devices(self.enumerate_interfaces(), self.device_filter(serial_number))
                if not matches:
                    raise DeviceNotFound(
                        f"No device {self.profile.vendor_id:04x}:{self.profile.product_id:04x} found"
                    )
                session = self._connect(matches[0])
        except Exception as e:
            if on_error is None:
                raise
            on_error(e)
            return None

        if on_success is not None:
            on_success(session)
        return session

    def auto_connect(
        self,
        callback: Callable[[Session], None],
        serial_number: Optional[str] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> AutoConnector:
        """
        Poll in the background until a matching device appears, then connect.

        callback receives the new session, once per matched device.

        Raises:
            SessionBusy: If a session is already active
        """
        # Stopping joins the polling thread, which may be waiting on the lock
        self.stop_auto_connect()

        with self._lock:
            if self._session is not None:
                raise SessionBusy(f"Already connected to {self._session.identity}")

            def on_match(match: DiscoveryMatch) -> None:
                callback(self._connect(match))

            connector = AutoConnector(
                enumerate_interfaces=self.enumerate_interfaces,
                device_filter=self.device_filter(serial_number),
                on_match=on_match,
                on_error=on_error,
                poll_interval=self.poll_interval,
            )
            self._autoconnector = connector
        connector.start()
        return connector

    def stop_auto_connect(self) -> None:
        connector = self._autoconnector
        if connector is not None:
            connector.stop()

    def on_unexpected_disconnect(
        self,
        event: DisconnectEvent,
        callback: Optional[Callable[[DisconnectEvent], None]] = None,
    ) -> bool:
        """
        Drop the active session if event concerns its device.

        Returns:
            True if the active session was invalidated
        """
        with self._lock:
            session = self._session
            if session is None or session.identity != event.identity:
                return False
            session.mark_disconnected()
            self._session = None
        if callback is not None:
            callback(event)
        return True

    def check_connection(
        self,
        callback: Optional[Callable[[DisconnectEvent], None]] = None,
    ) -> bool:
        """
        Detect a vanished device by enumeration (for hosts without hotplug).

        Returns:
            True if the active session is still attached
        """
        session = self._session
        if session is None:
            return False
        attached = {interface.identity for interface in self.enumerate_interfaces()}
        if session.identity in attached:
            return True
        self.on_unexpected_disconnect(DisconnectEvent(session.identity), callback)
        return False

    def close(self) -> None:
        """Stop autoconnect and close the active session, if any."""
        self.stop_auto_connect()
        with self._lock:
            session, self._session = self._session, None
        if session is not None and not session.disconnected:
            session.close()

    def __enter__(self) -> "CalculatorLink":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _require(self, capability: Capability) -> Session:
        if not self.profile.supports(capability):
            raise UnsupportedOperation(capability.name.lower(), self.profile.name)
        session = self._session
        if session is None:
            raise NotConnected("No calculator connected")
        return session

    def identify(self, exclude_modded: bool = True) -> ModelTag:
        """Classify the connected calculator from its memory map."""
        with self._lock:
            session = self._require(Capability.IDENTIFY)
            return self.profile.identify(session.memory_map, exclude_modded)

    def read_metadata(self) -> PlatformMetadata:
        """
        Read and decode the platform information block.

        Raises:
            NotRecognized: If the block is not a NumWorks platform info
        """
        with self._lock:
            session = self._require(Capability.READ_PLATFORM_INFO)
            data = session.upload(PLATFORM_INFO_ADDRESS, PLATFORM_INFO_SIZE)
        return decode_platform_info(data)

    def write_internal_image(self, data: bytes) -> None:
        with self._lock:
            session = self._require(Capability.FLASH_INTERNAL)
            logger.info(f"Flashing {len(data)} bytes to internal flash")
            session.download(INTERNAL_FLASH_BASE, data, wait_manifestation=True)

    def write_external_image(self, data: bytes) -> None:
        with self._lock:
            session = self._require(Capability.FLASH_EXTERNAL)
            logger.info(f"Flashing {len(data)} bytes to external flash")
            session.download(EXTERNAL_FLASH_BASE, data, wait_manifestation=False)

    def write_recovery_image(self, data: bytes) -> None:
        """Load a recovery image into RAM through the ROM bootloader."""
        with self._lock:
            session = self._require(Capability.FLASH_RECOVERY)
            logger.info(f"Loading {len(data)} bytes recovery image at 0x{RECOVERY_LOAD_ADDRESS:08X}")
            session.download(RECOVERY_LOAD_ADDRESS, data, wait_manifestation=True)

    def read_storage_image(self, metadata: Optional[PlatformMetadata] = None) -> bytes:
        """Upload the raw storage area (size + 8 bytes)."""
        with self._lock:
            session = self._require(Capability.BACKUP_STORAGE)
            if metadata is None:
                metadata = self.read_metadata()
            region = metadata.storage
            logger.info(f"Reading storage: {region.size} bytes at 0x{region.address:08X}")
            return session.upload(region.address, region.size + STORAGE_TRAILER_SIZE)

    def write_storage_image(self, data: bytes, metadata: Optional[PlatformMetadata] = None) -> None:
        """
        Download a raw storage image to the storage area.

        Raises:
            StorageTooLarge: If data exceeds the device storage size
        """
        with self._lock:
            session = self._require(Capability.INSTALL_STORAGE)
            if metadata is None:
                metadata = self.read_metadata()
            region = metadata.storage
            if len(data) > region.size:
                raise StorageTooLarge(len(data), region.size)
            logger.info(f"Writing storage: {len(data)} bytes at 0x{region.address:08X}")
            session.download(region.address, data, wait_manifestation=False)

    def _require_codec(self) -> StorageCodec:
        if self.storage_codec is None:
            raise UnsupportedOperation("storage codec", self.profile.name)
        return self.storage_codec

    def backup_storage(self) -> Any:
        """Read and decode the calculator storage."""
        codec = self._require_codec()
        with self._lock:
            metadata = self.read_metadata()
            data = self.read_storage_image(metadata)
        return codec.decode(data, metadata.upsilon_installed)

    def install_storage(self, storage: Any) -> None:
        """
        Encode storage against the live storage region and write it.

        Raises:
            StorageTooLarge: If the encoded storage does not fit
        """
        codec = self._require_codec()
        with self._lock:
            metadata = self.read_metadata()
            encoded = codec.encode(storage, metadata.storage.size, metadata.upsilon_installed)
            self.write_storage_image(encoded, metadata)
