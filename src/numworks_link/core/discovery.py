"""
Device discovery and the autoconnect state machine.

States::

    IDLE --start()--> POLLING --match--> MATCHED --on_match ok--> CONNECTED
                         |                  |
                         +------stop()------+----> STOPPED

Polling runs on a single background thread. Each cycle enumerates the DFU
interfaces and applies the device filter; unrelated devices are never
opened. A cycle without a match waits one poll interval on the cancellation
event, so stop() takes effect immediately and no further cycle starts.
"""

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from numworks_link.errors import DfuTransportError
from numworks_link.protocol.transport import TransportFactory
from numworks_link.protocol.usb_dfu import DeviceIdentity, DfuInterface

logger = logging.getLogger(__name__)

AUTOCONNECT_DELAY = 1.0  # seconds


@dataclass(frozen=True)
class DeviceFilter:
    """
    Which devices a discovery pass accepts.

    A serial number, when given, is the only criterion. Otherwise the
    vendor/product ids are matched, a missing id meaning "any". A filter
    with neither id nor serial accepts nothing.
    """
    vendor_id: Optional[int] = None
    product_id: Optional[int] = None
    serial_number: Optional[str] = None

    def matches(self, interface: DfuInterface) -> bool:
        if self.serial_number:
            return interface.serial_number == self.serial_number

        vid, pid = self.vendor_id, self.product_id
        if vid and pid:
            return interface.vendor_id == vid and interface.product_id == pid
        if vid:
            return interface.vendor_id == vid
        if pid:
            return interface.product_id == pid
        return False


@dataclass(frozen=True)
class DiscoveryMatch:
    """A matching interface found during one poll cycle."""
    vendor_id: int
    product_id: int
    serial_number: Optional[str]
    interface: DfuInterface

    @property
    def identity(self) -> DeviceIdentity:
        return self.interface.identity

    @classmethod
    def from_interface(cls, interface: DfuInterface) -> "DiscoveryMatch":
        return cls(
            vendor_id=interface.vendor_id,
            product_id=interface.product_id,
            serial_number=interface.serial_number,
            interface=interface,
        )


def find_matching_devices(
    interfaces: List[DfuInterface],
    device_filter: DeviceFilter,
) -> List[DiscoveryMatch]:
    """Return matches in enumeration order."""
    return [
        DiscoveryMatch.from_interface(interface)
        for interface in interfaces
        if device_filter.matches(interface)
    ]


def fix_interface_names(
    interfaces: List[DfuInterface],
    transport_factory: TransportFactory,
) -> List[DfuInterface]:
    """
    Fill in interface names that could not be read during enumeration.

    For each device with an unnamed interface, a temporary transport is
    opened on its first interface to read the whole name table, then closed.
    A device that cannot be opened keeps its missing names.

    Returns:
        New interface list (same order) with names repaired where possible
    """
    by_device: Dict[DeviceIdentity, List[DfuInterface]] = {}
    for interface in interfaces:
        by_device.setdefault(interface.identity, []).append(interface)

    repaired: Dict[DeviceIdentity, Dict] = {}
    for identity, device_interfaces in by_device.items():
        if all(interface.name is not None for interface in device_interfaces):
            continue

        transport = transport_factory(device_interfaces[0])
        try:
            transport.open()
            try:
                repaired[identity] = transport.read_interface_names()
            finally:
                transport.close()
        except DfuTransportError as e:
            logger.warning(f"Cannot read interface names of {identity}: {e}")
            continue
        logger.debug(f"Read interface names of {identity} through a temporary session")

    result = []
    for interface in interfaces:
        names = repaired.get(interface.identity)
        if interface.name is None and names is not None:
            interface = replace(interface, name=names.get(interface.key))
        result.append(interface)
    return result


class DiscoveryState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    MATCHED = "matched"
    CONNECTED = "connected"
    STOPPED = "stopped"


class AutoConnector:
    """
    Poll for a matching device and hand the first match to on_match.

    on_match runs on the polling thread and is expected to negotiate the
    session and notify the application; it is invoked at most once per
    start(). Errors raised by enumeration or on_match stop polling and are
    passed to on_error (or logged when no handler is given).
    """

    def __init__(
        self,
        enumerate_interfaces: Callable[[], List[DfuInterface]],
        device_filter: DeviceFilter,
        on_match: Callable[[DiscoveryMatch], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        poll_interval: float = AUTOCONNECT_DELAY,
    ):
        self.enumerate_interfaces = enumerate_interfaces
        self.device_filter = device_filter
        self.on_match = on_match
        self.on_error = on_error
        self.poll_interval = poll_interval

        self._state = DiscoveryState.IDLE
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> DiscoveryState:
        return self._state

    def _set_state(self, state: DiscoveryState) -> None:
        with self._state_lock:
            if self._state is DiscoveryState.STOPPED and state is not DiscoveryState.POLLING:
                return
            self._state = state
        logger.debug(f"Autoconnect state: {state.value}")

    def start(self) -> None:
        """Start polling in the background. No-op while already polling."""
        with self._state_lock:
            if self._state in (DiscoveryState.POLLING, DiscoveryState.MATCHED):
                logger.debug("Autoconnect already running")
                return
            self._state = DiscoveryState.POLLING
            self._cancel = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._cancel,),
                name="numworks-autoconnect",
                daemon=True,
            )
        logger.info(f"Waiting for a device matching {self.device_filter}")
        self._thread.start()

    def stop(self) -> None:
        """
        Stop polling. Idempotent.

        A negotiation already started for a matched device completes first;
        once this returns no further on_match call happens.
        """
        self._cancel.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        with self._state_lock:
            self._state = DiscoveryState.STOPPED

    def poll(self, cancel: Optional[threading.Event] = None) -> bool:
        """
        Run one discovery cycle.

        Returns:
            True if a device matched and was handed to on_match
        """
        cancel = cancel or self._cancel
        interfaces = self.enumerate_interfaces()
        matches = find_matching_devices(interfaces, self.device_filter)
        if not matches or cancel.is_set():
            return False

        match = matches[0]
        logger.info(f"Found matching device {match.identity}")
        self._set_state(DiscoveryState.MATCHED)
        self.on_match(match)
        self._set_state(DiscoveryState.CONNECTED)
        return True

    def _run(self, cancel: threading.Event) -> None:
        while not cancel.is_set():
            try:
                if self.poll(cancel):
                    return
            except Exception as e:
                with self._state_lock:
                    self._state = DiscoveryState.STOPPED
                if self.on_error is None:
                    logger.exception("Autoconnect failed")
                else:
                    self.on_error(e)
                return
            if cancel.wait(self.poll_interval):
                break
