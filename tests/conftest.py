"""Shared fakes for NumWorks Link tests."""

import struct
from typing import Dict, List, Optional

import pytest

from numworks_link.errors import TransportOpenFailed
from numworks_link.protocol.usb_dfu import DeviceIdentity, DfuInterface

N0110_NAME = "@Flash/0x08000000/04*016Kg/0x90000000/64*064Kg,64*064Kg"
N0100_NAME = "@Internal Flash  /0x08000000/04*016Kg,01*064Kg,07*128Kg"


def make_interface(
    bus: int = 1,
    address: int = 5,
    vendor_id: int = 0x0483,
    product_id: int = 0xA291,
    serial_number: Optional[str] = "204A32AB5431",
    name: Optional[str] = N0110_NAME,
    interface_protocol: int = 0x02,
    alternate_setting: int = 0,
) -> DfuInterface:
    return DfuInterface(
        identity=DeviceIdentity(bus=bus, address=address, vendor_id=vendor_id, product_id=product_id),
        serial_number=serial_number,
        configuration_value=1,
        interface_number=0,
        alternate_setting=alternate_setting,
        interface_protocol=interface_protocol,
        name=name,
    )


def make_config_descriptor(
    attributes: int = 0x0B,
    transfer_size: int = 2048,
    dfu_version: int = 0x011A,
    configuration_value: int = 1,
    include_functional: bool = True,
) -> bytes:
    """Configuration descriptor with one DFU interface (and its functional descriptor)."""
    interface = bytes([9, 0x04, 0, 0, 0, 0xFE, 0x01, 0x02, 4])
    functional = struct.pack("<BBBHHH", 9, 0x21, attributes, 255, transfer_size, dfu_version)
    body = interface + (functional if include_functional else b"")
    total = 9 + len(body)
    header = struct.pack("<BBHBBBBB", 9, 0x02, total, 1, configuration_value, 0, 0xC0, 50)
    return header + body


def make_platform_info(
    version: bytes = b"15.3.1",
    commit: bytes = b"a1b2c3d4",
    storage_address: int = 0x20000AE8,
    storage_size: int = 0x8000,
    repeat_magic: bool = True,
    omega: Optional[tuple] = None,
    upsilon: Optional[tuple] = None,
) -> bytes:
    """Build a 0x64-byte platform info block in the current (or legacy) layout."""
    data = bytearray(0x64)
    struct.pack_into(">I", data, 0x00, 0xF00DC0DE)
    data[0x04:0x04 + len(version)] = version
    data[0x0C:0x0C + len(commit)] = commit
    struct.pack_into("<I", data, 0x14, storage_address)
    struct.pack_into("<I", data, 0x18, storage_size)
    if repeat_magic:
        struct.pack_into(">I", data, 0x1C, 0xF00DC0DE)
    if omega is not None:
        omega_version, omega_user = omega
        struct.pack_into(">I", data, 0x20, 0xDEADBEEF)
        data[0x24:0x24 + len(omega_version)] = omega_version
        data[0x34:0x34 + len(omega_user)] = omega_user
        struct.pack_into(">I", data, 0x44, 0xDEADBEEF)
    if upsilon is not None:
        upsilon_version, os_type = upsilon
        struct.pack_into(">I", data, 0x48, 0x69737055)
        data[0x4C:0x4C + len(upsilon_version)] = upsilon_version
        struct.pack_into(">I", data, 0x5C, os_type)
        struct.pack_into(">I", data, 0x60, 0x69737055)
    return bytes(data)


class FakeTransport:
    """In-memory DfuTransport recording every call."""

    def __init__(
        self,
        interface: DfuInterface,
        descriptor: bytes = b"",
        memory: Optional[Dict[int, bytes]] = None,
        names: Optional[Dict] = None,
        open_error: Optional[Exception] = None,
        descriptor_error: Optional[Exception] = None,
    ):
        self.interface = interface
        self.descriptor = descriptor
        self.memory = memory or {}
        self.names = names or {}
        self.open_error = open_error
        self.descriptor_error = descriptor_error
        self.calls: List[tuple] = []
        self.downloads: List[tuple] = []
        self.opened = False
        self.closed = False

    def open(self) -> None:
        self.calls.append(("open",))
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def close(self) -> None:
        self.calls.append(("close",))
        self.closed = True

    def read_configuration_descriptor(self, index: int) -> bytes:
        self.calls.append(("read_configuration_descriptor", index))
        if self.descriptor_error is not None:
            raise self.descriptor_error
        return self.descriptor

    def read_interface_names(self):
        self.calls.append(("read_interface_names",))
        return dict(self.names)

    def upload(self, address: int, length: int, transfer_size: int) -> bytes:
        self.calls.append(("upload", address, length, transfer_size))
        data = self.memory.get(address, b"")
        return data[:length].ljust(length, b"\xFF")

    def download(self, address: int, data: bytes, transfer_size: int, wait_manifestation: bool) -> None:
        self.calls.append(("download", address, len(data), transfer_size, wait_manifestation))
        self.downloads.append((address, bytes(data), wait_manifestation))


class TransportFactoryStub:
    """Transport factory handing out FakeTransports and remembering them."""

    def __init__(self, **transport_kwargs):
        self.transport_kwargs = transport_kwargs
        self.transports: List[FakeTransport] = []

    def __call__(self, interface: DfuInterface) -> FakeTransport:
        transport = FakeTransport(interface, **self.transport_kwargs)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def n0110_interface():
    return make_interface()


@pytest.fixture
def platform_info():
    return make_platform_info()


@pytest.fixture
def factory(platform_info):
    return TransportFactoryStub(
        descriptor=make_config_descriptor(),
        memory={0x080001C4: platform_info},
    )


@pytest.fixture
def failing_factory():
    return TransportFactoryStub(open_error=TransportOpenFailed("access denied"))
