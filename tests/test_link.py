"""Tests for the CalculatorLink facade."""

import threading

import pytest

from numworks_link.core.link import RECOVERY_LOAD_ADDRESS, CalculatorLink, DisconnectEvent
from numworks_link.errors import (
    DeviceNotFound,
    NotConnected,
    SessionBusy,
    SessionInvalidated,
    StorageTooLarge,
    TransportOpenFailed,
    UnsupportedOperation,
)
from numworks_link.models.registry import RECOVERY_PROFILE, ModelTag
from numworks_link.protocol.usb_dfu import DeviceIdentity

from conftest import (
    N0100_NAME,
    N0110_NAME,
    TransportFactoryStub,
    make_config_descriptor,
    make_interface,
    make_platform_info,
)

STORAGE_ADDRESS = 0x20000AE8
STORAGE_SIZE = 0x8000


class RecordingCodec:
    """Storage codec stub remembering what it was asked to do."""

    def __init__(self, encoded: bytes = b"\x00" * 16):
        self.encoded = encoded
        self.decoded = []
        self.encode_calls = []

    def decode(self, data, extended):
        self.decoded.append((len(data), extended))
        return {"records": [], "extended": extended}

    def encode(self, storage, max_size, extended):
        self.encode_calls.append((storage, max_size, extended))
        return self.encoded


def _link(interfaces=None, factory=None, **kwargs):
    interfaces = [make_interface()] if interfaces is None else interfaces
    factory = factory or TransportFactoryStub(
        descriptor=make_config_descriptor(),
        memory={0x080001C4: make_platform_info()},
    )
    return CalculatorLink(
        transport_factory=factory,
        enumerate_interfaces=lambda: list(interfaces),
        **kwargs,
    )


def _locked_device_factory(**transport_kwargs):
    """Factory whose transports fail to open for the 0x1209 vendor device."""
    stub = TransportFactoryStub(
        descriptor=make_config_descriptor(),
        memory={0x080001C4: make_platform_info()},
        **transport_kwargs,
    )

    def build(interface):
        transport = stub(interface)
        if interface.vendor_id == 0x1209:
            transport.open_error = TransportOpenFailed("access denied")
        return transport

    return stub, build


LOCKED_DEVICE = make_interface(bus=2, address=3, vendor_id=0x1209, product_id=0x0001, serial_number=None, name=None)


class TestDetect:

    def test_connects_to_first_match(self):
        link = _link([make_interface(product_id=0xDF11, address=2), make_interface(address=3)])
        session = link.detect()

        assert link.connected
        assert session.identity.address == 3

    def test_no_device(self):
        link = _link([])
        with pytest.raises(DeviceNotFound):
            link.detect()

    def test_errors_go_to_handler(self):
        errors = []
        link = _link([])
        assert link.detect(on_error=errors.append) is None
        assert isinstance(errors[0], DeviceNotFound)

    def test_success_callback(self):
        sessions = []
        link = _link()
        link.detect(on_success=sessions.append)
        assert sessions == [link.session]

    def test_serial_filter(self):
        link = _link([make_interface(serial_number="AAA", address=2), make_interface(serial_number="BBB", address=3)])
        assert link.detect(serial_number="BBB").identity.address == 3

    def test_second_connect_is_refused(self):
        link = _link()
        link.detect()
        with pytest.raises(SessionBusy):
            link.detect()

    def test_open_failure(self):
        link = _link(factory=TransportFactoryStub(open_error=TransportOpenFailed("denied")))
        with pytest.raises(TransportOpenFailed):
            link.detect()
        assert not link.connected

    def test_unopenable_unrelated_device_is_ignored(self):
        stub, build = _locked_device_factory()
        link = _link([LOCKED_DEVICE, make_interface()], factory=build)

        session = link.detect()

        assert session.identity.vendor_id == 0x0483
        assert all(t.interface.vendor_id == 0x0483 for t in stub.transports)

    def test_unnamed_calculator_is_repaired_before_negotiation(self):
        calculator = make_interface(name=None)
        stub, build = _locked_device_factory(names={calculator.key: N0110_NAME})
        link = _link([LOCKED_DEVICE, calculator], factory=build)

        link.detect()

        assert link.session.interface.name == N0110_NAME
        assert link.identify() is ModelTag.N0110
        assert stub.transports[0].calls == [("open",), ("read_interface_names",), ("close",)]


class TestIdentify:

    def test_n0110(self):
        link = _link()
        link.detect()
        assert link.identify(exclude_modded=True) is ModelTag.N0110
        assert link.identify(exclude_modded=False) is ModelTag.N0110

    def test_n0100(self):
        link = _link([make_interface(name=N0100_NAME)])
        link.detect()
        assert link.identify().value == "0100"

    def test_not_connected(self):
        with pytest.raises(NotConnected):
            _link().identify()

    def test_recovery_profile(self):
        name = "@Internal Flash  /0x08000000/04*016Kg,01*064Kg,03*128Kg"
        link = _link([make_interface(product_id=0xDF11, name=name)], profile=RECOVERY_PROFILE)
        link.detect()
        assert link.identify() is ModelTag.N0110


class TestMetadata:

    def test_read_metadata(self):
        link = _link()
        link.detect()
        metadata = link.read_metadata()

        assert metadata.version == "15.3.1"
        assert metadata.storage.address == STORAGE_ADDRESS
        assert ("upload", 0x080001C4, 0x64, 2048) in link.session.transport.calls

    def test_unsupported_in_recovery(self):
        link = _link([make_interface(product_id=0xDF11)], profile=RECOVERY_PROFILE)
        link.detect()
        with pytest.raises(UnsupportedOperation):
            link.read_metadata()
        with pytest.raises(UnsupportedOperation):
            link.write_internal_image(b"\x00")


class TestWrites:
    """Flash targets, addresses and manifestation flags."""

    def test_internal(self):
        link = _link()
        link.detect()
        link.write_internal_image(b"\x01" * 32)
        assert link.session.transport.downloads == [(0x08000000, b"\x01" * 32, True)]

    def test_external(self):
        link = _link()
        link.detect()
        link.write_external_image(b"\x02" * 32)
        assert link.session.transport.downloads == [(0x90000000, b"\x02" * 32, False)]

    def test_recovery(self):
        link = _link([make_interface(product_id=0xDF11)], profile=RECOVERY_PROFILE)
        link.detect()
        link.write_recovery_image(b"\x03" * 32)
        assert link.session.transport.downloads == [(RECOVERY_LOAD_ADDRESS, b"\x03" * 32, True)]

    def test_recovery_image_refused_in_normal_mode(self):
        link = _link()
        link.detect()
        with pytest.raises(UnsupportedOperation):
            link.write_recovery_image(b"\x03")


class TestStorage:

    def test_read_storage_image_includes_trailer(self):
        link = _link()
        link.detect()
        image = link.read_storage_image()

        assert len(image) == STORAGE_SIZE + 8
        assert ("upload", STORAGE_ADDRESS, STORAGE_SIZE + 8, 2048) in link.session.transport.calls

    def test_write_storage_image(self):
        link = _link()
        link.detect()
        link.write_storage_image(b"\x00" * 100)
        assert link.session.transport.downloads == [(STORAGE_ADDRESS, b"\x00" * 100, False)]

    def test_write_storage_image_too_large(self):
        link = _link()
        link.detect()
        with pytest.raises(StorageTooLarge) as exc_info:
            link.write_storage_image(b"\x00" * (STORAGE_SIZE + 1))
        assert exc_info.value.region_size == STORAGE_SIZE
        assert link.session.transport.downloads == []

    def test_backup_storage_uses_codec(self):
        codec = RecordingCodec()
        link = _link(storage_codec=codec)
        link.detect()

        storage = link.backup_storage()

        assert storage["extended"] is False
        assert codec.decoded == [(STORAGE_SIZE + 8, False)]

    def test_upsilon_flag_reaches_codec(self):
        factory = TransportFactoryStub(
            descriptor=make_config_descriptor(),
            memory={0x080001C4: make_platform_info(upsilon=(b"1.0.1", 0x78718279))},
        )
        codec = RecordingCodec()
        link = _link(factory=factory, storage_codec=codec)
        link.detect()

        link.install_storage({"records": []})

        assert codec.encode_calls == [({"records": []}, STORAGE_SIZE, True)]
        assert link.session.transport.downloads == [(STORAGE_ADDRESS, codec.encoded, False)]

    def test_install_storage_too_large(self):
        codec = RecordingCodec(encoded=b"\x00" * (STORAGE_SIZE + 1))
        link = _link(storage_codec=codec)
        link.detect()

        with pytest.raises(StorageTooLarge):
            link.install_storage({"records": []})
        assert link.session.transport.downloads == []

    def test_no_codec(self):
        link = _link()
        link.detect()
        with pytest.raises(UnsupportedOperation):
            link.backup_storage()


class TestDisconnect:

    def test_other_device_is_ignored(self):
        events = []
        link = _link()
        session = link.detect()

        other = DeviceIdentity(bus=9, address=9, vendor_id=0x0483, product_id=0xA291)
        assert link.on_unexpected_disconnect(DisconnectEvent(other), events.append) is False

        assert link.session is session
        assert not session.disconnected
        assert events == []

    def test_own_device_invalidates_session(self):
        events = []
        link = _link()
        session = link.detect()

        event = DisconnectEvent(session.identity)
        assert link.on_unexpected_disconnect(event, events.append) is True

        assert link.session is None
        assert session.disconnected
        assert events == [event]
        with pytest.raises(SessionInvalidated):
            session.upload(0, 4)

    def test_repeated_event_is_noop(self):
        events = []
        link = _link()
        session = link.detect()
        event = DisconnectEvent(session.identity)

        link.on_unexpected_disconnect(event, events.append)
        assert link.on_unexpected_disconnect(event, events.append) is False
        assert events == [event]

    def test_check_connection(self):
        attached = [make_interface()]
        link = CalculatorLink(
            transport_factory=TransportFactoryStub(descriptor=make_config_descriptor()),
            enumerate_interfaces=lambda: list(attached),
        )
        link.detect()
        assert link.check_connection() is True

        attached.clear()
        events = []
        assert link.check_connection(events.append) is False
        assert len(events) == 1
        assert not link.connected

    def test_reconnect_after_disconnect(self):
        link = _link()
        session = link.detect()
        link.on_unexpected_disconnect(DisconnectEvent(session.identity))
        assert link.detect() is not session


class TestAutoConnect:

    def test_callback_receives_session(self):
        done = threading.Event()
        sessions = []

        def callback(session):
            sessions.append(session)
            done.set()

        link = _link(poll_interval=0.01)
        link.auto_connect(callback)
        assert done.wait(5)
        link.stop_auto_connect()

        assert sessions == [link.session]

    def test_unopenable_unrelated_device_does_not_stop_polling(self):
        done = threading.Event()
        sessions = []
        errors = []

        def callback(session):
            sessions.append(session)
            done.set()

        stub, build = _locked_device_factory()
        link = _link([LOCKED_DEVICE, make_interface()], factory=build, poll_interval=0.01)
        link.auto_connect(callback, on_error=errors.append)
        assert done.wait(5)
        link.stop_auto_connect()

        assert errors == []
        assert sessions == [link.session]
        assert all(t.interface.vendor_id == 0x0483 for t in stub.transports)

    def test_refused_while_connected(self):
        link = _link()
        link.detect()
        with pytest.raises(SessionBusy):
            link.auto_connect(lambda session: None)

    def test_close_stops_and_closes(self):
        link = _link()
        session = link.detect()
        link.close()

        assert session.closed
        assert session.transport.closed
        assert not link.connected
