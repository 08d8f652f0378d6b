"""Tests for device filtering, interface name repair and autoconnect."""

import threading

import pytest

from numworks_link.core.discovery import (
    AutoConnector,
    DeviceFilter,
    DiscoveryState,
    find_matching_devices,
    fix_interface_names,
)
from numworks_link.errors import TransportOpenFailed

from conftest import N0110_NAME, TransportFactoryStub, make_interface


class TestDeviceFilter:
    """Serial number wins; otherwise vendor/product ids, missing meaning any."""

    def test_serial_only(self):
        interface = make_interface(serial_number="ABC", vendor_id=0x1234, product_id=0x5678)
        assert DeviceFilter(vendor_id=0x0483, product_id=0xA291, serial_number="ABC").matches(interface)
        assert not DeviceFilter(vendor_id=0x1234, serial_number="XYZ").matches(interface)

    def test_vendor_and_product(self):
        interface = make_interface()
        assert DeviceFilter(vendor_id=0x0483, product_id=0xA291).matches(interface)
        assert not DeviceFilter(vendor_id=0x0483, product_id=0xDF11).matches(interface)

    def test_single_id(self):
        interface = make_interface()
        assert DeviceFilter(vendor_id=0x0483).matches(interface)
        assert DeviceFilter(product_id=0xA291).matches(interface)
        assert not DeviceFilter(product_id=0xDF11).matches(interface)

    def test_empty_filter_matches_nothing(self):
        assert not DeviceFilter().matches(make_interface())


def test_find_matching_devices_keeps_order():
    interfaces = [
        make_interface(address=3, product_id=0xDF11),
        make_interface(address=4),
        make_interface(address=5),
    ]
    matches = find_matching_devices(interfaces, DeviceFilter(vendor_id=0x0483, product_id=0xA291))

    assert [m.identity.address for m in matches] == [4, 5]
    assert matches[0].serial_number == "204A32AB5431"


class TestFixInterfaceNames:
    """Unreadable names are repaired through a temporary transport."""

    def test_names_filled_in(self):
        unnamed = make_interface(name=None)
        factory = TransportFactoryStub(names={unnamed.key: N0110_NAME})

        fixed = fix_interface_names([unnamed], factory)

        assert fixed[0].name == N0110_NAME
        assert factory.last.calls == [("open",), ("read_interface_names",), ("close",)]

    def test_named_devices_are_not_opened(self):
        factory = TransportFactoryStub()
        interfaces = [make_interface()]

        assert fix_interface_names(interfaces, factory) == interfaces
        assert factory.transports == []

    def test_one_transport_per_device(self):
        first = make_interface(name=None, alternate_setting=0)
        second = make_interface(name=None, alternate_setting=1)
        other = make_interface(address=9, name="@SRAM/0x20000000/64*1Kg")
        factory = TransportFactoryStub(names={first.key: "@Flash", second.key: "@SRAM"})

        fixed = fix_interface_names([first, second, other], factory)

        assert len(factory.transports) == 1
        assert [i.name for i in fixed] == ["@Flash", "@SRAM", "@SRAM/0x20000000/64*1Kg"]

    def test_transport_closed_on_error(self):
        factory = TransportFactoryStub()

        class Boom(Exception):
            pass

        def explode():
            raise Boom()

        def build(interface):
            transport = factory(interface)
            transport.read_interface_names = explode
            return transport

        with pytest.raises(Boom):
            fix_interface_names([make_interface(name=None)], build)
        assert factory.last.closed

    def test_unopenable_device_keeps_missing_names(self):
        locked = make_interface(address=2, vendor_id=0x1209, product_id=0x0001, name=None)
        calculator = make_interface(address=5, name=None)
        stub = TransportFactoryStub(names={calculator.key: N0110_NAME})

        def build(interface):
            transport = stub(interface)
            if interface.vendor_id == 0x1209:
                transport.open_error = TransportOpenFailed("access denied")
            return transport

        fixed = fix_interface_names([locked, calculator], build)

        assert fixed[0].name is None
        assert fixed[1].name == N0110_NAME
        assert ("read_interface_names",) not in stub.transports[0].calls


class TestAutoConnectorPoll:
    """Single discovery cycles."""

    def test_no_match(self):
        matched = []
        connector = AutoConnector(
            enumerate_interfaces=lambda: [make_interface(product_id=0xDF11)],
            device_filter=DeviceFilter(vendor_id=0x0483, product_id=0xA291),
            on_match=matched.append,
        )

        assert connector.poll(threading.Event()) is False
        assert matched == []

    def test_match_hands_first_device(self):
        matched = []
        connector = AutoConnector(
            enumerate_interfaces=lambda: [make_interface(address=7), make_interface(address=8)],
            device_filter=DeviceFilter(vendor_id=0x0483, product_id=0xA291),
            on_match=matched.append,
        )

        assert connector.poll(threading.Event()) is True
        assert [m.identity.address for m in matched] == [7]
        assert connector.state is DiscoveryState.CONNECTED

    def test_cancelled_cycle_does_not_match(self):
        matched = []
        connector = AutoConnector(
            enumerate_interfaces=lambda: [make_interface()],
            device_filter=DeviceFilter(vendor_id=0x0483),
            on_match=matched.append,
        )
        cancel = threading.Event()
        cancel.set()

        assert connector.poll(cancel) is False
        assert matched == []

    def test_unrelated_unnamed_device_is_skipped(self):
        matched = []
        connector = AutoConnector(
            enumerate_interfaces=lambda: [
                make_interface(address=2, vendor_id=0x1209, product_id=0x0001, name=None),
                make_interface(address=5),
            ],
            device_filter=DeviceFilter(vendor_id=0x0483, product_id=0xA291),
            on_match=matched.append,
        )

        assert connector.poll(threading.Event()) is True
        assert [m.identity.address for m in matched] == [5]


class TestAutoConnectorThread:
    """Background polling and cancellation."""

    def test_never_matches_until_stopped(self):
        attached = []
        polled = threading.Event()
        matched = []
        cycles = []

        def enumerate_interfaces():
            cycles.append(1)
            if len(cycles) >= 3:
                polled.set()
            return list(attached)

        connector = AutoConnector(
            enumerate_interfaces=enumerate_interfaces,
            device_filter=DeviceFilter(vendor_id=0x0483, product_id=0xA291),
            on_match=matched.append,
            poll_interval=0.01,
        )
        connector.start()
        assert polled.wait(5)
        connector.stop()

        assert connector.state is DiscoveryState.STOPPED
        assert matched == []

        # A device showing up after stop() is never reported
        attached.append(make_interface())
        count = len(cycles)
        threading.Event().wait(0.05)
        assert len(cycles) == count
        assert matched == []

    def test_match_from_thread(self):
        done = threading.Event()
        matched = []

        def on_match(match):
            matched.append(match)
            done.set()

        connector = AutoConnector(
            enumerate_interfaces=lambda: [make_interface()],
            device_filter=DeviceFilter(vendor_id=0x0483),
            on_match=on_match,
            poll_interval=0.01,
        )
        connector.start()
        assert done.wait(5)
        connector.stop()

        assert len(matched) == 1

    def test_error_stops_polling(self):
        errors = []
        failed = threading.Event()

        def enumerate_interfaces():
            raise RuntimeError("usb backend gone")

        def on_error(error):
            errors.append(error)
            failed.set()

        connector = AutoConnector(
            enumerate_interfaces=enumerate_interfaces,
            device_filter=DeviceFilter(vendor_id=0x0483),
            on_match=lambda match: None,
            on_error=on_error,
            poll_interval=0.01,
        )
        connector.start()
        assert failed.wait(5)
        connector.stop()

        assert isinstance(errors[0], RuntimeError)
        assert len(errors) == 1
        assert connector.state is DiscoveryState.STOPPED

    def test_stop_waits_for_callback_in_flight(self):
        attached = [make_interface()]
        entered = threading.Event()
        release = threading.Event()
        order = []

        def on_match(match):
            entered.set()
            release.wait(5)
            order.append("callback")

        connector = AutoConnector(
            enumerate_interfaces=lambda: list(attached),
            device_filter=DeviceFilter(vendor_id=0x0483, product_id=0xA291),
            on_match=on_match,
            poll_interval=0.01,
        )
        connector.start()
        assert entered.wait(5)

        def stop():
            connector.stop()
            order.append("stopped")

        stopper = threading.Thread(target=stop)
        stopper.start()
        stopper.join(0.1)
        assert stopper.is_alive()
        assert order == []

        release.set()
        stopper.join(5)
        assert not stopper.is_alive()
        assert order == ["callback", "stopped"]
        assert connector.state is DiscoveryState.STOPPED

        # A device attached afterwards is never reported
        attached.append(make_interface(address=9))
        threading.Event().wait(0.05)
        assert order == ["callback", "stopped"]

    def test_stop_is_idempotent(self):
        connector = AutoConnector(
            enumerate_interfaces=lambda: [],
            device_filter=DeviceFilter(vendor_id=0x0483),
            on_match=lambda match: None,
        )
        connector.stop()
        connector.start()
        connector.stop()
        connector.stop()
        assert connector.state is DiscoveryState.STOPPED
