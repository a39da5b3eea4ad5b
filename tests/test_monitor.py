"""Tests for the command controller."""

import threading

import pytest

from esp32_spp_thermometer import monitor as monitor_module
from esp32_spp_thermometer.monitor import ConnectionState, TemperatureMonitor
from esp32_spp_thermometer.spp_receiver import (
    DeviceInfo,
    TransportUnavailableError,
)

from conftest import QueueTransport, wait_for


class TransportFactory:
    """Hands out a fresh QueueTransport per connect and remembers the devices."""

    def __init__(self, fail_open: bool = False):
        self.fail_open = fail_open
        self.devices = []
        self.transports = []

    def __call__(self, device):
        self.devices.append(device)
        transport = QueueTransport(fail_open=self.fail_open)
        self.transports.append(transport)
        return transport


@pytest.fixture
def factory():
    return TransportFactory()


@pytest.fixture
def no_hardware(monkeypatch):
    monkeypatch.setattr(monitor_module, "list_serial_devices", lambda: [])
    monkeypatch.setattr(monitor_module, "scan_ble_devices", lambda timeout: [])
    monkeypatch.setattr(monitor_module, "probe_ble_adapter", lambda: None)


@pytest.fixture
def monitor(factory, no_hardware):
    m = TemperatureMonitor(transport_factory=factory)
    yield m
    m.shutdown()


def test_connect_and_receive(monitor, factory):
    assert monitor.connect("/dev/rfcomm0").result(timeout=2.0)

    snapshot = monitor.state.snapshot
    assert snapshot.connection_state is ConnectionState.CONNECTED
    assert snapshot.connected_address == "/dev/rfcomm0"

    transport = factory.transports[-1]
    transport.push(b"25.0,3.0")
    assert wait_for(lambda: len(monitor.state.snapshot.history) == 1)
    assert monitor.state.snapshot.latest_status == "Temperature: 25.0°C | Voltage: 3.0 V"


def test_connect_passes_through_connecting(monitor):
    states = []
    monitor.state.subscribe(lambda s: states.append(s.connection_state))

    monitor.connect("/dev/rfcomm0").result(timeout=2.0)

    assert states[:2] == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]


def test_disconnect(monitor, factory):
    monitor.connect("/dev/rfcomm0").result(timeout=2.0)

    monitor.disconnect().result(timeout=5.0)

    assert monitor.state.snapshot.connection_state is ConnectionState.DISCONNECTED
    assert factory.transports[-1].close_calls >= 1
    assert not monitor.ingestor.is_running


def test_disconnect_when_idle_is_harmless(monitor):
    monitor.disconnect().result(timeout=2.0)
    monitor.disconnect().result(timeout=2.0)

    assert monitor.state.snapshot.connection_state is ConnectionState.DISCONNECTED


def test_failed_connect_resolves_false(no_hardware):
    factory = TransportFactory(fail_open=True)
    with TemperatureMonitor(transport_factory=factory) as m:
        assert m.connect("COM7").result(timeout=2.0) is False

        snapshot = m.state.snapshot
        assert snapshot.connection_state is ConnectionState.DISCONNECTED
        assert snapshot.connected_address is None
        assert factory.transports[-1].close_calls == 1
        assert not m.ingestor.is_running


def test_factory_error_resolves_false(no_hardware):
    def factory(device):
        raise ValueError("Unknown device kind")

    with TemperatureMonitor(transport_factory=factory) as m:
        assert m.connect("somewhere").result(timeout=2.0) is False
        assert m.state.snapshot.connection_state is ConnectionState.DISCONNECTED


def test_reconnect_closes_previous_connection(monitor, factory):
    monitor.connect("/dev/rfcomm0").result(timeout=2.0)
    first = factory.transports[-1]

    assert monitor.connect("/dev/rfcomm1").result(timeout=5.0)

    assert first.close_calls >= 1
    assert len(factory.transports) == 2
    snapshot = monitor.state.snapshot
    assert snapshot.connection_state is ConnectionState.CONNECTED
    assert snapshot.connected_address == "/dev/rfcomm1"


def test_history_is_cleared_on_new_connection(monitor, factory):
    monitor.connect("/dev/rfcomm0").result(timeout=2.0)
    factory.transports[-1].push(b"25.0,3.0")
    assert wait_for(lambda: len(monitor.state.snapshot.history) == 1)

    monitor.connect("/dev/rfcomm0").result(timeout=5.0)

    assert monitor.state.snapshot.history == ()
    assert len(monitor.ingestor.history) == 0


def test_remote_end_of_stream_disconnects(monitor, factory):
    monitor.connect("/dev/rfcomm0").result(timeout=2.0)

    factory.transports[-1].end()

    assert wait_for(
        lambda: monitor.state.snapshot.connection_state is ConnectionState.DISCONNECTED
    )
    assert monitor.ingestor.join(timeout=2.0)
    # The address stays visible after the link drops
    assert monitor.state.snapshot.connected_address == "/dev/rfcomm0"


def test_scan_lists_mock_and_serial_devices(monkeypatch, factory, no_hardware):
    port = DeviceInfo(name="ESP32-SPP", address="/dev/rfcomm0", kind="serial")
    monkeypatch.setattr(monitor_module, "list_serial_devices", lambda: [port])

    with TemperatureMonitor(enable_mock=True, transport_factory=factory) as m:
        devices = m.scan().result(timeout=2.0)

        assert [d.kind for d in devices] == ["mock", "serial"]
        assert devices[0].address == "mock://esp32"
        snapshot = m.state.snapshot
        assert snapshot.available_devices == tuple(devices)
        assert not snapshot.is_scanning


def test_scan_sets_scanning_flag(monitor):
    flags = []
    monitor.state.subscribe(lambda s: flags.append(s.is_scanning))

    monitor.scan().result(timeout=2.0)

    assert flags == [True, False]


def test_ble_scan_failure_keeps_serial_results(monkeypatch, factory, no_hardware):
    port = DeviceInfo(name=None, address="COM7", kind="serial")
    monkeypatch.setattr(monitor_module, "list_serial_devices", lambda: [port])

    def broken_scan(timeout):
        raise TransportUnavailableError("adapter off")

    monkeypatch.setattr(monitor_module, "scan_ble_devices", broken_scan)

    with TemperatureMonitor(enable_ble=True, transport_factory=factory) as m:
        assert m.scan().result(timeout=2.0) == [port]


def test_scan_failure_publishes_empty_list(monkeypatch, factory, no_hardware):
    def broken_ports():
        raise OSError("no /dev")

    monkeypatch.setattr(monitor_module, "list_serial_devices", broken_ports)

    with TemperatureMonitor(transport_factory=factory) as m:
        assert m.scan().result(timeout=2.0) == []
        snapshot = m.state.snapshot
        assert snapshot.available_devices == ()
        assert not snapshot.is_scanning


def test_initialize_disables_ble_when_probe_fails(monkeypatch, factory, no_hardware):
    def broken_probe():
        raise TransportUnavailableError("no adapter")

    scans = []
    monkeypatch.setattr(monitor_module, "probe_ble_adapter", broken_probe)
    monkeypatch.setattr(
        monitor_module, "scan_ble_devices", lambda timeout: scans.append(timeout) or []
    )

    with TemperatureMonitor(
        enable_serial=False, enable_ble=True, transport_factory=factory
    ) as m:
        assert m.initialize() is False
        assert m.state.snapshot.adapter_available is False
        m.scan().result(timeout=2.0)

    assert scans == []


def test_initialize_with_serial_backend(monkeypatch, monitor):
    probes = []
    monkeypatch.setattr(monitor_module, "probe_ble_adapter", lambda: probes.append(1))

    # Serial ports may be bound after startup, so the serial backend is not probed
    assert monitor.initialize() is True
    assert monitor.state.snapshot.adapter_available is True
    assert probes == []


@pytest.mark.parametrize(
    "address, kind",
    [
        ("mock://esp32", "mock"),
        ("/dev/rfcomm0", "serial"),
        ("COM7", "serial"),
        ("AA:BB:CC:DD:EE:FF", "ble"),
    ],
)
def test_connect_infers_kind_without_scan(monitor, factory, address, kind):
    monitor.connect(address).result(timeout=2.0)

    assert factory.devices[-1].kind == kind
    assert factory.devices[-1].address == address


def test_connect_uses_scanned_device(monkeypatch, monitor, factory):
    port = DeviceInfo(name="ESP32-SPP", address="/dev/cu.ESP32", kind="serial")
    monkeypatch.setattr(monitor_module, "list_serial_devices", lambda: [port])
    monitor.scan().result(timeout=2.0)

    monitor.connect("/dev/cu.ESP32").result(timeout=2.0)

    assert factory.devices[-1] == port


def test_shutdown_twice(factory, no_hardware):
    m = TemperatureMonitor(transport_factory=factory)
    m.connect("/dev/rfcomm0").result(timeout=2.0)

    m.shutdown()
    m.shutdown()

    assert m.state.snapshot.connection_state is ConnectionState.DISCONNECTED
    assert factory.transports[-1].close_calls >= 1


def test_context_manager_disconnects(factory, no_hardware):
    with TemperatureMonitor(transport_factory=factory) as m:
        m.connect("/dev/rfcomm0").result(timeout=2.0)

    assert not m.ingestor.is_running
    assert m.state.snapshot.connection_state is ConnectionState.DISCONNECTED


class SlowOpenTransport(QueueTransport):
    """Transport whose open() blocks until the test releases it."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def open(self):
        self.release.wait(5.0)
        super().open()


def test_shutdown_during_slow_connect_returns(no_hardware):
    transport = SlowOpenTransport()
    m = TemperatureMonitor(transport_factory=lambda device: transport)
    pending = m.connect("AA:BB:CC:DD:EE:FF")

    try:
        m.shutdown(timeout=0.2)
    finally:
        transport.release.set()

    # The late connect closes its transport instead of starting the read loop
    assert pending.result(timeout=2.0) is False
    assert transport.close_calls >= 1
    assert not m.ingestor.is_running
    assert m.state.snapshot.connection_state is ConnectionState.DISCONNECTED
