import io

import pytest

from rccontrol.app import (
    LED_COLOURS,
    BleStateMachine,
    Event,
    State,
    main,
)
from rccontrol.bluez import (
    ADAPTER_INTERFACE,
    CHARACTERISTIC_INTERFACE,
    DEVICE_INTERFACE,
)


class FakeClient:
    def __init__(self, booleans=None):
        self.adapter = "adapter"
        self.device = "device"
        self.booleans = dict(booleans or {})
        self.calls = []
        self.connect_error = None
        self.write_error = None

    def read_property_boolean(self, proxy, name):
        key = (proxy, name)
        if key not in self.booleans:
            raise LookupError(name)
        return self.booleans[key]

    def power_on(self):
        self.calls.append(("power_on",))

    def scan(self, on):
        self.calls.append(("scan", on))

    def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.calls.append(("connect",))

    def acquire_notify(self, callback):
        self.calls.append(("acquire_notify", callback))

    def write_attribute(self, value):
        if self.write_error is not None:
            raise self.write_error
        self.calls.append(("write", value))


def make(booleans=None):
    client = FakeClient(booleans)
    quits = []
    err = io.StringIO()
    machine = BleStateMachine(client, quit=lambda: quits.append(True), err=err)
    return machine, client, quits, err


def test_init_ignores_events_before_client_ready():
    machine, client, _, _ = make({("adapter", "Powered"): True})
    machine.handle(Event.DEVICE_DETECTED)
    machine.handle(Event.POWER_ON)
    assert machine.state == State.INIT
    assert client.calls == []


def test_client_ready_without_adapter_value_waits():
    machine, client, _, _ = make()
    machine.client_ready()
    assert machine.state == State.CONTROLLER_OFF
    assert client.calls == []


def test_powered_off_adapter_is_powered_on_then_scans():
    machine, client, _, _ = make({("adapter", "Powered"): False})
    machine.client_ready()
    assert machine.state == State.CONTROLLER_OFF
    assert client.calls == [("power_on",)]

    client.booleans[("adapter", "Powered")] = True
    machine.property_changed(ADAPTER_INTERFACE, "Powered", True)
    assert machine.state == State.SCAN
    assert client.calls[-1] == ("scan", True)


def test_full_connection_sequence():
    machine, client, _, _ = make({("adapter", "Powered"): True})
    machine.client_ready()
    assert machine.state == State.SCAN
    assert client.calls == [("scan", True)]

    machine.property_changed(DEVICE_INTERFACE, "RSSI", None)
    assert machine.state == State.SCAN_STOPPED
    assert client.calls[-1] == ("scan", False)

    machine.property_changed(ADAPTER_INTERFACE, "Discovering", False)
    assert machine.state == State.CONNECTING
    assert client.calls[-1] == ("connect",)

    machine.property_changed(DEVICE_INTERFACE, "ServicesResolved", True)
    assert machine.state == State.ACQUIRE_NOTIFY
    assert client.calls[-1] == ("acquire_notify", machine.notification)

    machine.property_changed(CHARACTERISTIC_INTERFACE, "NotifyAcquired", True)
    assert machine.state == State.ROCK_N_ROLL


def test_already_connected_device_acquires_notify_directly():
    machine, client, _, _ = make(
        {("adapter", "Powered"): True, ("device", "Connected"): True}
    )
    machine.client_ready()
    assert machine.state == State.ACQUIRE_NOTIFY
    assert client.calls == [("acquire_notify", machine.notification)]


def test_failed_connect_stays_in_scan_stopped():
    machine, client, _, err = make({("adapter", "Powered"): True})
    machine.client_ready()
    machine.property_changed(DEVICE_INTERFACE, "RSSI", None)
    client.connect_error = LookupError("device has not been discovered")
    machine.property_changed(ADAPTER_INTERFACE, "Discovering", False)
    assert machine.state == State.SCAN_STOPPED
    assert "Attempting to connect..." in err.getvalue()


def test_disconnect_restarts_scan():
    machine, client, _, _ = make(
        {("adapter", "Powered"): True, ("device", "Connected"): True}
    )
    machine.client_ready()
    client.booleans[("device", "Connected")] = False
    machine.property_changed(DEVICE_INTERFACE, "Connected", False)
    assert machine.state == State.SCAN
    assert client.calls[-1] == ("scan", True)


def test_services_resolved_no_does_not_advance():
    machine, client, _, _ = make({("adapter", "Powered"): True})
    machine.client_ready()
    machine.property_changed(DEVICE_INTERFACE, "RSSI", None)
    machine.property_changed(ADAPTER_INTERFACE, "Discovering", False)
    machine.property_changed(DEVICE_INTERFACE, "ServicesResolved", False)
    assert machine.state == State.CONNECTING


def test_property_changed_log_format():
    machine, _, _, err = make()
    machine.property_changed(DEVICE_INTERFACE, "Connected", False)
    machine.property_changed(ADAPTER_INTERFACE, "Powered", True)
    machine.property_changed(DEVICE_INTERFACE, "RSSI", None)
    lines = err.getvalue().splitlines()
    assert lines == [
        "propertyChanged(): on interface org.bluez.Device1: Connected: no",
        "propertyChanged(): on interface org.bluez.Adapter1: Powered: yes",
        "propertyChanged(): on interface org.bluez.Device1: RSSI",
    ]


def test_notifications_write_led_colours_and_quit_after_six():
    machine, client, quits, err = make()
    for _ in range(5):
        machine.notification(0)
        assert quits == []
    machine.notification(0)
    assert quits == [True]
    writes = [call[1] for call in client.calls if call[0] == "write"]
    assert writes == [
        LED_COLOURS[0], LED_COLOURS[0],
        LED_COLOURS[1], LED_COLOURS[1],
        LED_COLOURS[2], LED_COLOURS[2],
    ]
    assert LED_COLOURS == (0xFF000080, 0x00FF0080, 0x0000FF80)
    assert "Exiting program." in err.getvalue()


def test_nonzero_notification_writes_nothing():
    machine, client, quits, err = make()
    machine.notification(7)
    assert client.calls == []
    assert machine.notifications == 1
    assert quits == []
    assert "Notification: 7" in err.getvalue()


def test_failed_write_is_reported():
    machine, client, _, err = make()
    client.write_error = LookupError("write characteristic has not been discovered")
    machine.notification(0)
    assert "Failed to write" in err.getvalue()
    assert machine.notifications == 1


def test_main_fails_without_system_bus(monkeypatch, tmp_path):
    missing = tmp_path / "no-such-socket"
    monkeypatch.setenv("DBUS_SYSTEM_BUS_ADDRESS", f"unix:path={missing}")
    assert main([]) == 1


@pytest.mark.parametrize("event", [Event.POWER_ON, Event.SCAN_STOPPED, Event.DEVICE_READY])
def test_scan_state_waits_for_detection(event):
    machine, client, _, _ = make({("adapter", "Powered"): True})
    machine.client_ready()
    machine.handle(event)
    assert machine.state == State.SCAN
    assert client.calls == [("scan", True)]