"""Connect to the remote BLE device and react to its notifications.

A state machine steps through powering the adapter, scanning for the
device, connecting, and acquiring notifications. It is driven by the
client becoming ready and by property changes reported by BlueZ.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from enum import IntEnum
from typing import Any, TextIO

from .bluez import (
    ADAPTER_INTERFACE,
    CHARACTERISTIC_INTERFACE,
    DEVICE_INTERFACE,
    BluezClient,
)
from .bus import connect_system_bus
from .wire import DBusError

# Red, green and blue LED values written back to the device.
LED_COLOURS = (0xFF000080, 0x00FF0080, 0x0000FF80)
NOTIFICATIONS_BEFORE_EXIT = 6

_CALL_ERRORS = (LookupError, ValueError, OSError)


class State(IntEnum):
    """Steps in establishing communication with the remote device."""

    INIT = 0
    CONTROLLER_OFF = 1
    CONTROLLER_ON = 2
    SCAN = 3
    SCAN_STOPPED = 4
    CONNECTING = 5
    CONNECTED = 6
    ACQUIRE_NOTIFY = 7
    ROCK_N_ROLL = 8


class Event(IntEnum):
    """Events that drive the state machine."""

    CLIENT_READY = 1
    POWER_ON = 2
    DEVICE_ADDED = 3
    DEVICE_DETECTED = 4
    SCAN_STOPPED = 5
    DEVICE_READY = 6
    NOTIFY_ACQUIRED = 7
    DEVICE_DISCONNECTED = 8


class BleStateMachine:
    """Drives a BlueZ client from adapter power-up to receiving notifications."""

    def __init__(
        self,
        client: Any,
        quit: Callable[[], Any] | None = None,
        err: TextIO | None = None,
    ) -> None:
        self.client = client
        self.quit = quit
        self.err = err if err is not None else sys.stderr
        self.state = State.INIT
        self.notifications = 0

    def _report(self, text: str) -> None:
        print(text, file=self.err)

    def _read_boolean(self, proxy: Any, name: str) -> bool | None:
        try:
            return self.client.read_property_boolean(proxy, name)
        except (KeyError, LookupError, TypeError):
            return None

    def handle(self, event: Event) -> None:
        """Advance the state machine as far as *event* allows."""
        if event == Event.DEVICE_DISCONNECTED:
            self.state = State.CONTROLLER_ON

        while True:
            state = self.state
            if state == State.INIT:
                if event != Event.CLIENT_READY:
                    return
                self.state = State.CONTROLLER_OFF

            elif state == State.CONTROLLER_OFF:
                powered = self._read_boolean(self.client.adapter, "Powered")
                if powered is None:
                    return
                if not powered:
                    try:
                        self.client.power_on()
                    except _CALL_ERRORS:
                        self._report("Failed to power adapter on.")
                    return
                self.state = State.CONTROLLER_ON

            elif state == State.CONTROLLER_ON:
                # The device may be known to BlueZ from an earlier run.
                connected = self._read_boolean(self.client.device, "Connected")
                if not connected:
                    self.state = State.SCAN
                    self._scan(True)
                    return
                self.state = State.CONNECTED

            elif state == State.SCAN:
                if event != Event.DEVICE_DETECTED:
                    return
                self._scan(False)
                self.state = State.SCAN_STOPPED
                return

            elif state == State.SCAN_STOPPED:
                if event != Event.SCAN_STOPPED:
                    return
                self._report("Attempting to connect...")
                try:
                    self.client.connect()
                except _CALL_ERRORS:
                    return
                self.state = State.CONNECTING
                return

            elif state == State.CONNECTING:
                if event != Event.DEVICE_READY:
                    return
                self.state = State.CONNECTED

            elif state == State.CONNECTED:
                try:
                    self.client.acquire_notify(self.notification)
                except _CALL_ERRORS as exc:
                    self._report(str(exc) or "Failed to AcquireNotify")
                self.state = State.ACQUIRE_NOTIFY
                return

            elif state == State.ACQUIRE_NOTIFY:
                if event == Event.NOTIFY_ACQUIRED:
                    self.state = State.ROCK_N_ROLL
                return

            else:
                return

    def _scan(self, on: bool) -> None:
        try:
            self.client.scan(on)
        except _CALL_ERRORS:
            self._report(f"Failed to {'start' if on else 'stop'} discovery")

    def property_changed(self, interface: str, name: str, value: bool | None) -> None:
        """Turn a reported property change into a state machine event."""
        suffix = "" if value is None else (": yes" if value else ": no")
        self._report(f"propertyChanged(): on interface {interface}: {name}{suffix}")
        yes = value is True

        if interface == DEVICE_INTERFACE:
            if name == "ServicesResolved" and yes:
                self.handle(Event.DEVICE_READY)
            if name == "RSSI":
                self.handle(Event.DEVICE_DETECTED)
            if name == "Connected" and not yes:
                self.handle(Event.DEVICE_DISCONNECTED)
        elif interface == ADAPTER_INTERFACE:
            if name == "Powered" and yes:
                self.handle(Event.POWER_ON)
            elif name == "Discovering" and not yes:
                self.handle(Event.SCAN_STOPPED)
        elif interface == CHARACTERISTIC_INTERFACE:
            if name == "NotifyAcquired" and yes:
                self.handle(Event.NOTIFY_ACQUIRED)

    def notification(self, value: int) -> None:
        """Answer a notification; quit after enough of them have arrived."""
        self._report(f"Notification: {value}")
        if value == 0:
            try:
                self.client.write_attribute(LED_COLOURS[self.notifications // 2])
            except _CALL_ERRORS:
                self._report("Failed to write")
        self.notifications += 1
        if self.notifications < NOTIFICATIONS_BEFORE_EXIT:
            return
        self._report("Exiting program.")
        if self.quit is not None:
            self.quit()

    def client_ready(self) -> None:
        """Start establishing communication once the client knows the adapter."""
        self.handle(Event.CLIENT_READY)


def main(argv: list[str] | None = None) -> int:
    """Run the BLE client on the system bus until enough notifications arrive."""
    try:
        connection = connect_system_bus()
    except (ConnectionError, OSError, DBusError) as exc:
        print(f"Cannot connect to the system bus: {exc}", file=sys.stderr)
        return 1

    with connection:
        machine: BleStateMachine | None = None

        def ready() -> None:
            if machine is not None:
                machine.client_ready()

        client = BluezClient(connection, ready=ready)
        machine = BleStateMachine(client, quit=connection.quit)
        client.set_property_change_fn(machine.property_changed)
        try:
            connection.run()
        except KeyboardInterrupt:
            pass
        except ConnectionError as exc:
            print(f"Bus connection lost: {exc}", file=sys.stderr)
            return 1
        finally:
            try:
                client.exit()
            except OSError:
                pass
    return 0