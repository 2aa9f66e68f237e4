"""BlueZ client for one known BLE device and its two GATT characteristics.

The client follows the BlueZ daemon on the bus, records the adapter, the
device advertising UUID_DEVICE and the read/write characteristics as they
appear, reports property changes to a single callback and offers the few
operations needed to reach the device: power, scan, connect, acquire
notifications and write a value.
"""

from __future__ import annotations

import os
import select
import sys
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .bus import OBJECT_MANAGER_INTERFACE, PROPERTIES_INTERFACE
from .wire import Message, MessageType, Variant, split_signature

BLUEZ_SERVICE = "org.bluez"
BLUEZ_PATH = "/org/bluez"
ROOT_PATH = "/"

UUID_CHARACTERISTIC_RD = "0003caa2-0000-1000-8000-00805f9b0131"
UUID_CHARACTERISTIC_WR = "0003cbb1-0000-1000-8000-00805f9b0131"
UUID_DEVICE = "0003cbbb-0000-1000-8000-00805f9b0131"

ADAPTER_INTERFACE = "org.bluez.Adapter1"
DEVICE_INTERFACE = "org.bluez.Device1"
CHARACTERISTIC_INTERFACE = "org.bluez.GattCharacteristic1"

_BASIC_CODES = frozenset("ybnqiuxtdhsog")
_NOTIFY_READ_SIZE = 512
_NOTIFY_POLL = 0.2

PropertyCallback = Callable[[str, str, "bool | None"], Any]
NotificationCallback = Callable[[int], Any]


def _report(text: str) -> None:
    print(text, file=sys.stderr)


def screen_uuid(properties: Mapping[str, Any], wanted: str) -> bool:
    """Tell whether the first UUID or UUIDs property holds *wanted*."""
    for name, value in properties.items():
        if name not in ("UUID", "UUIDs"):
            continue
        if not isinstance(value, Variant):
            return False
        if value.signature == "s":
            return value.value == wanted
        if value.signature == "as":
            return wanted in value.value
        return False
    return False


def encode_write_value(value: int) -> bytes:
    """Encode a 32-bit value as the four big-endian bytes that are written."""
    if not 0 <= value < 1 << 32:
        raise ValueError(f"value {value} does not fit in 32 bits")
    return value.to_bytes(4, "big")


@dataclass
class Proxy:
    """One BlueZ object of interest and the properties kept for it."""

    name: str
    properties: tuple[str, ...]
    path: str | None = None
    interface: str | None = None
    watch: int | None = None
    pending: bool = False
    values: dict[str, Variant] = field(default_factory=dict)

    @property
    def discovered(self) -> bool:
        return self.path is not None

    def update_property(self, name: str, value: Any) -> bool:
        """Store a property value; returns False if it is not one kept here."""
        if not isinstance(value, Variant) or name not in self.properties:
            return False
        self.values[name] = value
        return True

    def get_property(self, name: str) -> Variant | None:
        """Return the stored value, or None if it has not been seen yet.

        Raises KeyError for a property this proxy does not keep.
        """
        if name not in self.properties:
            raise KeyError(f"Property {self.path}->{name} not found.")
        return self.values.get(name)


class _NotifyPipe:
    """Reads notification bytes from an acquired pipe on a worker thread."""

    def __init__(
        self,
        fd: int,
        mtu: int,
        on_value: Callable[[int], Any],
        on_close: Callable[[], Any],
    ) -> None:
        self.fd = fd
        self.mtu = mtu
        self._on_value = on_value
        self._on_close = on_close
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(target=self._read_loop, name="notify-pipe", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _read_loop(self) -> None:
        while not self._stop.is_set():
            try:
                readable, _, _ = select.select([self.fd], [], [], _NOTIFY_POLL)
                if not readable:
                    continue
                data = os.read(self.fd, _NOTIFY_READ_SIZE)
            except OSError:
                return
            if not data:
                if not self._stop.is_set():
                    self._on_close()
                return
            self._on_value(data[0])

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join()
        os.close(self.fd)


class BluezClient:
    """Tracks the BlueZ objects this program needs and acts on them."""

    def __init__(
        self,
        connection: Any,
        ready: Callable[[], Any] | None = None,
        service: str = BLUEZ_SERVICE,
    ) -> None:
        if not service:
            raise ValueError("a service name is required")
        self.connection = connection
        self.service = service
        self.ready = ready
        self.service_available = False
        self.property_callback: PropertyCallback | None = None
        self.adapter = Proxy("adapter", ("Powered", "Discovering"))
        self.device = Proxy("device", ("RSSI", "Connected", "ServicesResolved"))
        self.characteristic_rd = Proxy("read characteristic", ("NotifyAcquired",))
        self.characteristic_wr = Proxy("write characteristic", ())
        self._objects_pending = False
        self._filter_set = False
        self._closed = False
        self._notify: _NotifyPipe | None = None
        self._notify_callback: NotificationCallback | None = None
        self._watches = [
            connection.add_service_watch(
                service, self._service_connect, self._service_disconnect
            ),
            connection.add_signal_watch(
                service,
                ROOT_PATH,
                OBJECT_MANAGER_INTERFACE,
                "InterfacesAdded",
                self._on_interfaces_added,
            ),
        ]

    def __enter__(self) -> BluezClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.exit()

    @property
    def proxies(self) -> tuple[Proxy, ...]:
        return (self.adapter, self.device, self.characteristic_rd, self.characteristic_wr)

    @property
    def notifying(self) -> bool:
        """True while a notification pipe is open."""
        return self._notify is not None

    # Service and object discovery

    def _service_connect(self) -> None:
        self.service_available = True
        self._get_managed_objects()

    def _service_disconnect(self) -> None:
        self.service_available = False

    def _get_managed_objects(self) -> None:
        if not self.service_available or self._objects_pending:
            return
        self._objects_pending = True
        try:
            self.connection.call(
                self.service,
                ROOT_PATH,
                OBJECT_MANAGER_INTERFACE,
                "GetManagedObjects",
                "",
                [],
                self._managed_objects_reply,
            )
        except BaseException:
            self._objects_pending = False
            raise

    def _managed_objects_reply(self, reply: Message) -> None:
        self._objects_pending = False
        if self._closed:
            return
        if reply.type != MessageType.ERROR and reply.signature == "a{oa{sa{sv}}}":
            self.handle_managed_objects(reply.body[0])
        if self.ready is not None:
            self.ready()

    def _on_interfaces_added(self, message: Message) -> None:
        if message.signature == "oa{sa{sv}}":
            self.handle_interfaces_added(message.body[0], message.body[1])

    def handle_managed_objects(self, objects: Mapping[str, Mapping[str, Mapping]]) -> None:
        """Record the objects of interest from a GetManagedObjects result."""
        for path, interfaces in objects.items():
            self.handle_interfaces_added(path, interfaces)

    def handle_interfaces_added(self, path: str, interfaces: Mapping[str, Mapping]) -> None:
        """Record any interface of *path* that this client keeps a proxy for."""
        for interface, properties in interfaces.items():
            proxy = self._screen_interface(path, interface, properties)
            if proxy is None:
                continue
            for name, value in properties.items():
                self._add_property(proxy, name, value, send_changed=False)
            proxy.pending = False

    def _screen_interface(
        self, path: str, interface: str, properties: Mapping[str, Any]
    ) -> Proxy | None:
        proxy: Proxy | None = None
        if interface == ADAPTER_INTERFACE:
            proxy = self.adapter
        elif interface == DEVICE_INTERFACE:
            if screen_uuid(properties, UUID_DEVICE):
                proxy = self.device
        elif interface == CHARACTERISTIC_INTERFACE:
            if screen_uuid(properties, UUID_CHARACTERISTIC_RD):
                proxy = self.characteristic_rd
            elif screen_uuid(properties, UUID_CHARACTERISTIC_WR):
                proxy = self.characteristic_wr
        if proxy is None:
            return None

        if proxy.watch is not None:
            self.connection.remove_watch(proxy.watch)
        proxy.path = path
        proxy.interface = interface

        def changed(iface: str, values: Mapping[str, Any], _invalidated: list,
                    proxy: Proxy = proxy) -> None:
            self.handle_properties_changed(proxy, iface, values)

        proxy.watch = self.connection.add_properties_watch(self.service, path, interface, changed)
        proxy.pending = True
        return proxy

    # Properties

    def handle_properties_changed(
        self, proxy: Proxy, interface: str, changed: Mapping[str, Any]
    ) -> None:
        """Store changed values and report each kept one to the callback."""
        for name, value in changed.items():
            self._add_property(proxy, name, value, send_changed=True)

    def _add_property(self, proxy: Proxy, name: str, value: Any, send_changed: bool) -> None:
        if not proxy.update_property(name, value):
            return
        if not send_changed or self.property_callback is None:
            return
        state = bool(value.value) if value.signature == "b" else None
        self.property_callback(proxy.interface or "", name, state)

    def set_property_change_fn(self, fn: PropertyCallback | None) -> None:
        """Set the function called as fn(interface, name, value) on changes.

        *value* is True or False for boolean properties and None otherwise.
        """
        self.property_callback = fn

    def read_property_boolean(self, proxy: Proxy, name: str) -> bool:
        """Return a stored boolean property.

        Raises KeyError for a property the proxy does not keep, LookupError
        when no value has been seen and TypeError when it is not a boolean.
        """
        value = proxy.get_property(name)
        if value is None:
            raise LookupError(f"Property {proxy.path}->{name} has no value yet.")
        if value.signature != "b":
            raise TypeError(f"Property {proxy.path}->{name} is not a boolean.")
        return bool(value.value)

    def set_property(self, proxy: Proxy, name: str, signature: str, value: Any) -> None:
        """Ask BlueZ to set a property of basic type on *proxy*'s object."""
        if not name or value is None:
            raise ValueError("a property name and value are required")
        if len(split_signature(signature)) != 1 or signature not in _BASIC_CODES:
            raise ValueError(f"property type {signature!r} is not a basic type")
        self._require(proxy)
        self.connection.call(
            self.service,
            proxy.path,
            PROPERTIES_INTERFACE,
            "Set",
            "ssv",
            [proxy.interface, name, Variant(signature, value)],
            self._set_property_reply,
        )

    @staticmethod
    def _set_property_reply(reply: Message) -> None:
        if reply.type == MessageType.ERROR:
            _report(f"SetProperty failed: {reply.error_name}")

    # Operations

    def _require(self, proxy: Proxy) -> None:
        if not proxy.discovered:
            raise LookupError(f"{proxy.name} has not been discovered")

    def _method_call(self, proxy: Proxy, method: str, signature: str, args: list,
                     reply_handler: Callable[[Message], Any] | None) -> None:
        self._require(proxy)
        self.connection.call(
            self.service, proxy.path, proxy.interface, method, signature, args, reply_handler
        )

    def power_on(self) -> None:
        """Power the Bluetooth adapter on."""
        self.set_property(self.adapter, "Powered", "b", True)

    def scan(self, on: bool) -> None:
        """Start or stop discovery; starting first restricts it to UUID_DEVICE."""
        if on:
            self._discovery_filter()
            method = "StartDiscovery"
        else:
            method = "StopDiscovery"
        self._method_call(self.adapter, method, "", [], None)

    def _discovery_filter(self) -> None:
        if self._filter_set:
            return
        _report("Setting discovery filter now...")
        self._method_call(
            self.adapter,
            "SetDiscoveryFilter",
            "a{sv}",
            [{"UUIDs": Variant("as", [UUID_DEVICE])}],
            self._discovery_filter_reply,
        )
        self._filter_set = True

    @staticmethod
    def _discovery_filter_reply(reply: Message) -> None:
        if reply.type == MessageType.ERROR:
            _report(f"SetDiscoveryFilter failed: {reply.error_name}")

    def connect(self) -> None:
        """Ask BlueZ to connect to the device."""
        self._method_call(self.device, "Connect", "", [], None)

    def acquire_notify(self, callback: NotificationCallback | None) -> None:
        """Acquire the notification pipe of the read characteristic.

        *callback* receives the first byte of every notification.
        """
        proxy = self.characteristic_rd
        if proxy.interface != CHARACTERISTIC_INTERFACE:
            raise LookupError(
                f"Unable to acquire notify: {proxy.interface} not a characteristic"
            )
        self._method_call(proxy, "AcquireNotify", "a{sv}", [{}], self._acquire_notify_reply)
        self._notify_callback = callback

    def _acquire_notify_reply(self, reply: Message) -> None:
        if reply.type == MessageType.ERROR:
            _report(f"Failed to acquire notify: {reply.error_name}")
            return
        if self._closed:
            self._close_fds(reply.fds)
            return
        self._close_pipe()
        if reply.signature != "hq" or not 0 <= reply.body[0] < len(reply.fds):
            _report("Invalid AcquireNotify response")
            self._close_fds(reply.fds)
            return
        fd = reply.fds[reply.body[0]]
        self._close_fds(f for f in reply.fds if f != fd)
        mtu = reply.body[1]
        _report(f"AcquireNotify success: fd {fd} MTU {mtu}")
        pipe = _NotifyPipe(fd, mtu, self._deliver_notification, self._notify_closed)
        self._notify = pipe
        pipe.start()

    @staticmethod
    def _close_fds(fds: Any) -> None:
        for fd in fds:
            try:
                os.close(fd)
            except OSError:
                pass

    def _deliver_notification(self, value: int) -> None:
        callback = self._notify_callback
        if callback is not None:
            callback(value)

    def _notify_closed(self) -> None:
        _report("Notify closed")
        self._destroy_notify()

    def _close_pipe(self) -> None:
        pipe, self._notify = self._notify, None
        if pipe is not None:
            pipe.close()

    def _destroy_notify(self) -> None:
        self._close_pipe()
        self._notify_callback = None

    def write_attribute(self, value: int) -> None:
        """Write a four-byte value to the write characteristic."""
        data = encode_write_value(value)
        self._method_call(
            self.characteristic_wr, "WriteValue", "aya{sv}", [data, {}], self._write_reply
        )

    @staticmethod
    def _write_reply(reply: Message) -> None:
        if reply.type == MessageType.ERROR:
            _report(f"Failed to write: {reply.error_name}")

    def exit(self) -> None:
        """Close the notification pipe and remove every watch this client added."""
        self._destroy_notify()
        if self._closed:
            return
        self._closed = True
        for proxy in self.proxies:
            if proxy.watch is not None:
                self.connection.remove_watch(proxy.watch)
                proxy.watch = None
        for watch_id in self._watches:
            self.connection.remove_watch(watch_id)
        self._watches.clear()