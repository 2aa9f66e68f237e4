"""A small D-Bus client connection with a select-based main loop."""

from __future__ import annotations

import itertools
import os
import select
import socket
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote

from .wire import (
    NO_REPLY_EXPECTED,
    DBusError,
    Message,
    MessageType,
    decode_message,
    encode_message,
)

SYSTEM_BUS_ADDRESS = "unix:path=/var/run/dbus/system_bus_socket"
BUS_NAME = "org.freedesktop.DBus"
BUS_PATH = "/org/freedesktop/DBus"
BUS_INTERFACE = "org.freedesktop.DBus"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"
PEER_INTERFACE = "org.freedesktop.DBus.Peer"

NO_REPLY_ERROR = "org.freedesktop.DBus.Error.NoReply"
UNKNOWN_METHOD_ERROR = "org.freedesktop.DBus.Error.UnknownMethod"

# Seconds to wait for a method reply before it is reported as missing.
METHOD_CALL_TIMEOUT = 300.0

_POLL_INTERVAL = 1.0
_RECV_SIZE = 65536
_MAX_FDS = 16

ReplyHandler = Callable[[Message], Any]
SignalHandler = Callable[[Message], Any]


@dataclass
class _Watch:
    rule: str
    matches: Callable[[Message], bool]
    handler: SignalHandler


@dataclass
class _PendingCall:
    handler: ReplyHandler
    deadline: float


def _quote(value: str) -> str:
    return "'" + value.replace("'", "'\\''") + "'"


def _match_rule(**parts: str | None) -> str:
    items = [("type", "signal"), *parts.items()]
    return ",".join(f"{key}={_quote(value)}" for key, value in items if value is not None)


class Connection:
    """A message connection to a D-Bus daemon over a stream socket."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._buffer = bytearray()
        self._fds: deque[int] = deque()
        self._serials = itertools.count(1)
        self._watch_ids = itertools.count(1)
        self._pending: dict[int, _PendingCall] = {}
        self._watches: dict[int, _Watch] = {}
        self._owners: dict[str, str] = {}
        self._running = False
        self._closed = False
        self.unique_name: str | None = None
        self.unix_fds_enabled = False

    def __enter__(self) -> Connection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Sending

    def _write(self, message: Message) -> int:
        serial = next(self._serials)
        message.serial = serial
        self._sock.sendall(encode_message(message, serial))
        return serial

    def send(self, message: Message) -> int:
        """Send a message that expects no reply and return its serial.

        Method calls are marked as not wanting a reply; signals are refused.
        """
        if message.type == MessageType.SIGNAL:
            raise ValueError("sending signals is not supported")
        if message.type == MessageType.METHOD_CALL:
            message.flags |= NO_REPLY_EXPECTED
        return self._write(message)

    def call(
        self,
        destination: str,
        path: str,
        interface: str | None,
        method: str,
        signature: str,
        args: Any,
        reply_handler: ReplyHandler | None,
    ) -> int:
        """Call a method; *reply_handler* receives the reply or error message."""
        message = Message(
            type=MessageType.METHOD_CALL,
            destination=destination,
            path=path,
            interface=interface,
            member=method,
            signature=signature,
            body=list(args or ()),
        )
        if reply_handler is None:
            return self.send(message)
        serial = self._write(message)
        self._pending[serial] = _PendingCall(
            reply_handler, time.monotonic() + METHOD_CALL_TIMEOUT
        )
        return serial

    # Watches

    def _sender_matches(self, wanted: str | None, actual: str | None) -> bool:
        if wanted is None or actual is None:
            return True
        return actual == wanted or actual == self._owners.get(wanted)

    def _add_watch(self, rule: str, matches: Callable[[Message], bool],
                   handler: SignalHandler) -> int:
        watch_id = next(self._watch_ids)
        self._watches[watch_id] = _Watch(rule, matches, handler)
        self.call(BUS_NAME, BUS_PATH, BUS_INTERFACE, "AddMatch", "s", [rule], None)
        return watch_id

    def add_signal_watch(
        self,
        sender: str | None,
        path: str | None,
        interface: str | None,
        member: str | None,
        handler: SignalHandler,
    ) -> int:
        """Call *handler* with every matching signal; returns a watch id."""
        rule = _match_rule(sender=sender, path=path, interface=interface, member=member)

        def matches(message: Message) -> bool:
            return (
                message.type == MessageType.SIGNAL
                and self._sender_matches(sender, message.sender)
                and path in (None, message.path)
                and interface in (None, message.interface)
                and member in (None, message.member)
            )

        return self._add_watch(rule, matches, handler)

    def add_properties_watch(
        self,
        sender: str | None,
        path: str,
        interface: str,
        handler: Callable[[str, dict, list], Any],
    ) -> int:
        """Watch PropertiesChanged for one interface of one object.

        *handler* is called with the interface name, the dict of changed
        values (as variants) and the list of invalidated property names.
        """
        rule = _match_rule(
            sender=sender,
            path=path,
            interface=PROPERTIES_INTERFACE,
            member="PropertiesChanged",
            arg0=interface,
        )

        def matches(message: Message) -> bool:
            return (
                message.type == MessageType.SIGNAL
                and self._sender_matches(sender, message.sender)
                and message.path == path
                and message.interface == PROPERTIES_INTERFACE
                and message.member == "PropertiesChanged"
                and message.signature.startswith("sa{sv}")
                and message.body[0] == interface
            )

        def deliver(message: Message) -> None:
            invalidated = message.body[2] if len(message.body) > 2 else []
            handler(message.body[0], message.body[1], invalidated)

        return self._add_watch(rule, matches, deliver)

    def add_service_watch(
        self,
        service: str,
        on_connect: Callable[[], Any] | None,
        on_disconnect: Callable[[], Any] | None,
    ) -> int:
        """Follow the owner of a bus name, reporting when it appears or goes."""
        rule = _match_rule(
            sender=BUS_NAME,
            path=BUS_PATH,
            interface=BUS_INTERFACE,
            member="NameOwnerChanged",
            arg0=service,
        )

        def matches(message: Message) -> bool:
            return (
                message.type == MessageType.SIGNAL
                and message.interface == BUS_INTERFACE
                and message.member == "NameOwnerChanged"
                and message.signature == "sss"
                and message.body[0] == service
            )

        def owner_changed(message: Message) -> None:
            _name, old_owner, new_owner = message.body
            if old_owner:
                self._owners.pop(service, None)
                if on_disconnect is not None:
                    on_disconnect()
            if new_owner:
                self._owners[service] = new_owner
                if on_connect is not None:
                    on_connect()

        watch_id = self._add_watch(rule, matches, owner_changed)

        def owner_reply(reply: Message) -> None:
            if watch_id not in self._watches or reply.type != MessageType.METHOD_RETURN:
                return
            self._owners[service] = reply.body[0]
            if on_connect is not None:
                on_connect()

        self.call(BUS_NAME, BUS_PATH, BUS_INTERFACE, "GetNameOwner", "s", [service],
                  owner_reply)
        return watch_id

    def remove_watch(self, watch_id: int) -> None:
        """Remove a watch; raises KeyError for an unknown id."""
        watch = self._watches.pop(watch_id)
        self.call(BUS_NAME, BUS_PATH, BUS_INTERFACE, "RemoveMatch", "s", [watch.rule], None)

    # Receiving

    def dispatch(self, message: Message) -> None:
        """Deliver one incoming message to whoever is waiting for it."""
        if message.type in (MessageType.METHOD_RETURN, MessageType.ERROR):
            pending = self._pending.pop(message.reply_serial, None)
            if pending is not None:
                pending.handler(message)
        elif message.type == MessageType.SIGNAL:
            for watch in list(self._watches.values()):
                if watch.matches(message):
                    watch.handler(message)
        elif not message.flags & NO_REPLY_EXPECTED:
            self._answer_call(message)

    def _answer_call(self, message: Message) -> None:
        if message.member == "Ping" and message.interface in (None, PEER_INTERFACE):
            reply = Message(
                type=MessageType.METHOD_RETURN,
                reply_serial=message.serial,
                destination=message.sender,
            )
        else:
            reply = Message(
                type=MessageType.ERROR,
                error_name=UNKNOWN_METHOD_ERROR,
                reply_serial=message.serial,
                destination=message.sender,
                signature="s",
                body=[f"Unknown method {message.member}"],
            )
        self._write(reply)

    def _receive(self) -> None:
        if self._sock.family == socket.AF_UNIX:
            data, fds, _flags, _addr = socket.recv_fds(self._sock, _RECV_SIZE, _MAX_FDS)
            self._fds.extend(fds)
        else:
            data = self._sock.recv(_RECV_SIZE)
        if not data:
            raise ConnectionError("bus connection closed")
        self._buffer += data

    def _process(self) -> None:
        while True:
            try:
                message, size = decode_message(bytes(self._buffer))
            except EOFError:
                return
            del self._buffer[:size]
            count = min(message.unix_fds, len(self._fds))
            message.fds = [self._fds.popleft() for _ in range(count)]
            self.dispatch(message)

    def _pump(self) -> None:
        self._receive()
        self._process()

    def _next_timeout(self) -> float:
        if not self._pending:
            return _POLL_INTERVAL
        soonest = min(call.deadline for call in self._pending.values())
        return max(0.0, min(_POLL_INTERVAL, soonest - time.monotonic()))

    def _expire_calls(self) -> None:
        now = time.monotonic()
        expired = [serial for serial, call in self._pending.items() if call.deadline <= now]
        for serial in expired:
            pending = self._pending.pop(serial)
            pending.handler(
                Message(
                    type=MessageType.ERROR,
                    error_name=NO_REPLY_ERROR,
                    reply_serial=serial,
                    signature="s",
                    body=["Did not receive a reply"],
                )
            )

    def run(self) -> None:
        """Dispatch messages until quit() is called.

        Raises ConnectionError when the bus closes the connection.
        """
        self._running = True
        self._process()
        while self._running:
            readable, _, _ = select.select([self._sock], [], [], self._next_timeout())
            if readable:
                self._pump()
            self._expire_calls()

    def quit(self) -> None:
        """Make run() return once the current dispatch finishes."""
        self._running = False

    def close(self) -> None:
        """Close the socket and any unclaimed file descriptors."""
        if self._closed:
            return
        self._closed = True
        self._running = False
        while self._fds:
            os.close(self._fds.popleft())
        self._sock.close()


def _read_line(sock: socket.socket) -> bytes:
    line = bytearray()
    while not line.endswith(b"\r\n"):
        chunk = sock.recv(1)
        if not chunk:
            raise ConnectionError("bus closed the connection during authentication")
        line += chunk
    return bytes(line[:-2])


def _authenticate(sock: socket.socket) -> bool:
    uid = str(os.getuid()).encode("ascii").hex().encode("ascii")
    sock.sendall(b"\0AUTH EXTERNAL " + uid + b"\r\n")
    if not _read_line(sock).startswith(b"OK"):
        raise ConnectionError("bus rejected EXTERNAL authentication")
    unix_fds = False
    if sock.family == socket.AF_UNIX:
        sock.sendall(b"NEGOTIATE_UNIX_FD\r\n")
        unix_fds = _read_line(sock) == b"AGREE_UNIX_FD"
    sock.sendall(b"BEGIN\r\n")
    return unix_fds


def _open_socket(address: str) -> socket.socket:
    errors = []
    for entry in filter(None, address.split(";")):
        transport, _, params = entry.partition(":")
        options = dict(
            (key, unquote(value))
            for key, _, value in (item.partition("=") for item in params.split(","))
        )
        if transport != "unix":
            errors.append(f"unsupported transport {transport!r}")
            continue
        if "path" in options:
            target = options["path"]
        elif "abstract" in options:
            target = "\0" + options["abstract"]
        else:
            errors.append(f"no socket path in {entry!r}")
            continue
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(target)
        except OSError as exc:
            sock.close()
            errors.append(str(exc))
            continue
        return sock
    raise ConnectionError(f"cannot connect to bus at {address!r}: {'; '.join(errors)}")


def connect_system_bus() -> Connection:
    """Open, authenticate and register a connection to the system bus."""
    address = os.environ.get("DBUS_SYSTEM_BUS_ADDRESS", SYSTEM_BUS_ADDRESS)
    sock = _open_socket(address)
    try:
        unix_fds = _authenticate(sock)
    except BaseException:
        sock.close()
        raise
    conn = Connection(sock)
    conn.unix_fds_enabled = unix_fds
    replies: list[Message] = []
    try:
        conn.call(BUS_NAME, BUS_PATH, BUS_INTERFACE, "Hello", "", [], replies.append)
        while not replies:
            conn._pump()
    except BaseException:
        conn.close()
        raise
    reply = replies[0]
    if reply.type == MessageType.ERROR:
        conn.close()
        detail = reply.body[0] if reply.body and isinstance(reply.body[0], str) else ""
        raise DBusError(reply.error_name or "", detail)
    conn.unique_name = reply.body[0]
    return conn