import os
import socket
import threading

import pytest

from rccontrol import bus
from rccontrol.bus import (
    BUS_NAME,
    NO_REPLY_ERROR,
    OBJECT_MANAGER_INTERFACE,
    PEER_INTERFACE,
    PROPERTIES_INTERFACE,
    Connection,
    connect_system_bus,
)
from rccontrol.wire import (
    NO_REPLY_EXPECTED,
    Message,
    MessageType,
    Variant,
    decode_message,
    encode_message,
)


class Peer:
    def __init__(self, sock):
        self.sock = sock
        sock.settimeout(5)
        self.buf = bytearray()

    def _fill(self):
        chunk = self.sock.recv(4096)
        if not chunk:
            raise EOFError("peer closed")
        self.buf += chunk

    def line(self):
        while b"\r\n" not in self.buf:
            self._fill()
        line, _, rest = bytes(self.buf).partition(b"\r\n")
        self.buf = bytearray(rest)
        return line

    def message(self):
        while True:
            try:
                msg, size = decode_message(bytes(self.buf))
            except EOFError:
                self._fill()
                continue
            del self.buf[:size]
            return msg

    def send(self, message, serial=100):
        self.sock.sendall(encode_message(message, serial))


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    conn = Connection(a)
    peer = Peer(b)
    yield conn, peer
    conn.close()
    b.close()


def test_send_marks_method_call_no_reply(pair):
    conn, peer = pair
    serial = conn.send(Message(MessageType.METHOD_CALL, path="/org/bluez/hci0",
                               interface="org.bluez.Device1", member="Connect",
                               destination="org.bluez"))
    got = peer.message()
    assert got.serial == serial
    assert got.member == "Connect"
    assert got.flags & NO_REPLY_EXPECTED


def test_send_refuses_signal(pair):
    conn, _peer = pair
    with pytest.raises(ValueError):
        conn.send(Message(MessageType.SIGNAL, path="/", interface="a.b", member="C"))


def test_call_without_handler_expects_no_reply(pair):
    conn, peer = pair
    conn.call("org.bluez", "/org/bluez/hci0", "org.bluez.Adapter1", "StartDiscovery",
              "", [], None)
    got = peer.message()
    assert got.member == "StartDiscovery"
    assert got.destination == "org.bluez"
    assert got.flags & NO_REPLY_EXPECTED


def test_call_reply_reaches_handler(pair):
    conn, peer = pair
    replies = []

    def on_reply(message):
        replies.append(message)
        conn.quit()

    serial = conn.call("org.bluez", "/", OBJECT_MANAGER_INTERFACE, "GetManagedObjects",
                       "", [], on_reply)
    request = peer.message()
    assert request.serial == serial
    assert not request.flags & NO_REPLY_EXPECTED
    peer.send(Message(MessageType.METHOD_RETURN, reply_serial=serial,
                      signature="s", body=["done"]))
    conn.run()
    assert [r.body for r in replies] == [["done"]]


def test_call_times_out_with_no_reply_error(pair, monkeypatch):
    conn, _peer = pair
    monkeypatch.setattr(bus, "METHOD_CALL_TIMEOUT", 0.0)
    replies = []

    def on_reply(message):
        replies.append(message)
        conn.quit()

    serial = conn.call("org.bluez", "/", None, "Ping", "", [], on_reply)
    conn.run()
    assert replies[0].type == MessageType.ERROR
    assert replies[0].error_name == NO_REPLY_ERROR
    assert replies[0].reply_serial == serial


def test_signal_watch_registers_rule_and_filters(pair):
    conn, peer = pair
    seen = []
    conn.add_signal_watch("org.bluez", "/", OBJECT_MANAGER_INTERFACE,
                          "InterfacesAdded", seen.append)
    add = peer.message()
    assert add.member == "AddMatch"
    assert add.body == [
        "type='signal',sender='org.bluez',path='/',"
        "interface='org.freedesktop.DBus.ObjectManager',member='InterfacesAdded'"
    ]
    wanted = Message(MessageType.SIGNAL, path="/", interface=OBJECT_MANAGER_INTERFACE,
                     member="InterfacesAdded", sender="org.bluez",
                     signature="oa{sa{sv}}", body=["/org/bluez/hci0", {}])
    other = Message(MessageType.SIGNAL, path="/", interface=OBJECT_MANAGER_INTERFACE,
                    member="InterfacesRemoved", sender="org.bluez",
                    signature="oas", body=["/org/bluez/hci0", []])
    stranger = Message(MessageType.SIGNAL, path="/", interface=OBJECT_MANAGER_INTERFACE,
                       member="InterfacesAdded", sender=":1.99",
                       signature="oa{sa{sv}}", body=["/x", {}])
    for message in (wanted, other, stranger):
        conn.dispatch(message)
    assert seen == [wanted]


def test_remove_watch_stops_delivery(pair):
    conn, peer = pair
    seen = []
    watch_id = conn.add_signal_watch(None, "/", None, "Tick", seen.append)
    peer.message()
    conn.remove_watch(watch_id)
    removed = peer.message()
    assert removed.member == "RemoveMatch"
    conn.dispatch(Message(MessageType.SIGNAL, path="/", interface="a.b", member="Tick"))
    assert seen == []
    with pytest.raises(KeyError):
        conn.remove_watch(watch_id)


def test_properties_watch_passes_changes(pair):
    conn, peer = pair
    seen = []
    conn.add_properties_watch("org.bluez", "/org/bluez/hci0", "org.bluez.Adapter1",
                              lambda *args: seen.append(args))
    add = peer.message()
    assert "arg0='org.bluez.Adapter1'" in add.body[0]
    changed = {"Powered": Variant("b", True)}
    conn.dispatch(Message(MessageType.SIGNAL, path="/org/bluez/hci0",
                          interface=PROPERTIES_INTERFACE, member="PropertiesChanged",
                          signature="sa{sv}as",
                          body=["org.bluez.Adapter1", changed, []]))
    conn.dispatch(Message(MessageType.SIGNAL, path="/org/bluez/hci0",
                          interface=PROPERTIES_INTERFACE, member="PropertiesChanged",
                          signature="sa{sv}as",
                          body=["org.bluez.Device1", changed, []]))
    assert seen == [("org.bluez.Adapter1", changed, [])]


def test_service_watch_tracks_owner(pair):
    conn, peer = pair
    events = []

    def connected():
        events.append("connect")
        conn.quit()

    conn.add_service_watch("org.bluez", connected, lambda: events.append("disconnect"))
    assert peer.message().member == "AddMatch"
    query = peer.message()
    assert query.member == "GetNameOwner"
    assert query.body == ["org.bluez"]
    peer.send(Message(MessageType.METHOD_RETURN, reply_serial=query.serial,
                      signature="s", body=[":1.5"]))
    conn.run()
    assert events == ["connect"]

    seen = []
    conn.add_signal_watch("org.bluez", "/", None, "Tick", seen.append)
    tick = Message(MessageType.SIGNAL, path="/", interface="a.b", member="Tick",
                   sender=":1.5")
    conn.dispatch(tick)
    assert seen == [tick]

    conn.dispatch(Message(MessageType.SIGNAL, path="/org/freedesktop/DBus",
                          interface=BUS_NAME, member="NameOwnerChanged",
                          sender=BUS_NAME, signature="sss",
                          body=["org.bluez", ":1.5", ""]))
    assert events == ["connect", "disconnect"]


def test_incoming_ping_is_answered(pair):
    conn, peer = pair
    conn.dispatch(Message(MessageType.METHOD_CALL, path="/", interface=PEER_INTERFACE,
                          member="Ping", serial=7, sender=":1.1"))
    reply = peer.message()
    assert reply.type == MessageType.METHOD_RETURN
    assert reply.reply_serial == 7
    assert reply.destination == ":1.1"


def test_unknown_incoming_method_gets_error(pair):
    conn, peer = pair
    conn.dispatch(Message(MessageType.METHOD_CALL, path="/", interface="a.b",
                          member="Frobnicate", serial=9, sender=":1.1"))
    reply = peer.message()
    assert reply.type == MessageType.ERROR
    assert reply.reply_serial == 9


def test_run_raises_when_peer_closes(pair):
    conn, peer = pair
    peer.sock.close()
    with pytest.raises(ConnectionError):
        conn.run()


def test_unsupported_address_is_rejected(monkeypatch):
    monkeypatch.setenv("DBUS_SYSTEM_BUS_ADDRESS", "tcp:host=localhost,port=1")
    with pytest.raises(ConnectionError):
        connect_system_bus()


def test_connect_system_bus_authenticates_and_says_hello(tmp_path, monkeypatch):
    path = tmp_path / "bus"
    listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    listener.bind(str(path))
    listener.listen(1)
    seen = {}

    def serve():
        client, _ = listener.accept()
        peer = Peer(client)
        seen["auth"] = peer.line()
        client.sendall(b"OK 0123456789abcdef\r\n")
        seen["negotiate"] = peer.line()
        client.sendall(b"AGREE_UNIX_FD\r\n")
        seen["begin"] = peer.line()
        hello = peer.message()
        seen["hello"] = hello
        peer.send(Message(MessageType.METHOD_RETURN, reply_serial=hello.serial,
                          destination=":1.42", sender=BUS_NAME,
                          signature="s", body=[":1.42"]))
        seen["client"] = client

    server = threading.Thread(target=serve)
    server.start()
    monkeypatch.setenv("DBUS_SYSTEM_BUS_ADDRESS", f"unix:path={path}")
    try:
        conn = connect_system_bus()
        server.join(5)
        try:
            assert conn.unique_name == ":1.42"
            assert conn.unix_fds_enabled
        finally:
            conn.close()
    finally:
        listener.close()
        if "client" in seen:
            seen["client"].close()

    prefix = b"\0AUTH EXTERNAL "
    assert seen["auth"].startswith(prefix)
    assert bytes.fromhex(seen["auth"][len(prefix):].decode()) == str(os.getuid()).encode()
    assert seen["negotiate"] == b"NEGOTIATE_UNIX_FD"
    assert seen["begin"] == b"BEGIN"
    assert seen["hello"].member == "Hello"
    assert seen["hello"].destination == BUS_NAME