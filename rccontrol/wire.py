"""D-Bus wire format: signatures, value marshalling and message framing."""

from __future__ import annotations

import struct
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

NO_REPLY_EXPECTED = 0x1
NO_AUTO_START = 0x2
PROTOCOL_VERSION = 1
MAX_ARRAY_LENGTH = 1 << 26
MAX_SIGNATURE_LENGTH = 255
_MAX_DEPTH = 64

_FIXED = {
    "y": ("B", 1),
    "b": ("I", 4),
    "n": ("h", 2),
    "q": ("H", 2),
    "i": ("i", 4),
    "u": ("I", 4),
    "x": ("q", 8),
    "t": ("Q", 8),
    "d": ("d", 8),
    "h": ("I", 4),
}
_BASIC = frozenset(_FIXED) | frozenset("sog")
_ALIGNMENT = {
    **{code: size for code, (_, size) in _FIXED.items()},
    "s": 4,
    "o": 4,
    "g": 1,
    "a": 4,
    "(": 8,
    "{": 8,
    "v": 1,
}

_FIELD_NAMES = {
    1: "path",
    2: "interface",
    3: "member",
    4: "error_name",
    5: "reply_serial",
    6: "destination",
    7: "sender",
    8: "signature",
    9: "unix_fds",
}


class DBusError(Exception):
    """An error reply from a D-Bus peer."""

    def __init__(self, name: str, message: str = "") -> None:
        super().__init__(f"{name}: {message}" if message else name)
        self.name = name
        self.message = message


class MessageType(IntEnum):
    METHOD_CALL = 1
    METHOD_RETURN = 2
    ERROR = 3
    SIGNAL = 4


def _type_end(signature: str, pos: int, depth: int = 0) -> int:
    if depth > _MAX_DEPTH:
        raise ValueError(f"signature {signature!r} nests too deeply")
    if pos >= len(signature):
        raise ValueError(f"incomplete signature {signature!r}")
    code = signature[pos]
    if code in _BASIC or code == "v":
        return pos + 1
    if code == "a":
        if pos + 1 < len(signature) and signature[pos + 1] == "{":
            return _dict_entry_end(signature, pos + 1, depth + 1)
        return _type_end(signature, pos + 1, depth + 1)
    if code == "(":
        pos += 1
        if pos < len(signature) and signature[pos] == ")":
            raise ValueError(f"empty struct in signature {signature!r}")
        while pos < len(signature) and signature[pos] != ")":
            pos = _type_end(signature, pos, depth + 1)
        if pos >= len(signature):
            raise ValueError(f"unterminated struct in signature {signature!r}")
        return pos + 1
    raise ValueError(f"invalid type code {code!r} in signature {signature!r}")


def _dict_entry_end(signature: str, pos: int, depth: int) -> int:
    key = pos + 1
    if key >= len(signature) or signature[key] not in _BASIC:
        raise ValueError(f"dict key must be a basic type in {signature!r}")
    value_end = _type_end(signature, key + 1, depth + 1)
    if value_end >= len(signature) or signature[value_end] != "}":
        raise ValueError(f"malformed dict entry in signature {signature!r}")
    return value_end + 1


def split_signature(signature: str) -> list[str]:
    """Split a signature into its single complete types."""
    if len(signature) > MAX_SIGNATURE_LENGTH:
        raise ValueError("signature too long")
    parts = []
    pos = 0
    while pos < len(signature):
        end = _type_end(signature, pos)
        parts.append(signature[pos:end])
        pos = end
    return parts


@dataclass(frozen=True)
class Variant:
    """A value tagged with its own single-type signature."""

    signature: str
    value: Any

    def __post_init__(self) -> None:
        if len(split_signature(self.signature)) != 1:
            raise ValueError(f"variant needs a single complete type, got {self.signature!r}")


@dataclass
class Message:
    """A D-Bus message with its header fields and body."""

    type: MessageType
    path: str | None = None
    interface: str | None = None
    member: str | None = None
    error_name: str | None = None
    reply_serial: int | None = None
    destination: str | None = None
    sender: str | None = None
    signature: str = ""
    body: list = field(default_factory=list)
    flags: int = 0
    serial: int = 0
    unix_fds: int = 0
    fds: list = field(default_factory=list)


class _Writer:
    def __init__(self) -> None:
        self.buf = bytearray()

    def align(self, size: int) -> None:
        self.buf.extend(b"\0" * (-len(self.buf) % size))

    def _pack(self, fmt: str, size: int, value: Any) -> None:
        self.align(size)
        try:
            self.buf += struct.pack("<" + fmt, value)
        except struct.error as exc:
            raise ValueError(f"cannot encode {value!r}: {exc}") from None

    def write(self, sig: str, value: Any) -> None:
        code = sig[0]
        if code in _FIXED:
            fmt, size = _FIXED[code]
            if code == "b":
                value = 1 if value else 0
            elif code == "d":
                value = float(value)
            self._pack(fmt, size, value)
        elif code in "so":
            if not isinstance(value, str):
                raise TypeError(f"expected str for {code!r}, got {type(value).__name__}")
            data = value.encode("utf-8")
            if b"\0" in data:
                raise ValueError("strings may not contain NUL")
            self._pack("I", 4, len(data))
            self.buf += data + b"\0"
        elif code == "g":
            split_signature(value)
            data = value.encode("ascii")
            self.buf.append(len(data))
            self.buf += data + b"\0"
        elif code == "v":
            if not isinstance(value, Variant):
                raise TypeError(f"expected Variant, got {type(value).__name__}")
            self.write("g", value.signature)
            self.write(value.signature, value.value)
        elif code == "(":
            parts = split_signature(sig[1:-1])
            items = tuple(value)
            if len(items) != len(parts):
                raise ValueError(f"struct {sig} needs {len(parts)} fields, got {len(items)}")
            self.align(8)
            for part, item in zip(parts, items):
                self.write(part, item)
        else:
            self._write_array(sig[1:], value)

    def _write_array(self, elem: str, value: Any) -> None:
        self._pack("I", 4, 0)
        length_at = len(self.buf) - 4
        self.align(_ALIGNMENT[elem[0]])
        start = len(self.buf)
        if elem[0] == "{":
            key_sig, value_sig = split_signature(elem[1:-1])
            pairs = value.items() if isinstance(value, Mapping) else value
            for key, item in pairs:
                self.align(8)
                self.write(key_sig, key)
                self.write(value_sig, item)
        elif elem == "y" and isinstance(value, (bytes, bytearray, memoryview)):
            self.buf += bytes(value)
        else:
            for item in value:
                self.write(elem, item)
        length = len(self.buf) - start
        if length > MAX_ARRAY_LENGTH:
            raise ValueError("array too long")
        struct.pack_into("<I", self.buf, length_at, length)


class _Reader:
    def __init__(self, data: bytes, endian: str) -> None:
        self.data = bytes(data)
        self.endian = endian
        self.pos = 0

    def _take(self, size: int) -> bytes:
        end = self.pos + size
        if end > len(self.data):
            raise ValueError("truncated data")
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def align(self, size: int) -> None:
        if any(self._take(-self.pos % size)):
            raise ValueError("non-zero padding")

    def _nul(self) -> None:
        if self._take(1) != b"\0":
            raise ValueError("missing string terminator")

    def read(self, sig: str) -> Any:
        code = sig[0]
        if code in _FIXED:
            fmt, size = _FIXED[code]
            self.align(size)
            (value,) = struct.unpack(self.endian + fmt, self._take(size))
            if code == "b":
                if value > 1:
                    raise ValueError(f"invalid boolean value {value}")
                return bool(value)
            return value
        if code in "so":
            length = self.read("u")
            raw = self._take(length)
            self._nul()
            return raw.decode("utf-8")
        if code == "g":
            length = self._take(1)[0]
            raw = self._take(length)
            self._nul()
            return raw.decode("ascii")
        if code == "v":
            signature = self.read("g")
            if len(split_signature(signature)) != 1:
                raise ValueError(f"variant needs a single complete type, got {signature!r}")
            return Variant(signature, self.read(signature))
        if code == "(":
            self.align(8)
            return tuple(self.read(part) for part in split_signature(sig[1:-1]))
        return self._read_array(sig[1:])

    def _read_array(self, elem: str) -> Any:
        length = self.read("u")
        if length > MAX_ARRAY_LENGTH:
            raise ValueError("array too long")
        self.align(_ALIGNMENT[elem[0]])
        end = self.pos + length
        if end > len(self.data):
            raise ValueError("truncated data")
        if elem == "y":
            return self._take(length)
        result: Any
        if elem[0] == "{":
            key_sig, value_sig = split_signature(elem[1:-1])
            result = {}
            while self.pos < end:
                self.align(8)
                key = self.read(key_sig)
                result[key] = self.read(value_sig)
        else:
            result = []
            while self.pos < end:
                result.append(self.read(elem))
        if self.pos != end:
            raise ValueError("array contents overrun their length")
        return result


def marshal(signature: str, values: list) -> bytes:
    """Encode values in little-endian wire format, aligned from offset 0."""
    parts = split_signature(signature)
    values = list(values)
    if len(parts) != len(values):
        raise ValueError(f"signature {signature!r} needs {len(parts)} values, got {len(values)}")
    writer = _Writer()
    for part, value in zip(parts, values):
        writer.write(part, value)
    return bytes(writer.buf)


def _unmarshal(signature: str, data: bytes, endian: str) -> list:
    reader = _Reader(data, endian)
    values = [reader.read(part) for part in split_signature(signature)]
    if reader.pos != len(reader.data):
        raise ValueError("trailing data after values")
    return values


def unmarshal(signature: str, data: bytes) -> list:
    """Decode little-endian data that holds exactly the values of *signature*."""
    return _unmarshal(signature, data, "<")


def _check_required(message: Message) -> None:
    required = {
        MessageType.METHOD_CALL: ("path", "member"),
        MessageType.SIGNAL: ("path", "interface", "member"),
        MessageType.ERROR: ("error_name", "reply_serial"),
        MessageType.METHOD_RETURN: ("reply_serial",),
    }[MessageType(message.type)]
    fields = {
        "path": message.path,
        "interface": message.interface,
        "member": message.member,
        "error_name": message.error_name,
        "reply_serial": message.reply_serial,
    }
    missing = [name for name in required if not fields[name]]
    if missing:
        raise ValueError(f"{MessageType(message.type).name} message lacks {', '.join(missing)}")


def _header_fields(message: Message) -> list:
    candidates = [
        (1, "o", message.path),
        (2, "s", message.interface),
        (3, "s", message.member),
        (4, "s", message.error_name),
        (5, "u", message.reply_serial),
        (6, "s", message.destination),
        (7, "s", message.sender),
        (8, "g", message.signature),
        (9, "u", len(message.fds) or message.unix_fds),
    ]
    return [(code, Variant(sig, value)) for code, sig, value in candidates if value]


def encode_message(message: Message, serial: int) -> bytes:
    """Frame *message* for sending with the given serial number."""
    if not 0 < serial < 1 << 32:
        raise ValueError("serial must be a non-zero 32-bit value")
    _check_required(message)
    if message.body and not message.signature:
        raise ValueError("message body needs a signature")
    body = marshal(message.signature, message.body) if message.signature else b""
    writer = _Writer()
    writer.buf += struct.pack(
        "<cBBBII", b"l", int(message.type), message.flags, PROTOCOL_VERSION, len(body), serial
    )
    writer.write("a(yv)", _header_fields(message))
    writer.align(8)
    return bytes(writer.buf) + body


def decode_message(data: bytes) -> tuple[Message, int]:
    """Decode the message at the start of *data*.

    Returns the message and the number of bytes it took. Raises EOFError
    when *data* does not yet hold a whole message.
    """
    if len(data) < 16:
        raise EOFError("incomplete message header")
    endian = {ord("l"): "<", ord("B"): ">"}.get(data[0])
    if endian is None:
        raise ValueError(f"invalid endianness marker {data[0]!r}")
    msg_type = MessageType(data[1])
    flags = data[2]
    if data[3] != PROTOCOL_VERSION:
        raise ValueError(f"unsupported protocol version {data[3]}")
    body_length, serial, fields_length = struct.unpack_from(endian + "III", data, 4)
    if fields_length > MAX_ARRAY_LENGTH:
        raise ValueError("header fields too long")
    header_end = 16 + fields_length
    body_start = header_end + (-header_end % 8)
    total = body_start + body_length
    if len(data) < total:
        raise EOFError("incomplete message")

    reader = _Reader(data[:header_end], endian)
    reader.pos = 12
    fields = reader.read("a(yv)")
    if reader.pos != header_end:
        raise ValueError("malformed header fields")

    expected = {1: "o", 2: "s", 3: "s", 4: "s", 5: "u", 6: "s", 7: "s", 8: "g", 9: "u"}
    values: dict[str, Any] = {}
    for code, variant in fields:
        if code not in _FIELD_NAMES:
            continue
        if variant.signature != expected[code]:
            raise ValueError(f"header field {code} has type {variant.signature!r}")
        values[_FIELD_NAMES[code]] = variant.value

    message = Message(type=msg_type, flags=flags, serial=serial, **values)
    if any(data[header_end:body_start]):
        raise ValueError("non-zero padding")
    message.body = _unmarshal(message.signature, data[body_start:total], endian)
    return message, total