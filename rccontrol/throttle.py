"""Throttle input from a joystick device.

Reads the raw Linux joystick event stream, keeps the current throttle
position (axis 2) as a percentage and stops when button 0 is pressed.
"""

from __future__ import annotations

import struct
import sys
import threading
from dataclasses import dataclass
from typing import BinaryIO, TextIO

DEFAULT_DEVICE = "/dev/input/js0"

JS_EVENT_BUTTON = 0x01
JS_EVENT_AXIS = 0x02
JS_EVENT_INIT = 0x80

THROTTLE_AXIS = 2
QUIT_BUTTON = 0
AXIS_MAX = 32767

_EVENT = struct.Struct("<IhBB")
EVENT_SIZE = _EVENT.size


def _to_float32(value: float) -> float:
    return struct.unpack("<f", struct.pack("<f", value))[0]


def convert_to_percent(raw: int) -> int:
    """Map a raw axis value to a throttle percentage (full back is 0)."""
    if raw == AXIS_MAX:
        return 0
    return int(_to_float32((raw - AXIS_MAX) * 100.0 / (2 * -AXIS_MAX)))


@dataclass(frozen=True)
class JoystickEvent:
    """One event from the joystick device."""

    time: int
    value: int
    type: int
    number: int


def parse_event(data: bytes) -> JoystickEvent:
    """Decode one joystick event record."""
    if len(data) != EVENT_SIZE:
        raise ValueError(f"joystick event must be {EVENT_SIZE} bytes, got {len(data)}")
    return JoystickEvent(*_EVENT.unpack(data))


class ThrottleInput:
    """Shared throttle state fed by a joystick event stream."""

    def __init__(self, out: TextIO | None = None) -> None:
        self.out = out if out is not None else sys.stdout
        self._cond = threading.Condition()
        self._position = 0
        self._running = True

    @property
    def position(self) -> int:
        with self._cond:
            return self._position

    @property
    def running(self) -> bool:
        with self._cond:
            return self._running

    def handle(self, event: JoystickEvent) -> None:
        """Apply one joystick event."""
        if event.type == JS_EVENT_AXIS:
            if event.number == THROTTLE_AXIS:
                percent = convert_to_percent(event.value)
                with self._cond:
                    self._position = percent
                    self._cond.notify_all()
            else:
                print(f"Axis {event.number} = {event.value}", file=self.out)
        elif event.type == JS_EVENT_BUTTON:
            if event.number == QUIT_BUTTON:
                print("Bye Bye", end="", file=self.out)
                self.stop()
            else:
                state = "pressed" if event.value else "released"
                print(f"Button {event.number} = {state}", file=self.out)

    def run(self, stream: BinaryIO) -> None:
        """Read and apply events until stopped or the stream ends."""
        print("Reading joystick inputs (press Ctrl+C to quit):", file=self.out)
        try:
            while self.running:
                try:
                    data = stream.read(EVENT_SIZE)
                except OSError as exc:
                    print(f"Read error: {exc}", file=sys.stderr)
                    break
                if not data or len(data) != EVENT_SIZE:
                    print("Read error: short read", file=sys.stderr)
                    break
                self.handle(parse_event(data))
        finally:
            self.stop()

    def stop(self) -> None:
        """Mark the input as finished and wake any waiters."""
        with self._cond:
            self._running = False
            self._cond.notify_all()

    def wait_for_change(self, current: int, timeout: float | None) -> int:
        """Wait until the position differs from *current* or input stops."""
        with self._cond:
            self._cond.wait_for(
                lambda: self._position != current or not self._running, timeout
            )
            return self._position


def main(argv: list[str] | None = None) -> int:
    """Print the throttle position each time it changes."""
    args = list(sys.argv[1:] if argv is None else argv)
    device = args[0] if args else DEFAULT_DEVICE
    try:
        stream = open(device, "rb", buffering=0)
    except OSError as exc:
        print(f"Could not open joystick: {exc}", file=sys.stderr)
        return 1

    throttle = ThrottleInput()
    current = throttle.position
    with stream:
        reader = threading.Thread(target=throttle.run, args=(stream,), daemon=True)
        reader.start()
        try:
            while True:
                position = throttle.wait_for_change(current, 0.1)
                if position != current:
                    current = position
                    print(f"Throttle: {current}%", flush=True)
                if not throttle.running:
                    break
        except KeyboardInterrupt:
            throttle.stop()
        reader.join(1.0)
    return 0