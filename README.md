# rccontrol

Tools for controlling a remote-controlled device from a Linux machine. The package has two
independent parts:

- **Throttle input** (`rccontrol.throttle`) reads raw events from a Linux joystick device.
  Axis 2 is turned into a throttle percentage. Button 0 stops reading.
- **BLE client** (`rccontrol.app`, `rccontrol.bluez`, `rccontrol.bus`, `rccontrol.wire`) talks
  to the BlueZ daemon over the D-Bus system bus. It powers the adapter on and scans for the
  target device by its service UUID. It then connects to the device and acquires notifications
  from a GATT characteristic. It answers those notifications by writing to a second
  characteristic.

Only the Python standard library is used.

## Installation

```
pip install .
```

To install the test requirements and run the tests:

```
pip install ".[test]"
pytest
```

## Commands

### `rc-throttle`

```
rc-throttle [DEVICE]
```

This command reads joystick events from `DEVICE`, which defaults to `/dev/input/js0`. Each time
the throttle position changes, it prints the new value:

```
Reading joystick inputs (press Ctrl+C to quit):
Throttle: 42%
```

Movements on other axes are printed as `Axis N = VALUE`. Presses of buttons other than 0 are
printed as `Button N = pressed` or `Button N = released`. Pressing button 0 prints `Bye Bye`
and stops the command. Ctrl+C also stops it.

If the device cannot be opened, the command reports the error and exits with status 1.

### `rc-control`

```
rc-control
```

This command connects to the system bus. It uses the address in `DBUS_SYSTEM_BUS_ADDRESS`, or
`/var/run/dbus/system_bus_socket` if that variable is not set. It then steps through these
states:

1. power the adapter on;
2. start discovery, filtered to the device UUID;
3. stop discovery once the device is seen;
4. connect to the device;
5. acquire notifications once its services are resolved.

Progress is logged to standard error. If the device disconnects, the sequence starts again from
the scan step.

Every notification with value `0` is answered by writing a four-byte colour value to the write
characteristic: red, then green, then blue. After six notifications the command exits.

## Library use

```python
from rccontrol.throttle import ThrottleInput, convert_to_percent, parse_event

convert_to_percent(32767)    # 0
convert_to_percent(-32767)   # 100

throttle = ThrottleInput()
with open("/dev/input/js0", "rb", buffering=0) as stream:
    throttle.run(stream)     # returns when button 0 is pressed or the stream ends
print(throttle.position)
```

`ThrottleInput.wait_for_change(current, timeout)` blocks until the position differs from
`current` or the input stops. It then returns the position.

### D-Bus

`rccontrol.wire` handles the D-Bus wire format:

- `split_signature`, `marshal` and `unmarshal` work on signatures and values.
- `Variant` holds a value together with its signature.
- `Message`, `MessageType`, `encode_message` and `decode_message` frame whole messages.
- `DBusError` is raised for error replies.

`rccontrol.bus.connect_system_bus()` returns an authenticated `Connection`. A `Connection`
offers:

- `call` and `send` for method calls;
- `add_signal_watch`, `add_properties_watch`, `add_service_watch` and `remove_watch` for watches;
- a blocking main loop through `run` and `quit`.

Only Unix-socket bus addresses are supported.

### BlueZ

`rccontrol.bluez.BluezClient` keeps one `Proxy` each for the adapter, the device and the read
and write characteristics. It offers `power_on`, `scan`, `connect`, `acquire_notify`,
`write_attribute`, `set_property` and `read_property_boolean`. Property changes are reported to
the function given to `set_property_change_fn`.

`rccontrol.app.BleStateMachine` drives a `BluezClient` through the connection sequence described
above.

## Limitations

- The throttle reader and the BLE client do not share anything. The throttle position is not
  sent to the device.
- The BLE client handles only one device and two characteristics, identified by fixed UUIDs.