"""Joystick throttle input and a BlueZ BLE client over D-Bus."""

__version__ = "0.1.0"
__all__ = ["app", "bluez", "bus", "throttle", "wire"]