[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rccontrol"
version = "0.1.0"
description = "Joystick throttle reader and BlueZ BLE client for a remote-controlled device"
requires-python = ">=3.10"
dependencies = []
keywords = ["bluetooth", "ble", "bluez", "dbus", "joystick", "throttle", "remote control"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
rc-throttle = "rccontrol.throttle:main"
rc-control = "rccontrol.app:main"

[tool.hatch.build.targets.wheel]
packages = ["rccontrol"]

[tool.pytest.ini_options]
addopts = "-ra"
