"""
pwrusbctl - PowerUSB power strip control

Switches the outlets of a USB-attached PowerUSB strip and reads its
current and charge meters over HID.

Usage:
    # As a library
    from pwrusbctl import PowerUsbDevice, SocketState
    with PowerUsbDevice() as strip:
        if strip.is_initialized:
            strip.set_socket_state(0, SocketState.ON)

    # Command line
    pwrusbctl on 1
    pwrusbctl monitor
"""

from pwrusbctl.__version__ import __version__

# Core exports
from pwrusbctl.core.models import (
    CommandResult,
    DeviceType,
    PowerUsbError,
    SocketState,
)
from pwrusbctl.device_hid import shutdown_runtime
from pwrusbctl.device_powerusb import (
    SOCKET_COUNT,
    PowerUsbDevice,
    convert_charge_to_kilowatt_hours,
)

__all__ = [
    # Version
    "__version__",
    # Models
    "CommandResult",
    "DeviceType",
    "PowerUsbError",
    "SocketState",
    # Device
    "PowerUsbDevice",
    "SOCKET_COUNT",
    "convert_charge_to_kilowatt_hours",
    "shutdown_runtime",
]
