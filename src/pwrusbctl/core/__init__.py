"""
PwrUsbCtl Core - data models shared by the protocol layer and the CLI.
"""

from .models import (
    CommandResult,
    DeviceType,
    OutletCommands,
    PowerSample,
    PowerUsbError,
    SocketState,
)

__all__ = [
    'CommandResult',
    'DeviceType',
    'OutletCommands',
    'PowerSample',
    'PowerUsbError',
    'SocketState',
]
