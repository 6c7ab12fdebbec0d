#!/usr/bin/env python3
"""
PowerUSB command protocol.

Every operation is one HID output report holding a single opcode byte,
followed for queries by one input report:

    Get device type            [0xAA]      → 1 byte, 1-based type index
    Get instantaneous current  [0xB1]      → 2 bytes, big-endian int16 (mA)
    Get accumulated charge     [0xB2]      → 4 bytes, big-endian int32 (mA·min)
    Reset charge accumulator   [0xB3]      → —
    Set outlet i on/off        [on/off[i]] → —
    Set default outlet i       [def[i]]    → —

The ``HidTransport`` ABC from device_hid.py is used for transport.
"""

import logging
import struct
from typing import Optional, Tuple

from .core.models import (
    CommandResult,
    DeviceType,
    OutletCommands,
    PowerUsbError,
    SocketState,
)
from .device_factory import BACKEND_AUTO, open_unique_device
from .device_hid import DEFAULT_TIMEOUT_MS, HidTransport

log = logging.getLogger(__name__)

# =========================================================================
# Constants
# =========================================================================

# USB IDs (Microchip VID, PowerUSB product)
POWERUSB_VID = 0x04d8
POWERUSB_PID = 0x003f

# Every PowerUSB model has three switchable outlets (plus one unswitched)
SOCKET_COUNT = 3

CMD_GET_DEVICE_TYPE = 0xAA
CMD_GET_INSTANTANEOUS_CURRENT = 0xB1
CMD_GET_ACCUMULATED_CHARGE = 0xB2
CMD_RESET_CHARGE_ACCUMULATOR = 0xB3

# Response sizes
DEVICE_TYPE_SIZE = 1
CURRENT_SIZE = 2
CHARGE_SIZE = 4

# Outlet index → (on, off) opcode
SOCKET_COMMANDS: Tuple[OutletCommands, ...] = (
    OutletCommands(on=0x41, off=0x42),
    OutletCommands(on=0x43, off=0x44),
    OutletCommands(on=0x45, off=0x50),
)

# Outlet index → (default on, default off) opcode, applied at power-up
DEFAULT_SOCKET_COMMANDS: Tuple[OutletCommands, ...] = (
    OutletCommands(on=0x4E, off=0x46),
    OutletCommands(on=0x47, off=0x51),
    OutletCommands(on=0x4F, off=0x48),
)

# Device type byte is 1-based: 1=Basic … 4=Smart
DEVICE_TYPES: Tuple[DeviceType, ...] = (
    DeviceType.BASIC,
    DeviceType.DIGITAL_IO,
    DeviceType.WATCHDOG,
    DeviceType.SMART,
)


def is_valid_socket_index(index) -> bool:
    """True if *index* addresses one of the switchable outlets."""
    return (isinstance(index, int) and not isinstance(index, bool)
            and 0 <= index < SOCKET_COUNT)


def socket_command(index: int, state: SocketState, default: bool = False) -> Optional[int]:
    """Opcode that sets outlet *index* to *state*.

    With *default* set, the opcode changes the state the outlet takes at
    power-up instead of its current state.  Returns None for an index
    outside the outlet range.
    """
    if not is_valid_socket_index(index):
        return None
    table = DEFAULT_SOCKET_COMMANDS if default else SOCKET_COMMANDS
    return table[index].for_state(state)


def convert_charge_to_kilowatt_hours(milliamp_minutes: int, line_voltage: float) -> float:
    """Convert accumulated charge to energy at an assumed line voltage.

    The strip integrates current only; voltage is not measured, so the
    caller supplies it.

    Args:
        milliamp_minutes: Charge from get_accumulated_charge().
        line_voltage: Approximate AC line voltage.

    Returns:
        Energy in kWh.
    """
    amp_hours = milliamp_minutes / 60.0 / 1000.0
    return (amp_hours * line_voltage) / 1000.0


# =========================================================================
# Codec
# =========================================================================

class CommandCodec:
    """Builds output reports and decodes input reports."""

    @staticmethod
    def build_command(opcode: int) -> bytes:
        """One-byte output report for *opcode*."""
        return bytes([opcode & 0xFF])

    @staticmethod
    def decode_device_type(raw: int) -> Optional[DeviceType]:
        """Map the raw 1-based type byte to a DeviceType.

        Returns None for 0 (no zero-based slot exists) and for anything
        past the last known variant.
        """
        if not 1 <= raw <= len(DEVICE_TYPES):
            return None
        return DEVICE_TYPES[raw - 1]

    @staticmethod
    def decode_current(resp: bytes) -> int:
        """Big-endian signed 16-bit current in mA.

        The strip can report
        values like 0xFFFF, which decode to -1.
        """
        return struct.unpack('>h', bytes(resp[:CURRENT_SIZE]))[0]

    @staticmethod
    def decode_charge(resp: bytes) -> int:
        """Big-endian signed 32-bit accumulated charge in mA·min."""
        return struct.unpack('>i', bytes(resp[:CHARGE_SIZE]))[0]


# =========================================================================
# Device session
# =========================================================================

class PowerUsbDevice:
    """An open session with the first (or only) attached PowerUSB strip.

    Construction tries to open the strip; check ``is_initialized`` before
    use.  On an uninitialized session every operation returns
    ``PowerUsbError.NOT_INITIALIZED`` without touching USB.

    The session owns its transport.  Use it as a context manager (or call
    ``close()``) to release the handle; release happens once.

    Usage::

        with PowerUsbDevice() as strip:
            if strip.is_initialized:
                strip.set_socket_state(0, SocketState.ON)
                current = strip.get_instantaneous_current()
    """

    def __init__(
        self,
        transport: Optional[HidTransport] = None,
        backend: str = BACKEND_AUTO,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ):
        """
        Args:
            transport: Already-open transport to use instead of opening
                the strip by VID/PID.
            backend: HID backend name for device_factory when opening.
            timeout_ms: Read/write timeout passed to the transport.
        """
        self._timeout_ms = timeout_ms
        if transport is None:
            transport = open_unique_device(POWERUSB_VID, POWERUSB_PID, backend)
        self._transport: Optional[HidTransport] = transport
        if transport is None:
            log.info("No PowerUSB device found (%04x:%04x)", POWERUSB_VID, POWERUSB_PID)

    # -- Lifecycle -----------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        """True if a strip was opened and the session is not closed."""
        return self._transport is not None

    @property
    def backend_name(self) -> str:
        if self._transport is None:
            return "none"
        return self._transport.backend_name

    def close(self) -> None:
        """Release the transport.  Later calls do nothing."""
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
            log.debug("PowerUSB session closed")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -- Identity ------------------------------------------------------

    @property
    def socket_count(self) -> int:
        return SOCKET_COUNT

    def get_socket_count(self) -> int:
        """Number of switchable outlets (always 3)."""
        return SOCKET_COUNT

    def get_device_type(self) -> CommandResult[DeviceType]:
        """Query the product variant (Basic, Digital IO, Watchdog, Smart)."""
        resp = self._query(CMD_GET_DEVICE_TYPE, DEVICE_TYPE_SIZE)
        if not resp:
            return CommandResult.failure(resp.error)

        raw = resp.value[0]
        device_type = CommandCodec.decode_device_type(raw)
        if device_type is None:
            log.warning("Unrecognized device type byte 0x%02x", raw)
            return CommandResult.failure(PowerUsbError.UNRECOGNIZED_DEVICE_TYPE)
        return CommandResult.success(device_type)

    # -- Outlets -------------------------------------------------------

    def set_socket_state(self, index: int, state: SocketState) -> CommandResult[None]:
        """Switch outlet *index* (0-based) on or off now."""
        return self._set_socket(index, state, default=False)

    def set_default_socket_state(self, index: int, state: SocketState) -> CommandResult[None]:
        """Set the state outlet *index* (0-based) takes at power-up."""
        return self._set_socket(index, state, default=True)

    def _set_socket(self, index: int, state: SocketState, default: bool) -> CommandResult[None]:
        if not self.is_initialized:
            return CommandResult.failure(PowerUsbError.NOT_INITIALIZED)

        opcode = socket_command(index, state, default=default)
        if opcode is None:
            log.error("Outlet index %r out of range [0, %d)", index, SOCKET_COUNT)
            return CommandResult.failure(PowerUsbError.INVALID_OUTLET_INDEX)

        return self._command(opcode)

    # -- Metering ------------------------------------------------------

    def get_instantaneous_current(self) -> CommandResult[int]:
        """Total current through all outlets, including the unswitched one, in mA."""
        resp = self._query(CMD_GET_INSTANTANEOUS_CURRENT, CURRENT_SIZE)
        if not resp:
            return CommandResult.failure(resp.error)
        return CommandResult.success(CommandCodec.decode_current(resp.value))

    def get_accumulated_charge(self) -> CommandResult[int]:
        """Charge integrated by the strip since the last reset, in mA·min.

        Convert to energy with convert_charge_to_kilowatt_hours().
        """
        resp = self._query(CMD_GET_ACCUMULATED_CHARGE, CHARGE_SIZE)
        if not resp:
            return CommandResult.failure(resp.error)
        return CommandResult.success(CommandCodec.decode_charge(resp.value))

    def reset_charge_accumulator(self) -> CommandResult[None]:
        """Zero the strip's charge integrator."""
        return self._command(CMD_RESET_CHARGE_ACCUMULATOR)

    convert_charge_to_kilowatt_hours = staticmethod(convert_charge_to_kilowatt_hours)

    # -- Exchange helpers ----------------------------------------------

    def _command(self, opcode: int) -> CommandResult[None]:
        """Write *opcode*; no response is expected."""
        if not self.is_initialized:
            return CommandResult.failure(PowerUsbError.NOT_INITIALIZED)
        if not self._device_write(CommandCodec.build_command(opcode)):
            return CommandResult.failure(PowerUsbError.TRANSPORT_WRITE_FAILURE)
        return CommandResult.success()

    def _query(self, opcode: int, length: int) -> CommandResult[bytes]:
        """Write *opcode*, then read exactly *length* bytes."""
        written = self._command(opcode)
        if not written:
            return CommandResult.failure(written.error)
        resp = self._device_read(length)
        if resp is None:
            return CommandResult.failure(PowerUsbError.TRANSPORT_READ_FAILURE)
        return CommandResult.success(resp)

    def _device_write(self, data: bytes) -> bool:
        try:
            transferred = self._transport.write(data, self._timeout_ms)
        except (OSError, ValueError, RuntimeError) as e:
            log.warning("HID write of %s failed: %s", data.hex(), e)
            return False
        if transferred < len(data):
            log.warning("Short HID write: %d of %d bytes", transferred, len(data))
            return False
        log.debug("TX %s", data.hex())
        return True

    def _device_read(self, length: int) -> Optional[bytes]:
        try:
            data = self._transport.read(length, self._timeout_ms)
        except (OSError, ValueError, RuntimeError) as e:
            log.warning("HID read of %d bytes failed: %s", length, e)
            return None
        if len(data) < length:
            log.warning("Short HID read: %d of %d bytes", len(data), length)
            return None
        log.debug("RX %s", bytes(data[:length]).hex())
        return bytes(data[:length])

    def __repr__(self) -> str:
        return (
            f"PowerUsbDevice(vid=0x{POWERUSB_VID:04x}, pid=0x{POWERUSB_PID:04x}, "
            f"backend={self.backend_name})"
        )
