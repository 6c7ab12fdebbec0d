"""
PwrUsbCtl Models - Pure data classes shared by the protocol layer and the CLI.

No USB imports here, so the models can be used (and tested) without a
HID backend installed.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, NamedTuple, Optional, TypeVar

T = TypeVar("T")


# =============================================================================
# Device state
# =============================================================================

class SocketState(Enum):
    """Target state of a switchable outlet."""
    OFF = "off"
    ON = "on"


class DeviceType(Enum):
    """PowerUSB product variant, as reported by the 0xAA query.

    Values are the variant strings from pwrusb.com (model name omitted).
    """
    BASIC = "Basic"
    DIGITAL_IO = "Digital IO"
    WATCHDOG = "Watchdog"
    SMART = "Smart"

    @property
    def display_name(self) -> str:
        return self.value


class OutletCommands(NamedTuple):
    """On/off opcode pair for one outlet."""
    on: int
    off: int

    def for_state(self, state: SocketState) -> int:
        return self.on if state is SocketState.ON else self.off


# =============================================================================
# Results
# =============================================================================

class PowerUsbError(Enum):
    """Why a protocol operation failed."""
    NOT_INITIALIZED = "device not initialized"
    TRANSPORT_WRITE_FAILURE = "HID write failed"
    TRANSPORT_READ_FAILURE = "HID read failed"
    INVALID_OUTLET_INDEX = "invalid outlet index"
    UNRECOGNIZED_DEVICE_TYPE = "unrecognized device type"


@dataclass(frozen=True)
class CommandResult(Generic[T]):
    """Outcome of one request/response exchange.

    Truthy on success.  ``value`` carries the decoded payload for queries
    and is None for commands that only write.
    """
    value: Optional[T] = None
    error: Optional[PowerUsbError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "CommandResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: PowerUsbError) -> "CommandResult[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok


# =============================================================================
# Monitor samples
# =============================================================================

@dataclass
class PowerSample:
    """One reading taken by the monitor loop."""
    timestamp: float
    current_ma: int
    charge_ma_min: int
    energy_kwh: float
