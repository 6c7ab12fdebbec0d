#!/usr/bin/env python3
"""
HID transport layer for the PowerUSB power strip.

The strip enumerates as a generic Microchip HID device (VID 0x04d8,
PID 0x003f).  Every exchange is a single output report carrying a one-byte
command, optionally followed by a 1/2/4-byte input report.

The ``HidTransport`` ABC abstracts the raw report I/O so that:
  • Tests can inject a mock transport (no real hardware needed).
  • ``HidApiTransport`` talks through the OS HID driver via HIDAPI.
  • ``PyUsbTransport`` talks to the interrupt endpoints via pyusb (libusb).

Linux dependencies:
  • pyusb:  ``pip install pyusb``  (needs libusb1 - ``apt install libusb-1.0-0``)
  • hidapi: ``pip install hidapi`` (needs libhidapi - ``apt install libhidapi-dev``)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Set

import usb.core
import usb.util

# hidapi is optional ([hid] extra)
try:
    import hid as hidapi
    HIDAPI_AVAILABLE = True
except ImportError:
    HIDAPI_AVAILABLE = False

log = logging.getLogger(__name__)

# pyusb is a hard dep - always True, exported for device_factory.get_backend_availability()
PYUSB_AVAILABLE = True


# =========================================================================
# Constants
# =========================================================================

# Default read/write timeout (ms)
DEFAULT_TIMEOUT_MS = 1000

# HIDAPI prepends the report number; the strip uses unnumbered reports
HID_REPORT_ID = 0x00

# Full-speed HID interrupt packet size, used until the descriptor is read
DEFAULT_PACKET_SIZE = 64

# USB configuration values for the pyusb backend
USB_CONFIGURATION = 1
USB_INTERFACE = 0


class DeviceNotFoundError(RuntimeError):
    """No attached device matches the requested VID/PID."""


# =========================================================================
# Open-transport registry (process-wide)
# =========================================================================

_open_transports: Set["HidTransport"] = set()
_runtime_shut_down = False


def _register(transport: "HidTransport") -> None:
    _open_transports.add(transport)


def _unregister(transport: "HidTransport") -> None:
    _open_transports.discard(transport)


def open_transport_count() -> int:
    """Number of transports currently open in this process."""
    return len(_open_transports)


def is_runtime_shut_down() -> bool:
    return _runtime_shut_down


def shutdown_runtime() -> None:
    """Tear down the HID backends once, at program exit.

    Closes every transport that is still open and refuses further opens.
    Sessions never call this; the owning application does, after all
    sessions are closed.  A second call only logs.
    """
    global _runtime_shut_down
    if _runtime_shut_down:
        log.debug("HID runtime already shut down")
        return

    leaked = list(_open_transports)
    if leaked:
        log.warning("Closing %d transport(s) left open at shutdown", len(leaked))
    for transport in leaked:
        transport.close()
    _open_transports.clear()
    _runtime_shut_down = True
    log.debug("HID runtime shut down")


def _reset_runtime() -> None:
    """Re-arm the runtime after shutdown (tests only)."""
    global _runtime_shut_down
    _open_transports.clear()
    _runtime_shut_down = False


# =========================================================================
# Abstract HID transport
# =========================================================================

class HidTransport(ABC):
    """Abstract HID report transport - mockable for testing."""

    backend_name = "none"

    @abstractmethod
    def open(self) -> None:
        """Open the device.

        Raises:
            DeviceNotFoundError: No device matches the VID/PID.
            OSError: The device exists but could not be opened.
        """

    @abstractmethod
    def close(self) -> None:
        """Release the device handle."""

    @abstractmethod
    def write(self, data: bytes, timeout: int = DEFAULT_TIMEOUT_MS) -> int:
        """Send *data* as one output report.  Returns payload bytes sent."""

    @abstractmethod
    def read(self, length: int, timeout: int = DEFAULT_TIMEOUT_MS) -> bytes:
        """Read up to *length* bytes of the next input report.

        Returns b'' if nothing arrived before *timeout*.
        """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the device is currently open."""

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()


# =========================================================================
# Real transport: HIDAPI
# =========================================================================
# Preferred backend: goes through the kernel usbhid/hidraw driver, so no
# driver detach is needed and a udev rule is enough for non-root access.

class HidApiTransport(HidTransport):
    """HID transport using HIDAPI (hidapi library).

    Requires: ``pip install hidapi`` + ``apt install libhidapi-dev``
    """

    backend_name = "hidapi"

    def __init__(self, vid: int, pid: int, serial: Optional[str] = None):
        if not HIDAPI_AVAILABLE:
            raise ImportError(
                "hidapi is not installed. Install with: pip install hidapi\n"
                "Also need libhidapi: apt install libhidapi-dev (Debian/Ubuntu) "
                "or dnf install hidapi-devel (Fedora)"
            )
        self._vid = vid
        self._pid = pid
        self._serial = serial
        self._device = None
        self._is_open = False

    def open(self) -> None:
        """Open the first HID device matching VID/PID."""
        if not hidapi.enumerate(self._vid, self._pid):
            raise DeviceNotFoundError(
                f"HID device not found: VID={self._vid:#06x} PID={self._pid:#06x}"
            )
        device = hidapi.device()
        device.open(self._vid, self._pid, self._serial)
        device.set_nonblocking(0)  # blocking reads
        self._device = device
        self._is_open = True
        _register(self)
        log.debug("Opened %04x:%04x via hidapi", self._vid, self._pid)

    def close(self) -> None:
        """Close HID device."""
        if self._device is not None:
            try:
                self._device.close()
            except (OSError, ValueError) as e:
                log.debug("hidapi close: %s", e)
            self._device = None
        self._is_open = False
        _unregister(self)

    def write(self, data: bytes, timeout: int = DEFAULT_TIMEOUT_MS) -> int:
        """Write one output report.

        HIDAPI expects the report number as the first byte; report 0 is
        stripped by the driver so *data* reaches the device verbatim.
        *timeout* is ignored (hid_write has none).  Some platforms pad the
        report to the full output-report length and count the padding, so
        the result is capped at len(*data*).
        """
        if not self._is_open or self._device is None:
            raise RuntimeError("Transport not open")
        report = bytes([HID_REPORT_ID]) + bytes(data)
        written = self._device.write(report)
        if written < 0:
            raise OSError(f"hid_write failed: {self._device.error()}")
        return min(max(0, written - 1), len(data))

    def read(self, length: int, timeout: int = DEFAULT_TIMEOUT_MS) -> bytes:
        """Read one input report, truncated to *length* bytes."""
        if not self._is_open or self._device is None:
            raise RuntimeError("Transport not open")
        data = self._device.read(length, timeout)
        return bytes(data[:length]) if data else b''

    @property
    def is_open(self) -> bool:
        return self._is_open


# =========================================================================
# Real transport: PyUSB  (libusb backend)
# =========================================================================
# Fallback when hidapi is not installed.  The kernel HID driver owns the
# interface, so it is detached on open and re-attached on close.

class PyUsbTransport(HidTransport):
    """HID transport using pyusb interrupt transfers (libusb backend).

    1. Find device by VID/PID
    2. Detach the kernel HID driver
    3. SetConfiguration(1), ClaimInterface(0)
    4. Interrupt read/write on the auto-detected endpoints

    Requires: ``pip install pyusb`` + ``apt install libusb-1.0-0``
    """

    backend_name = "pyusb"

    def __init__(self, vid: int, pid: int, serial: Optional[str] = None):
        self._vid = vid
        self._pid = pid
        self._serial = serial
        self._device = None
        self._is_open = False
        self._detached_kernel_driver = False
        # Auto-detected endpoints (populated on open)
        self._ep_out: Optional[int] = None
        self._ep_in: Optional[int] = None
        self._in_packet_size = DEFAULT_PACKET_SIZE

    def open(self) -> None:
        """Find USB device, claim interface, and auto-detect endpoints."""
        kwargs: dict[str, Any] = {'idVendor': self._vid, 'idProduct': self._pid}
        if self._serial:
            kwargs['serial_number'] = self._serial

        self._device = usb.core.find(**kwargs)  # type: ignore[union-attr]
        if self._device is None:
            raise DeviceNotFoundError(
                f"USB device not found: VID={self._vid:#06x} PID={self._pid:#06x}"
            )

        # Detach kernel driver if active (Linux-specific)
        try:
            if self._device.is_kernel_driver_active(USB_INTERFACE):  # type: ignore[union-attr]
                self._device.detach_kernel_driver(USB_INTERFACE)  # type: ignore[union-attr]
                self._detached_kernel_driver = True
                log.debug("Detached kernel driver from interface %d", USB_INTERFACE)
        except (NotImplementedError, usb.core.USBError) as e:
            log.debug("Kernel driver detach: %s", e)

        self._device.set_configuration(USB_CONFIGURATION)  # type: ignore[union-attr]
        usb.util.claim_interface(self._device, USB_INTERFACE)  # type: ignore[union-attr]
        self._is_open = True
        _register(self)

        self._detect_endpoints()

    def close(self) -> None:
        """Release interface, give the interface back to the kernel, dispose."""
        if self._device is not None:
            try:
                usb.util.release_interface(self._device, USB_INTERFACE)  # type: ignore[union-attr]
            except usb.core.USBError as e:
                log.debug("Release interface: %s", e)
            if self._detached_kernel_driver:
                try:
                    self._device.attach_kernel_driver(USB_INTERFACE)  # type: ignore[union-attr]
                except (NotImplementedError, usb.core.USBError) as e:
                    log.debug("Kernel driver re-attach: %s", e)
                self._detached_kernel_driver = False
            usb.util.dispose_resources(self._device)  # type: ignore[union-attr]
            self._device = None
        self._is_open = False
        _unregister(self)

    def _detect_endpoints(self) -> None:
        """Find the interrupt IN/OUT endpoints of interface 0."""
        try:
            cfg = self._device.get_active_configuration()  # type: ignore[union-attr]
            intf = cfg[(USB_INTERFACE, 0)]  # type: ignore[index]
            for ep in intf:
                direction = usb.util.endpoint_direction(ep.bEndpointAddress)
                if direction == usb.util.ENDPOINT_OUT and self._ep_out is None:
                    self._ep_out = ep.bEndpointAddress
                elif direction == usb.util.ENDPOINT_IN and self._ep_in is None:
                    self._ep_in = ep.bEndpointAddress
                    self._in_packet_size = ep.wMaxPacketSize or DEFAULT_PACKET_SIZE
            log.debug(
                "Auto-detected endpoints: OUT=0x%02x IN=0x%02x",
                self._ep_out or 0, self._ep_in or 0,
            )
        except (usb.core.USBError, KeyError) as e:
            log.debug("Endpoint auto-detection failed: %s", e)

    def write(self, data: bytes, timeout: int = DEFAULT_TIMEOUT_MS) -> int:
        """Interrupt write of one output report."""
        if not self._is_open or self._device is None:
            raise RuntimeError("Transport not open")
        if self._ep_out is None:
            raise RuntimeError("No interrupt OUT endpoint")
        return self._device.write(self._ep_out, bytes(data), timeout=timeout)  # type: ignore[union-attr]

    def read(self, length: int, timeout: int = DEFAULT_TIMEOUT_MS) -> bytes:
        """Interrupt read of one input report, truncated to *length* bytes.

        A full packet is requested; asking libusb for less than the device
        sends results in an overflow error.
        """
        if not self._is_open or self._device is None:
            raise RuntimeError("Transport not open")
        if self._ep_in is None:
            raise RuntimeError("No interrupt IN endpoint")
        size = max(length, self._in_packet_size)
        try:
            data = self._device.read(self._ep_in, size, timeout=timeout)  # type: ignore[union-attr]
        except usb.core.USBTimeoutError:
            return b''
        return bytes(data[:length])

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def ep_out(self) -> Optional[int]:
        """Auto-detected OUT endpoint address, or None."""
        return self._ep_out

    @property
    def ep_in(self) -> Optional[int]:
        """Auto-detected IN endpoint address, or None."""
        return self._ep_in
