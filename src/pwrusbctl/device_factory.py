"""
Transport factory - picks a HID backend and opens the strip.

Backends:
    hidapi  HidApiTransport (OS HID driver, optional [hid] extra)
    pyusb   PyUsbTransport  (libusb, always installed)

``auto`` prefers hidapi because it leaves the kernel driver attached.
"""

import logging
from typing import Dict, Optional

from . import device_hid
from .device_hid import (
    DeviceNotFoundError,
    HidApiTransport,
    HidTransport,
    PyUsbTransport,
)

log = logging.getLogger(__name__)

BACKEND_AUTO = "auto"
BACKEND_HIDAPI = "hidapi"
BACKEND_PYUSB = "pyusb"

BACKENDS = (BACKEND_AUTO, BACKEND_HIDAPI, BACKEND_PYUSB)


def get_backend_availability() -> Dict[str, bool]:
    """Check which HID backends are importable.

    Returns dict with keys: hidapi, pyusb - each True/False.
    """
    return {
        BACKEND_HIDAPI: device_hid.HIDAPI_AVAILABLE,
        BACKEND_PYUSB: device_hid.PYUSB_AVAILABLE,
    }


def resolve_backend(backend: str = BACKEND_AUTO) -> str:
    """Map a configured backend name to a concrete, available one.

    Raises:
        ValueError: Unknown backend name.
        ImportError: The requested backend is not installed.
    """
    if backend not in BACKENDS:
        raise ValueError(
            f"Unknown HID backend {backend!r} (expected one of {', '.join(BACKENDS)})"
        )
    available = get_backend_availability()
    if backend == BACKEND_AUTO:
        if available[BACKEND_HIDAPI]:
            return BACKEND_HIDAPI
        if available[BACKEND_PYUSB]:
            return BACKEND_PYUSB
        raise ImportError(
            "No HID backend available. Install hidapi or pyusb:\n"
            "  pip install hidapi  (+ apt install libhidapi-dev)\n"
            "  pip install pyusb   (+ apt install libusb-1.0-0)"
        )
    if not available[backend]:
        raise ImportError(f"HID backend {backend!r} is not installed")
    return backend


def create_transport(vid: int, pid: int, backend: str = BACKEND_AUTO) -> HidTransport:
    """Create (but do not open) a transport for *vid*/*pid*."""
    name = resolve_backend(backend)
    if name == BACKEND_HIDAPI:
        return HidApiTransport(vid, pid)
    return PyUsbTransport(vid, pid)


def open_unique_device(
    vid: int, pid: int, backend: str = BACKEND_AUTO,
) -> Optional[HidTransport]:
    """Open the first (or only) device matching *vid*/*pid*.

    Returns the open transport, or None if no device could be opened.
    A missing device is a normal outcome and is never raised.
    """
    if device_hid.is_runtime_shut_down():
        log.warning("HID runtime already shut down; not opening %04x:%04x", vid, pid)
        return None

    try:
        transport = create_transport(vid, pid, backend)
    except (ImportError, ValueError) as e:
        log.warning("Cannot create HID transport: %s", e)
        return None

    try:
        transport.open()
    except DeviceNotFoundError as e:
        log.info("%s", e)
        return None
    except (OSError, RuntimeError) as e:
        # usb.core.USBError is an OSError (permissions, busy interface)
        log.warning("Failed to open %04x:%04x via %s: %s",
                    vid, pid, transport.backend_name, e)
        transport.close()
        return None

    log.debug("Opened %04x:%04x via %s", vid, pid, transport.backend_name)
    return transport
