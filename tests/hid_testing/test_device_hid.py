"""Mock tests for the HID transports and the process-wide runtime.

The ``hid`` and ``usb`` libraries are patched; no hardware or libusb needed.
"""

from unittest.mock import MagicMock, patch

import pytest
import usb.core

from pwrusbctl import device_hid
from pwrusbctl.core.models import SocketState
from pwrusbctl.device_hid import (
    DEFAULT_PACKET_SIZE,
    HID_REPORT_ID,
    USB_CONFIGURATION,
    USB_INTERFACE,
    DeviceNotFoundError,
    HidApiTransport,
    PyUsbTransport,
    is_runtime_shut_down,
    open_transport_count,
    shutdown_runtime,
)
from pwrusbctl.device_powerusb import PowerUsbDevice

VID, PID = 0x04d8, 0x003f


# =========================================================================
# Helpers
# =========================================================================

@pytest.fixture
def hid_module():
    """Patch the optional hidapi module with a mock that finds one device."""
    module = MagicMock()
    module.enumerate.return_value = [{'vendor_id': VID, 'product_id': PID}]
    dev = MagicMock()
    dev.write.return_value = 2
    module.device.return_value = dev
    with patch.object(device_hid, 'HIDAPI_AVAILABLE', True), \
         patch.object(device_hid, 'hidapi', module, create=True):
        yield module


def _make_usb_endpoint(address: int, packet_size: int = 64) -> MagicMock:
    ep = MagicMock()
    ep.bEndpointAddress = address
    ep.wMaxPacketSize = packet_size
    return ep


def _make_usb_device(kernel_driver_active: bool = True, packet_size: int = 64) -> MagicMock:
    dev = MagicMock()
    dev.is_kernel_driver_active.return_value = kernel_driver_active
    cfg = MagicMock()
    cfg.__getitem__.return_value = [
        _make_usb_endpoint(0x01, packet_size),
        _make_usb_endpoint(0x81, packet_size),
    ]
    dev.get_active_configuration.return_value = cfg
    return dev


@pytest.fixture
def usb_util():
    with patch('pwrusbctl.device_hid.usb.util.claim_interface') as claim, \
         patch('pwrusbctl.device_hid.usb.util.release_interface') as release, \
         patch('pwrusbctl.device_hid.usb.util.dispose_resources') as dispose:
        yield MagicMock(claim=claim, release=release, dispose=dispose)


# =========================================================================
# HidApiTransport
# =========================================================================

class TestHidApiTransport:

    def test_requires_hidapi(self):
        with patch.object(device_hid, 'HIDAPI_AVAILABLE', False):
            with pytest.raises(ImportError, match="hidapi"):
                HidApiTransport(VID, PID)

    def test_open(self, hid_module):
        t = HidApiTransport(VID, PID)
        t.open()
        dev = hid_module.device.return_value
        dev.open.assert_called_once_with(VID, PID, None)
        dev.set_nonblocking.assert_called_once_with(0)
        assert t.is_open
        assert open_transport_count() == 1

    def test_open_not_found(self, hid_module):
        hid_module.enumerate.return_value = []
        t = HidApiTransport(VID, PID)
        with pytest.raises(DeviceNotFoundError):
            t.open()
        hid_module.device.assert_not_called()
        assert not t.is_open

    def test_open_permission_error_propagates(self, hid_module):
        hid_module.device.return_value.open.side_effect = OSError("open failed")
        t = HidApiTransport(VID, PID)
        with pytest.raises(OSError):
            t.open()
        assert not t.is_open
        assert open_transport_count() == 0

    def test_write_prepends_report_id(self, hid_module):
        t = HidApiTransport(VID, PID)
        t.open()
        assert t.write(b'\x41') == 1
        hid_module.device.return_value.write.assert_called_once_with(
            bytes([HID_REPORT_ID, 0x41]))

    def test_write_padded_report(self, hid_module):
        # Report ID plus a 64-byte padded output report
        hid_module.device.return_value.write.return_value = 65
        t = HidApiTransport(VID, PID)
        t.open()
        assert t.write(b'\x41') == 1

    def test_padded_write_drives_session(self, hid_module):
        hid_module.device.return_value.write.return_value = 65
        t = HidApiTransport(VID, PID)
        t.open()
        device = PowerUsbDevice(transport=t)
        assert device.set_socket_state(0, SocketState.ON)
        assert device.reset_charge_accumulator()

    def test_write_error(self, hid_module):
        dev = hid_module.device.return_value
        dev.write.return_value = -1
        dev.error.return_value = "broken pipe"
        t = HidApiTransport(VID, PID)
        t.open()
        with pytest.raises(OSError, match="broken pipe"):
            t.write(b'\xb3')

    def test_read_truncates(self, hid_module):
        dev = hid_module.device.return_value
        dev.read.return_value = [0x01, 0x2c] + [0] * 62
        t = HidApiTransport(VID, PID)
        t.open()
        assert t.read(2, 500) == b'\x01\x2c'
        dev.read.assert_called_once_with(2, 500)

    def test_read_timeout_returns_empty(self, hid_module):
        hid_module.device.return_value.read.return_value = []
        t = HidApiTransport(VID, PID)
        t.open()
        assert t.read(1) == b''

    def test_io_when_closed(self, hid_module):
        t = HidApiTransport(VID, PID)
        with pytest.raises(RuntimeError):
            t.write(b'\x41')
        with pytest.raises(RuntimeError):
            t.read(1)

    def test_close(self, hid_module):
        t = HidApiTransport(VID, PID)
        t.open()
        t.close()
        hid_module.device.return_value.close.assert_called_once()
        assert not t.is_open
        assert open_transport_count() == 0

    def test_context_manager(self, hid_module):
        with HidApiTransport(VID, PID) as t:
            assert t.is_open
        assert not t.is_open


# =========================================================================
# PyUsbTransport
# =========================================================================

class TestPyUsbTransport:

    def test_open_not_found(self, usb_util):
        with patch('pwrusbctl.device_hid.usb.core.find', return_value=None):
            t = PyUsbTransport(VID, PID)
            with pytest.raises(DeviceNotFoundError):
                t.open()
        assert not t.is_open

    def test_open_detaches_and_claims(self, usb_util):
        dev = _make_usb_device()
        with patch('pwrusbctl.device_hid.usb.core.find', return_value=dev) as find:
            t = PyUsbTransport(VID, PID)
            t.open()
        find.assert_called_once_with(idVendor=VID, idProduct=PID)
        dev.detach_kernel_driver.assert_called_once_with(USB_INTERFACE)
        dev.set_configuration.assert_called_once_with(USB_CONFIGURATION)
        usb_util.claim.assert_called_once_with(dev, USB_INTERFACE)
        assert t.ep_out == 0x01
        assert t.ep_in == 0x81
        assert open_transport_count() == 1

    def test_open_with_serial(self, usb_util):
        dev = _make_usb_device()
        with patch('pwrusbctl.device_hid.usb.core.find', return_value=dev) as find:
            PyUsbTransport(VID, PID, serial="ABC").open()
        find.assert_called_once_with(idVendor=VID, idProduct=PID, serial_number="ABC")

    def test_write_uses_out_endpoint(self, usb_util):
        dev = _make_usb_device()
        dev.write.return_value = 1
        with patch('pwrusbctl.device_hid.usb.core.find', return_value=dev):
            t = PyUsbTransport(VID, PID)
            t.open()
        assert t.write(b'\x45', 300) == 1
        dev.write.assert_called_once_with(0x01, b'\x45', timeout=300)

    def test_read_requests_full_packet(self, usb_util):
        dev = _make_usb_device(packet_size=DEFAULT_PACKET_SIZE)
        dev.read.return_value = [0x00, 0x00, 0xea, 0x60] + [0] * 60
        with patch('pwrusbctl.device_hid.usb.core.find', return_value=dev):
            t = PyUsbTransport(VID, PID)
            t.open()
        assert t.read(4, 300) == b'\x00\x00\xea\x60'
        dev.read.assert_called_once_with(0x81, DEFAULT_PACKET_SIZE, timeout=300)

    def test_read_timeout_returns_empty(self, usb_util):
        dev = _make_usb_device()
        dev.read.side_effect = usb.core.USBTimeoutError("Operation timed out")
        with patch('pwrusbctl.device_hid.usb.core.find', return_value=dev):
            t = PyUsbTransport(VID, PID)
            t.open()
        assert t.read(1) == b''

    def test_read_error_propagates(self, usb_util):
        dev = _make_usb_device()
        dev.read.side_effect = usb.core.USBError("No such device")
        with patch('pwrusbctl.device_hid.usb.core.find', return_value=dev):
            t = PyUsbTransport(VID, PID)
            t.open()
        with pytest.raises(OSError):
            t.read(1)

    def test_close_reattaches_kernel_driver(self, usb_util):
        dev = _make_usb_device(kernel_driver_active=True)
        with patch('pwrusbctl.device_hid.usb.core.find', return_value=dev):
            t = PyUsbTransport(VID, PID)
            t.open()
        t.close()
        usb_util.release.assert_called_once_with(dev, USB_INTERFACE)
        dev.attach_kernel_driver.assert_called_once_with(USB_INTERFACE)
        usb_util.dispose.assert_called_once_with(dev)
        assert not t.is_open
        assert open_transport_count() == 0

    def test_close_without_detach(self, usb_util):
        dev = _make_usb_device(kernel_driver_active=False)
        with patch('pwrusbctl.device_hid.usb.core.find', return_value=dev):
            t = PyUsbTransport(VID, PID)
            t.open()
        t.close()
        dev.attach_kernel_driver.assert_not_called()

    def test_io_when_closed(self):
        t = PyUsbTransport(VID, PID)
        with pytest.raises(RuntimeError):
            t.write(b'\x41')
        with pytest.raises(RuntimeError):
            t.read(2)


# =========================================================================
# Runtime shutdown
# =========================================================================

class TestShutdownRuntime:

    def test_closes_leaked_transports(self, hid_module):
        t = HidApiTransport(VID, PID)
        t.open()
        shutdown_runtime()
        hid_module.device.return_value.close.assert_called_once()
        assert not t.is_open
        assert open_transport_count() == 0
        assert is_runtime_shut_down()

    def test_second_call_is_noop(self, hid_module):
        t = HidApiTransport(VID, PID)
        t.open()
        shutdown_runtime()
        shutdown_runtime()
        hid_module.device.return_value.close.assert_called_once()

    def test_closed_transports_not_closed_again(self, hid_module):
        t = HidApiTransport(VID, PID)
        t.open()
        t.close()
        shutdown_runtime()
        hid_module.device.return_value.close.assert_called_once()

    def test_nothing_open(self):
        shutdown_runtime()
        assert is_runtime_shut_down()
