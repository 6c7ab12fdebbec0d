#!/usr/bin/env python3
"""
pwrusbctl - Command Line Interface

Entry point for the pwrusbctl package.  Outlets are numbered 1-3 on the
command line and 0-2 in the library.
"""

import argparse
import logging
import math
import os
import subprocess
import sys
import time

from .__version__ import __version__
from .conf import settings
from .core.models import PowerSample, SocketState
from .device_factory import BACKENDS, get_backend_availability
from .device_hid import shutdown_runtime
from .device_powerusb import (
    POWERUSB_PID,
    POWERUSB_VID,
    SOCKET_COUNT,
    PowerUsbDevice,
    convert_charge_to_kilowatt_hours,
)

log = logging.getLogger(__name__)

UDEV_RULES_PATH = "/etc/udev/rules.d/99-pwrusbctl.rules"


def _setup_logging(verbose=0):
    """Configure root logging from the -v count."""
    if verbose >= 2:
        logging.basicConfig(level=logging.DEBUG, format='[%(levelname)s] %(name)s: %(message)s')
        logging.getLogger('usb').setLevel(logging.INFO)
    elif verbose == 1:
        logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
    else:
        logging.basicConfig(level=logging.WARNING)


def _fail(message):
    print(f"Error: {message}", file=sys.stderr)
    return 1


def _positive_number(text):
    """argparse type: a finite float greater than zero."""
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}") from None
    if not (math.isfinite(value) and value > 0):
        raise argparse.ArgumentTypeError(f"must be a positive number, got {text}")
    return value


def _open_device():
    """Open the strip with the configured backend, or None if absent."""
    device = PowerUsbDevice(backend=settings.backend, timeout_ms=settings.read_timeout_ms)
    if not device.is_initialized:
        print("Error opening the Power USB device: not found", file=sys.stderr)
        return None
    return device


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="pwrusbctl",
        description="Control a PowerUSB power strip",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    pwrusbctl info                Show device type and outlet count
    pwrusbctl on 1                Switch outlet 1 on
    pwrusbctl off 3 --default     Outlet 3 stays off after power-up
    pwrusbctl current             Show instantaneous current
    pwrusbctl monitor -i 5        Print current/charge/energy every 5 s
    pwrusbctl config --line-voltage 230
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("info", help="Show device type and outlet count")

    outlets = range(1, SOCKET_COUNT + 1)
    for name, help_text in (("on", "Switch an outlet on"), ("off", "Switch an outlet off")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("outlet", type=int, choices=outlets, help="Outlet number (1-3)")
        p.add_argument("--default", "-d", action="store_true",
                       help="Set the power-up state instead of the current state")

    subparsers.add_parser("current", help="Show instantaneous current (mA)")

    charge_parser = subparsers.add_parser("charge", help="Show accumulated charge and energy")
    charge_parser.add_argument("--voltage", "-V", type=_positive_number,
                               help="Line voltage for the kWh estimate")

    subparsers.add_parser("reset", help="Reset the charge accumulator")

    monitor_parser = subparsers.add_parser("monitor", help="Poll current, charge and energy")
    monitor_parser.add_argument("--interval", "-i", type=_positive_number,
                                help="Seconds between samples")
    monitor_parser.add_argument("--voltage", "-V", type=_positive_number,
                                help="Line voltage for the kWh estimate")
    monitor_parser.add_argument("--count", "-n", type=int, help="Stop after N samples")
    monitor_parser.add_argument("--no-reset", action="store_true",
                                help="Keep the accumulated charge instead of resetting it")

    config_parser = subparsers.add_parser("config", help="Show or change settings")
    config_parser.add_argument("--line-voltage", type=float)
    config_parser.add_argument("--poll-interval", type=float)
    config_parser.add_argument("--backend", choices=BACKENDS)
    config_parser.add_argument("--read-timeout", type=int, metavar="MS")

    subparsers.add_parser("backends", help="Show available HID backends")

    udev_parser = subparsers.add_parser("setup-udev", help="Install udev rule for device access")
    udev_parser.add_argument("--dry-run", action="store_true", help="Print rule without installing")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    _setup_logging(args.verbose)

    try:
        if args.command == "info":
            return show_info()
        elif args.command in ("on", "off"):
            state = SocketState.ON if args.command == "on" else SocketState.OFF
            return set_outlet(args.outlet, state, default=args.default)
        elif args.command == "current":
            return show_current()
        elif args.command == "charge":
            return show_charge(voltage=args.voltage)
        elif args.command == "reset":
            return reset_charge()
        elif args.command == "monitor":
            return monitor(interval=args.interval, voltage=args.voltage,
                           count=args.count, reset=not args.no_reset)
        elif args.command == "config":
            return configure(line_voltage=args.line_voltage,
                             poll_interval=args.poll_interval,
                             backend=args.backend,
                             read_timeout=args.read_timeout)
        elif args.command == "backends":
            return show_backends()
        elif args.command == "setup-udev":
            return setup_udev(dry_run=args.dry_run)
    finally:
        shutdown_runtime()

    return 0


def show_info():
    """Print device type, outlet count and backend."""
    device = _open_device()
    if device is None:
        return 1
    with device:
        result = device.get_device_type()
        if not result:
            return _fail(f"reading device type: {result.error.value}")
        print(f"Device type: {result.value.display_name}")
        print(f"Outlets:     {device.get_socket_count()}")
        print(f"Backend:     {device.backend_name}")
    return 0


def set_outlet(outlet, state, default=False):
    """Set outlet (1-based) to *state*, now or at power-up."""
    device = _open_device()
    if device is None:
        return 1
    with device:
        index = outlet - 1
        if default:
            result = device.set_default_socket_state(index, state)
        else:
            result = device.set_socket_state(index, state)
        if not result:
            return _fail(f"setting outlet {outlet}: {result.error.value}")
    which = "Default state of outlet" if default else "Outlet"
    print(f"{which} {outlet} {state.value}")
    return 0


def show_current():
    """Print instantaneous current."""
    device = _open_device()
    if device is None:
        return 1
    with device:
        result = device.get_instantaneous_current()
        if not result:
            return _fail(f"reading current: {result.error.value}")
        print(f"Current {result.value}mA")
    return 0


def show_charge(voltage=None):
    """Print accumulated charge and the energy it represents."""
    if voltage is None:
        voltage = settings.line_voltage
    device = _open_device()
    if device is None:
        return 1
    with device:
        result = device.get_accumulated_charge()
        if not result:
            return _fail(f"reading charge: {result.error.value}")
        energy = convert_charge_to_kilowatt_hours(result.value, voltage)
        print(f"Charge {result.value}mA·min")
        print(f"Estimated energy: {energy:f}kWh (at {voltage:g}V)")
    return 0


def reset_charge():
    """Reset the charge accumulator."""
    device = _open_device()
    if device is None:
        return 1
    with device:
        result = device.reset_charge_accumulator()
        if not result:
            return _fail(f"resetting charge accumulator: {result.error.value}")
    print("Charge accumulator reset")
    return 0


def take_sample(device, voltage):
    """Read current and charge once.  Returns a PowerSample or None."""
    current = device.get_instantaneous_current()
    if not current:
        log.warning("Current read failed: %s", current.error.value)
        return None
    charge = device.get_accumulated_charge()
    if not charge:
        log.warning("Charge read failed: %s", charge.error.value)
        return None
    return PowerSample(
        timestamp=time.time(),
        current_ma=current.value,
        charge_ma_min=charge.value,
        energy_kwh=convert_charge_to_kilowatt_hours(charge.value, voltage),
    )


def monitor(interval=None, voltage=None, count=None, reset=True):
    """Print current, charge and estimated energy every *interval* seconds."""
    if interval is None:
        interval = settings.poll_interval
    if voltage is None:
        voltage = settings.line_voltage
    device = _open_device()
    if device is None:
        return 1

    with device:
        device_type = device.get_device_type()
        if device_type:
            print(f"Found device type: {device_type.value.display_name}")
        else:
            print(f"Found device type: unknown ({device_type.error.value})")

        if reset and not device.reset_charge_accumulator():
            return _fail("resetting charge accumulator")

        taken = 0
        try:
            while count is None or taken < count:
                sample = take_sample(device, voltage)
                if sample is None:
                    return _fail("lost contact with the device")
                print(f"Current {sample.current_ma}mA")
                print(f"Charge {sample.charge_ma_min}mA·min")
                print(f"Estimated energy: {sample.energy_kwh:f}kWh")
                sys.stdout.flush()
                taken += 1
                if count is None or taken < count:
                    time.sleep(interval)
        except KeyboardInterrupt:
            print()
    return 0


def configure(line_voltage=None, poll_interval=None, backend=None, read_timeout=None):
    """Persist any given settings, then print the current ones."""
    try:
        if line_voltage is not None:
            settings.set_line_voltage(line_voltage)
        if poll_interval is not None:
            settings.set_poll_interval(poll_interval)
        if backend is not None:
            settings.set_backend(backend)
        if read_timeout is not None:
            settings.set_read_timeout_ms(read_timeout)
    except ValueError as e:
        return _fail(e)
    except OSError as e:
        return _fail(f"saving config: {e}")

    for key, value in settings.as_dict().items():
        print(f"{key:16} {value}")
    return 0


def show_backends():
    """Print which HID backends are importable."""
    for name, available in get_backend_availability().items():
        print(f"{name:8} {'yes' if available else 'no'}")
    return 0


def setup_udev(dry_run=False):
    """Install a udev rule granting non-root access to the strip."""
    vid = f"{POWERUSB_VID:04x}"
    pid = f"{POWERUSB_PID:04x}"
    rules_content = (
        "# PowerUSB power strip - auto-generated by pwrusbctl setup-udev\n"
        f'SUBSYSTEM=="hidraw", ATTRS{{idVendor}}=="{vid}", '
        f'ATTRS{{idProduct}}=="{pid}", MODE="0666"\n'
        f'SUBSYSTEM=="usb", ATTRS{{idVendor}}=="{vid}", '
        f'ATTRS{{idProduct}}=="{pid}", MODE="0666"\n'
    )

    if dry_run:
        print(rules_content)
        print(f"# Would write to {UDEV_RULES_PATH}")
        return 0

    if os.geteuid() != 0:
        print("Error: root required. Run with:", file=sys.stderr)
        print("  sudo pwrusbctl setup-udev", file=sys.stderr)
        print("\nOr preview first:", file=sys.stderr)
        print("  pwrusbctl setup-udev --dry-run", file=sys.stderr)
        return 1

    try:
        with open(UDEV_RULES_PATH, "w") as f:
            f.write(rules_content)
    except OSError as e:
        return _fail(f"writing {UDEV_RULES_PATH}: {e}")
    print(f"Wrote {UDEV_RULES_PATH}")

    subprocess.run(["udevadm", "control", "--reload-rules"], check=False)
    subprocess.run(["udevadm", "trigger"], check=False)
    print("\nDone. Replug the power strip's USB cable for changes to take effect.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
