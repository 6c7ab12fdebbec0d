"""pwrusbctl version information."""

__version__ = "1.1.0"
__version_info__ = tuple(int(x) for x in __version__.split("."))

# Version history:
# 1.0.0 - Initial release: outlet on/off, boot defaults, current and charge
#         readout, charge reset, monitor loop
# 1.1.0 - hidapi backend (preferred over pyusb when installed), config file
#         for line voltage / poll interval / backend, setup-udev command
