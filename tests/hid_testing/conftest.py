"""Mock transport for all tests in this directory."""
from unittest.mock import MagicMock

import pytest

from pwrusbctl.device_hid import HidTransport


@pytest.fixture
def transport() -> MagicMock:
    """A MagicMock that satisfies the HidTransport interface.

    Writes report one byte transferred, matching the one-byte commands.
    """
    t = MagicMock(spec=HidTransport)
    t.is_open = True
    t.backend_name = "mock"
    t.write.return_value = 1
    return t
