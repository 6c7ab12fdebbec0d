"""Shared fixtures: isolate config files and the process-wide HID runtime."""
import pytest

from pwrusbctl import conf, device_hid


@pytest.fixture(autouse=True)
def _isolate_config(tmp_path, monkeypatch):
    """Point the config file at a temp dir and reload settings."""
    config_dir = tmp_path / 'config'
    monkeypatch.setattr(conf, 'CONFIG_DIR', str(config_dir))
    monkeypatch.setattr(conf, 'CONFIG_PATH', str(config_dir / 'config.json'))
    conf.settings.reload()
    yield
    conf.settings.reload()


@pytest.fixture(autouse=True)
def _isolate_runtime():
    """Every test starts with an armed HID runtime and no open transports."""
    device_hid._reset_runtime()
    yield
    device_hid._reset_runtime()
