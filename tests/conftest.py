import os
import typing
from datetime import datetime, timedelta, timezone
from pathlib import Path

import keyring
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from m8ctl.config import (
    AuthInformation,
    ConfigManager,
    M8Config,
    M8Settings,
    clear_settings_cache,
)


class InMemoryKeyring(KeyringBackend):
    """Keyring backend keeping passwords in a dict."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        try:
            del self.passwords[(service, username)]
        except KeyError:
            raise PasswordDeleteError(username)


# Register custom markers
def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (spawns processes)",
    )


@pytest.fixture(scope="function", autouse=True)
def in_memory_keyring() -> typing.Generator[InMemoryKeyring, None, None]:
    previous = keyring.get_keyring()
    backend = InMemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture(scope="function", autouse=True)
def m8_home(tmp_path, monkeypatch) -> Path:
    """Isolate ~/.m8ctl and M8CTL_* environment variables."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setattr(Path, "home", lambda: home)
    for key in list(os.environ):
        if key.startswith("M8CTL_"):
            monkeypatch.delenv(key)
    clear_settings_cache()
    yield home
    clear_settings_cache()


@pytest.fixture
def test_settings() -> M8Settings:
    """Settings binding the callback listener to an ephemeral port."""
    return M8Settings(
        callback_hostname="127.0.0.1", callback_ports=[0], api_timeout=5.0
    )


@pytest.fixture
def config_path(tmp_path) -> Path:
    return tmp_path / "m8ctl" / "config.json"


def utc_in(**kwargs) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**kwargs)


@pytest.fixture
def config_manager(config_path) -> ConfigManager:
    """A saved config pointing at a fake server, without credentials."""
    manager = ConfigManager(config_path)
    manager.init_config(M8Config(server="https://m8.example.com"))
    return manager


@pytest.fixture
def authenticated_config_manager(config_manager) -> ConfigManager:
    """A saved config holding a primary token valid for one hour."""
    config_manager.set_auth_information(
        AuthInformation(username="jane", token="primary-token", expiry=utc_in(hours=1))
    )
    config_manager.save_config()
    return config_manager
