"""Configuration and credential store for m8ctl.

This module provides:
- Environment settings (``M8CTL_*``) via pydantic-settings
- The persisted client config (server, primary credential, per-cluster
  credentials) as pydantic models
- The two expiry policies applied to credentials
- ``ConfigManager``, which loads and persists the config file together with
  the tokens held in the OS keyring

Config file resolution (highest priority first):
1. Explicit file (``m8ctl --config <path>``)
2. ``M8CTL_CONFIG`` environment variable
3. ``~/.m8ctl/config.json``

Usage:
    manager = ConfigManager()
    config = manager.load_config()
    print(config.server)
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from m8ctl.credentials import SecretStore
from m8ctl.exceptions import ConfigError, PersistError
from m8ctl.lock import CONFIG_LOCK_NAME, acquire_lock

logger = logging.getLogger(__name__)

# --- Constants ---

DEFAULT_API_TIMEOUT = 30.0
DEFAULT_CALLBACK_HOSTNAME = "localhost"
# A stale or concurrent instance may hold the first port.
DEFAULT_CALLBACK_PORTS = (8000, 18000)
CONFIG_FILE_MODE = 0o600

# Margin used before starting work with a credential: a token this close to
# its expiry is likely to expire mid-flight, so it is refreshed up front.
SOFT_EXPIRY_MARGIN = timedelta(minutes=5)
# Margin used to decide whether a cached token may be handed out verbatim.
EXACT_EXPIRY_MARGIN = timedelta(seconds=1)


# --- Path utilities ---


def get_m8ctl_dir() -> Path:
    """Get the user's m8ctl directory (~/.m8ctl)."""
    return Path.home() / ".m8ctl"


def get_default_config_path() -> Path:
    """Get the default config file path (~/.m8ctl/config.json)."""
    return get_m8ctl_dir() / "config.json"


# --- Settings ---


class M8Settings(BaseSettings):
    """Settings loaded from M8CTL_* environment variables."""

    config: Path | None = None
    api_timeout: float = DEFAULT_API_TIMEOUT
    callback_hostname: str = DEFAULT_CALLBACK_HOSTNAME
    callback_ports: list[int] = Field(
        default_factory=lambda: list(DEFAULT_CALLBACK_PORTS)
    )

    model_config = SettingsConfigDict(
        env_prefix="M8CTL_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> M8Settings:
    """Get the cached settings. Use clear_settings_cache() to reload."""
    return M8Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()


# --- Credentials ---


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthInformation(BaseModel):
    """A bearer token together with its owner and expiry.

    The token is excluded from serialization; it lives in the keyring.
    An empty token means "not authenticated" regardless of the expiry, and a
    missing expiry counts as already expired.
    """

    model_config = ConfigDict(validate_assignment=True)

    username: str = ""
    token: str = Field(default="", exclude=True, repr=False)
    expiry: datetime | None = None

    @field_validator("expiry")
    @classmethod
    def _normalize_expiry(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        # Zero timestamps written by other clients mean "no expiry known"
        if value.year <= 1:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def has_token(self) -> bool:
        return self.token != ""


def is_soft_expired(auth: AuthInformation, now: datetime | None = None) -> bool:
    """True if the token expires within SOFT_EXPIRY_MARGIN (or has no expiry)."""
    now = now or _utcnow()
    return auth.expiry is None or auth.expiry < now + SOFT_EXPIRY_MARGIN


def is_exact_expired(auth: AuthInformation, now: datetime | None = None) -> bool:
    """True if the token expires within EXACT_EXPIRY_MARGIN (or has no expiry)."""
    now = now or _utcnow()
    return auth.expiry is None or auth.expiry < now + EXACT_EXPIRY_MARGIN


def is_valid(auth: AuthInformation | None, now: datetime | None = None) -> bool:
    """Usable for new work: has a token and is not soft-expired."""
    return auth is not None and auth.has_token() and not is_soft_expired(auth, now)


def is_valid_exact(auth: AuthInformation | None, now: datetime | None = None) -> bool:
    """Usable right now: has a token and is not exact-expired."""
    return auth is not None and auth.has_token() and not is_exact_expired(auth, now)


@dataclass(frozen=True)
class ClusterCredentialKey:
    """Identifies one cached cluster credential."""

    cluster_id: str
    username: str
    role: str

    def __str__(self) -> str:
        return f"{self.cluster_id}/{self.username}/{self.role}"


class M8Config(BaseModel):
    """The persisted client configuration.

    Attributes:
        server: Address of the control plane gateway (https://host:port).
        auth_information: The operator's primary credential.
        cluster_auth_information: Cluster credentials by serialized
            ClusterCredentialKey.
    """

    model_config = ConfigDict(populate_by_name=True)

    server: str = ""
    auth_information: AuthInformation | None = Field(
        default=None, alias="authInformation"
    )
    cluster_auth_information: dict[str, AuthInformation] = Field(
        default_factory=dict, alias="clusterAuthInformation"
    )

    def validate_server(self) -> None:
        if not self.server:
            raise ConfigError("Config has no server defined")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


# --- Config manager ---


class ConfigManager:
    """Loads, holds and persists the client config.

    The in-memory config is owned by the running process. Cluster credential
    reads and writes and every save go through an internal lock, and saving
    additionally holds the ``m8ctl-config`` file lock so that concurrent
    processes never interleave writes.
    """

    def __init__(
        self,
        explicit_file: str | Path | None = None,
        *,
        secret_store: SecretStore | None = None,
    ) -> None:
        self.explicit_file = (
            Path(explicit_file).expanduser() if explicit_file else None
        )
        self.secret_store = secret_store or SecretStore()
        self._config: M8Config | None = None
        self._config_path: Path | None = None
        self._lock = threading.RLock()

    @classmethod
    def from_config(
        cls,
        config: M8Config,
        path: Path | None = None,
        *,
        secret_store: SecretStore | None = None,
    ) -> "ConfigManager":
        """Create a manager around an existing config (mainly for tests)."""
        manager = cls(path, secret_store=secret_store)
        manager._config = config
        manager._config_path = path
        return manager

    @property
    def config(self) -> M8Config:
        if self._config is None:
            raise ConfigError("No config loaded")
        return self._config

    @property
    def config_path(self) -> Path | None:
        return self._config_path

    def resolve_path(self) -> Path:
        """Config file path: explicit file > M8CTL_CONFIG > default."""
        if self.explicit_file is not None:
            return self.explicit_file
        env_path = get_settings().config
        if env_path is not None:
            return env_path.expanduser()
        return get_default_config_path()

    def load_config(self) -> M8Config:
        """Load the config file and its tokens from the keyring.

        Raises:
            ConfigError: If there is no valid config file.
        """
        path = self.resolve_path()
        with self._lock:
            if not path.exists():
                raise ConfigError(f"No valid config found at {path}")
            try:
                data = json.loads(path.read_text())
                config = M8Config.model_validate(data)
            except (OSError, ValueError, ValidationError) as e:
                raise ConfigError(f"Could not load config from {path}: {e}") from e
            config.validate_server()
            self._load_tokens(config)

            self._config = config
            self._config_path = path
            logger.info(f"Config loaded from file {path}")
            return config

    def init_config(self, config: M8Config, force: bool = False) -> None:
        """Create the config file.

        Raises:
            ConfigError: If a config already exists and force is False.
        """
        config.validate_server()
        path = self.resolve_path()
        if path.exists() and not force:
            raise ConfigError(
                f"A configuration already exists at {path}",
                hint="Use --force to overwrite it.",
            )
        with self._lock:
            self._config = config
            self._config_path = path
        self.save_config()

    def save_config(self) -> None:
        """Persist the config file and store tokens in the keyring.

        Raises:
            ConfigError: If no config has been loaded or initialized.
            PersistError: If writing the keyring or the file failed.
        """
        with self._lock:
            if self._config is None or self._config_path is None:
                raise ConfigError("No config loaded")
            with acquire_lock(CONFIG_LOCK_NAME):
                self._store_tokens(self._config)
                self._write_file(self._config, self._config_path)

    def set_auth_information(self, auth: AuthInformation) -> None:
        """Replace the primary credential."""
        with self._lock:
            self.config.auth_information = auth

    def get_cluster_auth_information(
        self, key: ClusterCredentialKey
    ) -> AuthInformation | None:
        with self._lock:
            return self.config.cluster_auth_information.get(str(key))

    def set_cluster_auth_information(
        self, key: ClusterCredentialKey, token: str, expiry: datetime | None
    ) -> AuthInformation:
        auth = AuthInformation(username=key.username, token=token, expiry=expiry)
        with self._lock:
            self.config.cluster_auth_information[str(key)] = auth
        return auth

    def clear_auth_information(self) -> bool:
        """Forget all credentials in memory and in the keyring.

        Returns:
            True if there was anything to clear.
        """
        with self._lock:
            config = self.config
            cleared = False
            if config.auth_information is not None:
                if config.auth_information.username:
                    self.secret_store.delete(config.auth_information.username)
                config.auth_information = None
                cleared = True
            for key in list(config.cluster_auth_information):
                self.secret_store.delete(key)
                del config.cluster_auth_information[key]
                cleared = True
            return cleared

    def _load_tokens(self, config: M8Config) -> None:
        if config.auth_information is not None and config.auth_information.username:
            token = self.secret_store.get(config.auth_information.username)
            if token:
                config.auth_information.token = token

        for key, auth in list(config.cluster_auth_information.items()):
            token = self.secret_store.get(key)
            if token:
                auth.token = token
            else:
                del config.cluster_auth_information[key]

    def _store_tokens(self, config: M8Config) -> None:
        auth = config.auth_information
        if auth is not None and auth.has_token():
            self.secret_store.set(auth.username, auth.token)
        for key, cluster_auth in config.cluster_auth_information.items():
            if cluster_auth.has_token():
                self.secret_store.set(key, cluster_auth.token)

    def _write_file(self, config: M8Config, path: Path) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(config.to_json())
            tmp_path.chmod(CONFIG_FILE_MODE)
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistError(f"Failed to write config to {path}: {e}") from e
        logger.info(f"Config saved to file {path}")
