"""Bearer token storage in the OS keyring.

Tokens never reach the plaintext config file. The primary token is stored
under the username, cluster tokens under the serialized cluster credential
key ``<cluster>/<user>/<role>``.
"""

import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from m8ctl.exceptions import PersistError

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "m8ctl"


class SecretStore:
    """Thin wrapper around ``keyring`` scoped to one service name."""

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self.service = service

    def get(self, account: str) -> str | None:
        """Get the token stored for an account, None if absent or unavailable."""
        try:
            return keyring.get_password(self.service, account)
        except KeyringError as e:
            logger.debug(f"Could not read token for {account} from keyring: {e}")
            return None

    def set(self, account: str, token: str) -> None:
        """Store a token.

        Raises:
            PersistError: If the keyring rejected the write.
        """
        try:
            keyring.set_password(self.service, account, token)
        except KeyringError as e:
            raise PersistError(f"Failed to store token in keyring: {e}") from e

    def delete(self, account: str) -> bool:
        """Delete a token. Returns False if there was none."""
        try:
            keyring.delete_password(self.service, account)
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            logger.warning(f"Could not delete token for {account} from keyring: {e}")
            return False
        return True
