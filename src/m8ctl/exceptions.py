"""m8ctl exceptions.

This module provides exception classes for configuration, gateway and
authentication errors, with clear error messages and remediation hints that
can be propagated to CLI output.
"""


class M8Error(Exception):
    """Base exception for all m8ctl errors.

    Attributes:
        hint: Optional remediation hint shown to the operator.
    """

    hint: str | None = None

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint


class ConfigError(M8Error):
    """No usable stored configuration."""

    hint = "Run 'm8ctl config init --server-url <url>' to create a configuration."


class NetworkError(M8Error):
    """The gateway is unreachable or the local callback listener could not bind."""

    hint = "Check your network connection and the configured server URL."


class ProtocolError(M8Error):
    """The authentication protocol was violated (e.g. state mismatch)."""

    hint = "Retry the login. If this keeps happening, close other login attempts."


class DeadlineExceededError(M8Error):
    """The deadline of the running command elapsed before a gateway call."""

    hint = "The control plane may be slow or unreachable. Run the command again."


class InteractiveTimeoutError(DeadlineExceededError):
    """The operator did not finish the browser login in time."""

    hint = "Run the command again and complete the login in your browser."


class APIError(M8Error):
    """Error communicating with the gateway.

    Attributes:
        status_code: HTTP status code (if available)
        detail: Error detail message from the gateway
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        detail: str | None = None,
    ):
        self.status_code = status_code
        self.detail = detail
        parts = [message]
        if status_code:
            parts.append(f"(HTTP {status_code})")
        if detail:
            parts.append(f": {detail}")
        super().__init__(" ".join(parts))


class UnauthenticatedError(APIError):
    """The gateway rejected the credential (HTTP 401).

    Raised by any wrapped operation whose token became stale. The retry
    wrapper recovers from it exactly once by forcing a new login.
    """

    hint = "Run 'm8ctl auth login --force' to re-authenticate."

    def __init__(
        self,
        message: str = "Not authenticated",
        detail: str | None = None,
    ):
        super().__init__(message, status_code=401, detail=detail)


class ExhaustedRetryError(M8Error):
    """The operation still failed authentication after re-authenticating."""

    hint = (
        "Your account may lack access to this resource. "
        "Run 'm8ctl auth login --force' or contact your administrator."
    )


class PersistError(M8Error):
    """Writing the config file or the keyring failed."""

    hint = (
        "Credentials remain usable for this invocation but will not survive "
        "a restart. Check permissions of the config file and your keyring."
    )
