"""Run gateway operations with a valid login, retrying once on rejection.

Every command talking to the gateway wraps its operation in
``retry_on_auth_fail``:

1. Under the machine-wide auth flow lock, load the config and log in if the
   primary credential is missing or soft-expired.
2. Run the operation.
3. If the gateway rejects it as unauthenticated, log in again (forced) and
   run it exactly once more. Whatever the second attempt does is final.

The lock covers loading the config and the login, not the operation itself,
so concurrent commands only serialize when one of them has to log in.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from m8ctl.auth._deadline import AUTH_FLOW_TIMEOUT_SECONDS, Deadline
from m8ctl.auth._flow import AuthenticationFlow
from m8ctl.config import ConfigManager, is_valid
from m8ctl.console import Progress
from m8ctl.exceptions import UnauthenticatedError
from m8ctl.lock import AUTH_FLOW_LOCK_NAME, LockConfig, ProcessLock, acquire_lock

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONTENDED_LOCK_NOTICE = (
    "Another m8ctl instance is already running the authentication flow..."
)


def retry_on_auth_fail(
    config_manager: ConfigManager,
    operation: Callable[[Deadline], T],
    *,
    silent: bool = False,
    force: bool = False,
    flow: AuthenticationFlow | None = None,
    lock_config: LockConfig | None = None,
) -> T:
    """Run ``operation`` authenticated, retrying once after re-authenticating.

    Args:
        config_manager: Config to load and to store credentials in.
        operation: Called with the deadline shared by the whole invocation.
            Must raise ``UnauthenticatedError`` when the gateway rejects its
            credential.
        silent: Suppress all progress output (stdout stays clean).
        force: Log in even if the stored credential is still valid.
        flow: Authentication flow to use (default: browser login).
        lock_config: Retry behaviour while another process holds the lock.

    Returns:
        Whatever the (first successful) operation call returned.

    Raises:
        UnauthenticatedError: If the retried operation was rejected again.
            The exception is the one raised by the second attempt.
    """
    progress = Progress(silent=silent)
    flow = flow or AuthenticationFlow(config_manager, progress=progress)

    with _acquire_auth_lock(progress, lock_config):
        # Waiting for another instance's login does not count against ours
        deadline = Deadline.after(AUTH_FLOW_TIMEOUT_SECONDS)
        _load_config_and_auth(config_manager, flow, deadline, force=force)

    try:
        return operation(deadline)
    except UnauthenticatedError as e:
        logger.info(f"Operation was rejected, re-authenticating: {e}")

    with _acquire_auth_lock(progress, lock_config):
        _load_config_and_auth(config_manager, flow, deadline, force=True)
    return operation(deadline)


def retry_on_auth_fail_silently(
    config_manager: ConfigManager,
    operation: Callable[[Deadline], T],
    **kwargs,
) -> T:
    """``retry_on_auth_fail`` without any progress output."""
    return retry_on_auth_fail(config_manager, operation, silent=True, **kwargs)


def _load_config_and_auth(
    config_manager: ConfigManager,
    flow: AuthenticationFlow,
    deadline: Deadline,
    *,
    force: bool,
) -> None:
    config = config_manager.load_config()
    if force or not is_valid(config.auth_information):
        flow.run(deadline, force=force)


def _acquire_auth_lock(progress: Progress, lock_config: LockConfig | None) -> ProcessLock:
    def notify_contended() -> None:
        progress.print(CONTENDED_LOCK_NOTICE)
        progress.start("Waiting for the other login to finish...")

    try:
        return acquire_lock(
            AUTH_FLOW_LOCK_NAME,
            config=lock_config,
            on_contended=notify_contended,
        )
    finally:
        progress.stop()
