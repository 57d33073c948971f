"""Authentication: browser login, the auth flow lock and the retry wrapper."""

from m8ctl.auth._callback_server import CallbackServer, render_success_page
from m8ctl.auth._deadline import AUTH_FLOW_TIMEOUT_SECONDS, Deadline
from m8ctl.auth._flow import AuthenticationFlow
from m8ctl.auth._retry import (
    CONTENDED_LOCK_NOTICE,
    retry_on_auth_fail,
    retry_on_auth_fail_silently,
)

__all__ = [
    "AUTH_FLOW_TIMEOUT_SECONDS",
    "AuthenticationFlow",
    "CONTENDED_LOCK_NOTICE",
    "CallbackServer",
    "Deadline",
    "render_success_page",
    "retry_on_auth_fail",
    "retry_on_auth_fail_silently",
]
