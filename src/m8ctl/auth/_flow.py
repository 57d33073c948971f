"""Interactive browser login against the control plane gateway.

The flow:
1. Bind a local callback listener (first free candidate port)
2. Ask the gateway for the upstream identity provider URL and a state
3. Concurrently open the browser and wait for the redirect on the listener
4. Exchange the authorization code for an access token
5. Store the new primary credential and persist the config
"""

from __future__ import annotations

import logging
import threading
import webbrowser
from concurrent.futures import FIRST_COMPLETED, CancelledError, Future, wait
from typing import Any, Callable

from m8ctl import __version__
from m8ctl.auth._callback_server import CallbackServer, render_success_page
from m8ctl.auth._deadline import AUTH_FLOW_TIMEOUT_SECONDS, Deadline
from m8ctl.config import (
    AuthInformation,
    ConfigManager,
    M8Config,
    M8Settings,
    get_settings,
    is_valid,
)
from m8ctl.console import Progress
from m8ctl.exceptions import InteractiveTimeoutError, M8Error, PersistError
from m8ctl.gateway import GatewayClient, UpstreamAuthentication

logger = logging.getLogger(__name__)

BROWSER_OPENED_BANNER = """\
+-------------------------------------------------------------+
| m8ctl has opened your browser to authenticate.              |
| It shows the login screen of your identity provider, or the |
| consent page if you are already logged in there.            |
+-------------------------------------------------------------+"""

GatewayFactory = Callable[[M8Config, float], GatewayClient]


def _anonymous_gateway(config: M8Config, timeout: float) -> GatewayClient:
    return GatewayClient.from_config(config, authenticated=False, timeout=timeout)


def _start_daemon_task(
    name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any
) -> Future:
    """Run fn on a daemon thread, exposing its outcome as a Future."""
    future: Future = Future()
    future.set_running_or_notify_cancel()

    def target() -> None:
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(target=target, name=name, daemon=True).start()
    return future


class AuthenticationFlow:
    """Establishes the operator's identity and stores the primary credential.

    Args:
        config_manager: Holds the loaded config the credential is written to.
        progress: Output for the operator (silent progress prints nothing).
        settings: Callback listener and timeout settings.
        gateway_factory: Creates the unauthenticated gateway client.
        open_browser: Opens a URL, returning False if no browser was opened.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        *,
        progress: Progress | None = None,
        settings: M8Settings | None = None,
        gateway_factory: GatewayFactory = _anonymous_gateway,
        open_browser: Callable[[str], bool] = webbrowser.open,
    ) -> None:
        self.config_manager = config_manager
        self.progress = progress or Progress()
        self.settings = settings or get_settings()
        self._gateway_factory = gateway_factory
        self._open_browser = open_browser

    def run(self, deadline: Deadline | None = None, *, force: bool = False) -> AuthInformation:
        """Return a valid primary credential, logging in if needed.

        Without ``force``, an existing credential that is not soft-expired is
        returned as is, without any network activity.
        """
        existing = self.config_manager.config.auth_information
        if not force and existing is not None:
            logger.info("Checking expiration of existing token")
            if is_valid(existing):
                logger.info(f"You have a valid auth token (expiry {existing.expiry})")
                return existing
            logger.info(f"Your auth token has expired (expiry {existing.expiry})")

        return self._run_authentication_flow(
            deadline or Deadline.after(AUTH_FLOW_TIMEOUT_SECONDS)
        )

    def _run_authentication_flow(self, deadline: Deadline) -> AuthInformation:
        logger.info("Starting authentication")
        config = self.config_manager.config
        api_timeout = self.settings.api_timeout

        self.progress.start("Connecting to the control plane...")
        try:
            with self._gateway_factory(config, api_timeout) as gateway, CallbackServer(
                hostname=self.settings.callback_hostname,
                ports=self.settings.callback_ports,
                success_html=render_success_page(config.server, __version__),
            ) as callback_server:
                upstream = gateway.request_upstream_authentication(
                    callback_server.redirect_uri,
                    timeout=self._call_timeout(deadline),
                )
                code = self._receive_code(callback_server, upstream, deadline)

                self.progress.start("Exchanging authorization code...")
                result = gateway.request_authentication(
                    code, upstream.state, timeout=self._call_timeout(deadline)
                )
        finally:
            self.progress.stop()

        auth = AuthInformation(
            username=result.username,
            token=result.access_token,
            expiry=result.expiry,
        )
        self.config_manager.set_auth_information(auth)
        self.progress.print(f"You're successfully authenticated as '{auth.username}'.")

        try:
            self.config_manager.save_config()
        except PersistError as e:
            logger.warning(f"{e}. {e.hint}")
        return auth

    def _call_timeout(self, deadline: Deadline) -> float:
        """Timeout for one gateway call: the per-call timeout, capped by the deadline."""
        if deadline.expired:
            raise InteractiveTimeoutError("Timed out before the login could complete")
        return deadline.timeout(self.settings.api_timeout)

    def _receive_code(
        self,
        callback_server: CallbackServer,
        upstream: UpstreamAuthentication,
        deadline: Deadline,
    ) -> str:
        """Open the browser and wait for the redirect, both bounded by the deadline.

        Whichever task fails first, or the deadline, stops the other one. The
        tasks run on daemon threads and are never joined: a browser opener
        that blocks must not keep the flow from failing on time.
        """
        ready = threading.Event()
        cancelled = threading.Event()
        opener = _start_daemon_task(
            "m8ctl-auth-browser",
            self._open_browser_when_ready,
            upstream.upstream_idp_redirect,
            ready,
            cancelled,
        )
        listener = _start_daemon_task(
            "m8ctl-auth-listener",
            callback_server.receive_code,
            upstream.state,
            ready=ready,
            cancelled=cancelled,
        )
        try:
            pending = {listener, opener}
            while listener in pending:
                done, pending = wait(
                    pending, timeout=deadline.remaining(), return_when=FIRST_COMPLETED
                )
                if not done:
                    raise InteractiveTimeoutError(
                        "Timed out waiting for you to log in with your browser"
                    )
                for future in done:
                    error = future.exception()
                    if error is not None:
                        logger.error(f"Authorization error: {error}")
                        raise error
            return listener.result()
        finally:
            cancelled.set()

    def _open_browser_when_ready(
        self, url: str, ready: threading.Event, cancelled: threading.Event
    ) -> None:
        while not ready.wait(0.1):
            if cancelled.is_set():
                raise CancelledError("Stopped before the callback server was ready")

        logger.info(f"Open {url}")
        try:
            opened = self._open_browser(url)
        except webbrowser.Error as e:
            raise M8Error(
                f"Could not open the browser: {e}",
                hint=f"Open this URL manually: {url}",
            ) from e

        if cancelled.is_set():
            return
        self.progress.stop()
        if opened:
            self.progress.print(BROWSER_OPENED_BANNER)
        self.progress.print(f"If the browser doesn't open, visit: {url}")
        self.progress.print("Waiting for you to log in and give consent...")
        self.progress.start("Waiting for authentication...")
