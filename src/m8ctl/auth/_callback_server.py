"""Local HTTP listener receiving the identity provider redirect."""

from __future__ import annotations

import html
import http.server
import logging
import threading
import urllib.parse
from concurrent.futures import CancelledError
from dataclasses import dataclass
from typing import Iterable

from m8ctl.config import DEFAULT_CALLBACK_HOSTNAME, DEFAULT_CALLBACK_PORTS
from m8ctl.exceptions import NetworkError, ProtocolError

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"

SUCCESS_PAGE_TEMPLATE = """
<html>
<head><title>m8ctl - Login Successful</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 50px;">
    <h1>Login Successful!</h1>
    <p>You are authenticated against {server}.</p>
    <p>You can close this window and return to the terminal.</p>
    <p style="color: grey;">m8ctl {version}</p>
</body>
</html>
"""

ERROR_PAGE_TEMPLATE = """
<html>
<head><title>m8ctl - Login Failed</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 50px;">
    <h1>Login Failed</h1>
    <p>{message}</p>
</body>
</html>
"""


def render_success_page(server: str, version: str) -> str:
    """Render the page shown in the browser after a successful redirect."""
    return SUCCESS_PAGE_TEMPLATE.format(
        server=html.escape(server), version=html.escape(version)
    )


@dataclass
class CallbackResult:
    """Result from the redirect callback."""

    code: str | None = None
    error: ProtocolError | None = None


class _CallbackHTTPServer(http.server.ThreadingHTTPServer):
    """Serves each connection in its own daemon thread.

    Browsers open speculative connections that never send a request; those
    must not keep the real callback from being served.
    """

    block_on_close = False
    expected_state: str | None = None
    success_html: str = ""
    result: CallbackResult | None = None

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._result_lock = threading.Lock()

    def record(self, result: CallbackResult) -> bool:
        """Store the first callback result. Returns False for later ones."""
        with self._result_lock:
            if self.result is not None:
                return False
            self.result = result
            return True


class OAuthCallbackHandler(http.server.BaseHTTPRequestHandler):
    """HTTP handler for the redirect callback."""

    server: _CallbackHTTPServer
    # Seconds an accepted connection may stay silent before it is dropped
    timeout = 5

    def do_GET(self):
        parsed = urllib.parse.urlparse(self.path)
        if parsed.path != CALLBACK_PATH:
            self.send_error(404)
            return

        params = urllib.parse.parse_qs(parsed.query)
        state = params.get("state", [None])[0]
        code = params.get("code", [None])[0]

        if "error" in params:
            error = params["error"][0]
            error_desc = params.get("error_description", [""])[0]
            self._fail(f"Identity provider returned an error: {error} {error_desc}".strip())
        elif state != self.server.expected_state:
            self._fail("State mismatch in authentication callback (possible CSRF)")
        elif not code:
            self._fail("No authorization code in authentication callback")
        else:
            self._finish(CallbackResult(code=code), 200, self.server.success_html)

    def _fail(self, message: str) -> None:
        self._finish(
            CallbackResult(error=ProtocolError(message)),
            400,
            ERROR_PAGE_TEMPLATE.format(message=html.escape(message)),
        )

    def _finish(self, result: CallbackResult, status: int, page: str) -> None:
        if not self.server.record(result):
            self.send_error(409, "Authentication callback already received")
            return
        self._send_page(status, page)

    def _send_page(self, status: int, page: str) -> None:
        self.send_response(status)
        self.send_header("Content-type", "text/html")
        self.end_headers()
        self.wfile.write(page.encode())

    def log_message(self, format, *args):
        logger.debug("callback server: " + format, *args)


class CallbackServer:
    """Listener bound to the first free port of an ordered candidate list.

    Accepts exactly one callback request on ``CALLBACK_PATH``; requests to
    other paths are answered with 404 and do not count.
    """

    def __init__(
        self,
        *,
        hostname: str = DEFAULT_CALLBACK_HOSTNAME,
        ports: Iterable[int] = DEFAULT_CALLBACK_PORTS,
        success_html: str = "",
        poll_interval: float = 0.1,
    ) -> None:
        self._server = self._bind(hostname, list(ports))
        self._server.success_html = success_html
        self._server.timeout = poll_interval
        port = self._server.server_address[1]
        self.redirect_uri = f"http://{hostname}:{port}{CALLBACK_PATH}"

    @staticmethod
    def _bind(hostname: str, ports: list[int]) -> _CallbackHTTPServer:
        errors = []
        for port in ports:
            try:
                server = _CallbackHTTPServer((hostname, port), OAuthCallbackHandler)
            except OSError as e:
                logger.debug(f"Could not bind callback server to {hostname}:{port}: {e}")
                errors.append(f"{port}: {e.strerror or e}")
                continue
            logger.debug(f"Callback server listening on {hostname}:{server.server_address[1]}")
            return server
        raise NetworkError(
            f"Could not start local callback server on {hostname} "
            f"(tried ports {', '.join(errors) or 'none'})",
            hint="Stop other m8ctl logins or programs using these ports and retry.",
        )

    def receive_code(
        self,
        expected_state: str,
        *,
        ready: threading.Event | None = None,
        cancelled: threading.Event | None = None,
    ) -> str:
        """Serve until one callback arrives and return its authorization code.

        Raises:
            ProtocolError: If the callback was an error or did not match.
            CancelledError: If ``cancelled`` was set before a callback arrived.
        """
        self._server.expected_state = expected_state
        if ready is not None:
            ready.set()

        while self._server.result is None:
            if cancelled is not None and cancelled.is_set():
                raise CancelledError("Stopped waiting for the authentication callback")
            self._server.handle_request()

        result = self._server.result
        if result.error is not None:
            raise result.error
        assert result.code is not None
        return result.code

    def close(self) -> None:
        self._server.server_close()

    def __enter__(self) -> "CallbackServer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
