"""Tests for the local redirect listener."""

import socket
import threading
from concurrent.futures import CancelledError

import httpx
import pytest

from m8ctl.auth import CallbackServer, render_success_page
from m8ctl.exceptions import NetworkError, ProtocolError

HOST = "127.0.0.1"


def get(url: str) -> httpx.Response:
    return httpx.get(url, trust_env=False, timeout=5)


def serve_in_background(server: CallbackServer, expected_state: str):
    """Run receive_code in a thread once the server is listening."""
    outcome = {}
    ready = threading.Event()

    def target():
        try:
            outcome["code"] = server.receive_code(expected_state, ready=ready)
        except Exception as e:
            outcome["error"] = e

    thread = threading.Thread(target=target)
    thread.start()
    assert ready.wait(5)
    return thread, outcome


class TestCallbackServer:
    def test_redirect_uri_uses_bound_port(self):
        with CallbackServer(hostname=HOST, ports=[0]) as server:
            assert server.redirect_uri.startswith(f"http://{HOST}:")
            assert server.redirect_uri.endswith("/callback")
            assert not server.redirect_uri.endswith(":0/callback")

    def test_receives_code(self):
        page = render_success_page("https://m8.example.com", "1.2.3")
        with CallbackServer(hostname=HOST, ports=[0], success_html=page) as server:
            thread, outcome = serve_in_background(server, "s1")
            response = get(f"{server.redirect_uri}?code=c0de&state=s1")
            thread.join(5)

        assert outcome == {"code": "c0de"}
        assert response.status_code == 200
        assert "https://m8.example.com" in response.text
        assert "1.2.3" in response.text

    def test_state_mismatch(self):
        with CallbackServer(hostname=HOST, ports=[0]) as server:
            thread, outcome = serve_in_background(server, "s1")
            response = get(f"{server.redirect_uri}?code=c0de&state=forged")
            thread.join(5)

        assert response.status_code == 400
        assert isinstance(outcome["error"], ProtocolError)
        assert "State mismatch" in str(outcome["error"])

    def test_missing_code(self):
        with CallbackServer(hostname=HOST, ports=[0]) as server:
            thread, outcome = serve_in_background(server, "s1")
            get(f"{server.redirect_uri}?state=s1")
            thread.join(5)

        assert isinstance(outcome["error"], ProtocolError)

    def test_identity_provider_error(self):
        with CallbackServer(hostname=HOST, ports=[0]) as server:
            thread, outcome = serve_in_background(server, "s1")
            get(f"{server.redirect_uri}?error=access_denied&error_description=nope")
            thread.join(5)

        assert isinstance(outcome["error"], ProtocolError)
        assert "access_denied" in str(outcome["error"])

    def test_other_paths_do_not_count(self):
        with CallbackServer(hostname=HOST, ports=[0]) as server:
            thread, outcome = serve_in_background(server, "s1")
            base = server.redirect_uri.rsplit("/", 1)[0]
            assert get(f"{base}/favicon.ico").status_code == 404
            assert outcome == {}
            get(f"{server.redirect_uri}?code=c0de&state=s1")
            thread.join(5)

        assert outcome == {"code": "c0de"}

    def test_idle_connection_does_not_block_callback(self):
        """A connection that never sends a request must not stall the listener."""
        with CallbackServer(hostname=HOST, ports=[0]) as server:
            thread, outcome = serve_in_background(server, "s1")
            port = httpx.URL(server.redirect_uri).port
            with socket.create_connection((HOST, port), timeout=5):
                response = get(f"{server.redirect_uri}?code=c0de&state=s1")
                thread.join(5)

        assert response.status_code == 200
        assert outcome == {"code": "c0de"}

    def test_cancelled(self):
        cancelled = threading.Event()
        cancelled.set()
        with CallbackServer(hostname=HOST, ports=[0]) as server:
            with pytest.raises(CancelledError):
                server.receive_code("s1", cancelled=cancelled)


class TestPortFallback:
    def test_falls_back_to_next_port(self):
        with socket.socket() as busy:
            busy.bind((HOST, 0))
            busy.listen()
            busy_port = busy.getsockname()[1]
            with CallbackServer(hostname=HOST, ports=[busy_port, 0]) as server:
                assert f":{busy_port}/" not in server.redirect_uri

    def test_all_ports_busy(self):
        with socket.socket() as busy:
            busy.bind((HOST, 0))
            busy.listen()
            busy_port = busy.getsockname()[1]
            with pytest.raises(NetworkError, match="Could not start local callback server"):
                CallbackServer(hostname=HOST, ports=[busy_port])
