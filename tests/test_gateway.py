"""Tests for the gateway HTTP client."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from m8ctl.config import AuthInformation, M8Config
from m8ctl.exceptions import APIError, NetworkError, ProtocolError, UnauthenticatedError
from m8ctl.gateway import GatewayClient

SERVER = "https://m8.example.com"


def make_client(handler, **kwargs) -> GatewayClient:
    return GatewayClient(SERVER, transport=httpx.MockTransport(handler), **kwargs)


class TestEndpoints:
    def test_request_upstream_authentication(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={"upstreamIdpRedirect": "https://idp.example.com/auth", "state": "s1"},
            )

        with make_client(handler) as client:
            result = client.request_upstream_authentication("http://localhost:8000/callback")

        assert result.upstream_idp_redirect == "https://idp.example.com/auth"
        assert result.state == "s1"
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/api/v1/auth/upstream"
        assert json.loads(requests[0].content) == {
            "callbackUrl": "http://localhost:8000/callback"
        }
        assert "Authorization" not in requests[0].headers

    def test_request_authentication(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content) == {"code": "c0de", "state": "s1"}
            return httpx.Response(
                200,
                json={
                    "accessToken": "primary-token",
                    "username": "jane",
                    "expiry": "2030-01-01T00:00:00Z",
                },
            )

        with make_client(handler) as client:
            result = client.request_authentication("c0de", "s1")

        assert result.access_token == "primary-token"
        assert result.username == "jane"
        assert result.expiry == datetime(2030, 1, 1, tzinfo=timezone.utc)

    def test_get_auth_token_sends_bearer(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer primary-token"
            assert request.url.path == "/api/v1/clusters/auth-token"
            assert json.loads(request.content) == {"clusterId": "c1", "role": "admin"}
            return httpx.Response(
                200, json={"accessToken": "cluster-token", "expiry": "2030-01-01T00:00:00Z"}
            )

        config = M8Config(
            server=SERVER,
            auth_information=AuthInformation(username="jane", token="primary-token"),
        )
        with GatewayClient.from_config(
            config, transport=httpx.MockTransport(handler)
        ) as client:
            token = client.get_auth_token("c1", "admin")

        assert token.access_token == "cluster-token"

    def test_from_config_unauthenticated(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "Authorization" not in request.headers
            return httpx.Response(200, json=[])

        config = M8Config(
            server=SERVER,
            auth_information=AuthInformation(username="jane", token="primary-token"),
        )
        with GatewayClient.from_config(
            config, authenticated=False, transport=httpx.MockTransport(handler)
        ) as client:
            assert client.get_clusters() == []

    def test_get_clusters(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            return httpx.Response(
                200,
                json=[
                    {"id": "c1", "name": "one", "displayName": "One", "extra": True},
                    {"id": "c2", "name": "two"},
                ],
            )

        with make_client(handler) as client:
            clusters = client.get_clusters()

        assert [c.id for c in clusters] == ["c1", "c2"]
        assert clusters[0].display_name == "One"

    def test_per_call_timeout_overrides_default(self):
        timeouts = []

        def handler(request: httpx.Request) -> httpx.Response:
            timeouts.append(request.extensions["timeout"]["read"])
            return httpx.Response(
                200, json={"accessToken": "cluster-token", "expiry": "2030-01-01T00:00:00Z"}
            )

        with make_client(handler, timeout=30) as client:
            client.get_auth_token("c1", "admin", timeout=1.5)
            client.get_auth_token("c1", "admin")

        assert timeouts == [1.5, 30]


class TestErrors:
    def test_401_is_unauthenticated(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"detail": "token expired"})

        with make_client(handler) as client:
            with pytest.raises(UnauthenticatedError) as exc_info:
                client.get_auth_token("c1", "default")

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "token expired"

    def test_500_is_api_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        with make_client(handler) as client:
            with pytest.raises(APIError) as exc_info:
                client.get_clusters()

        assert not isinstance(exc_info.value, UnauthenticatedError)
        assert exc_info.value.status_code == 500
        assert "boom" in str(exc_info.value)

    def test_403_is_not_unauthenticated(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"detail": "forbidden"})

        with make_client(handler) as client:
            with pytest.raises(APIError) as exc_info:
                client.get_auth_token("c1", "admin")

        assert not isinstance(exc_info.value, UnauthenticatedError)

    def test_unreachable_is_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with make_client(handler) as client:
            with pytest.raises(NetworkError, match="could not reach"):
                client.get_clusters()

    def test_invalid_json_is_protocol_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>")

        with make_client(handler) as client:
            with pytest.raises(ProtocolError, match="invalid JSON"):
                client.get_clusters()

    def test_malformed_response_is_protocol_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"state": "s1"})

        with make_client(handler) as client:
            with pytest.raises(ProtocolError, match="malformed"):
                client.request_upstream_authentication("http://localhost:8000/callback")
