"""HTTP client for the control plane gateway.

Only the calls the authentication subsystem needs are implemented:
upstream authentication, code exchange, cluster token issuance and the
cluster listing used for cache warm-up.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from m8ctl.config import DEFAULT_API_TIMEOUT, M8Config
from m8ctl.exceptions import APIError, NetworkError, ProtocolError, UnauthenticatedError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class _GatewayModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class UpstreamAuthentication(_GatewayModel):
    """Where to send the operator's browser, and the state to expect back."""

    upstream_idp_redirect: str = Field(alias="upstreamIdpRedirect")
    state: str


class AuthenticationResult(_GatewayModel):
    access_token: str = Field(alias="accessToken")
    username: str
    expiry: datetime | None = None


class ClusterAuthToken(_GatewayModel):
    access_token: str = Field(alias="accessToken")
    expiry: datetime


class Cluster(_GatewayModel):
    id: str
    name: str
    display_name: str | None = Field(default=None, alias="displayName")
    api_server_address: str | None = Field(default=None, alias="apiServerAddress")


def handle_response_error(response: httpx.Response, operation: str) -> None:
    """Check response for errors and raise appropriate exceptions.

    Raises:
        UnauthenticatedError: For 401 responses.
        APIError: For all other 4xx/5xx responses.
    """
    if response.status_code < 400:
        return

    detail = None
    try:
        data = response.json()
        detail = data.get("detail", str(data)) if isinstance(data, dict) else str(data)
    except ValueError:
        detail = response.text[:200] if response.text else None

    if response.status_code == 401:
        raise UnauthenticatedError(f"{operation} failed: not authenticated", detail=detail)

    raise APIError(f"{operation} failed", status_code=response.status_code, detail=detail)


class GatewayClient:
    """Synchronous gateway client.

    Safe to share between threads. Use as a context manager or call close().
    """

    def __init__(
        self,
        server: str,
        *,
        access_token: str | None = None,
        timeout: float = DEFAULT_API_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server = server.rstrip("/")
        self.timeout = timeout
        headers = {}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._client = httpx.Client(
            base_url=self.server,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: M8Config,
        *,
        authenticated: bool = True,
        timeout: float = DEFAULT_API_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> "GatewayClient":
        """Create a client for the configured server.

        With ``authenticated=True`` the primary token is sent as bearer token.
        """
        access_token = None
        if authenticated and config.auth_information is not None:
            access_token = config.auth_information.token or None
        return cls(
            config.server,
            access_token=access_token,
            timeout=timeout,
            transport=transport,
        )

    def request_upstream_authentication(
        self, callback_url: str, *, timeout: float | None = None
    ) -> UpstreamAuthentication:
        data = self._request(
            "POST",
            "/api/v1/auth/upstream",
            "Request upstream authentication",
            json={"callbackUrl": callback_url},
            timeout=timeout,
        )
        return self._parse(UpstreamAuthentication, data, "Request upstream authentication")

    def request_authentication(
        self, code: str, state: str, *, timeout: float | None = None
    ) -> AuthenticationResult:
        data = self._request(
            "POST",
            "/api/v1/auth/token",
            "Request authentication",
            json={"code": code, "state": state},
            timeout=timeout,
        )
        return self._parse(AuthenticationResult, data, "Request authentication")

    def get_auth_token(
        self, cluster_id: str, role: str, *, timeout: float | None = None
    ) -> ClusterAuthToken:
        data = self._request(
            "POST",
            "/api/v1/clusters/auth-token",
            f"Get auth token for cluster {cluster_id}",
            json={"clusterId": cluster_id, "role": role},
            timeout=timeout,
        )
        return self._parse(ClusterAuthToken, data, "Get auth token")

    def get_clusters(self, *, timeout: float | None = None) -> list[Cluster]:
        data = self._request("GET", "/api/v1/clusters", "List clusters", timeout=timeout)
        if not isinstance(data, list):
            raise ProtocolError("List clusters returned a malformed response")
        return [self._parse(Cluster, item, "List clusters") for item in data]

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        try:
            response = self._client.request(
                method,
                path,
                timeout=timeout if timeout is not None else self.timeout,
                **kwargs,
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"{operation} failed: could not reach {self.server}: {e}"
            ) from e

        handle_response_error(response, operation)
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"{operation} returned invalid JSON") from e

    @staticmethod
    def _parse(model: type[ModelT], data: Any, operation: str) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(f"{operation} returned a malformed response: {e}") from e

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
