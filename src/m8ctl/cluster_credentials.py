"""Cluster-scoped credentials for kubectl.

``ClusterCredentialBroker`` returns a token per (cluster, user, role), served
from the local cache while it is exactly valid and fetched from the gateway
otherwise. When the default role is requested, tokens for all other clusters
the operator can access are fetched as well (best effort), so that switching
kubectl contexts does not hit the gateway again.

The resolved credential is rendered as a client-go ``ExecCredential``:

    {
        "kind": "ExecCredential",
        "apiVersion": "client.authentication.k8s.io/v1beta1",
        "status": {"token": "...", "expirationTimestamp": "2021-01-01T00:00:00Z"}
    }
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from m8ctl.auth import Deadline
from m8ctl.config import (
    DEFAULT_API_TIMEOUT,
    AuthInformation,
    ClusterCredentialKey,
    ConfigManager,
    is_valid_exact,
)
from m8ctl.exceptions import DeadlineExceededError, PersistError, UnauthenticatedError
from m8ctl.gateway import GatewayClient

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "default"
ADMIN_ROLE = "admin"
EXEC_CREDENTIAL_API_VERSION = "client.authentication.k8s.io/v1beta1"


class ExecCredentialStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str
    expiration_timestamp: datetime | None = Field(
        default=None, alias="expirationTimestamp"
    )

    @field_serializer("expiration_timestamp")
    def _serialize_timestamp(self, value: datetime | None) -> str | None:
        if value is None:
            return None
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ExecCredential(BaseModel):
    """Response of a client-go exec credential plugin."""

    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["ExecCredential"] = "ExecCredential"
    api_version: str = Field(default=EXEC_CREDENTIAL_API_VERSION, alias="apiVersion")
    status: ExecCredentialStatus

    @classmethod
    def from_auth_information(cls, auth: AuthInformation) -> "ExecCredential":
        return cls(
            status=ExecCredentialStatus(
                token=auth.token, expiration_timestamp=auth.expiry
            )
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


def render_exec_credential(auth: AuthInformation) -> str:
    """Render a credential as the JSON document kubectl expects on stdout."""
    return ExecCredential.from_auth_information(auth).to_json()


class ClusterCredentialBroker:
    """Resolves and caches cluster credentials.

    Cache writes go through ``ConfigManager``, which serializes them, so
    concurrent prefetch tasks racing on the same key cannot corrupt the map.

    Usage:
        with ClusterCredentialBroker(config_manager, gateway) as broker:
            auth = broker.resolve(cluster_id, "default")
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        gateway: GatewayClient,
        *,
        api_timeout: float = DEFAULT_API_TIMEOUT,
        max_workers: int = 8,
    ) -> None:
        self.config_manager = config_manager
        self.gateway = gateway
        self.api_timeout = api_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="m8ctl-prefetch"
        )
        self._pending: list[Future] = []

    def _key(self, cluster_id: str, role: str) -> ClusterCredentialKey:
        primary = self.config_manager.config.auth_information
        if primary is None or not primary.username:
            raise UnauthenticatedError("Not authenticated", detail="no primary credential")
        return ClusterCredentialKey(cluster_id, primary.username, role)

    def resolve(
        self,
        cluster_id: str,
        role: str,
        *,
        deadline: Deadline | None = None,
        prefetch: bool = True,
        wait_for_prefetch: bool = True,
    ) -> AuthInformation:
        """Get a credential for a cluster and role.

        Args:
            cluster_id: Cluster to get the credential for.
            role: Kubernetes role the credential is issued for.
            deadline: Deadline of the calling command. Every gateway call,
                prefetching included, is capped by it.
            prefetch: Warm the cache for all other clusters when ``role`` is
                the default role.
            wait_for_prefetch: Join the prefetch before returning. Otherwise
                it completes in the background and is joined by ``close()``.

        Returns:
            A credential that is exactly valid at return time.
        """
        key = self._key(cluster_id, role)
        cached = self.config_manager.get_cluster_auth_information(key)
        if is_valid_exact(cached):
            logger.debug(f"Using cached credentials for {key}")
            assert cached is not None
            return cached

        auth = self._fetch(key, deadline)
        self._persist()

        if prefetch and role == DEFAULT_ROLE:
            self._pending.extend(self._prefetch(role, deadline))
            if wait_for_prefetch:
                self.wait_for_prefetch()
        return auth

    def wait_for_prefetch(self) -> None:
        """Join outstanding prefetch tasks and persist what they fetched."""
        if not self._pending:
            return
        pending, self._pending = self._pending, []
        wait(pending)
        self._persist()

    def _timeout(self, deadline: Deadline | None) -> float:
        if deadline is None:
            return self.api_timeout
        if deadline.expired:
            raise DeadlineExceededError("Deadline exceeded before contacting the gateway")
        return deadline.timeout(self.api_timeout)

    def _fetch(
        self, key: ClusterCredentialKey, deadline: Deadline | None
    ) -> AuthInformation:
        response = self.gateway.get_auth_token(
            key.cluster_id, key.role, timeout=self._timeout(deadline)
        )
        logger.debug(f"Fetched credentials for {key} (expiry {response.expiry})")
        return self.config_manager.set_cluster_auth_information(
            key, response.access_token, response.expiry
        )

    def _prefetch(self, role: str, deadline: Deadline | None) -> list[Future]:
        try:
            clusters = self.gateway.get_clusters(timeout=self._timeout(deadline))
        except Exception as e:
            logger.debug(f"Could not list clusters for prefetching credentials: {e}")
            return []

        futures = []
        for cluster in clusters:
            key = self._key(cluster.id, role)
            if is_valid_exact(self.config_manager.get_cluster_auth_information(key)):
                continue
            futures.append(self._executor.submit(self._prefetch_one, key, deadline))
        return futures

    def _prefetch_one(
        self, key: ClusterCredentialKey, deadline: Deadline | None
    ) -> None:
        try:
            self._fetch(key, deadline)
        except Exception as e:
            logger.debug(f"Prefetching credentials for {key} failed: {e}")

    def _persist(self) -> None:
        try:
            self.config_manager.save_config()
        except PersistError as e:
            logger.warning(f"{e}. {e.hint}")

    def close(self) -> None:
        self.wait_for_prefetch()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "ClusterCredentialBroker":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
