"""Cluster API collaborators backed by the Kubernetes Python client.

- KubernetesTokenIssuer: mints kubeadm bootstrap tokens in the workload cluster
- KubernetesNodeInventory: pages through the workload cluster's nodes
- KubernetesMachineRegistry: lists Machine objects in the management cluster
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from ..errors import ConfigurationError, ProviderError
from .base import MachineSummary, NodeInfo, NodePage
from .calls import run_blocking

logger = logging.getLogger(__name__)

BOOTSTRAP_TOKEN_NAMESPACE = "kube-system"
BOOTSTRAP_TOKEN_SECRET_TYPE = "bootstrap.kubernetes.io/token"
BOOTSTRAP_TOKEN_GROUPS = "system:bootstrappers:kubeadm:default-node-token"

# kubeadm token format: [a-z0-9]{6}.[a-z0-9]{16}
TOKEN_ID_LENGTH = 6
TOKEN_SECRET_LENGTH = 16
TOKEN_ALPHABET = string.ascii_lowercase + string.digits

MACHINE_API_GROUP = "cluster.k8s.io"
MACHINE_API_VERSION = "v1alpha1"
MACHINE_PLURAL = "machines"

DEFAULT_MACHINE_PAGE_SIZE = 100
DEFAULT_TIMEOUT_SECONDS = 60

# API errors and transport failures such as an unreachable API server
KUBERNETES_CLIENT_ERRORS = (ApiException, HTTPError)


def api_client_from_kubeconfig(kubeconfig: str) -> client.ApiClient:
    """Build an API client from kubeconfig file contents.

    Raises:
        ConfigurationError: If the kubeconfig is empty or cannot be parsed.
    """
    if not kubeconfig:
        raise ConfigurationError("kubeconfig is empty")
    try:
        config_dict = yaml.safe_load(kubeconfig)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid kubeconfig: {e}") from e
    if not isinstance(config_dict, dict):
        raise ConfigurationError("kubeconfig must be a YAML mapping")
    try:
        return config.new_client_from_config_dict(config_dict)
    except ConfigException as e:
        raise ConfigurationError(f"invalid kubeconfig: {e}") from e


def management_api_client(kubeconfig_path: Path | None) -> client.ApiClient:
    """API client for the management cluster; in-cluster config when no path given."""
    try:
        if kubeconfig_path is not None:
            return config.new_client_from_config(config_file=str(kubeconfig_path))
        config.load_incluster_config()
    except ConfigException as e:
        raise ConfigurationError(f"cannot load management cluster config: {e}") from e
    return client.ApiClient()


def _reason(error: Exception) -> str:
    if isinstance(error, ApiException):
        return str(error.reason)
    return str(error)


def _random_token_part(length: int) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


class KubernetesTokenIssuer:
    """Issue kubeadm bootstrap tokens as secrets in ``kube-system``."""

    def __init__(self, timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._timeout_seconds = timeout_seconds

    async def issue_bootstrap_token(self, admin_kubeconfig: str, ttl: timedelta) -> str:
        """Create a bootstrap token that expires after ``ttl``.

        Args:
            admin_kubeconfig: Admin kubeconfig of the workload cluster.
            ttl: Lifetime of the token.

        Returns:
            The token in ``<id>.<secret>`` form.

        Raises:
            ConfigurationError: If the kubeconfig is unusable.
            ProviderError: If the secret cannot be created.
        """
        api = client.CoreV1Api(api_client=api_client_from_kubeconfig(admin_kubeconfig))

        token_id = _random_token_part(TOKEN_ID_LENGTH)
        token_secret = _random_token_part(TOKEN_SECRET_LENGTH)
        expiration = (datetime.now(UTC) + ttl).strftime("%Y-%m-%dT%H:%M:%SZ")

        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=f"bootstrap-token-{token_id}",
                namespace=BOOTSTRAP_TOKEN_NAMESPACE,
            ),
            type=BOOTSTRAP_TOKEN_SECRET_TYPE,
            string_data={
                "description": "Bootstrap token for joining machines",
                "token-id": token_id,
                "token-secret": token_secret,
                "expiration": expiration,
                "usage-bootstrap-authentication": "true",
                "usage-bootstrap-signing": "true",
                "auth-extra-groups": BOOTSTRAP_TOKEN_GROUPS,
            },
        )

        try:
            await run_blocking(
                lambda: api.create_namespaced_secret(BOOTSTRAP_TOKEN_NAMESPACE, body),
                timeout_seconds=self._timeout_seconds,
                operation_name="create bootstrap token",
            )
        except KUBERNETES_CLIENT_ERRORS as e:
            raise ProviderError(f"failed to create bootstrap token secret: {_reason(e)}") from e

        logger.info(
            "Issued bootstrap token",
            extra={"token_id": token_id, "expiration": expiration},
        )
        return f"{token_id}.{token_secret}"


class KubernetesNodeInventory:
    """Paginated listing of the nodes registered in a workload cluster."""

    def __init__(
        self,
        api: client.CoreV1Api,
        *,
        page_size: int = 100,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._api = api
        self._page_size = page_size
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_kubeconfig(
        cls,
        kubeconfig: str,
        *,
        page_size: int = 100,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> KubernetesNodeInventory:
        api = client.CoreV1Api(api_client=api_client_from_kubeconfig(kubeconfig))
        return cls(api, page_size=page_size, timeout_seconds=timeout_seconds)

    async def list_page(self, continue_token: str | None) -> NodePage:
        kwargs: dict[str, Any] = {"limit": self._page_size}
        if continue_token:
            kwargs["_continue"] = continue_token

        try:
            node_list = await run_blocking(
                lambda: self._api.list_node(**kwargs),
                timeout_seconds=self._timeout_seconds,
                operation_name="list cluster nodes",
            )
        except KUBERNETES_CLIENT_ERRORS as e:
            raise ProviderError(f"failed to query cluster nodes: {_reason(e)}") from e

        # List items carry no kind/apiVersion of their own
        nodes = [
            NodeInfo(
                kind=item.kind or "Node",
                api_version=item.api_version or "v1",
                name=item.metadata.name,
                provider_id=(item.spec.provider_id if item.spec else None) or "",
            )
            for item in node_list.items or []
        ]
        next_token = node_list.metadata._continue if node_list.metadata else None
        return NodePage(nodes=nodes, continue_token=next_token or None)


class KubernetesMachineRegistry:
    """Machines known to the management cluster."""

    def __init__(
        self,
        api: client.CustomObjectsApi,
        *,
        namespace: str,
        page_size: int = DEFAULT_MACHINE_PAGE_SIZE,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._api = api
        self._namespace = namespace
        self._page_size = page_size
        self._timeout_seconds = timeout_seconds

    @classmethod
    def for_management_cluster(
        cls,
        kubeconfig_path: Path | None,
        *,
        namespace: str,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> KubernetesMachineRegistry:
        api = client.CustomObjectsApi(api_client=management_api_client(kubeconfig_path))
        return cls(api, namespace=namespace, timeout_seconds=timeout_seconds)

    async def list_all(self) -> list[MachineSummary]:
        machines: list[MachineSummary] = []
        continue_token: str | None = None

        while True:
            kwargs: dict[str, Any] = {"limit": self._page_size}
            if continue_token:
                kwargs["_continue"] = continue_token

            try:
                response = await run_blocking(
                    lambda: self._api.list_namespaced_custom_object(
                        MACHINE_API_GROUP,
                        MACHINE_API_VERSION,
                        self._namespace,
                        MACHINE_PLURAL,
                        **kwargs,
                    ),
                    timeout_seconds=self._timeout_seconds,
                    operation_name="list machines",
                )
            except KUBERNETES_CLIENT_ERRORS as e:
                raise ProviderError(f"failed to retrieve machines in cluster: {_reason(e)}") from e

            for item in response.get("items", []):
                metadata = item.get("metadata", {})
                machines.append(
                    MachineSummary(
                        name=metadata.get("name", ""),
                        labels=dict(metadata.get("labels") or {}),
                    )
                )

            continue_token = response.get("metadata", {}).get("continue")
            if not continue_token:
                break

        return machines
