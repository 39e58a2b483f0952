"""Configuration management with validation.

Configuration is validated at load time so the actuator fails fast on a
bad environment instead of half-way through a reconciliation pass.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from .errors import ConfigurationError

# Configuration constants with documented bounds
DEFAULT_AZURE_API_TIMEOUT_SECONDS = 300
MIN_AZURE_API_TIMEOUT_SECONDS = 10
MAX_AZURE_API_TIMEOUT_SECONDS = 3600

DEFAULT_NODE_LIST_PAGE_SIZE = 100
MAX_NODE_LIST_PAGE_SIZE = 500

# Join credentials are short-lived; the startup script consumes them immediately
DEFAULT_BOOTSTRAP_TOKEN_TTL = timedelta(minutes=10)

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_CLUSTER_NAME_LENGTH = 44

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_CLUSTER_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Actuator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    subscription_id: str
    location: str
    resource_group: str
    cluster_name: str

    # Identity
    client_id: str | None = None

    # Management cluster (machine registry)
    machine_namespace: str = "default"
    management_kubeconfig: Path | None = None

    # Timing
    azure_api_timeout_seconds: int = DEFAULT_AZURE_API_TIMEOUT_SECONDS
    bootstrap_token_ttl: timedelta = field(default=DEFAULT_BOOTSTRAP_TOKEN_TTL)

    # Behavior
    node_list_page_size: int = DEFAULT_NODE_LIST_PAGE_SIZE
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.resource_group:
            errors.append("AZURE_RESOURCE_GROUP is required")
        elif len(self.resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"AZURE_RESOURCE_GROUP exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        if not self.cluster_name:
            errors.append("CLUSTER_NAME is required")
        elif len(self.cluster_name) > MAX_CLUSTER_NAME_LENGTH or not re.match(
            VALID_CLUSTER_NAME_PATTERN, self.cluster_name
        ):
            errors.append(
                f"CLUSTER_NAME must be a DNS label of at most {MAX_CLUSTER_NAME_LENGTH} "
                f"characters: {self.cluster_name}"
            )

        if not (
            MIN_AZURE_API_TIMEOUT_SECONDS
            <= self.azure_api_timeout_seconds
            <= MAX_AZURE_API_TIMEOUT_SECONDS
        ):
            errors.append(
                f"AZURE_API_TIMEOUT must be between {MIN_AZURE_API_TIMEOUT_SECONDS} "
                f"and {MAX_AZURE_API_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.node_list_page_size <= MAX_NODE_LIST_PAGE_SIZE):
            errors.append(f"NODE_LIST_PAGE_SIZE must be between 1 and {MAX_NODE_LIST_PAGE_SIZE}")

        if self.bootstrap_token_ttl <= timedelta(0):
            errors.append("bootstrap token TTL must be positive")

        if self.management_kubeconfig is not None and not self.management_kubeconfig.exists():
            errors.append(f"MANAGEMENT_KUBECONFIG does not exist: {self.management_kubeconfig}")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Subscription holding the cluster resources
            AZURE_LOCATION: Default location for new resources
            AZURE_RESOURCE_GROUP: Resource group holding the cluster resources
            CLUSTER_NAME: Cluster name, used to derive network resource names
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity (optional)
            MACHINE_NAMESPACE: Namespace of Machine objects (default: default)
            MANAGEMENT_KUBECONFIG: Kubeconfig for the management cluster
                (default: in-cluster configuration)
            AZURE_API_TIMEOUT: Timeout per external call in seconds (default: 300)
            NODE_LIST_PAGE_SIZE: Nodes fetched per inventory page (default: 100)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        kubeconfig = os.environ.get("MANAGEMENT_KUBECONFIG")

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            resource_group=os.environ.get("AZURE_RESOURCE_GROUP", ""),
            cluster_name=os.environ.get("CLUSTER_NAME", ""),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            machine_namespace=os.environ.get("MACHINE_NAMESPACE", "default"),
            management_kubeconfig=Path(kubeconfig) if kubeconfig else None,
            azure_api_timeout_seconds=get_int(
                "AZURE_API_TIMEOUT", DEFAULT_AZURE_API_TIMEOUT_SECONDS
            ),
            node_list_page_size=get_int("NODE_LIST_PAGE_SIZE", DEFAULT_NODE_LIST_PAGE_SIZE),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
