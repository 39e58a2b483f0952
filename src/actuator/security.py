"""Credential handling for the actuator.

The actuator authenticates to Azure with a managed identity only. A
service principal secret or password in the environment is treated as a
deployment error and blocks the command before any Azure call is made.

The workload cluster's admin kubeconfig is the one credential the
actuator does handle: it is read from the cluster manifest, used to mint
bootstrap tokens and list nodes, and never logged.
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that select a non-managed-identity credential
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Credential environment variable {env_var} is set. The machine actuator "
    "authenticates with a managed identity only: remove the variable and assign "
    "a managed identity with Contributor rights on the cluster resource group."
)


class SecretlessViolationError(Exception):
    """Raised when a secret-based Azure credential is configured."""


def enforce_secretless_credentials() -> None:
    """Refuse to start when a secret-based credential is configured.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secret-based credential detected",
                extra={"security_event": "credential_detected", "env_var": env_var},
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Return a managed identity credential after the secretless check.

    Args:
        client_id: Client ID of a user-assigned identity; system-assigned if None.
    """
    enforce_secretless_credentials()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def log_machine_audit_event(action: str, machine: str, cluster: str, result: str) -> None:
    """Record a lifecycle action against a machine for audit purposes."""
    logger.info(
        f"Machine audit: {action}",
        extra={
            "security_audit": True,
            "action": action,
            "machine": machine,
            "cluster": cluster,
            "result": result,
        },
    )
