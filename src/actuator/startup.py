"""kubeadm startup scripts run by the VM bootstrap extension.

Three flavours, chosen from the machine role and the bootstrap token:

- control plane without token: ``kubeadm init`` (first member)
- control plane with token: ``kubeadm join --control-plane``
- node: ``kubeadm join`` with the cluster's node join token
"""

from __future__ import annotations

import shlex

from .errors import ConfigurationError
from .models import ClusterConfig, MachineRole
from .scope import MachineScope

SCRIPT_HEADER = """#!/usr/bin/env bash
set -euo pipefail

# Written by the machine actuator; runs once through the CustomScript extension.
"""


def render_startup_script(scope: MachineScope, bootstrap_token: str) -> str:
    """Render the startup script for a machine.

    Args:
        scope: Scope of the machine being created.
        bootstrap_token: Join token, or "" for the initializing control plane.

    Returns:
        The script text (not yet base64-encoded).

    Raises:
        ConfigurationError: Unknown role label or missing cluster settings
            (including a worker without any join token).
    """
    cluster_config = scope.cluster_config
    if cluster_config is None:
        raise ConfigurationError(
            f"cluster {scope.cluster.name} has no cluster configuration for machine {scope.name}"
        )

    match scope.machine.role:
        case MachineRole.CONTROL_PLANE.value:
            if bootstrap_token:
                body = _join_script(scope, cluster_config, bootstrap_token, control_plane=True)
            else:
                body = _init_script(scope, cluster_config)
        case MachineRole.NODE.value:
            token = bootstrap_token or cluster_config.node_join_token
            if not token:
                raise ConfigurationError(f"node {scope.name} cannot join without a join token")
            body = _join_script(scope, cluster_config, token, control_plane=False)
        case role:
            raise ConfigurationError(
                f"Unknown value {role!r} for label `set` on machine {scope.name}"
            )

    return SCRIPT_HEADER + body


def _init_script(scope: MachineScope, cluster_config: ClusterConfig) -> str:
    args = [
        "kubeadm",
        "init",
        "--kubernetes-version",
        cluster_config.kubernetes_version,
        "--pod-network-cidr",
        cluster_config.pod_cidr,
        "--service-cidr",
        cluster_config.service_cidr,
        "--service-dns-domain",
        cluster_config.service_domain,
        "--node-name",
        scope.name,
    ]
    if cluster_config.control_plane_endpoint:
        args += ["--control-plane-endpoint", cluster_config.control_plane_endpoint]
    if cluster_config.certificate_key:
        args += ["--upload-certs", "--certificate-key", cluster_config.certificate_key]
    return _command(args)


def _join_script(
    scope: MachineScope,
    cluster_config: ClusterConfig,
    bootstrap_token: str,
    *,
    control_plane: bool,
) -> str:
    if not cluster_config.control_plane_endpoint:
        raise ConfigurationError(
            f"cluster {scope.cluster.name} has no control plane endpoint to join"
        )

    args = [
        "kubeadm",
        "join",
        cluster_config.control_plane_endpoint,
        "--token",
        bootstrap_token,
        "--node-name",
        scope.name,
    ]
    if cluster_config.ca_cert_hash:
        args += ["--discovery-token-ca-cert-hash", cluster_config.ca_cert_hash]
    else:
        args.append("--discovery-token-unsafe-skip-ca-verification")
    if control_plane:
        args.append("--control-plane")
        if cluster_config.certificate_key:
            args += ["--certificate-key", cluster_config.certificate_key]
    return _command(args)


def _command(args: list[str]) -> str:
    return " ".join(shlex.quote(arg) for arg in args) + "\n"
