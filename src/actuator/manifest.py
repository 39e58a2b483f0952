"""Machine and cluster manifest loading with validation.

Manifests are Kubernetes-style YAML objects (``apiVersion``, ``kind``,
``metadata``, ``spec``, ``status``). The Azure provider settings live under
``spec.providerSpec.value``; the machine's observed Azure state under
``status.providerStatus``.

SECURITY: All file reads enforce a size limit. The admin kubeconfig is
read into memory and never logged.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import Cluster, ClusterConfig, Machine

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

MACHINE_KIND = "Machine"
CLUSTER_KIND = "Cluster"
MACHINE_API_VERSION = "cluster.k8s.io/v1alpha1"
PROVIDER_SPEC_API_VERSION = "azureprovider/v1alpha1"


class ManifestLoadError(Exception):
    """Raised when a manifest cannot be loaded or fails validation."""

    pass


def read_text_limited(path: Path) -> str:
    """Read a text file after checking it against the manifest size limit.

    Raises:
        ManifestLoadError: If the file is missing, too large or unreadable.
    """
    if not path.exists():
        raise ManifestLoadError(f"File not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"File exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read file {path}: {e}") from e


def _load_object(path: Path, kind: str) -> dict[str, Any]:
    try:
        raw_data = yaml.safe_load(read_text_limited(path))
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ManifestLoadError(f"Manifest must contain a YAML mapping: {path}")

    actual_kind = raw_data.get("kind", kind)
    if actual_kind != kind:
        raise ManifestLoadError(f"Expected kind {kind} in {path}, found {actual_kind}")

    for section in ("metadata", "spec", "status"):
        if not isinstance(raw_data.get(section) or {}, dict):
            raise ManifestLoadError(f"{section} section must be a mapping: {path}")

    return raw_data


def _provider_value(spec: dict[str, Any], path: Path) -> dict[str, Any]:
    provider_spec = spec.get("providerSpec") or {}
    # Accept both the wrapped (providerSpec.value) and the bare form
    value = provider_spec.get("value", provider_spec) if isinstance(provider_spec, dict) else None
    if not isinstance(value, dict):
        raise ManifestLoadError(f"spec.providerSpec must be a mapping: {path}")
    return value


def _validate(model: type[M], data: dict[str, Any], path: Path) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise ManifestLoadError(f"Validation failed for {path}:\n{error_list}") from e


def load_machine(path: Path) -> Machine:
    """Load and validate a Machine manifest.

    Args:
        path: Path to the YAML manifest.

    Returns:
        Validated machine, including any status already recorded.

    Raises:
        ManifestLoadError: If the manifest cannot be loaded or fails validation.
    """
    raw_data = _load_object(path, MACHINE_KIND)
    metadata = raw_data.get("metadata") or {}
    spec = raw_data.get("spec") or {}
    status = raw_data.get("status") or {}

    machine_data = {
        "name": metadata.get("name"),
        "namespace": metadata.get("namespace", "default"),
        "labels": metadata.get("labels") or {},
        "annotations": metadata.get("annotations") or {},
        "providerID": spec.get("providerID"),
        "providerSpec": _provider_value(spec, path),
        "status": {
            **(status.get("providerStatus") or {}),
            "nodeRef": status.get("nodeRef"),
        },
    }

    machine = _validate(Machine, machine_data, path)
    logger.info("Loaded machine manifest", extra={"machine": machine.name, "path": str(path)})
    return machine


def load_cluster(
    path: Path,
    *,
    subscription_id: str,
    resource_group: str,
    location: str,
    admin_kubeconfig: str | None = None,
) -> tuple[Cluster, ClusterConfig | None]:
    """Load and validate a Cluster manifest.

    Values in the manifest's provider spec win over the keyword defaults,
    which come from the actuator configuration. ``admin_kubeconfig``, when
    given, replaces any kubeconfig embedded in the manifest.

    Returns:
        The cluster identity and its bootstrap configuration, or None for
        the latter when no admin kubeconfig is available.

    Raises:
        ManifestLoadError: If the manifest cannot be loaded or fails validation.
    """
    raw_data = _load_object(path, CLUSTER_KIND)
    metadata = raw_data.get("metadata") or {}
    provider = _provider_value(raw_data.get("spec") or {}, path)

    cluster = _validate(
        Cluster,
        {
            "name": metadata.get("name"),
            "subscriptionId": provider.get("subscriptionId", subscription_id),
            "resourceGroup": provider.get("resourceGroup", resource_group),
            "location": provider.get("location", location),
        },
        path,
    )

    bootstrap = provider.get("bootstrap") or {}
    if not isinstance(bootstrap, dict):
        raise ManifestLoadError(f"spec.providerSpec.value.bootstrap must be a mapping: {path}")
    if admin_kubeconfig is not None:
        bootstrap = {**bootstrap, "adminKubeconfig": admin_kubeconfig}

    cluster_config = None
    if bootstrap.get("adminKubeconfig"):
        cluster_config = _validate(ClusterConfig, bootstrap, path)

    logger.info(
        "Loaded cluster manifest",
        extra={
            "cluster": cluster.name,
            "path": str(path),
            "has_admin_kubeconfig": cluster_config is not None,
        },
    )
    return cluster, cluster_config


def machine_to_manifest(machine: Machine) -> dict[str, Any]:
    """Render a machine back into its Kubernetes-style manifest form."""
    status = machine.status
    provider_status = status.model_dump(
        by_alias=True, mode="json", exclude={"node_ref"}, exclude_none=True
    )

    manifest: dict[str, Any] = {
        "apiVersion": MACHINE_API_VERSION,
        "kind": MACHINE_KIND,
        "metadata": {
            "name": machine.name,
            "namespace": machine.namespace,
            "labels": dict(machine.labels),
            "annotations": dict(machine.annotations),
        },
        "spec": {
            "providerSpec": {
                "value": {
                    "apiVersion": PROVIDER_SPEC_API_VERSION,
                    "kind": "AzureMachineProviderSpec",
                    **machine.provider_spec.model_dump(
                        by_alias=True, mode="json", exclude_none=True
                    ),
                }
            }
        },
        "status": {"providerStatus": provider_status},
    }
    if machine.provider_id:
        manifest["spec"]["providerID"] = machine.provider_id
    if status.node_ref is not None:
        manifest["status"]["nodeRef"] = status.node_ref.model_dump(by_alias=True, mode="json")

    return manifest


def dump_machine(machine: Machine) -> str:
    """Serialize a machine manifest to YAML."""
    return yaml.safe_dump(machine_to_manifest(machine), sort_keys=False)
