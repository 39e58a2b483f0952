"""Pydantic models for machines, clusters and observed Azure state.

These models provide:
1. Type-safe manifest parsing (camelCase aliases, as in the Kubernetes objects)
2. Validation at the boundary (fail fast, fail loudly)
3. A typed view of provider state, independent of the Azure SDK classes
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

# Label carrying the machine role on Machine objects
ROLE_LABEL = "set"

# Annotation marking a machine as managed by this provider
PROVIDER_ANNOTATION = "cluster-api-provider-azure"

# Provider ID prefix understood by the Azure cloud provider
PROVIDER_ID_PREFIX = "azure:////"

_MODEL_CONFIG = {"extra": "ignore", "populate_by_name": True}


class MachineRole(str, Enum):
    """Values of the role label."""

    NODE = "node"
    CONTROL_PLANE = "controlplane"


class VMState(str, Enum):
    """Provisioning states reported by Azure for a virtual machine."""

    CREATING = "Creating"
    UPDATING = "Updating"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    DELETING = "Deleting"
    CANCELED = "Canceled"
    UNKNOWN = "Unknown"

    @classmethod
    def _missing_(cls, value: object) -> VMState:
        return cls.UNKNOWN


# States in which a VM can be reconciled further
READY_VM_STATES = frozenset({VMState.SUCCEEDED, VMState.UPDATING})


# =============================================================================
# Desired state
# =============================================================================


class ManagedDisk(BaseModel):
    """Managed disk parameters of the OS disk."""

    model_config = _MODEL_CONFIG

    storage_account_type: str = Field("Premium_LRS", alias="storageAccountType")

    @field_validator("storage_account_type")
    @classmethod
    def validate_storage_account_type(cls, v: str) -> str:
        valid_types = {
            "Standard_LRS",
            "Premium_LRS",
            "StandardSSD_LRS",
            "UltraSSD_LRS",
            "Premium_ZRS",
            "StandardSSD_ZRS",
        }
        if v not in valid_types:
            raise ValueError(f"storageAccountType must be one of {sorted(valid_types)}")
        return v


class OSDisk(BaseModel):
    """OS disk descriptor."""

    model_config = _MODEL_CONFIG

    os_type: str = Field("Linux", alias="osType")
    disk_size_gb: Annotated[int, Field(ge=1, le=4095, alias="diskSizeGB")] = 30
    managed_disk: ManagedDisk = Field(default_factory=ManagedDisk, alias="managedDisk")


class Image(BaseModel):
    """Marketplace image reference, or the resource ID of a custom image."""

    model_config = _MODEL_CONFIG

    publisher: str | None = None
    offer: str | None = None
    sku: str | None = None
    version: str | None = "latest"
    resource_id: str | None = Field(None, alias="id")

    @model_validator(mode="after")
    def validate_reference(self) -> Image:
        if self.resource_id:
            return self
        if not (self.publisher and self.offer and self.sku):
            raise ValueError("image requires either id or publisher, offer and sku")
        return self


class AzureMachineProviderSpec(BaseModel):
    """Azure-specific desired state of a machine."""

    model_config = _MODEL_CONFIG

    vm_size: Annotated[str, Field(min_length=1, alias="vmSize")]
    image: Image
    os_disk: OSDisk = Field(default_factory=OSDisk, alias="osDisk")
    ssh_public_key: str = Field("", alias="sshPublicKey")
    location: str | None = None

    # Carried for completeness; tags are not reconciled
    additional_tags: dict[str, str] = Field(default_factory=dict, alias="additionalTags")


# =============================================================================
# Observed state
# =============================================================================


class NodeReference(BaseModel):
    """Reference to the cluster node registered for a machine."""

    model_config = _MODEL_CONFIG

    kind: str
    api_version: str = Field(alias="apiVersion")
    name: str


class MachineStatus(BaseModel):
    """Observed state, written only from provider responses."""

    model_config = _MODEL_CONFIG

    vm_id: str | None = Field(None, alias="vmId")
    vm_state: VMState | None = Field(None, alias="vmState")
    node_ref: NodeReference | None = Field(None, alias="nodeRef")


class Machine(BaseModel):
    """A machine object: identity, labels, desired provider spec and status."""

    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1, max_length=64)]
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    provider_id: str | None = Field(None, alias="providerID")
    provider_spec: AzureMachineProviderSpec = Field(alias="providerSpec")
    status: MachineStatus = Field(default_factory=MachineStatus)

    @property
    def role(self) -> str | None:
        """Raw value of the role label, if any."""
        return self.labels.get(ROLE_LABEL)


class Cluster(BaseModel):
    """Identity of the workload cluster a machine belongs to."""

    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1)]
    resource_group: str = Field(alias="resourceGroup")
    location: str
    subscription_id: str = Field(alias="subscriptionId")


class ClusterConfig(BaseModel):
    """Administrative credentials and bootstrap parameters of the cluster."""

    model_config = _MODEL_CONFIG

    admin_kubeconfig: str = Field(alias="adminKubeconfig")
    control_plane_endpoint: str | None = Field(None, alias="controlPlaneEndpoint")
    ca_cert_hash: str | None = Field(None, alias="caCertHash")
    certificate_key: str | None = Field(None, alias="certificateKey")
    # Long-lived token used by workers; control-plane joiners get a fresh one
    node_join_token: str | None = Field(None, alias="nodeJoinToken")
    kubernetes_version: str = Field("v1.28.4", alias="kubernetesVersion")
    pod_cidr: str = Field("192.168.0.0/16", alias="podCIDR")
    service_cidr: str = Field("10.96.0.0/12", alias="serviceCIDR")
    service_domain: str = Field("cluster.local", alias="serviceDomain")

    @field_validator("pod_cidr", "service_cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError("must be in CIDR notation (e.g., 10.0.0.0/16)")
        return v


class VM(BaseModel):
    """Virtual machine as reported by Azure."""

    model_config = _MODEL_CONFIG

    id: str
    name: str
    vm_size: str
    provisioning_state: VMState = VMState.UNKNOWN
    image: Image | None = None
    os_disk: OSDisk | None = None
    tags: dict[str, str] = Field(default_factory=dict)


class VMExtension(BaseModel):
    """Virtual machine extension as reported by Azure."""

    model_config = _MODEL_CONFIG

    name: str
    vm_name: str
    provisioning_state: str | None = None
