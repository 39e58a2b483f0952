"""Collaborator contracts of the machine reconciler.

Get operations return a tagged result instead of an untyped value:
``Found(value)`` when the resource exists, ``NotFound(name)`` when it
does not. Any other failure is raised as ProviderError. Absence is a
valid answer on read paths, not an exception.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Generic, Protocol, TypeVar

from ..models import ROLE_LABEL, VM, Image, MachineRole, OSDisk, VMExtension

if TYPE_CHECKING:
    from ..scope import MachineScope

T = TypeVar("T")


@dataclass(frozen=True)
class Found(Generic[T]):
    """Resource exists."""

    value: T


@dataclass(frozen=True)
class NotFound:
    """Resource does not exist."""

    name: str


# =============================================================================
# Resource specs
# =============================================================================


@dataclass(frozen=True)
class NetworkInterfaceSpec:
    """Network interface derived from machine name and role."""

    name: str
    vnet_name: str
    subnet_name: str = ""
    public_lb_name: str = ""
    internal_lb_name: str = ""
    nat_rule: int | None = None


@dataclass(frozen=True)
class VirtualMachineSpec:
    name: str
    nic_name: str = ""
    ssh_key_data: str = ""
    size: str = ""
    os_disk: OSDisk | None = None
    image: Image | None = None
    location: str | None = None
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VMExtensionSpec:
    name: str
    vm_name: str
    script_data: str = ""
    location: str | None = None


# =============================================================================
# Cluster API records
# =============================================================================


@dataclass(frozen=True)
class NodeInfo:
    """A registered cluster node."""

    kind: str
    api_version: str
    name: str
    provider_id: str = ""


@dataclass(frozen=True)
class NodePage:
    """One page of the node inventory; continue_token is None on the last page."""

    nodes: list[NodeInfo]
    continue_token: str | None = None


@dataclass(frozen=True)
class MachineSummary:
    """A machine known to the management cluster."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def is_control_plane(self) -> bool:
        return self.labels.get(ROLE_LABEL) == MachineRole.CONTROL_PLANE.value


# =============================================================================
# Protocols
# =============================================================================


class VirtualMachineClient(Protocol):
    async def create_or_update(self, spec: VirtualMachineSpec) -> None: ...

    async def get(self, spec: VirtualMachineSpec) -> Found[VM] | NotFound: ...

    async def delete(self, spec: VirtualMachineSpec) -> None: ...


class NetworkInterfaceClient(Protocol):
    async def create_or_update(self, spec: NetworkInterfaceSpec) -> None: ...

    async def delete(self, spec: NetworkInterfaceSpec) -> None: ...


class VMExtensionClient(Protocol):
    async def create_or_update(self, spec: VMExtensionSpec) -> None: ...

    async def get(self, spec: VMExtensionSpec) -> Found[VMExtension] | NotFound: ...


class TokenIssuer(Protocol):
    async def issue_bootstrap_token(self, admin_kubeconfig: str, ttl: timedelta) -> str: ...


class NodeInventory(Protocol):
    async def list_page(self, continue_token: str | None) -> NodePage: ...


class MachineRegistry(Protocol):
    async def list_all(self) -> list[MachineSummary]: ...


# Builds a node inventory from the workload cluster's admin kubeconfig
NodeInventoryFactory = Callable[[str], NodeInventory]

# Renders the VM startup script for a scope and optional bootstrap token
StartupScriptRenderer = Callable[["MachineScope", str], str]
