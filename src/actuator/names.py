"""Deterministic names of the Azure resources backing a cluster.

Resources are never renamed out of band: every component derives the
same name from the cluster or machine name.
"""

from __future__ import annotations

# Fixed name of the bootstrap extension on every machine VM
STARTUP_SCRIPT_EXTENSION_NAME = "startupScript"


def vnet_name(cluster_name: str) -> str:
    return f"{cluster_name}-vnet"


def node_subnet_name(cluster_name: str) -> str:
    return f"{cluster_name}-node-subnet"


def control_plane_subnet_name(cluster_name: str) -> str:
    return f"{cluster_name}-controlplane-subnet"


def public_lb_name(cluster_name: str) -> str:
    return f"{cluster_name}-public-lb"


def internal_lb_name(cluster_name: str) -> str:
    return f"{cluster_name}-internal-lb"


def network_interface_name(machine_name: str) -> str:
    return f"{machine_name}-nic"


def os_disk_name(vm_name: str) -> str:
    return f"{vm_name}_OSDisk"


def network_interface_id(subscription_id: str, resource_group: str, nic_name: str) -> str:
    """Build the ARM resource ID of a network interface."""
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.Network/networkInterfaces/{nic_name}"
    )
