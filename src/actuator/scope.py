"""Machine scope: the caller-owned context of one reconciliation pass.

The scope is passed explicitly to the reconciler and mutated in place as
the side channel for status reporting. The reconciler reads the desired
spec, cluster identity and credentials, and writes only:

- ``machine.status`` (vm_id, vm_state, node_ref)
- ``machine.provider_id`` (one-time backfill)
- the provider annotation on ``machine.annotations``

One scope belongs to exactly one in-flight operation; callers must not
reconcile the same machine concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import AzureMachineProviderSpec, Cluster, ClusterConfig, Machine, MachineStatus


@dataclass
class MachineScope:
    """Desired machine, its cluster and the cluster's admin credentials."""

    machine: Machine
    cluster: Cluster
    cluster_config: ClusterConfig | None = None

    @property
    def name(self) -> str:
        """Machine name; also the VM name."""
        return self.machine.name

    @property
    def machine_config(self) -> AzureMachineProviderSpec:
        return self.machine.provider_spec

    @property
    def machine_status(self) -> MachineStatus:
        return self.machine.status

    @property
    def location(self) -> str:
        """Location for new resources, honoring a per-machine override."""
        return self.machine_config.location or self.cluster.location
