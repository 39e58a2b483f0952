"""Machine reconciler: converges one machine's Azure resources.

Each lifecycle operation is a single pass. It performs a bounded,
strictly ordered sequence of external calls and either returns or raises
a classified ActuatorError. Retrying is the caller's job: every operation
is idempotent, so the next pass resumes from whatever state exists.

ORDERING:
- Create: network interface before VM (the VM references the NIC by name)
- Delete: VM before network interface (the VM holds a lock on its NIC)
- Update: immutable fields are checked before anything else, so a
  forbidden change is never masked by a successful mutable update
"""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import timedelta

from azure.core.credentials import TokenCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient

from .config import DEFAULT_BOOTSTRAP_TOKEN_TTL, Config
from .errors import (
    ActuatorError,
    ConfigurationError,
    ImmutableViolation,
    NodeResolutionError,
    NotFoundError,
    ProviderError,
)
from .models import (
    PROVIDER_ANNOTATION,
    PROVIDER_ID_PREFIX,
    READY_VM_STATES,
    VM,
    AzureMachineProviderSpec,
    MachineRole,
    NodeReference,
)
from .names import (
    STARTUP_SCRIPT_EXTENSION_NAME,
    control_plane_subnet_name,
    internal_lb_name,
    network_interface_name,
    node_subnet_name,
    public_lb_name,
    vnet_name,
)
from .scope import MachineScope
from .services.base import (
    Found,
    MachineRegistry,
    NetworkInterfaceClient,
    NetworkInterfaceSpec,
    NodeInventoryFactory,
    NotFound,
    StartupScriptRenderer,
    TokenIssuer,
    VirtualMachineClient,
    VirtualMachineSpec,
    VMExtensionClient,
    VMExtensionSpec,
)
from .services.cluster_api import (
    KubernetesMachineRegistry,
    KubernetesNodeInventory,
    KubernetesTokenIssuer,
)
from .services.extensions import VMExtensionsService
from .services.networkinterfaces import NetworkInterfacesService
from .services.virtualmachines import VirtualMachinesService
from .startup import render_startup_script

logger = logging.getLogger(__name__)

# Control-plane members share the first inbound NAT rule of the public LB
CONTROL_PLANE_NAT_RULE = 0


def find_immutable_violation(
    machine_config: AzureMachineProviderSpec, vm: VM
) -> str | None:
    """Return a description of the first immutable field that differs, if any.

    Fields are compared one at a time and the first mismatch wins; new
    immutable fields are added as further independent checks.
    """
    if machine_config.vm_size != vm.vm_size:
        return f"vmSize: {vm.vm_size!r} -> {machine_config.vm_size!r}"

    return None


def is_machine_outdated(machine_config: AzureMachineProviderSpec, vm: VM) -> bool:
    """Check whether an update request attempts to change immutable state.

    Returns:
        True if an immutable field differs between desired and observed state.
    """
    return find_immutable_violation(machine_config, vm) is not None


class MachineReconciler:
    """Reconciles the VM, NIC and startup extension of a single machine.

    The reconciler holds no state of its own beyond references to its
    collaborators and the scope. Observed state is reported by mutating
    ``scope.machine`` (status, provider ID, provider annotation).
    """

    def __init__(
        self,
        scope: MachineScope,
        *,
        network_interfaces: NetworkInterfaceClient,
        virtual_machines: VirtualMachineClient,
        vm_extensions: VMExtensionClient,
        token_issuer: TokenIssuer,
        machine_registry: MachineRegistry,
        node_inventory_factory: NodeInventoryFactory,
        startup_script_renderer: StartupScriptRenderer = render_startup_script,
        bootstrap_token_ttl: timedelta = DEFAULT_BOOTSTRAP_TOKEN_TTL,
    ) -> None:
        self._scope = scope
        self._network_interfaces = network_interfaces
        self._virtual_machines = virtual_machines
        self._vm_extensions = vm_extensions
        self._token_issuer = token_issuer
        self._machine_registry = machine_registry
        self._node_inventory_factory = node_inventory_factory
        self._render_startup_script = startup_script_renderer
        self._bootstrap_token_ttl = bootstrap_token_ttl

    @classmethod
    def from_azure(
        cls,
        scope: MachineScope,
        config: Config,
        credential: TokenCredential,
    ) -> MachineReconciler:
        """Wire a reconciler to the Azure and Kubernetes APIs.

        Args:
            scope: Scope of the machine to reconcile.
            config: Validated actuator configuration.
            credential: Azure credential (managed identity).
        """
        cluster = scope.cluster
        timeout = config.azure_api_timeout_seconds

        compute_client = ComputeManagementClient(
            credential=credential,
            subscription_id=cluster.subscription_id,
        )
        network_client = NetworkManagementClient(
            credential=credential,
            subscription_id=cluster.subscription_id,
        )

        registry = KubernetesMachineRegistry.for_management_cluster(
            config.management_kubeconfig,
            namespace=config.machine_namespace,
            timeout_seconds=timeout,
        )

        return cls(
            scope,
            network_interfaces=NetworkInterfacesService(
                network_client,
                resource_group=cluster.resource_group,
                location=scope.location,
                timeout_seconds=timeout,
            ),
            virtual_machines=VirtualMachinesService(
                compute_client,
                subscription_id=cluster.subscription_id,
                resource_group=cluster.resource_group,
                location=scope.location,
                timeout_seconds=timeout,
            ),
            vm_extensions=VMExtensionsService(
                compute_client,
                resource_group=cluster.resource_group,
                location=scope.location,
                timeout_seconds=timeout,
            ),
            token_issuer=KubernetesTokenIssuer(timeout_seconds=timeout),
            machine_registry=registry,
            node_inventory_factory=lambda kubeconfig: KubernetesNodeInventory.from_kubeconfig(
                kubeconfig,
                page_size=config.node_list_page_size,
                timeout_seconds=timeout,
            ),
            bootstrap_token_ttl=config.bootstrap_token_ttl,
        )

    @property
    def scope(self) -> MachineScope:
        return self._scope

    # =========================================================================
    # Lifecycle operations
    # =========================================================================

    async def create(self) -> None:
        """Create the machine's NIC, VM and startup extension.

        Raises:
            ConfigurationError: Unknown role label, missing admin credentials or
                cluster settings the startup script needs.
            ProviderError: Any external call failed.
        """
        machine = self._scope.machine

        bootstrap_token = await self._check_control_plane_machines()
        # No resource is created when the script cannot be rendered
        script = self._render_startup_script(self._scope, bootstrap_token)

        nic_spec = self._network_interface_spec(self._machine_role())

        try:
            await self._network_interfaces.create_or_update(nic_spec)
        except ProviderError as e:
            raise ProviderError(f"unable to create VM network interface: {e}") from e

        machine_config = self._scope.machine_config
        try:
            ssh_key_data = base64.b64decode(machine_config.ssh_public_key, validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            # Creation proceeds without a usable key
            logger.warning(
                "Failed to decode ssh public key",
                extra={"machine": machine.name, "error": str(e)},
            )
            ssh_key_data = ""

        vm_spec = VirtualMachineSpec(
            name=machine.name,
            nic_name=nic_spec.name,
            ssh_key_data=ssh_key_data,
            size=machine_config.vm_size,
            os_disk=machine_config.os_disk,
            image=machine_config.image,
            location=self._scope.location,
        )
        try:
            await self._virtual_machines.create_or_update(vm_spec)
        except ProviderError as e:
            raise ProviderError(f"failed to create or get machine: {e}") from e

        extension_spec = VMExtensionSpec(
            name=STARTUP_SCRIPT_EXTENSION_NAME,
            vm_name=machine.name,
            script_data=base64.b64encode(script.encode()).decode(),
            location=self._scope.location,
        )
        try:
            await self._vm_extensions.create_or_update(extension_spec)
        except ProviderError as e:
            raise ProviderError(f"failed to create vm extension: {e}") from e

        machine.annotations[PROVIDER_ANNOTATION] = "true"

        logger.info(
            "Machine created",
            extra={"machine": machine.name, "joined": bool(bootstrap_token)},
        )

    async def update(self) -> None:
        """Reject changes to immutable state of an existing machine.

        Raises:
            ConfigurationError: Unknown role label.
            NotFoundError: The VM does not exist.
            ProviderError: The VM could not be read.
            ImmutableViolation: An immutable field differs from Azure state.
        """
        self._machine_role()

        vm_spec = VirtualMachineSpec(name=self._scope.name)
        try:
            result = await self._virtual_machines.get(vm_spec)
        except ProviderError as e:
            raise ProviderError(f"failed to get vm: {e}") from e

        match result:
            case Found(value=vm):
                pass
            case NotFound():
                raise NotFoundError(f"failed to get vm: VM {self._scope.name} not found")

        # Immutable state first, to fail before touching anything mutable
        violation = find_immutable_violation(self._scope.machine_config, vm)
        if violation is not None:
            logger.error(
                "Attempt to change immutable state",
                extra={"machine": self._scope.name, "violation": violation},
            )
            raise ImmutableViolation(
                f"found attempt to change immutable state of machine {self._scope.name}: "
                f"{violation}"
            )

        # Mutable fields (tags) are not reconciled

    async def exists(self) -> bool:
        """Check whether the machine's VM and extension exist and are ready.

        Also backfills the provider ID and, best effort, the node reference.

        Returns:
            True if the VM and its startup extension exist and the VM is
            Succeeded or Updating; False otherwise.

        Raises:
            ProviderError: A provider query failed for a reason other than not-found.
        """
        if not await self._is_vm_exists():
            return False

        machine = self._scope.machine
        status = self._scope.machine_status

        if status.vm_state not in READY_VM_STATES:
            logger.info(
                "Machine is not ready",
                extra={"machine": machine.name, "vm_state": status.vm_state},
            )
            return False

        logger.info(
            "Machine is ready",
            extra={"machine": machine.name, "vm_id": status.vm_id, "vm_state": status.vm_state},
        )

        if not machine.provider_id:
            machine.provider_id = f"{PROVIDER_ID_PREFIX}{status.vm_id}"

        if status.node_ref is None:
            try:
                node_ref = await self.get_node_reference()
            except ActuatorError as e:
                # The VM can be ready before its node registers
                logger.warning(
                    "Failed to set nodeRef",
                    extra={"machine": machine.name, "error": str(e)},
                )
                return True

            status.node_ref = node_ref
            logger.info(
                "Setting machine nodeRef",
                extra={"machine": machine.name, "node": node_ref.name},
            )

        return True

    async def delete(self) -> None:
        """Delete the VM, then its network interface.

        The NIC is left alone when VM deletion fails, since an attached NIC
        cannot be deleted.

        Raises:
            ProviderError: A delete call failed.
        """
        vm_spec = VirtualMachineSpec(name=self._scope.name)
        try:
            await self._virtual_machines.delete(vm_spec)
        except ProviderError as e:
            raise ProviderError(f"failed to delete machine: {e}") from e

        nic_spec = NetworkInterfaceSpec(
            name=network_interface_name(self._scope.name),
            vnet_name=vnet_name(self._scope.cluster.name),
        )
        try:
            await self._network_interfaces.delete(nic_spec)
        except ProviderError as e:
            raise ProviderError(f"Unable to delete network interface: {e}") from e

        logger.info("Machine deleted", extra={"machine": self._scope.name})

    # =========================================================================
    # Join decision
    # =========================================================================

    async def is_node_join(self) -> bool:
        """Decide whether the machine joins an existing control plane.

        Workers always join. A control-plane machine joins only when the
        first other control-plane machine in the registry has both a VM and
        a startup extension in Azure; the registry alone is not enough since
        it lists machines that may not have provisioned yet.

        Raises:
            ConfigurationError: Unknown role label.
            ProviderError: The registry or a peer could not be queried.
        """
        role = self._machine_role()
        if role is MachineRole.NODE:
            return True

        try:
            cluster_machines = await self._machine_registry.list_all()
        except ProviderError as e:
            raise ProviderError(f"failed to retrieve machines in cluster: {e}") from e

        for peer in cluster_machines:
            if not peer.is_control_plane or peer.name == self._scope.name:
                continue

            try:
                vm_result = await self._virtual_machines.get(VirtualMachineSpec(name=peer.name))
            except ProviderError as e:
                raise ProviderError(f"failed to verify existence of machine {peer.name}: {e}") from e
            if isinstance(vm_result, NotFound):
                logger.debug(
                    "Machine should join the control plane: false",
                    extra={"machine": self._scope.name, "peer": peer.name, "reason": "no vm"},
                )
                return False

            extension_spec = VMExtensionSpec(name=STARTUP_SCRIPT_EXTENSION_NAME, vm_name=peer.name)
            try:
                extension_result = await self._vm_extensions.get(extension_spec)
            except ProviderError as e:
                raise ProviderError(
                    f"failed to verify startup extension of machine {peer.name}: {e}"
                ) from e
            if isinstance(extension_result, NotFound):
                logger.debug(
                    "Machine should join the control plane: false",
                    extra={"machine": self._scope.name, "peer": peer.name, "reason": "no extension"},
                )
                return False

            logger.debug(
                "Machine should join the control plane: true",
                extra={"machine": self._scope.name, "peer": peer.name},
            )
            return True

        return False

    async def _check_control_plane_machines(self) -> str:
        """Return a fresh bootstrap token for a joining control-plane member.

        Workers and the initializing control-plane member get "": workers
        join with the cluster's long-lived join token, the first member
        runs ``kubeadm init``.
        """
        is_join = await self.is_node_join()
        if not is_join or self._machine_role() is not MachineRole.CONTROL_PLANE:
            return ""

        cluster_config = self._scope.cluster_config
        if cluster_config is None or not cluster_config.admin_kubeconfig:
            raise ConfigurationError(
                f"cannot issue bootstrap token: cluster {self._scope.cluster.name} "
                "has no admin kubeconfig"
            )

        try:
            return await self._token_issuer.issue_bootstrap_token(
                cluster_config.admin_kubeconfig, self._bootstrap_token_ttl
            )
        except ProviderError as e:
            raise ProviderError(f"failed to create new bootstrap token: {e}") from e

    # =========================================================================
    # Node identity
    # =========================================================================

    async def get_node_reference(self) -> NodeReference:
        """Find the cluster node registered for this machine's VM.

        Pages through the node inventory until the continuation token runs
        out. A node matches when its provider ID contains the VM ID.

        Raises:
            ConfigurationError: VM ID unknown or no admin kubeconfig.
            ProviderError: The node inventory could not be queried.
            NodeResolutionError: No node matches.
        """
        instance_id = self._scope.machine_status.vm_id
        if not instance_id:
            raise ConfigurationError(f"instance id is empty for machine {self._scope.name}")

        cluster_config = self._scope.cluster_config
        if cluster_config is None or not cluster_config.admin_kubeconfig:
            raise ConfigurationError(
                f"no admin kubeconfig for cluster {self._scope.cluster.name}"
            )

        inventory = self._node_inventory_factory(cluster_config.admin_kubeconfig)

        continue_token: str | None = None
        while True:
            page = await inventory.list_page(continue_token)

            for node in page.nodes:
                # Substring match: provider IDs embed the VM ID in a longer URI
                if instance_id in node.provider_id:
                    return NodeReference(
                        kind=node.kind,
                        api_version=node.api_version,
                        name=node.name,
                    )

            continue_token = page.continue_token
            if not continue_token:
                break

        raise NodeResolutionError(f"no node found for machine {self._scope.name}")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _machine_role(self) -> MachineRole:
        role = self._scope.machine.role
        try:
            return MachineRole(role)
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown value {role!r} for label `set` on machine {self._scope.name}"
            ) from e

    def _network_interface_spec(self, role: MachineRole) -> NetworkInterfaceSpec:
        cluster_name = self._scope.cluster.name
        name = network_interface_name(self._scope.name)

        match role:
            case MachineRole.NODE:
                return NetworkInterfaceSpec(
                    name=name,
                    vnet_name=vnet_name(cluster_name),
                    subnet_name=node_subnet_name(cluster_name),
                )
            case MachineRole.CONTROL_PLANE:
                return NetworkInterfaceSpec(
                    name=name,
                    vnet_name=vnet_name(cluster_name),
                    subnet_name=control_plane_subnet_name(cluster_name),
                    public_lb_name=public_lb_name(cluster_name),
                    internal_lb_name=internal_lb_name(cluster_name),
                    nat_rule=CONTROL_PLANE_NAT_RULE,
                )

    async def _is_vm_exists(self) -> bool:
        """Check that the VM and its startup extension exist; record VM state."""
        name = self._scope.name

        try:
            vm_result = await self._virtual_machines.get(VirtualMachineSpec(name=name))
        except ProviderError as e:
            raise ProviderError(f"Failed to get vm: {e}") from e

        match vm_result:
            case NotFound():
                return False
            case Found(value=vm):
                logger.info("Found vm for machine", extra={"machine": name})

        extension_spec = VMExtensionSpec(name=STARTUP_SCRIPT_EXTENSION_NAME, vm_name=name)
        try:
            extension_result = await self._vm_extensions.get(extension_spec)
        except ProviderError as e:
            raise ProviderError(f"failed to get vm extension: {e}") from e

        if isinstance(extension_result, NotFound):
            return False

        status = self._scope.machine_status
        status.vm_id = vm.id
        status.vm_state = vm.provisioning_state
        return True
