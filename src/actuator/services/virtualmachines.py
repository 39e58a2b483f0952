"""Virtual machine service backed by azure-mgmt-compute."""

from __future__ import annotations

import logging

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import (
    DiskCreateOptionTypes,
    HardwareProfile,
    ImageReference,
    LinuxConfiguration,
    ManagedDiskParameters,
    NetworkInterfaceReference,
    NetworkProfile,
    OSDisk,
    OSProfile,
    SshConfiguration,
    SshPublicKey,
    StorageProfile,
    VirtualMachine,
)

from ..converters import sdk_to_vm
from ..errors import ConfigurationError, ProviderError
from ..models import VM, Image
from ..names import network_interface_id, os_disk_name
from .base import Found, NotFound, VirtualMachineSpec
from .calls import run_blocking

logger = logging.getLogger(__name__)

ADMIN_USERNAME = "azureuser"
AUTHORIZED_KEYS_PATH = f"/home/{ADMIN_USERNAME}/.ssh/authorized_keys"


class VirtualMachinesService:
    """Create, read and delete virtual machines in the cluster resource group."""

    def __init__(
        self,
        client: ComputeManagementClient,
        *,
        subscription_id: str,
        resource_group: str,
        location: str,
        timeout_seconds: int,
    ) -> None:
        self._client = client
        self._subscription_id = subscription_id
        self._resource_group = resource_group
        self._location = location
        self._timeout_seconds = timeout_seconds

    async def get(self, spec: VirtualMachineSpec) -> Found[VM] | NotFound:
        """Get a VM by name.

        Raises:
            ProviderError: If Azure fails for any reason other than not-found.
        """
        try:
            vm = await run_blocking(
                lambda: self._client.virtual_machines.get(self._resource_group, spec.name),
                timeout_seconds=self._timeout_seconds,
                operation_name=f"get VM {spec.name}",
            )
        except ResourceNotFoundError:
            return NotFound(spec.name)
        except AzureError as e:
            raise ProviderError(f"failed to get VM {spec.name}: {e}") from e

        return Found(sdk_to_vm(vm))

    async def create_or_update(self, spec: VirtualMachineSpec) -> None:
        """Create or update a VM and wait for the operation to finish."""
        parameters = self._build_vm(spec)

        logger.info(
            "Creating or updating VM",
            extra={"vm_name": spec.name, "vm_size": spec.size, "nic_name": spec.nic_name},
        )
        try:
            await run_blocking(
                lambda: self._client.virtual_machines.begin_create_or_update(
                    self._resource_group, spec.name, parameters
                ).result(),
                timeout_seconds=self._timeout_seconds,
                operation_name=f"create VM {spec.name}",
            )
        except AzureError as e:
            raise ProviderError(f"cannot create VM {spec.name}: {e}") from e

        logger.info("Successfully created VM", extra={"vm_name": spec.name})

    async def delete(self, spec: VirtualMachineSpec) -> None:
        """Delete a VM. A VM that does not exist is already deleted."""
        logger.info("Deleting VM", extra={"vm_name": spec.name})
        try:
            await run_blocking(
                lambda: self._client.virtual_machines.begin_delete(
                    self._resource_group, spec.name
                ).result(),
                timeout_seconds=self._timeout_seconds,
                operation_name=f"delete VM {spec.name}",
            )
        except ResourceNotFoundError:
            logger.info("VM already deleted", extra={"vm_name": spec.name})
            return
        except AzureError as e:
            raise ProviderError(f"failed to delete VM {spec.name}: {e}") from e

        logger.info("Successfully deleted VM", extra={"vm_name": spec.name})

    def _build_vm(self, spec: VirtualMachineSpec) -> VirtualMachine:
        if spec.image is None or spec.os_disk is None:
            raise ConfigurationError(f"VM {spec.name} requires an image and an OS disk")

        return VirtualMachine(
            location=spec.location or self._location,
            tags=dict(spec.tags),
            hardware_profile=HardwareProfile(vm_size=spec.size),
            storage_profile=StorageProfile(
                image_reference=_image_reference(spec.image),
                os_disk=OSDisk(
                    name=os_disk_name(spec.name),
                    os_type=spec.os_disk.os_type,
                    create_option=DiskCreateOptionTypes.FROM_IMAGE,
                    disk_size_gb=spec.os_disk.disk_size_gb,
                    managed_disk=ManagedDiskParameters(
                        storage_account_type=spec.os_disk.managed_disk.storage_account_type
                    ),
                ),
            ),
            os_profile=OSProfile(
                computer_name=spec.name,
                admin_username=ADMIN_USERNAME,
                linux_configuration=LinuxConfiguration(
                    disable_password_authentication=True,
                    ssh=SshConfiguration(
                        public_keys=[
                            SshPublicKey(path=AUTHORIZED_KEYS_PATH, key_data=spec.ssh_key_data)
                        ]
                    ),
                ),
            ),
            network_profile=NetworkProfile(
                network_interfaces=[
                    NetworkInterfaceReference(
                        id=network_interface_id(
                            self._subscription_id, self._resource_group, spec.nic_name
                        ),
                        primary=True,
                    )
                ]
            ),
        )


def _image_reference(image: Image) -> ImageReference:
    if image.resource_id:
        return ImageReference(id=image.resource_id)
    return ImageReference(
        publisher=image.publisher,
        offer=image.offer,
        sku=image.sku,
        version=image.version,
    )
