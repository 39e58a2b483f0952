"""Translation of Azure SDK objects into actuator models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from azure.mgmt.compute.models import VirtualMachine, VirtualMachineExtension

from .models import VM, Image, ManagedDisk, OSDisk, VMExtension, VMState


def sdk_to_vm(vm: VirtualMachine) -> VM:
    """Convert an Azure VirtualMachine into a VM model.

    Args:
        vm: VirtualMachine returned by the compute client.

    Returns:
        VM with size, provisioning state, image and OS disk filled in where
        Azure reported them.
    """
    vm_size = ""
    if vm.hardware_profile and vm.hardware_profile.vm_size:
        vm_size = _enum_value(vm.hardware_profile.vm_size)

    image: Image | None = None
    os_disk: OSDisk | None = None
    storage = vm.storage_profile
    if storage is not None:
        image = _sdk_to_image(storage.image_reference)
        if storage.os_disk is not None:
            os_disk = _sdk_to_os_disk(storage.os_disk)

    return VM(
        id=vm.id or "",
        name=vm.name or "",
        vm_size=vm_size,
        provisioning_state=VMState(vm.provisioning_state or VMState.UNKNOWN.value),
        image=image,
        os_disk=os_disk,
        tags=dict(vm.tags) if vm.tags else {},
    )


def sdk_to_vm_extension(extension: VirtualMachineExtension, vm_name: str) -> VMExtension:
    return VMExtension(
        name=extension.name or "",
        vm_name=vm_name,
        provisioning_state=extension.provisioning_state,
    )


def _enum_value(value: Any) -> str:
    # SDK enums mix in str but str() renders the member name
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _sdk_to_image(ref: Any) -> Image | None:
    if ref is None:
        return None
    if ref.id:
        return Image(id=ref.id)
    if ref.publisher and ref.offer and ref.sku:
        return Image(
            publisher=ref.publisher,
            offer=ref.offer,
            sku=ref.sku,
            version=ref.version,
        )
    return None


def _sdk_to_os_disk(disk: Any) -> OSDisk:
    os_disk = OSDisk()
    if disk.os_type:
        os_disk.os_type = _enum_value(disk.os_type)
    if disk.disk_size_gb:
        os_disk.disk_size_gb = disk.disk_size_gb
    if disk.managed_disk is not None and disk.managed_disk.storage_account_type:
        # Azure may report storage types newer than the validator knows
        os_disk.managed_disk = ManagedDisk.model_construct(
            storage_account_type=_enum_value(disk.managed_disk.storage_account_type)
        )
    return os_disk
