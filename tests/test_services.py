"""Tests for the Azure-backed compute, network and extension services."""

from __future__ import annotations

import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from actuator.errors import ConfigurationError, ProviderError
from actuator.models import VM, Image, OSDisk, VMState
from actuator.services.base import (
    Found,
    NetworkInterfaceSpec,
    NotFound,
    VirtualMachineSpec,
    VMExtensionSpec,
)
from actuator.services.calls import run_blocking
from actuator.services.extensions import VMExtensionsService
from actuator.services.networkinterfaces import NetworkInterfacesService
from actuator.services.virtualmachines import VirtualMachinesService

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
RESOURCE_GROUP = "rg-demo"


def vm_service(client: MagicMock) -> VirtualMachinesService:
    return VirtualMachinesService(
        client,
        subscription_id=SUBSCRIPTION_ID,
        resource_group=RESOURCE_GROUP,
        location="westeurope",
        timeout_seconds=30,
    )


def vm_spec(**overrides) -> VirtualMachineSpec:
    values = {
        "name": "worker-1",
        "nic_name": "worker-1-nic",
        "ssh_key_data": "ssh-rsa AAAA test",
        "size": "Standard_D2s_v3",
        "os_disk": OSDisk(),
        "image": Image(publisher="Canonical", offer="UbuntuServer", sku="18.04-LTS"),
    }
    values.update(overrides)
    return VirtualMachineSpec(**values)


def sdk_vm(name: str = "worker-1", state: str = "Succeeded") -> SimpleNamespace:
    return SimpleNamespace(
        id=f"/subscriptions/{SUBSCRIPTION_ID}/virtualMachines/{name}",
        name=name,
        hardware_profile=SimpleNamespace(vm_size="Standard_D2s_v3"),
        provisioning_state=state,
        storage_profile=None,
        tags={"owner": "team-a"},
    )


def load_balancer(name: str, pools: int = 1, nat_rules: int = 1) -> SimpleNamespace:
    return SimpleNamespace(
        name=name,
        backend_address_pools=[SimpleNamespace(id=f"{name}-pool-{i}") for i in range(pools)],
        inbound_nat_rules=[SimpleNamespace(id=f"{name}-nat-{i}") for i in range(nat_rules)],
    )


class TestRunBlocking:
    """Tests for the executor bridge."""

    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        result = await run_blocking(lambda: 42, timeout_seconds=5, operation_name="answer")
        assert result == 42

    @pytest.mark.asyncio
    async def test_sdk_errors_pass_through(self) -> None:
        """Test that SDK exceptions are not translated here."""

        def fail() -> None:
            raise ResourceNotFoundError("gone")

        with pytest.raises(ResourceNotFoundError):
            await run_blocking(fail, timeout_seconds=5, operation_name="fail")

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_error(self) -> None:
        with pytest.raises(ProviderError) as exc_info:
            await run_blocking(
                lambda: time.sleep(0.5), timeout_seconds=0.01, operation_name="slow call"
            )

        assert "slow call timed out" in str(exc_info.value)


class TestVirtualMachinesService:
    """Tests for VirtualMachinesService."""

    @pytest.mark.asyncio
    async def test_get_found(self) -> None:
        client = MagicMock()
        client.virtual_machines.get.return_value = sdk_vm()

        result = await vm_service(client).get(VirtualMachineSpec(name="worker-1"))

        assert isinstance(result, Found)
        assert isinstance(result.value, VM)
        assert result.value.vm_size == "Standard_D2s_v3"
        assert result.value.provisioning_state == VMState.SUCCEEDED
        client.virtual_machines.get.assert_called_once_with(RESOURCE_GROUP, "worker-1")

    @pytest.mark.asyncio
    async def test_get_not_found(self) -> None:
        client = MagicMock()
        client.virtual_machines.get.side_effect = ResourceNotFoundError("not found")

        result = await vm_service(client).get(VirtualMachineSpec(name="worker-1"))

        assert result == NotFound("worker-1")

    @pytest.mark.asyncio
    async def test_get_error(self) -> None:
        client = MagicMock()
        client.virtual_machines.get.side_effect = HttpResponseError(message="throttled")

        with pytest.raises(ProviderError) as exc_info:
            await vm_service(client).get(VirtualMachineSpec(name="worker-1"))

        assert "worker-1" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_create_builds_linux_vm(self) -> None:
        """Test the VM parameters sent to Azure."""
        client = MagicMock()

        await vm_service(client).create_or_update(vm_spec())

        args = client.virtual_machines.begin_create_or_update.call_args.args
        assert args[0] == RESOURCE_GROUP
        assert args[1] == "worker-1"
        parameters = args[2]
        assert parameters.location == "westeurope"
        assert parameters.hardware_profile.vm_size == "Standard_D2s_v3"

        os_disk = parameters.storage_profile.os_disk
        assert os_disk.name == "worker-1_OSDisk"
        assert os_disk.disk_size_gb == 30
        assert os_disk.managed_disk.storage_account_type == "Premium_LRS"

        image = parameters.storage_profile.image_reference
        assert (image.publisher, image.offer, image.sku, image.version) == (
            "Canonical",
            "UbuntuServer",
            "18.04-LTS",
            "latest",
        )

        linux = parameters.os_profile.linux_configuration
        assert parameters.os_profile.admin_username == "azureuser"
        assert linux.disable_password_authentication is True
        assert linux.ssh.public_keys[0].key_data == "ssh-rsa AAAA test"

        nic_ref = parameters.network_profile.network_interfaces[0]
        assert nic_ref.id.endswith(
            f"/resourceGroups/{RESOURCE_GROUP}/providers/Microsoft.Network/"
            "networkInterfaces/worker-1-nic"
        )
        assert nic_ref.primary is True
        client.virtual_machines.begin_create_or_update.return_value.result.assert_called_once()

    @pytest.mark.asyncio
    async def test_create_with_custom_image(self) -> None:
        client = MagicMock()
        image_id = "/subscriptions/x/resourceGroups/img/providers/Microsoft.Compute/images/k8s"

        await vm_service(client).create_or_update(vm_spec(image=Image(resource_id=image_id)))

        parameters = client.virtual_machines.begin_create_or_update.call_args.args[2]
        assert parameters.storage_profile.image_reference.id == image_id
        assert parameters.storage_profile.image_reference.publisher is None

    @pytest.mark.asyncio
    async def test_create_requires_image(self) -> None:
        client = MagicMock()

        with pytest.raises(ConfigurationError):
            await vm_service(client).create_or_update(vm_spec(image=None))

        client.virtual_machines.begin_create_or_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_error(self) -> None:
        client = MagicMock()
        client.virtual_machines.begin_create_or_update.side_effect = HttpResponseError(
            message="quota exceeded"
        )

        with pytest.raises(ProviderError) as exc_info:
            await vm_service(client).create_or_update(vm_spec())

        assert "quota exceeded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_delete_missing_vm_succeeds(self) -> None:
        client = MagicMock()
        client.virtual_machines.begin_delete.side_effect = ResourceNotFoundError("gone")

        await vm_service(client).delete(VirtualMachineSpec(name="worker-1"))

    @pytest.mark.asyncio
    async def test_delete_error(self) -> None:
        client = MagicMock()
        client.virtual_machines.begin_delete.side_effect = HttpResponseError(message="locked")

        with pytest.raises(ProviderError):
            await vm_service(client).delete(VirtualMachineSpec(name="worker-1"))


class TestNetworkInterfacesService:
    """Tests for NetworkInterfacesService."""

    @staticmethod
    def _service(client: MagicMock) -> NetworkInterfacesService:
        return NetworkInterfacesService(
            client, resource_group=RESOURCE_GROUP, location="westeurope", timeout_seconds=30
        )

    @pytest.mark.asyncio
    async def test_node_interface(self) -> None:
        """Test a worker NIC: subnet only, no load balancers."""
        client = MagicMock()
        client.subnets.get.return_value = SimpleNamespace(id="node-subnet-id")
        spec = NetworkInterfaceSpec(
            name="worker-1-nic", vnet_name="demo-vnet", subnet_name="demo-node-subnet"
        )

        await self._service(client).create_or_update(spec)

        client.subnets.get.assert_called_once_with(RESOURCE_GROUP, "demo-vnet", "demo-node-subnet")
        client.load_balancers.get.assert_not_called()
        rg, name, nic = client.network_interfaces.begin_create_or_update.call_args.args
        assert (rg, name) == (RESOURCE_GROUP, "worker-1-nic")
        ip_config = nic.ip_configurations[0]
        assert ip_config.name == "pipConfig"
        assert ip_config.subnet.id == "node-subnet-id"
        assert ip_config.primary is True
        assert not ip_config.load_balancer_backend_address_pools

    @pytest.mark.asyncio
    async def test_control_plane_interface(self) -> None:
        """Test a control-plane NIC: both backend pools and the NAT rule."""
        client = MagicMock()
        client.subnets.get.return_value = SimpleNamespace(id="cp-subnet-id")
        client.load_balancers.get.side_effect = lambda rg, name: load_balancer(name, nat_rules=2)
        spec = NetworkInterfaceSpec(
            name="cp-1-nic",
            vnet_name="demo-vnet",
            subnet_name="demo-controlplane-subnet",
            public_lb_name="demo-public-lb",
            internal_lb_name="demo-internal-lb",
            nat_rule=0,
        )

        await self._service(client).create_or_update(spec)

        nic = client.network_interfaces.begin_create_or_update.call_args.args[2]
        ip_config = nic.ip_configurations[0]
        assert [p.id for p in ip_config.load_balancer_backend_address_pools] == [
            "demo-public-lb-pool-0",
            "demo-internal-lb-pool-0",
        ]
        assert [r.id for r in ip_config.load_balancer_inbound_nat_rules] == ["demo-public-lb-nat-0"]

    @pytest.mark.asyncio
    async def test_missing_nat_rule(self) -> None:
        client = MagicMock()
        client.subnets.get.return_value = SimpleNamespace(id="cp-subnet-id")
        client.load_balancers.get.return_value = load_balancer("demo-public-lb", nat_rules=0)
        spec = NetworkInterfaceSpec(
            name="cp-1-nic",
            vnet_name="demo-vnet",
            subnet_name="demo-controlplane-subnet",
            public_lb_name="demo-public-lb",
            nat_rule=0,
        )

        with pytest.raises(ProviderError) as exc_info:
            await self._service(client).create_or_update(spec)

        assert "NAT" in str(exc_info.value)
        client.network_interfaces.begin_create_or_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_backend_pool(self) -> None:
        client = MagicMock()
        client.subnets.get.return_value = SimpleNamespace(id="cp-subnet-id")
        client.load_balancers.get.return_value = load_balancer("demo-internal-lb", pools=0)
        spec = NetworkInterfaceSpec(
            name="cp-1-nic",
            vnet_name="demo-vnet",
            subnet_name="demo-controlplane-subnet",
            internal_lb_name="demo-internal-lb",
        )

        with pytest.raises(ProviderError):
            await self._service(client).create_or_update(spec)

    @pytest.mark.asyncio
    async def test_missing_subnet(self) -> None:
        client = MagicMock()
        client.subnets.get.side_effect = ResourceNotFoundError("no subnet")
        spec = NetworkInterfaceSpec(
            name="worker-1-nic", vnet_name="demo-vnet", subnet_name="demo-node-subnet"
        )

        with pytest.raises(ProviderError) as exc_info:
            await self._service(client).create_or_update(spec)

        assert "worker-1-nic" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_delete_missing_interface_succeeds(self) -> None:
        client = MagicMock()
        client.network_interfaces.begin_delete.side_effect = ResourceNotFoundError("gone")

        await self._service(client).delete(
            NetworkInterfaceSpec(name="worker-1-nic", vnet_name="demo-vnet")
        )

    @pytest.mark.asyncio
    async def test_delete_error(self) -> None:
        client = MagicMock()
        client.network_interfaces.begin_delete.side_effect = HttpResponseError(message="in use")

        with pytest.raises(ProviderError):
            await self._service(client).delete(
                NetworkInterfaceSpec(name="worker-1-nic", vnet_name="demo-vnet")
            )


class TestVMExtensionsService:
    """Tests for VMExtensionsService."""

    @staticmethod
    def _service(client: MagicMock) -> VMExtensionsService:
        return VMExtensionsService(
            client, resource_group=RESOURCE_GROUP, location="westeurope", timeout_seconds=30
        )

    @pytest.mark.asyncio
    async def test_get_found(self) -> None:
        client = MagicMock()
        client.virtual_machine_extensions.get.return_value = SimpleNamespace(
            name="startupScript", provisioning_state="Succeeded"
        )

        result = await self._service(client).get(
            VMExtensionSpec(name="startupScript", vm_name="worker-1")
        )

        assert isinstance(result, Found)
        assert result.value.vm_name == "worker-1"
        client.virtual_machine_extensions.get.assert_called_once_with(
            RESOURCE_GROUP, "worker-1", "startupScript"
        )

    @pytest.mark.asyncio
    async def test_get_not_found(self) -> None:
        client = MagicMock()
        client.virtual_machine_extensions.get.side_effect = ResourceNotFoundError("none")

        result = await self._service(client).get(
            VMExtensionSpec(name="startupScript", vm_name="worker-1")
        )

        assert isinstance(result, NotFound)

    @pytest.mark.asyncio
    async def test_create_uses_protected_custom_script(self) -> None:
        client = MagicMock()
        spec = VMExtensionSpec(name="startupScript", vm_name="worker-1", script_data="ZWNobw==")

        await self._service(client).create_or_update(spec)

        rg, vm_name, name, extension = (
            client.virtual_machine_extensions.begin_create_or_update.call_args.args
        )
        assert (rg, vm_name, name) == (RESOURCE_GROUP, "worker-1", "startupScript")
        assert extension.publisher == "Microsoft.Azure.Extensions"
        assert extension.type_properties_type == "CustomScript"
        assert extension.type_handler_version == "2.0"
        assert extension.protected_settings == {"script": "ZWNobw=="}
        assert extension.settings is None

    @pytest.mark.asyncio
    async def test_create_error(self) -> None:
        client = MagicMock()
        client.virtual_machine_extensions.begin_create_or_update.side_effect = HttpResponseError(
            message="conflict"
        )

        with pytest.raises(ProviderError):
            await self._service(client).create_or_update(
                VMExtensionSpec(name="startupScript", vm_name="worker-1")
            )
