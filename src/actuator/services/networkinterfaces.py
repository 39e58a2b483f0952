"""Network interface service backed by azure-mgmt-network."""

from __future__ import annotations

import logging

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.network.models import (
    BackendAddressPool,
    InboundNatRule,
    IPAllocationMethod,
    LoadBalancer,
    NetworkInterface,
    NetworkInterfaceIPConfiguration,
    Subnet,
)

from ..errors import ProviderError
from .base import NetworkInterfaceSpec
from .calls import run_blocking

logger = logging.getLogger(__name__)

IP_CONFIGURATION_NAME = "pipConfig"


class NetworkInterfacesService:
    """Create and delete machine network interfaces.

    A control-plane interface joins the first backend pool of both the
    public and the internal load balancer, and the public load balancer's
    inbound NAT rule at ``spec.nat_rule``.
    """

    def __init__(
        self,
        client: NetworkManagementClient,
        *,
        resource_group: str,
        location: str,
        timeout_seconds: int,
    ) -> None:
        self._client = client
        self._resource_group = resource_group
        self._location = location
        self._timeout_seconds = timeout_seconds

    async def create_or_update(self, spec: NetworkInterfaceSpec) -> None:
        """Create or update a network interface and wait for completion."""
        try:
            subnet = await run_blocking(
                lambda: self._client.subnets.get(
                    self._resource_group, spec.vnet_name, spec.subnet_name
                ),
                timeout_seconds=self._timeout_seconds,
                operation_name=f"get subnet {spec.subnet_name}",
            )

            ip_config = NetworkInterfaceIPConfiguration(
                name=IP_CONFIGURATION_NAME,
                subnet=Subnet(id=subnet.id),
                private_ip_allocation_method=IPAllocationMethod.DYNAMIC,
                primary=True,
            )

            backend_pools: list[BackendAddressPool] = []
            if spec.public_lb_name:
                lb = await self._get_load_balancer(spec.public_lb_name)
                backend_pools.append(BackendAddressPool(id=_first_backend_pool_id(lb)))
                if spec.nat_rule is not None:
                    ip_config.load_balancer_inbound_nat_rules = [
                        InboundNatRule(id=_nat_rule_id(lb, spec.nat_rule))
                    ]
            if spec.internal_lb_name:
                lb = await self._get_load_balancer(spec.internal_lb_name)
                backend_pools.append(BackendAddressPool(id=_first_backend_pool_id(lb)))
            if backend_pools:
                ip_config.load_balancer_backend_address_pools = backend_pools

            nic = NetworkInterface(location=self._location, ip_configurations=[ip_config])

            logger.info(
                "Creating or updating network interface",
                extra={"nic_name": spec.name, "subnet": spec.subnet_name},
            )
            await run_blocking(
                lambda: self._client.network_interfaces.begin_create_or_update(
                    self._resource_group, spec.name, nic
                ).result(),
                timeout_seconds=self._timeout_seconds,
                operation_name=f"create network interface {spec.name}",
            )
        except AzureError as e:
            raise ProviderError(f"failed to create network interface {spec.name}: {e}") from e

        logger.info("Successfully created network interface", extra={"nic_name": spec.name})

    async def delete(self, spec: NetworkInterfaceSpec) -> None:
        """Delete a network interface. A missing interface is already deleted."""
        logger.info("Deleting network interface", extra={"nic_name": spec.name})
        try:
            await run_blocking(
                lambda: self._client.network_interfaces.begin_delete(
                    self._resource_group, spec.name
                ).result(),
                timeout_seconds=self._timeout_seconds,
                operation_name=f"delete network interface {spec.name}",
            )
        except ResourceNotFoundError:
            logger.info("Network interface already deleted", extra={"nic_name": spec.name})
            return
        except AzureError as e:
            raise ProviderError(f"failed to delete network interface {spec.name}: {e}") from e

        logger.info("Successfully deleted network interface", extra={"nic_name": spec.name})

    async def _get_load_balancer(self, name: str) -> LoadBalancer:
        return await run_blocking(
            lambda: self._client.load_balancers.get(self._resource_group, name),
            timeout_seconds=self._timeout_seconds,
            operation_name=f"get load balancer {name}",
        )


def _first_backend_pool_id(lb: LoadBalancer) -> str:
    if not lb.backend_address_pools:
        raise ProviderError(f"load balancer {lb.name} has no backend address pool")
    return lb.backend_address_pools[0].id


def _nat_rule_id(lb: LoadBalancer, index: int) -> str:
    rules = lb.inbound_nat_rules or []
    if index >= len(rules):
        raise ProviderError(
            f"load balancer {lb.name} has {len(rules)} inbound NAT rules, "
            f"rule {index} requested"
        )
    return rules[index].id
