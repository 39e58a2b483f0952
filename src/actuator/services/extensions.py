"""Startup script extension service backed by azure-mgmt-compute."""

from __future__ import annotations

import logging

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import VirtualMachineExtension

from ..converters import sdk_to_vm_extension
from ..errors import ProviderError
from ..models import VMExtension
from .base import Found, NotFound, VMExtensionSpec
from .calls import run_blocking

logger = logging.getLogger(__name__)

# Linux CustomScript extension; runs the base64 script once after provisioning
EXTENSION_PUBLISHER = "Microsoft.Azure.Extensions"
EXTENSION_TYPE = "CustomScript"
EXTENSION_TYPE_HANDLER_VERSION = "2.0"


class VMExtensionsService:
    """Create and read the bootstrap extension of a VM."""

    def __init__(
        self,
        client: ComputeManagementClient,
        *,
        resource_group: str,
        location: str,
        timeout_seconds: int,
    ) -> None:
        self._client = client
        self._resource_group = resource_group
        self._location = location
        self._timeout_seconds = timeout_seconds

    async def get(self, spec: VMExtensionSpec) -> Found[VMExtension] | NotFound:
        try:
            extension = await run_blocking(
                lambda: self._client.virtual_machine_extensions.get(
                    self._resource_group, spec.vm_name, spec.name
                ),
                timeout_seconds=self._timeout_seconds,
                operation_name=f"get VM extension {spec.name} on {spec.vm_name}",
            )
        except ResourceNotFoundError:
            return NotFound(spec.name)
        except AzureError as e:
            raise ProviderError(
                f"failed to get VM extension {spec.name} on {spec.vm_name}: {e}"
            ) from e

        return Found(sdk_to_vm_extension(extension, spec.vm_name))

    async def create_or_update(self, spec: VMExtensionSpec) -> None:
        extension = VirtualMachineExtension(
            location=spec.location or self._location,
            publisher=EXTENSION_PUBLISHER,
            type_properties_type=EXTENSION_TYPE,
            type_handler_version=EXTENSION_TYPE_HANDLER_VERSION,
            auto_upgrade_minor_version=True,
            # Protected settings are encrypted at rest; the script embeds a join token
            protected_settings={"script": spec.script_data},
        )

        logger.info(
            "Creating or updating VM extension",
            extra={"extension_name": spec.name, "vm_name": spec.vm_name},
        )
        try:
            await run_blocking(
                lambda: self._client.virtual_machine_extensions.begin_create_or_update(
                    self._resource_group, spec.vm_name, spec.name, extension
                ).result(),
                timeout_seconds=self._timeout_seconds,
                operation_name=f"create VM extension {spec.name} on {spec.vm_name}",
            )
        except AzureError as e:
            raise ProviderError(
                f"cannot create VM extension {spec.name} on {spec.vm_name}: {e}"
            ) from e

        logger.info(
            "Successfully created VM extension",
            extra={"extension_name": spec.name, "vm_name": spec.vm_name},
        )
