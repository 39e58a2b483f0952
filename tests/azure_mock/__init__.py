"""Azure and cluster API mocks for reconciler testing.

In-memory stand-ins for the reconciler's collaborators (compute, network,
extension, token issuance, node inventory, machine registry). They keep
resource state, support error injection, and record every call in one
ordered journal.

Usage:
    from azure_mock import MockAzureContext, make_scope

    ctx = MockAzureContext()
    await ctx.reconciler(make_scope("worker-1")).create()
    assert ctx.journal.as_tuples()[0] == ("nic", "create_or_update", "worker-1-nic")
"""

from .cluster import (
    MOCK_BOOTSTRAP_TOKEN,
    MockMachineRegistry,
    MockNodeInventory,
    MockTokenIssuer,
    make_node,
)
from .compute import MockNetworkInterfaces, MockVirtualMachines, MockVMExtensions
from .context import (
    ADMIN_KUBECONFIG,
    CLUSTER_NAME,
    SSH_PUBLIC_KEY_B64,
    MockAzureContext,
    make_cluster_config,
    make_machine,
    make_scope,
)
from .journal import Call, CallJournal

__all__ = [
    "ADMIN_KUBECONFIG",
    "CLUSTER_NAME",
    "Call",
    "CallJournal",
    "MOCK_BOOTSTRAP_TOKEN",
    "MockAzureContext",
    "MockMachineRegistry",
    "MockNetworkInterfaces",
    "MockNodeInventory",
    "MockTokenIssuer",
    "MockVMExtensions",
    "MockVirtualMachines",
    "SSH_PUBLIC_KEY_B64",
    "make_cluster_config",
    "make_machine",
    "make_node",
    "make_scope",
]
