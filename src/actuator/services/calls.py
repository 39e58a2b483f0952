"""Running blocking SDK calls from the async reconciler.

The Azure and Kubernetes clients are synchronous. Calls run in the
default executor and are bounded by a timeout so a hung API call cannot
stall a reconciliation pass forever. Cancelling the awaiting task stops
waiting on the call; no compensating action is taken.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TypeVar

from ..errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_blocking(
    operation: Callable[[], T],
    *,
    timeout_seconds: float,
    operation_name: str,
) -> T:
    """Run a blocking SDK call with a timeout.

    Args:
        operation: Zero-argument callable performing the call.
        timeout_seconds: Maximum time to wait for completion.
        operation_name: Human-readable name for logging and errors.

    Returns:
        The result of the call.

    Raises:
        ProviderError: If the call exceeds the timeout.
        Exception: Whatever the SDK call raised, unchanged.
    """
    loop = asyncio.get_event_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, operation),
            timeout=timeout_seconds,
        )
    except TimeoutError as e:
        logger.error(
            "External call timed out",
            extra={"operation": operation_name, "timeout_seconds": timeout_seconds},
        )
        raise ProviderError(f"{operation_name} timed out after {timeout_seconds}s") from e
