"""Error classification for machine reconciliation.

Callers need to tell "not ready yet, try again" apart from "will never
succeed without operator intervention". Every error carries a ``retryable``
flag for that purpose:

- ConfigurationError: permanent (bad role label, missing admin credentials)
- ImmutableViolation: permanent (forbidden change to a provisioned VM)
- NotFoundError, ProviderError, NodeResolutionError: retryable
"""

from __future__ import annotations


class ActuatorError(Exception):
    """Base class for all reconciliation errors."""

    retryable: bool = True


class ConfigurationError(ActuatorError):
    """Raised when machine or operator configuration is invalid."""

    retryable = False


class NotFoundError(ActuatorError):
    """Raised when a resource required by the operation does not exist."""

    pass


class ProviderError(ActuatorError):
    """Raised when a call to Azure or the cluster API fails."""

    pass


class ImmutableViolation(ActuatorError):
    """Raised when an update attempts to change immutable VM state."""

    retryable = False


class NodeResolutionError(ActuatorError):
    """Raised when no cluster node matches a provisioned VM."""

    pass
