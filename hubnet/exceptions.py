"""
Error taxonomy for hubnet

Two channels:
- Validation errors (malformed network, overlap, missing prerequisites).
  These are never retried; the caller has to fix the data.
- Deployment errors (remote transport, verification, rollback).
  Remote execution failures may be retried by the caller.
"""

from typing import List, Optional, Sequence


class HubNetError(Exception):
    """Base class for all hubnet errors"""

    error_code = "HUBNET_ERROR"


# =============================================================================
# Validation channel
# =============================================================================

class InvalidNetworkSpecification(HubNetError, ValueError):
    """Malformed CIDR or a network that cannot host a hub"""

    error_code = "INVALID_NETWORK"


class UnsafeConfigValue(HubNetError, ValueError):
    """A value that would break out of its line or PostUp command in a config"""

    error_code = "UNSAFE_CONFIG_VALUE"


class AddressSpaceExhausted(HubNetError):
    """No free network or host address left in the pool"""

    error_code = "ADDRESS_SPACE_EXHAUSTED"


class CidrOverlapConflict(HubNetError):
    """Candidate network overlaps one or more active hub networks"""

    error_code = "CIDR_OVERLAP"

    def __init__(self, message: str, hub_ids: Sequence[int] = ()):
        super().__init__(message)
        self.hub_ids: List[int] = list(hub_ids)


class MissingDeploymentPrerequisite(HubNetError):
    """Hub is missing something it needs before it can be deployed"""

    error_code = "MISSING_PREREQUISITE"

    def __init__(self, message: str, missing: Sequence[str] = ()):
        super().__init__(message)
        self.missing: List[str] = list(missing)


class KeyMaterialError(HubNetError):
    """Key generation or secret storage is unusable"""

    error_code = "KEY_MATERIAL_ERROR"


class InvalidStateTransition(HubNetError):
    """A status change the state machine does not allow"""

    error_code = "INVALID_STATE_TRANSITION"


class ResourceNotFound(HubNetError):
    error_code = "NOT_FOUND"


class ResourceConflict(HubNetError):
    """Duplicate name or address"""

    error_code = "CONFLICT"


# =============================================================================
# Deployment channel
# =============================================================================

class DeploymentError(HubNetError):
    """Base for failures that happen while talking to a remote host"""

    error_code = "DEPLOYMENT_ERROR"


class RemoteExecutionFailure(DeploymentError):
    """Transport failure, timeout or a remote command that exited non-zero"""

    error_code = "REMOTE_EXECUTION_FAILURE"

    def __init__(
        self,
        message: str,
        host: Optional[str] = None,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.host = host
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class VerificationFailure(DeploymentError):
    """Config was applied but the interface does not look healthy"""

    error_code = "VERIFICATION_FAILURE"


class RollbackFailure(DeploymentError):
    """
    Restoring the previous config failed.

    The remote host may be in an inconsistent state and needs manual
    intervention.
    """

    error_code = "ROLLBACK_FAILURE"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
