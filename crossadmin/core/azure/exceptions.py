"""Typed exceptions for directory, entitlement and resource-manager operations."""
from __future__ import annotations

from typing import Optional


class ProvisioningError(Exception):
    """Base exception for all provisioning operations."""
    pass


class ConfigurationError(ProvisioningError):
    """Required input, identifier or platform object is missing or malformed."""
    pass


class AzureAPIError(ProvisioningError):
    """HTTP error from Microsoft Graph or Azure Resource Manager.

    Attributes:
        status_code: HTTP status code (0 for network failures)
        message: Error message from response
        endpoint: API endpoint that failed
    """

    def __init__(self, status_code: int, message: str, endpoint: str):
        self.status_code = status_code
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"[{status_code}] {endpoint}: {message}")


class TransientAPIError(AzureAPIError):
    """Throttling, server-side or network failure; safe to retry."""

    def __init__(self, status_code: int, message: str, endpoint: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(status_code, message, endpoint)


class InsufficientPermissionsError(AzureAPIError):
    """Caller lacks rights for the requested read or write."""
    pass


class VerificationMismatch(ProvisioningError):
    """A write was accepted but a read-back did not reflect it in time.

    Attributes:
        entity: Representation returned by the accepted write, if any
    """

    def __init__(self, message: str, entity: Optional[dict] = None):
        self.entity = entity
        super().__init__(message)


class BindingError(ProvisioningError):
    """A role-scope binding references an unresolved role, resource or scope."""
    pass


class ResourceRoleNotFoundError(ProvisioningError):
    """Requested role is not offered by the catalog resource."""
    pass


class DeploymentFailedError(ProvisioningError):
    """Template deployment ended in a non-successful state."""

    def __init__(self, deployment_name: str, state: str, detail: str = ""):
        self.deployment_name = deployment_name
        self.state = state
        self.detail = detail
        message = f"Deployment '{deployment_name}' ended in state '{state}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PipelineAborted(ProvisioningError):
    """A fatal error stopped a pipeline.

    Attributes:
        stage: Stage that failed
        key: Identifying key (display name, email, subscription id)
        cause: Underlying exception
    """

    def __init__(self, stage: str, key: str, cause: Exception):
        self.stage = stage
        self.key = key
        self.cause = cause
        super().__init__(f"{stage} ({key}): {cause}")
