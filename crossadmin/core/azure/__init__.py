"""Microsoft Graph and Azure Resource Manager client library.

Architecture:
- client.py: HTTP clients with token refresh, paging and transient retry
- groups.py: Role-assignable security groups
- roles.py: Built-in directory role activation and membership
- users.py: Guest lookup, invitation and attribute tagging
- entitlement.py: Catalogs, access packages, resources and policies
- subscriptions.py: Subscriptions, role assignments, role definitions
- delegations.py: Template deployments and delegation reads
- exceptions.py: Typed exceptions for error handling

Usage:
    from crossadmin.core.azure import GraphClient, GroupService

    graph = GraphClient()
    group, created = GroupService(graph).ensure_group("Partner Admins")
"""
from .client import (
    AzureRestClient,
    GraphClient,
    ArmClient,
    create_clients,
    odata_quote,
    REQUEST_TIMEOUT,
)
from .exceptions import (
    ProvisioningError,
    ConfigurationError,
    AzureAPIError,
    TransientAPIError,
    InsufficientPermissionsError,
    VerificationMismatch,
    BindingError,
    ResourceRoleNotFoundError,
    DeploymentFailedError,
    PipelineAborted,
)
from .groups import GroupService
from .roles import DirectoryRoleService
from .users import GuestUserService
from .entitlement import EntitlementService, ORIGIN_SYSTEM_GROUP
from .subscriptions import SubscriptionService
from .delegations import DelegationService

__all__ = [
    # Clients
    "AzureRestClient",
    "GraphClient",
    "ArmClient",
    "create_clients",
    "odata_quote",
    "REQUEST_TIMEOUT",

    # Exceptions
    "ProvisioningError",
    "ConfigurationError",
    "AzureAPIError",
    "TransientAPIError",
    "InsufficientPermissionsError",
    "VerificationMismatch",
    "BindingError",
    "ResourceRoleNotFoundError",
    "DeploymentFailedError",
    "PipelineAborted",

    # Services
    "GroupService",
    "DirectoryRoleService",
    "GuestUserService",
    "EntitlementService",
    "ORIGIN_SYSTEM_GROUP",
    "SubscriptionService",
    "DelegationService",
]
