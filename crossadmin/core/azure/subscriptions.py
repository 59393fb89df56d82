"""Subscription enumeration and RBAC reads (Azure Resource Manager)."""
from __future__ import annotations
from typing import Optional

from crossadmin.core.models import Subscription
from .client import ArmClient
from .exceptions import AzureAPIError

SUBSCRIPTIONS_API_VERSION = "2022-12-01"
AUTHORIZATION_API_VERSION = "2022-04-01"


class SubscriptionService:
    """Service for subscription and role assignment queries."""

    def __init__(self, client: ArmClient):
        """Initialize subscription service.

        Args:
            client: Authenticated ARM client
        """
        self.client = client

    def list_subscriptions(self) -> list[Subscription]:
        """Return every subscription visible to the acting credential."""
        items = self.client.get_all("/subscriptions", params={"api-version": SUBSCRIPTIONS_API_VERSION})
        return [
            Subscription(
                id=item["subscriptionId"],
                display_name=item.get("displayName", ""),
                state=item.get("state", "Enabled"),
            )
            for item in items
        ]

    def list_role_assignments(self, subscription_id: str, principal_id: Optional[str] = None) -> list[dict]:
        """List role assignments at subscription scope, optionally for one principal.

        ``assignedTo`` includes assignments the principal holds through group
        membership and assignments inherited from parent scopes.
        """
        params = {"api-version": AUTHORIZATION_API_VERSION}
        if principal_id:
            params["$filter"] = f"assignedTo('{principal_id}')"
        return self.client.get_all(
            f"/subscriptions/{subscription_id}/providers/Microsoft.Authorization/roleAssignments",
            params=params,
        )

    def get_role_name(self, role_definition_id: str, scope: str = "") -> Optional[str]:
        """Resolve a role definition id (full resource id or bare GUID) to its role name.

        Bare GUIDs are looked up under ``scope`` (e.g. "/subscriptions/<id>").

        Returns:
            Role name or None if the definition cannot be resolved
        """
        path = role_definition_id
        if not path.startswith("/"):
            path = f"{scope}/providers/Microsoft.Authorization/roleDefinitions/{role_definition_id}"
        try:
            definition = self.client.get(path, params={"api-version": AUTHORIZATION_API_VERSION})
        except AzureAPIError:
            return None
        return (definition.get("properties") or {}).get("roleName")
