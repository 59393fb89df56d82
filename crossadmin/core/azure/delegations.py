"""Template deployments and cross-tenant delegation reads (Azure Resource Manager)."""
from __future__ import annotations

from .client import ArmClient

DEPLOYMENTS_API_VERSION = "2021-04-01"
MANAGED_SERVICES_API_VERSION = "2022-10-01"


class DelegationService:
    """Service for subscription-scope deployments and managed-services delegations."""

    def __init__(self, client: ArmClient):
        """Initialize delegation service.

        Args:
            client: Authenticated ARM client
        """
        self.client = client

    def _deployment_path(self, subscription_id: str, name: str) -> str:
        return f"/subscriptions/{subscription_id}/providers/Microsoft.Resources/deployments/{name}"

    def put_deployment(self, subscription_id: str, name: str, location: str, properties: dict) -> dict:
        """Create or update a subscription-scope deployment (same name updates in place)."""
        body = {"location": location, "properties": properties}
        return self.client.put(
            self._deployment_path(subscription_id, name),
            json=body,
            params={"api-version": DEPLOYMENTS_API_VERSION},
        )

    def get_deployment(self, subscription_id: str, name: str) -> dict:
        return self.client.get(
            self._deployment_path(subscription_id, name),
            params={"api-version": DEPLOYMENTS_API_VERSION},
        )

    def list_registration_definitions(self, subscription_id: str) -> list[dict]:
        return self.client.get_all(
            f"/subscriptions/{subscription_id}/providers/Microsoft.ManagedServices/registrationDefinitions",
            params={"api-version": MANAGED_SERVICES_API_VERSION},
        )

    def list_registration_assignments(self, subscription_id: str) -> list[dict]:
        """List registration assignments with their definitions expanded inline."""
        return self.client.get_all(
            f"/subscriptions/{subscription_id}/providers/Microsoft.ManagedServices/registrationAssignments",
            params={
                "api-version": MANAGED_SERVICES_API_VERSION,
                "$expandRegistrationDefinition": "true",
            },
        )
