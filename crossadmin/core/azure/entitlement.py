"""Entitlement management (catalogs, access packages, resources, policies)."""
from __future__ import annotations
from typing import Optional

from .client import GraphClient, odata_quote

EM_ROOT = "/identityGovernance/entitlementManagement"
ORIGIN_SYSTEM_GROUP = "AadGroup"


class EntitlementService:
    """Thin wrapper over the entitlement management endpoints.

    Methods return the platform's JSON representations unchanged so that
    nested identifiers can be copied verbatim into dependent payloads.
    """

    def __init__(self, client: GraphClient):
        """Initialize entitlement service.

        Args:
            client: Authenticated Graph client
        """
        self.client = client

    # Catalogs
    def find_catalogs(self, display_name: str) -> list[dict]:
        return self.client.get_all(
            f"{EM_ROOT}/catalogs",
            params={"$filter": f"displayName eq {odata_quote(display_name)}"},
        )

    def create_catalog(self, display_name: str, description: str, externally_visible: bool = True) -> dict:
        payload = {
            "displayName": display_name,
            "description": description or display_name,
            "isExternallyVisible": externally_visible,
        }
        return self.client.post(f"{EM_ROOT}/catalogs", json=payload)

    # Access packages
    def find_access_packages(self, display_name: str, catalog_id: str) -> list[dict]:
        """Return packages with this display name that belong to ``catalog_id``."""
        packages = self.client.get_all(
            f"{EM_ROOT}/accessPackages",
            params={
                "$filter": f"displayName eq {odata_quote(display_name)}",
                "$expand": "catalog",
            },
        )
        return [package for package in packages if (package.get("catalog") or {}).get("id") == catalog_id]

    def create_access_package(self, display_name: str, description: str, catalog_id: str) -> dict:
        payload = {
            "displayName": display_name,
            "description": description or display_name,
            "isHidden": False,
            "catalog": {"id": catalog_id},
        }
        return self.client.post(f"{EM_ROOT}/accessPackages", json=payload)

    # Catalog resources
    def find_catalog_resources(self, catalog_id: str, origin_id: str) -> list[dict]:
        """Return resources registered in the catalog for a directory group, scopes included."""
        resources = self.client.get_all(
            f"{EM_ROOT}/catalogs/{catalog_id}/resources",
            params={
                "$filter": f"originId eq {odata_quote(origin_id)}",
                "$expand": "scopes",
            },
        )
        return [resource for resource in resources if resource.get("originSystem") == ORIGIN_SYSTEM_GROUP]

    def request_group_resource(self, catalog_id: str, group_id: str) -> dict:
        """Submit an immediate (adminAdd) request registering a group in the catalog."""
        payload = {
            "requestType": "adminAdd",
            "resource": {
                "originId": group_id,
                "originSystem": ORIGIN_SYSTEM_GROUP,
            },
            "catalog": {"id": catalog_id},
        }
        return self.client.post(f"{EM_ROOT}/resourceRequests", json=payload)

    def list_resource_roles(self, catalog_id: str, resource_id: str) -> list[dict]:
        filter_expr = (
            f"originSystem eq {odata_quote(ORIGIN_SYSTEM_GROUP)} and resource/id eq {odata_quote(resource_id)}"
        )
        return self.client.get_all(
            f"{EM_ROOT}/catalogs/{catalog_id}/resourceRoles",
            params={"$filter": filter_expr, "$expand": "resource"},
        )

    # Resource role scopes
    def list_role_scopes(self, access_package_id: str) -> list[dict]:
        package = self.client.get(
            f"{EM_ROOT}/accessPackages/{access_package_id}",
            params={"$expand": "resourceRoleScopes($expand=role,scope)"},
        )
        return package.get("resourceRoleScopes") or []

    def create_role_scope(self, access_package_id: str, payload: dict) -> dict:
        return self.client.post(f"{EM_ROOT}/accessPackages/{access_package_id}/resourceRoleScopes", json=payload)

    # Assignment policies
    def list_assignment_policies(self) -> list[dict]:
        return self.client.get_all(f"{EM_ROOT}/assignmentPolicies", params={"$expand": "accessPackage"})

    def create_assignment_policy(self, payload: dict) -> dict:
        return self.client.post(f"{EM_ROOT}/assignmentPolicies", json=payload)


def policy_package_id(policy: dict) -> Optional[str]:
    """Return the id of the access package a policy belongs to."""
    return (policy.get("accessPackage") or {}).get("id")
