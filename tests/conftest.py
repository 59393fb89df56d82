"""Pytest shared fixtures: network guard rail and an in-memory tenant."""
import os
import pathlib
import sys
import uuid
from typing import Optional

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
import requests

from crossadmin.config.settings import ProvisioningConfig
from crossadmin.core.azure.exceptions import AzureAPIError, ConfigurationError, VerificationMismatch
from crossadmin.core.models import Subscription
from crossadmin.core.resolver import first_by_id


# ─────────────────────────────────────────────────────────────────────────────
# Network Guard Rails
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def _block_network(monkeypatch, request):
    """
    Prevent unit tests from reaching Graph or ARM.

    Integration tests are explicitly marked with @pytest.mark.integration and
    are allowed to perform real HTTP calls by skipping this fixture.
    """
    if request.node.get_closest_marker("integration"):
        return

    def _blocked(method, url, *args, **kwargs):
        raise RuntimeError(f"Unexpected HTTP {method} in unit test: {url}")

    monkeypatch.setattr(requests, "request", _blocked)


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    """Settings must come from the test, not from the developer's shell."""
    for name in list(os.environ):
        if name.startswith("CROSSADMIN_"):
            monkeypatch.delenv(name, raising=False)


# ─────────────────────────────────────────────────────────────────────────────
# In-memory tenant
# ─────────────────────────────────────────────────────────────────────────────
class FakeTenant:
    """Directory, entitlement and subscription state shared by the fake services.

    ``mutations`` lists every write as (kind, key) in call order.
    """

    def __init__(self):
        self._next = 0
        self.mutations: list[tuple[str, str]] = []
        # Directory
        self.groups: list[dict] = []
        self.role_templates: dict[str, str] = {"Global Reader": self.new_id()}
        self.active_roles: list[dict] = []
        self.role_listing_lag = False
        self.role_members: dict[str, set] = {}
        self.users: list[dict] = []
        # Guest behaviour knobs
        self.invite_failures: set[str] = set()
        self.tag_write_failures: set[str] = set()
        self.lookup_delay: dict[str, int] = {}
        self.tag_read_failures: dict[str, int] = {}
        # Entitlement
        self.catalogs: list[dict] = []
        self.packages: list[dict] = []
        self.resources: list[dict] = []
        self.resource_roles: dict[str, list[dict]] = {}
        self.role_scopes: dict[str, list[dict]] = {}
        self.policies: list[dict] = []
        self.reject_role_scopes = False
        self.resource_visibility_delay = 0
        # Subscriptions
        self.subscriptions: list[Subscription] = []
        self.role_assignments: dict[str, list[str]] = {}
        self.role_definitions: dict[str, str] = {}
        self.deployments: dict[tuple[str, str], dict] = {}
        self.deployment_states: dict[str, list[str]] = {}
        self.registration_definitions: dict[str, list[dict]] = {}
        self.registration_assignments: dict[str, list[dict]] = {}
        self.unreadable_delegations: set[str] = set()

    def new_id(self) -> str:
        self._next += 1
        return str(uuid.UUID(int=self._next))

    def record(self, kind: str, key: str) -> None:
        self.mutations.append((kind, key))

    def count(self, kind: str) -> int:
        return sum(1 for mutation_kind, _ in self.mutations if mutation_kind == kind)

    def add_subscription(self, name: str, state: str = "Enabled", roles: tuple = ()) -> Subscription:
        subscription = Subscription(self.new_id(), name, state)
        self.subscriptions.append(subscription)
        self.role_assignments[subscription.id] = list(roles)
        return subscription


class FakeGroups:
    def __init__(self, tenant: FakeTenant):
        self.tenant = tenant

    def ensure_group(self, display_name: str, description: str = ""):
        matches = [group for group in self.tenant.groups if group["displayName"] == display_name]
        if matches:
            return first_by_id(matches), False
        group = {"id": self.tenant.new_id(), "displayName": display_name, "isAssignableToRole": True}
        self.tenant.groups.append(group)
        self.tenant.record("group", display_name)
        return group, True


class FakeRoles:
    def __init__(self, tenant: FakeTenant):
        self.tenant = tenant

    def _active(self, display_name: str) -> Optional[dict]:
        return next((role for role in self.tenant.active_roles if role["displayName"] == display_name), None)

    def require_role_available(self, display_name: str) -> None:
        if not self._active(display_name) and display_name not in self.tenant.role_templates:
            raise ConfigurationError(f"Directory role '{display_name}' not found")

    def activate(self, display_name: str):
        active = self._active(display_name)
        if active:
            return active, False
        if display_name not in self.tenant.role_templates:
            raise ConfigurationError(f"Directory role template '{display_name}' not found in this tenant")
        role = {"id": self.tenant.new_id(), "displayName": display_name,
                "roleTemplateId": self.tenant.role_templates[display_name]}
        self.tenant.active_roles.append(role)
        self.tenant.record("role-activation", display_name)
        if self.tenant.role_listing_lag:
            raise VerificationMismatch(f"role '{display_name}' activated but not listed", entity=role)
        return role, True

    def ensure_assigned(self, role_id: str, principal_id: str) -> bool:
        members = self.tenant.role_members.setdefault(role_id, set())
        if principal_id in members:
            return False
        members.add(principal_id)
        self.tenant.record("role-assignment", principal_id)
        return True


class FakeUsers:
    def __init__(self, tenant: FakeTenant):
        self.tenant = tenant

    def find_by_email(self, email: str) -> Optional[dict]:
        key = email.lower()
        if self.tenant.lookup_delay.get(key, 0) > 0:
            self.tenant.lookup_delay[key] -= 1
            return None
        return first_by_id(user for user in self.tenant.users if user["mail"].lower() == key)

    def invite(self, email: str, display_name: str) -> dict:
        if email.lower() in self.tenant.invite_failures:
            raise AzureAPIError(400, "Invitation rejected", "/invitations")
        user = {"id": self.tenant.new_id(), "mail": email, "displayName": display_name, "employeeId": None}
        self.tenant.users.append(user)
        self.tenant.record("invitation", email)
        return user

    def _user(self, user_id: str) -> dict:
        return next(user for user in self.tenant.users if user["id"] == user_id)

    def get_tag(self, user_id: str) -> Optional[str]:
        user = self._user(user_id)
        key = user["mail"].lower()
        if self.tenant.tag_read_failures.get(key, 0) > 0:
            self.tenant.tag_read_failures[key] -= 1
            raise AzureAPIError(404, "Request_ResourceNotFound", f"/users/{user_id}")
        return user.get("employeeId")

    def set_tag(self, user_id: str, value: str) -> None:
        user = self._user(user_id)
        if user["mail"].lower() in self.tenant.tag_write_failures:
            raise AzureAPIError(400, "Property update rejected", f"/users/{user_id}")
        user["employeeId"] = value
        self.tenant.record("tag", user["mail"])


class FakeEntitlement:
    def __init__(self, tenant: FakeTenant):
        self.tenant = tenant

    def find_catalogs(self, display_name: str) -> list[dict]:
        return [catalog for catalog in self.tenant.catalogs if catalog["displayName"] == display_name]

    def create_catalog(self, display_name: str, description: str, externally_visible: bool = True) -> dict:
        catalog = {"id": self.tenant.new_id(), "displayName": display_name, "isExternallyVisible": externally_visible}
        self.tenant.catalogs.append(catalog)
        self.tenant.record("catalog", display_name)
        return catalog

    def find_access_packages(self, display_name: str, catalog_id: str) -> list[dict]:
        return [
            package for package in self.tenant.packages
            if package["displayName"] == display_name and package["catalog"]["id"] == catalog_id
        ]

    def create_access_package(self, display_name: str, description: str, catalog_id: str) -> dict:
        package = {"id": self.tenant.new_id(), "displayName": display_name, "catalog": {"id": catalog_id}}
        self.tenant.packages.append(package)
        self.tenant.record("access-package", display_name)
        return package

    def find_catalog_resources(self, catalog_id: str, origin_id: str) -> list[dict]:
        if self.tenant.resource_visibility_delay > 0:
            self.tenant.resource_visibility_delay -= 1
            return []
        return [
            dict(resource) for resource in self.tenant.resources
            if resource["catalogId"] == catalog_id and resource["originId"] == origin_id
        ]

    def request_group_resource(self, catalog_id: str, group_id: str) -> dict:
        resource_id = self.tenant.new_id()
        resource = {
            "id": resource_id,
            "catalogId": catalog_id,
            "originId": group_id,
            "originSystem": "AadGroup",
            "scopes": [{"id": self.tenant.new_id(), "originId": group_id, "originSystem": "AadGroup"}],
        }
        self.tenant.resources.append(resource)
        self.tenant.resource_roles[resource_id] = [
            {"displayName": name, "originId": f"{name}_{group_id}", "originSystem": "AadGroup",
             "resource": {"id": resource_id}}
            for name in ("Owner", "Member")
        ]
        self.tenant.record("resource", group_id)
        return {"id": self.tenant.new_id(), "requestType": "adminAdd", "state": "delivered"}

    def list_resource_roles(self, catalog_id: str, resource_id: str) -> list[dict]:
        return list(self.tenant.resource_roles.get(resource_id, []))

    def list_role_scopes(self, access_package_id: str) -> list[dict]:
        return list(self.tenant.role_scopes.get(access_package_id, []))

    def create_role_scope(self, access_package_id: str, payload: dict) -> dict:
        if self.tenant.reject_role_scopes:
            raise AzureAPIError(400, "The role scope is invalid", "/resourceRoleScopes")
        binding = dict(payload, id=self.tenant.new_id())
        self.tenant.role_scopes.setdefault(access_package_id, []).append(binding)
        self.tenant.record("role-scope", access_package_id)
        return binding

    def list_assignment_policies(self) -> list[dict]:
        return list(self.tenant.policies)

    def create_assignment_policy(self, payload: dict) -> dict:
        policy = dict(payload, id=self.tenant.new_id())
        self.tenant.policies.append(policy)
        self.tenant.record("policy", payload["displayName"])
        return policy


class FakeSubscriptions:
    def __init__(self, tenant: FakeTenant):
        self.tenant = tenant
        self.role_lookups: list[str] = []

    def list_subscriptions(self) -> list[Subscription]:
        return list(self.tenant.subscriptions)

    def list_role_assignments(self, subscription_id: str, principal_id: Optional[str] = None) -> list[dict]:
        return [
            {"properties": {"roleDefinitionId": self._definition_id(role), "principalId": principal_id}}
            for role in self.tenant.role_assignments.get(subscription_id, [])
        ]

    def _definition_id(self, role_name: str) -> str:
        for definition_id, name in self.tenant.role_definitions.items():
            if name == role_name:
                return definition_id
        definition_id = self.tenant.new_id()
        self.tenant.role_definitions[definition_id] = role_name
        return definition_id

    def get_role_name(self, role_definition_id: str, scope: str = "") -> Optional[str]:
        self.role_lookups.append(role_definition_id)
        return self.tenant.role_definitions.get(role_definition_id.rsplit("/", 1)[-1])


class FakeDelegations:
    def __init__(self, tenant: FakeTenant):
        self.tenant = tenant
        self.put_calls: list[tuple[str, str, dict]] = []

    def put_deployment(self, subscription_id: str, name: str, location: str, properties: dict) -> dict:
        self.put_calls.append((subscription_id, name, properties))
        self.tenant.record("deployment", subscription_id)
        deployment = {"name": name, "location": location, "properties": {"provisioningState": "Accepted"}}
        self.tenant.deployments[(subscription_id, name)] = deployment
        return deployment

    def get_deployment(self, subscription_id: str, name: str) -> dict:
        states = self.tenant.deployment_states.get(subscription_id, ["Succeeded"])
        state = states.pop(0) if len(states) > 1 else states[0]
        return {"name": name, "properties": {"provisioningState": state}}

    def list_registration_definitions(self, subscription_id: str) -> list[dict]:
        if subscription_id in self.tenant.unreadable_delegations:
            raise AzureAPIError(404, "SubscriptionNotFound", "/registrationDefinitions")
        return list(self.tenant.registration_definitions.get(subscription_id, []))

    def list_registration_assignments(self, subscription_id: str) -> list[dict]:
        return list(self.tenant.registration_assignments.get(subscription_id, []))


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def tenant():
    return FakeTenant()


@pytest.fixture()
def fast_config():
    """Defaults with every wait set to zero."""
    return ProvisioningConfig(
        retry_count=3,
        retry_delay_seconds=0,
        role_activation_delay_seconds=0,
        resource_verify_delay_seconds=0,
        deployment_poll_attempts=5,
        deployment_poll_delay_seconds=0,
        http_retry_delay_seconds=0,
    )


@pytest.fixture()
def services(tenant):
    """Fake Graph-side services keyed the way AccessPackagePipeline expects."""
    return {
        "groups": FakeGroups(tenant),
        "roles": FakeRoles(tenant),
        "users": FakeUsers(tenant),
        "entitlement": FakeEntitlement(tenant),
    }


@pytest.fixture()
def arm_services(tenant):
    return FakeSubscriptions(tenant), FakeDelegations(tenant)


# ─────────────────────────────────────────────────────────────────────────────
# Pytest Configuration
# ─────────────────────────────────────────────────────────────────────────────
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (requires a real tenant)"
    )
    config.addinivalue_line(
        "markers", "critical: marks tests covering abort and idempotency guarantees"
    )
