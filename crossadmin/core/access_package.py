"""Access package provisioning pipeline.

Builds the chain of directory and entitlement objects that lets tagged guests
receive a privileged directory role through group membership:

    role preflight ──> group ──> role activation ──> role assignment
        ──> guests ──> catalog ──> access package ──> resource registration
        ──> role-scope binding ──> auto-assignment policy

Every stage is find-or-create, so re-running the whole pipeline after a
partial failure is the recovery procedure. Configuration and permission
errors abort the run (PipelineAborted names the stage and key); verification
mismatches and per-record guest failures are reported and the run continues.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from crossadmin.config.settings import ProvisioningConfig
from crossadmin.core.azure.entitlement import EntitlementService, policy_package_id
from crossadmin.core.azure.exceptions import (
    AzureAPIError,
    BindingError,
    ConfigurationError,
    InsufficientPermissionsError,
    PipelineAborted,
    ProvisioningError,
    ResourceRoleNotFoundError,
    VerificationMismatch,
)
from crossadmin.core.azure.groups import GroupService
from crossadmin.core.azure.roles import DirectoryRoleService
from crossadmin.core.azure.users import GuestUserService
from crossadmin.core.guest_invitations import GuestInvitationEngine
from crossadmin.core.models import (
    AccessPackageReport,
    GuestRecord,
    ProgressEvent,
    StageOutcome,
    StageResult,
)
from crossadmin.core.resolver import resolve_or_create
from crossadmin.core.retry import poll_until
from crossadmin.core.validators import require_guid

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Entitlement container resolver
# ─────────────────────────────────────────────────────────────────────────────

def ensure_catalog(entitlement: EntitlementService, display_name: str, description: str = "",
                   externally_visible: bool = True) -> tuple[dict, bool]:
    """Find or create a catalog by display name."""
    return resolve_or_create(
        "catalog",
        display_name,
        entitlement.find_catalogs,
        lambda: entitlement.create_catalog(display_name, description, externally_visible),
    )


def ensure_access_package(entitlement: EntitlementService, catalog_id: str, display_name: str,
                          description: str = "") -> tuple[dict, bool]:
    """Find or create an access package by display name inside a catalog.

    Raises:
        ConfigurationError: If ``catalog_id`` is not a resolved GUID
    """
    catalog_id = require_guid(catalog_id, "catalog id")
    return resolve_or_create(
        "access-package",
        display_name,
        lambda name: entitlement.find_access_packages(name, catalog_id),
        lambda: entitlement.create_access_package(display_name, description, catalog_id),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Resource registration binder
# ─────────────────────────────────────────────────────────────────────────────

def find_registered_resource(entitlement: EntitlementService, catalog_id: str, group_id: str) -> Optional[dict]:
    resources = entitlement.find_catalog_resources(catalog_id, group_id)
    if not resources:
        return None
    resource = resources[0]
    resource.setdefault("catalog", {"id": catalog_id})
    return resource


def ensure_registered(
    entitlement: EntitlementService,
    catalog_id: str,
    group: dict,
    *,
    verify_attempts: int = 3,
    verify_delay: float = 5.0,
) -> tuple[Optional[dict], bool]:
    """Register a directory group as a catalog resource (idempotent).

    Returns:
        (resource, was_created). ``resource`` is None when the registration
        request was accepted but the resource is not yet visible.
    """
    catalog_id = require_guid(catalog_id, "catalog id")
    group_id = require_guid(group.get("id"), "group id")

    existing = find_registered_resource(entitlement, catalog_id, group_id)
    if existing:
        logger.info("[resource] Group %s already registered in catalog %s (id=%s)", group_id, catalog_id, existing["id"])
        return existing, False

    entitlement.request_group_resource(catalog_id, group_id)
    logger.info("[resource] adminAdd request submitted for group %s", group_id)

    registered = poll_until(
        lambda: find_registered_resource(entitlement, catalog_id, group_id),
        attempts=verify_attempts,
        delay=verify_delay,
        label="resource",
    )
    if not registered:
        logger.warning(
            "[resource] Group %s not visible in catalog %s after registration; platform processing may be delayed",
            group_id, catalog_id,
        )
        return None, True
    if not registered.get("scopes"):
        logger.warning("[resource] Resource %s registered without scopes", registered.get("id"))
    return registered, True


# ─────────────────────────────────────────────────────────────────────────────
# Resource-role-scope linker
# ─────────────────────────────────────────────────────────────────────────────

def _reference(entity: dict) -> dict:
    return {
        "id": entity["id"],
        "originId": entity.get("originId"),
        "originSystem": entity.get("originSystem"),
    }


def build_role_scope_payload(role: Optional[dict], resource: Optional[dict], scope: Optional[dict]) -> dict:
    """Build the resourceRoleScope body for a role on a catalog resource.

    Nested identifiers are copied from the resolved resource and scope; the
    platform checks that role, resource and scope refer to each other.

    Raises:
        BindingError: If role, resource or scope is unresolved, or the role
            belongs to a different resource
    """
    if not resource or not resource.get("id"):
        raise BindingError("Catalog resource is unresolved")
    if not role or not role.get("originId"):
        raise BindingError(f"Resource role is unresolved for resource {resource['id']}")
    if not scope or not scope.get("id"):
        raise BindingError(f"Resource scope is unresolved for resource {resource['id']}")

    role_resource_id = (role.get("resource") or {}).get("id")
    if role_resource_id and role_resource_id != resource["id"]:
        raise BindingError(
            f"Role '{role.get('displayName')}' belongs to resource {role_resource_id}, not {resource['id']}"
        )

    return {
        "role": {
            "displayName": role.get("displayName"),
            "originId": role["originId"],
            "originSystem": role.get("originSystem", resource.get("originSystem")),
            "resource": _reference(resource),
        },
        "scope": _reference(scope),
    }


def _matches_binding(binding: dict, role: dict, scope: dict) -> bool:
    bound_role = binding.get("role") or {}
    bound_scope = binding.get("scope") or {}
    return bound_role.get("originId") == role.get("originId") and bound_scope.get("id") == scope.get("id")


def link_role_to_package(
    entitlement: EntitlementService,
    access_package_id: str,
    catalog_resource: Optional[dict],
    role_name: str = "Member",
) -> tuple[Optional[dict], bool]:
    """Grant ``role_name`` on ``catalog_resource`` through the access package.

    Returns:
        (binding, was_created). ``binding`` is None if submission failed.

    Raises:
        BindingError: If the resource or its scope is unresolved
        ConfigurationError: If the access package id is not a GUID
        ResourceRoleNotFoundError: If the resource offers no such role
    """
    access_package_id = require_guid(access_package_id, "access package id")
    if not catalog_resource or not catalog_resource.get("id"):
        raise BindingError("Cannot link a role: catalog resource is unresolved")
    scopes = catalog_resource.get("scopes") or []
    if not scopes:
        raise BindingError(f"Cannot link a role: resource {catalog_resource['id']} exposes no scopes")
    scope = scopes[0]

    catalog_id = (catalog_resource.get("catalog") or {}).get("id") or catalog_resource.get("catalogId")
    if not catalog_id:
        raise BindingError(f"Cannot link a role: resource {catalog_resource['id']} has no catalog reference")

    roles = entitlement.list_resource_roles(catalog_id, catalog_resource["id"])
    role = next((candidate for candidate in roles if candidate.get("displayName") == role_name), None)
    if role is None:
        available = ", ".join(sorted(r.get("displayName", "?") for r in roles)) or "none"
        raise ResourceRoleNotFoundError(
            f"Role '{role_name}' not offered by resource {catalog_resource['id']} (available: {available})"
        )

    for binding in entitlement.list_role_scopes(access_package_id):
        if _matches_binding(binding, role, scope):
            logger.info("[role-scope] '%s' already bound to package %s", role_name, access_package_id)
            return binding, False

    payload = build_role_scope_payload(role, catalog_resource, scope)
    try:
        created = entitlement.create_role_scope(access_package_id, payload)
    except InsufficientPermissionsError:
        raise
    except AzureAPIError as exc:
        logger.error("[role-scope] Binding rejected for package %s: %s; payload=%s", access_package_id, exc, payload)
        return None, False
    logger.info("[role-scope] '%s' bound to package %s (id=%s)", role_name, access_package_id, created.get("id"))
    return created, True


# ─────────────────────────────────────────────────────────────────────────────
# Auto-assignment policy resolver
# ─────────────────────────────────────────────────────────────────────────────

def build_policy_payload(access_package_id: str, display_name: str, membership_rule: str,
                         assignment_duration: str = "") -> dict:
    """Build an auto-assignment policy targeting principals that match ``membership_rule``."""
    if assignment_duration:
        expiration = {"type": "afterDuration", "duration": assignment_duration}
    else:
        expiration = {"type": "noExpiration"}
    return {
        "displayName": display_name,
        "description": display_name,
        "allowedTargetScope": "specificDirectoryUsers",
        "specificAllowedTargets": [
            {
                "@odata.type": "#microsoft.graph.attributeRuleMembers",
                "description": display_name,
                "membershipRule": membership_rule,
            }
        ],
        "automaticRequestSettings": {
            "requestAccessForAllowedTargets": True,
            "removeAccessWhenTargetLeavesAllowedTargets": True,
        },
        "requestApprovalSettings": {
            "isApprovalRequiredForAdd": False,
            "isApprovalRequiredForUpdate": False,
            "stages": [],
        },
        "expiration": expiration,
        "accessPackage": {"id": access_package_id},
    }


def ensure_policy(
    entitlement: EntitlementService,
    access_package_id: str,
    display_name: str,
    membership_rule: str,
    assignment_duration: str = "",
) -> tuple[dict, bool]:
    """Find or create the auto-assignment policy of an access package.

    The membership rule is passed through unparsed.

    Raises:
        ConfigurationError: If the package id is not a GUID or the rule is empty
    """
    access_package_id = require_guid(access_package_id, "access package id")
    if not (membership_rule or "").strip():
        raise ConfigurationError(f"Membership rule for policy '{display_name}' is empty")

    def find(name: str) -> list[dict]:
        return [
            policy for policy in entitlement.list_assignment_policies()
            if policy.get("displayName") == name and policy_package_id(policy) == access_package_id
        ]

    return resolve_or_create(
        "policy",
        display_name,
        find,
        lambda: entitlement.create_assignment_policy(
            build_policy_payload(access_package_id, display_name, membership_rule, assignment_duration)
        ),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline
# ─────────────────────────────────────────────────────────────────────────────

def _outcome(created: bool) -> str:
    return StageOutcome.CREATED if created else StageOutcome.EXISTING


class AccessPackagePipeline:
    """Run the access package stages in order and collect a report."""

    def __init__(
        self,
        config: ProvisioningConfig,
        *,
        groups: GroupService,
        roles: DirectoryRoleService,
        users: GuestUserService,
        entitlement: EntitlementService,
        on_event: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        self.config = config
        self.groups = groups
        self.roles = roles
        self.users = users
        self.entitlement = entitlement
        self.on_event = on_event
        self.report = AccessPackageReport()

    def _emit(self, stage: str, message: str, level: str = "info") -> None:
        if self.on_event:
            self.on_event(ProgressEvent(stage, message, level))

    def _record(self, stage: str, key: str, outcome: str, entity_id: Optional[str] = None, detail: str = "") -> None:
        self.report.stages.append(StageResult(stage, key, outcome, entity_id, detail))
        level = "warning" if outcome in (StageOutcome.WARNING, StageOutcome.FAILED) else "info"
        self._emit(stage, f"{key}: {outcome}" + (f" ({detail})" if detail else ""), level)

    @contextmanager
    def _stage(self, stage: str, key: str) -> Iterator[None]:
        """Turn fatal errors raised inside a stage into PipelineAborted."""
        try:
            yield
        except PipelineAborted:
            raise
        except ProvisioningError as exc:
            logger.error("[%s] Aborting at '%s': %s", stage, key, exc)
            self._record(stage, key, StageOutcome.FAILED, detail=str(exc))
            raise PipelineAborted(stage, key, exc) from exc

    def run(self, guests: list[GuestRecord]) -> AccessPackageReport:
        """Provision everything and return the report.

        Raises:
            PipelineAborted: On configuration or permission errors
        """
        config = self.config

        with self._stage("role-preflight", config.directory_role_name):
            self.roles.require_role_available(config.directory_role_name)

        with self._stage("group", config.group_display_name):
            group, created = self.groups.ensure_group(config.group_display_name, config.group_description)
            self._record("group", config.group_display_name, _outcome(created), group.get("id"))

        with self._stage("role-activation", config.directory_role_name):
            try:
                role, activated = self.roles.activate(config.directory_role_name)
            except VerificationMismatch as exc:
                role = exc.entity or {}
                self._record("role-activation", config.directory_role_name, StageOutcome.WARNING, role.get("id"),
                             detail=f"{exc}; re-run to confirm")
            else:
                self._record("role-activation", config.directory_role_name, _outcome(activated), role.get("id"))

        with self._stage("role-assignment", config.group_display_name):
            role_id = require_guid(role.get("id"), "directory role id")
            assigned = self.roles.ensure_assigned(role_id, group["id"])
            self._record("role-assignment", config.group_display_name, _outcome(assigned), role_id)

        self._run_guests(guests)

        with self._stage("catalog", config.catalog_name):
            catalog, created = ensure_catalog(
                self.entitlement, config.catalog_name, config.catalog_description, config.catalog_externally_visible,
            )
            self._record("catalog", config.catalog_name, _outcome(created), catalog.get("id"))

        with self._stage("access-package", config.access_package_name):
            package, created = ensure_access_package(
                self.entitlement, catalog.get("id"), config.access_package_name, config.access_package_description,
            )
            self._record("access-package", config.access_package_name, _outcome(created), package.get("id"))

        with self._stage("resource", config.group_display_name):
            resource, created = ensure_registered(
                self.entitlement,
                catalog["id"],
                group,
                verify_attempts=config.resource_verify_attempts,
                verify_delay=config.resource_verify_delay_seconds,
            )
            if resource is None:
                self._record("resource", config.group_display_name, StageOutcome.WARNING,
                             detail="registration submitted but not yet visible; re-run to complete")
            else:
                self._record("resource", config.group_display_name, _outcome(created), resource.get("id"))

        self._run_link(package["id"], resource)

        with self._stage("policy", config.policy_name):
            policy, created = ensure_policy(
                self.entitlement,
                package["id"],
                config.policy_name,
                config.resolved_membership_rule,
                config.assignment_duration,
            )
            self._record("policy", config.policy_name, _outcome(created), policy.get("id"))

        return self.report

    def _run_guests(self, guests: list[GuestRecord]) -> None:
        if not guests:
            self._record("guests", "-", StageOutcome.SKIPPED, detail="no guests supplied")
            return
        engine = GuestInvitationEngine(
            self.users,
            default_tag=self.config.employee_tag,
            retry_count=self.config.retry_count,
            retry_delay=self.config.retry_delay_seconds,
            on_event=self.on_event,
        )
        with self._stage("guests", f"{len(guests)} records"):
            self.report.guests = engine.run(guests)
        failed = [guest for guest in self.report.guests if not guest.succeeded]
        outcome = StageOutcome.WARNING if failed else StageOutcome.INFO
        detail = f"{len(guests) - len(failed)} succeeded, {len(failed)} failed"
        self._record("guests", f"{len(guests)} records", outcome, detail=detail)

    def _run_link(self, package_id: str, resource: Optional[dict]) -> None:
        role_name = self.config.resource_role_name
        if resource is None:
            self._record("role-scope", role_name, StageOutcome.SKIPPED, detail="catalog resource unavailable")
            return
        with self._stage("role-scope", role_name):
            try:
                binding, created = link_role_to_package(self.entitlement, package_id, resource, role_name)
            except (ResourceRoleNotFoundError, BindingError) as exc:
                logger.error("[role-scope] %s; complete the binding manually or re-run", exc)
                self._record("role-scope", role_name, StageOutcome.FAILED, detail=str(exc))
                return
            if binding is None:
                self._record("role-scope", role_name, StageOutcome.FAILED, detail="binding rejected by platform")
            else:
                self._record("role-scope", role_name, _outcome(created), binding.get("id"))


def build_pipeline(config: ProvisioningConfig, graph, on_event=None) -> AccessPackagePipeline:
    """Wire the Graph-backed services for a pipeline run."""
    return AccessPackagePipeline(
        config,
        groups=GroupService(graph),
        roles=DirectoryRoleService(
            graph,
            activation_attempts=config.role_activation_attempts,
            activation_delay=config.role_activation_delay_seconds,
        ),
        users=GuestUserService(
            graph,
            invite_redirect_url=config.invite_redirect_url,
            send_invitation_message=config.send_invitation_message,
        ),
        entitlement=EntitlementService(graph),
        on_event=on_event,
    )


__all__ = [
    "AccessPackagePipeline",
    "build_pipeline",
    "build_policy_payload",
    "build_role_scope_payload",
    "ensure_access_package",
    "ensure_catalog",
    "ensure_policy",
    "ensure_registered",
    "link_role_to_package",
]
