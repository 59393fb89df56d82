"""Cross-tenant delegation (Azure Lighthouse) deployment and verification.

Per subscription:
    deploy template at subscription scope ──> poll until terminal ──> read back
    registration definitions ──> compare authorizations with the expected
    group/role pair

A failed deployment ends that subscription's run with [FAILED] and skips
verification; the other subscriptions continue. An empty or unreadable
delegation list is reported as [NO DELEGATION], which is not a failure.
"""
from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from crossadmin.core.azure.delegations import DelegationService
from crossadmin.core.azure.exceptions import (
    AzureAPIError,
    ConfigurationError,
    DeploymentFailedError,
    InsufficientPermissionsError,
    PipelineAborted,
    TransientAPIError,
)
from crossadmin.core.azure.subscriptions import SubscriptionService
from crossadmin.core.models import (
    Authorization,
    DelegationDefinition,
    DeploymentResult,
    LighthouseReport,
    ProgressEvent,
    SubscriptionDelegationResult,
)
from crossadmin.core.retry import poll_until
from crossadmin.core.validators import require_guid

logger = logging.getLogger(__name__)

DEPLOYMENT_PREFIX = "lighthouse-"
TERMINAL_STATES = ("Succeeded", "Failed", "Canceled")
UNKNOWN = "<unknown>"

STATUS_OK = "[OK]"
STATUS_FAILED = "[FAILED]"
STATUS_NO_DELEGATION = "[NO DELEGATION]"


def deployment_name(subscription_id: str) -> str:
    """Deterministic deployment name; redeploying under it updates in place."""
    return DEPLOYMENT_PREFIX + subscription_id[:8]


# ─────────────────────────────────────────────────────────────────────────────
# Template and parameter references
# ─────────────────────────────────────────────────────────────────────────────

def _is_uri(ref: str) -> bool:
    return ref.lower().startswith("https://")


def _read_json(ref: str, label: str) -> dict:
    path = Path(ref)
    if not path.is_file():
        raise ConfigurationError(f"{label} file not found: {ref}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{label} file {ref} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{label} file {ref} must contain a JSON object")
    return data


def build_deployment_properties(template_ref: str, params_ref: str) -> dict:
    """Build the ``properties`` body of an Incremental deployment.

    ``https://`` references are passed as links; anything else is read as a
    local JSON file and inlined. A parameters file in the standard
    deploymentParameters format is unwrapped to its ``parameters`` object.

    Raises:
        ConfigurationError: If a reference is empty, missing or not a JSON object
    """
    if not template_ref:
        raise ConfigurationError("Template reference is required")
    if not params_ref:
        raise ConfigurationError("Parameters reference is required")

    properties: dict[str, Any] = {"mode": "Incremental"}
    if _is_uri(template_ref):
        properties["templateLink"] = {"uri": template_ref}
    else:
        properties["template"] = _read_json(template_ref, "Template")

    if _is_uri(params_ref):
        properties["parametersLink"] = {"uri": params_ref}
    else:
        parameters = _read_json(params_ref, "Parameters")
        if isinstance(parameters.get("parameters"), dict):
            parameters = parameters["parameters"]
        properties["parameters"] = parameters
    return properties


# ─────────────────────────────────────────────────────────────────────────────
# Compliance
# ─────────────────────────────────────────────────────────────────────────────

def compliance_status(authorizations: Iterable[Authorization], expected_group: str, expected_role: str) -> str:
    """Describe whether the expected group holds the expected role."""
    roles = [
        auth.role_display_name
        for auth in authorizations
        if auth.principal_display_name.lower() == expected_group.lower()
    ]
    if not roles:
        return f"[MISSING] '{expected_group}' not among authorizations"
    if any(role.lower() == expected_role.lower() for role in roles):
        return f"[OK] '{expected_group}' holds '{expected_role}'"
    return f"[MISMATCH] '{expected_group}' found with role(s): {', '.join(sorted(set(roles)))}"


# ─────────────────────────────────────────────────────────────────────────────
# Deployer
# ─────────────────────────────────────────────────────────────────────────────

class LighthouseDeployer:
    """Deploy the delegation template and read the resulting definitions back."""

    def __init__(
        self,
        delegations: DelegationService,
        subscriptions: SubscriptionService,
        *,
        poll_attempts: int = 60,
        poll_delay: float = 10.0,
        on_event: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        self.delegations = delegations
        self.subscriptions = subscriptions
        self.poll_attempts = poll_attempts
        self.poll_delay = poll_delay
        self.on_event = on_event
        self._role_names: dict[str, str] = {}

    def emit(self, stage: str, message: str, level: str = "info") -> None:
        if self.on_event:
            self.on_event(ProgressEvent(stage, message, level))

    def deploy(self, subscription_id: str, template_ref: str, params_ref: str, location: str,
               properties: Optional[dict] = None) -> DeploymentResult:
        """Submit the template at subscription scope and wait for a terminal state.

        Args:
            subscription_id: Target subscription
            template_ref: https URI or local JSON file
            params_ref: https URI or local JSON file
            location: Region that stores the deployment metadata
            properties: Prebuilt deployment properties (skips reading the references)

        Raises:
            ConfigurationError: Invalid subscription id or template/parameter reference
            DeploymentFailedError: Deployment failed, was canceled or did not finish in time
        """
        require_guid(subscription_id, "subscription id")
        if properties is None:
            properties = build_deployment_properties(template_ref, params_ref)
        name = deployment_name(subscription_id)

        logger.info("[deploy] Submitting '%s' to subscription %s (%s)", name, subscription_id, location)
        self.emit("deploy", f"{subscription_id}: submitting {name}")
        submitted = self.delegations.put_deployment(subscription_id, name, location, properties)

        state = (submitted.get("properties") or {}).get("provisioningState", "")
        if state not in TERMINAL_STATES:
            state = poll_until(
                lambda: self._terminal_state(subscription_id, name),
                attempts=self.poll_attempts,
                delay=self.poll_delay,
                label="deploy",
            ) or ""

        if not state:
            raise DeploymentFailedError(
                name, "Running", f"no terminal state after {self.poll_attempts} checks"
            )
        if state != "Succeeded":
            raise DeploymentFailedError(name, state)

        logger.info("[deploy] '%s' succeeded in subscription %s", name, subscription_id)
        self.emit("deploy", f"{subscription_id}: {name} succeeded")
        return DeploymentResult(name=name, provisioning_state=state, location=location)

    def _terminal_state(self, subscription_id: str, name: str) -> Optional[str]:
        try:
            deployment = self.delegations.get_deployment(subscription_id, name)
        except TransientAPIError as exc:
            logger.warning("[deploy] Status check for '%s' failed: %s", name, exc)
            return None
        state = (deployment.get("properties") or {}).get("provisioningState", "")
        return state if state in TERMINAL_STATES else None

    def _role_name(self, subscription_id: str, role_id: str) -> str:
        if not role_id:
            return UNKNOWN
        if role_id not in self._role_names:
            name = self.subscriptions.get_role_name(role_id, scope=f"/subscriptions/{subscription_id}")
            self._role_names[role_id] = name or UNKNOWN
        return self._role_names[role_id]

    def _tenant_names(self, subscription_id: str) -> dict[str, str]:
        """Managing tenant names keyed by registration definition id, from assignments."""
        try:
            assignments = self.delegations.list_registration_assignments(subscription_id)
        except AzureAPIError as exc:
            logger.warning("[verify] Could not list registration assignments for %s: %s", subscription_id, exc)
            return {}
        names = {}
        for assignment in assignments:
            definition = (assignment.get("properties") or {}).get("registrationDefinition") or {}
            tenant_name = (definition.get("properties") or {}).get("managedByTenantName")
            if definition.get("id") and tenant_name:
                names[definition["id"].lower()] = tenant_name
        return names

    def verify(self, subscription_id: str, expected_group: str, expected_role: str) -> list[DelegationDefinition]:
        """Read delegation definitions back and compute their compliance.

        Returns:
            Definitions found (empty when none exist or they cannot be read)
        """
        try:
            items = self.delegations.list_registration_definitions(subscription_id)
        except AzureAPIError as exc:
            logger.warning("[verify] Could not list delegations for %s: %s", subscription_id, exc)
            return []

        tenant_names: Optional[dict[str, str]] = None
        definitions = []
        for item in items:
            props = item.get("properties") or {}
            tenant_name = props.get("managedByTenantName")
            if not tenant_name:
                if tenant_names is None:
                    tenant_names = self._tenant_names(subscription_id)
                tenant_name = tenant_names.get(item.get("id", "").lower(), UNKNOWN)

            authorizations = [
                Authorization(
                    principal_id=auth.get("principalId", ""),
                    principal_display_name=auth.get("principalIdDisplayName", ""),
                    role_id=auth.get("roleDefinitionId", ""),
                    role_display_name=self._role_name(subscription_id, auth.get("roleDefinitionId", "")),
                )
                for auth in props.get("authorizations") or []
            ]
            definition = DelegationDefinition(
                id=item.get("id", ""),
                subscription_id=subscription_id,
                managed_by_tenant_id=props.get("managedByTenantId", ""),
                managed_by_tenant_name=tenant_name,
                offer_name=props.get("registrationDefinitionName", ""),
                authorizations=authorizations,
                compliance=compliance_status(authorizations, expected_group, expected_role),
            )
            logger.info("[verify] %s: offer '%s' from %s %s", subscription_id, definition.offer_name,
                        definition.managed_by_tenant_name, definition.compliance)
            definitions.append(definition)
        return definitions


def run_lighthouse(
    deployer: LighthouseDeployer,
    subscription_ids: Iterable[str],
    template_ref: str,
    params_ref: str,
    *,
    location: str,
    expected_group: str,
    expected_role: str,
) -> LighthouseReport:
    """Deploy and verify the delegation in each subscription, in order.

    The references are read once up front so that a bad template aborts
    before anything is deployed.

    Raises:
        PipelineAborted: On configuration or permission errors
    """
    try:
        properties = build_deployment_properties(template_ref, params_ref)
    except ConfigurationError as exc:
        raise PipelineAborted("deploy", template_ref or "-", exc) from exc

    report = LighthouseReport()
    for subscription_id in subscription_ids:
        try:
            deployment = deployer.deploy(subscription_id, template_ref, params_ref, location, properties)
        except (ConfigurationError, InsufficientPermissionsError) as exc:
            logger.error("[deploy] Aborting at %s: %s", subscription_id, exc)
            raise PipelineAborted("deploy", subscription_id, exc) from exc
        except (DeploymentFailedError, AzureAPIError) as exc:
            logger.error("[deploy] %s %s: %s", STATUS_FAILED, subscription_id, exc)
            deployer.emit("deploy", f"{subscription_id}: {exc}", "warning")
            report.results.append(SubscriptionDelegationResult(subscription_id, STATUS_FAILED, detail=str(exc)))
            continue

        definitions = deployer.verify(subscription_id, expected_group, expected_role)
        if not definitions:
            logger.info("[verify] No delegation found in %s", subscription_id)
            report.results.append(SubscriptionDelegationResult(
                subscription_id, STATUS_NO_DELEGATION, deployment, detail="no delegation found",
            ))
            continue
        report.results.append(SubscriptionDelegationResult(
            subscription_id,
            STATUS_OK,
            deployment,
            definitions,
            detail="; ".join(definition.compliance for definition in definitions),
        ))
    return report
