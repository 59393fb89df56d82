"""Records produced and consumed by the provisioning pipelines.

Directory and entitlement objects are kept as the platform's own JSON
representations; the dataclasses below describe inputs, derived state and
per-stage results.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


class GuestStatus:
    """Per-record outcomes of the guest invitation engine."""
    # Invitation pass
    ALREADY_EXISTS = "AlreadyExists"
    INVITED = "Invited"
    FAILED = "Failed"
    # Tagging pass
    ALREADY_CORRECT = "AlreadyCorrect"
    UPDATED = "Updated"
    UPDATE_FAILED = "UpdateFailed"
    NOT_FOUND = "NotFound"
    SKIPPED = "Skipped"


class StageOutcome:
    CREATED = "created"
    EXISTING = "existing"
    WARNING = "warning"
    FAILED = "failed"
    SKIPPED = "skipped"
    INFO = "info"


@dataclass
class Principal:
    """Identity subject of role and assignment operations."""
    id: str
    display_name: str
    kind: str = "user"  # user | group | servicePrincipal
    tenant_id: Optional[str] = None


@dataclass
class GuestRecord:
    """One row of the guest list."""
    display_name: str
    email: str
    employee_tag: str = ""


@dataclass
class GuestResult:
    record: GuestRecord
    invitation_status: str
    tag_status: str = GuestStatus.SKIPPED
    principal_id: Optional[str] = None
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return (
            self.invitation_status != GuestStatus.FAILED
            and self.tag_status in (GuestStatus.ALREADY_CORRECT, GuestStatus.UPDATED)
        )


@dataclass
class ProgressEvent:
    stage: str
    message: str
    level: str = "info"


@dataclass
class StageResult:
    """Outcome of one pipeline stage, keyed by the name or id it operated on."""
    stage: str
    key: str
    outcome: str
    entity_id: Optional[str] = None
    detail: str = ""


@dataclass
class AccessPackageReport:
    stages: list[StageResult] = field(default_factory=list)
    guests: list[GuestResult] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return sum(1 for stage in self.stages if stage.outcome == StageOutcome.CREATED)

    @property
    def warnings(self) -> list[StageResult]:
        return [stage for stage in self.stages if stage.outcome in (StageOutcome.WARNING, StageOutcome.FAILED)]

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.stage == name:
                return result
        return None

    def guest_counts(self) -> dict[str, int]:
        """Count guests per invitation status and per tag status."""
        counts: dict[str, int] = {}
        for guest in self.guests:
            counts[guest.invitation_status] = counts.get(guest.invitation_status, 0) + 1
            counts[guest.tag_status] = counts.get(guest.tag_status, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "stages": [vars(stage).copy() for stage in self.stages],
            "guests": [
                {
                    "email": guest.record.email,
                    "displayName": guest.record.display_name,
                    "principalId": guest.principal_id,
                    "invitation": guest.invitation_status,
                    "tag": guest.tag_status,
                    "detail": guest.detail,
                }
                for guest in self.guests
            ],
            "createdCount": self.created_count,
        }


@dataclass
class Subscription:
    id: str
    display_name: str
    state: str = "Enabled"

    @property
    def enabled(self) -> bool:
        return self.state.lower() == "enabled"


@dataclass
class EligibilityReport:
    """Disjoint partition of the enumerated subscriptions."""
    eligible: list[Subscription] = field(default_factory=list)
    ineligible: list[Subscription] = field(default_factory=list)
    disabled: list[Subscription] = field(default_factory=list)

    @property
    def all(self) -> list[Subscription]:
        return self.eligible + self.ineligible + self.disabled

    def to_dict(self) -> dict[str, Any]:
        return {
            name: [vars(sub).copy() for sub in getattr(self, name)]
            for name in ("eligible", "ineligible", "disabled")
        }


@dataclass
class Authorization:
    principal_id: str
    principal_display_name: str
    role_id: str
    role_display_name: str = "<unknown>"


@dataclass
class DelegationDefinition:
    id: str
    subscription_id: str
    managed_by_tenant_id: str
    managed_by_tenant_name: str
    offer_name: str
    authorizations: list[Authorization] = field(default_factory=list)
    compliance: str = ""


@dataclass
class DeploymentResult:
    name: str
    provisioning_state: str
    location: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def succeeded(self) -> bool:
        return self.provisioning_state == "Succeeded"


@dataclass
class SubscriptionDelegationResult:
    subscription_id: str
    status: str  # "[OK]", "[FAILED]", "[NO DELEGATION]"
    deployment: Optional[DeploymentResult] = None
    definitions: list[DelegationDefinition] = field(default_factory=list)
    detail: str = ""


@dataclass
class LighthouseReport:
    results: list[SubscriptionDelegationResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(result.status != "[FAILED]" for result in self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [
                {
                    "subscriptionId": result.subscription_id,
                    "status": result.status,
                    "detail": result.detail,
                    "deployment": vars(result.deployment).copy() if result.deployment else None,
                    "definitions": [
                        {
                            "id": definition.id,
                            "offerName": definition.offer_name,
                            "managedByTenantId": definition.managed_by_tenant_id,
                            "managedByTenantName": definition.managed_by_tenant_name,
                            "compliance": definition.compliance,
                            "authorizations": [vars(auth).copy() for auth in definition.authorizations],
                        }
                        for definition in result.definitions
                    ],
                }
                for result in self.results
            ],
            "succeeded": self.succeeded,
        }
