"""Subscription eligibility scan: which subscriptions can the operator act on?"""
from __future__ import annotations
import logging
from typing import Iterable, Optional

from crossadmin.core.azure.subscriptions import SubscriptionService
from crossadmin.core.models import EligibilityReport

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_ROLES = ("Owner",)


def scan(
    subscriptions: SubscriptionService,
    principal_id: str,
    required_roles: Iterable[str] = DEFAULT_REQUIRED_ROLES,
    *,
    only: Optional[Iterable[str]] = None,
) -> EligibilityReport:
    """Classify every visible subscription as eligible, ineligible or disabled.

    Read-only. Disabled subscriptions are not checked for roles. Whether to
    continue with the eligible subset is left to the caller.

    Args:
        subscriptions: ARM subscription service
        principal_id: Object id of the acting principal
        required_roles: Role names of which the principal must hold at least one
        only: Restrict the scan to these subscription ids

    Returns:
        Disjoint partition of the scanned subscriptions
    """
    required = {role.lower() for role in required_roles}
    wanted = {sub_id.lower() for sub_id in only} if only else None
    role_names: dict[str, Optional[str]] = {}
    report = EligibilityReport()

    for subscription in subscriptions.list_subscriptions():
        if wanted is not None and subscription.id.lower() not in wanted:
            continue
        if not subscription.enabled:
            logger.info("[scan] %s (%s) is %s; skipped", subscription.display_name, subscription.id, subscription.state)
            report.disabled.append(subscription)
            continue

        held = set()
        for assignment in subscriptions.list_role_assignments(subscription.id, principal_id):
            definition_id = (assignment.get("properties") or {}).get("roleDefinitionId", "")
            if not definition_id:
                continue
            if definition_id not in role_names:
                role_names[definition_id] = subscriptions.get_role_name(definition_id)
            name = role_names[definition_id]
            if name:
                held.add(name.lower())

        if held & required:
            logger.info("[scan] %s (%s): eligible", subscription.display_name, subscription.id)
            report.eligible.append(subscription)
        else:
            logger.info("[scan] %s (%s): missing required role", subscription.display_name, subscription.id)
            report.ineligible.append(subscription)

    return report
