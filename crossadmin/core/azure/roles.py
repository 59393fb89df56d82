"""Built-in directory role activation and membership."""
from __future__ import annotations
import logging
from typing import Optional

from crossadmin.core.resolver import first_by_id
from crossadmin.core.retry import poll_until
from .client import GraphClient
from .exceptions import ConfigurationError, VerificationMismatch

logger = logging.getLogger(__name__)


class DirectoryRoleService:
    """Service for activating built-in directory roles and managing their members.

    A built-in role exists only as a template until it is activated in the
    tenant. Activation is asynchronous: the new role may not be listed for
    some time, so activation is followed by bounded polling.
    """

    def __init__(self, client: GraphClient, *, activation_attempts: int = 6, activation_delay: float = 10.0):
        """Initialize role service.

        Args:
            client: Authenticated Graph client
            activation_attempts: Polls after activation before giving up on visibility
            activation_delay: Seconds between polls
        """
        self.client = client
        self.activation_attempts = activation_attempts
        self.activation_delay = activation_delay

    def get_active_role(self, display_name: str) -> Optional[dict]:
        """Return the activated role with this display name, if any."""
        roles = self.client.get_all("/directoryRoles")
        return first_by_id(role for role in roles if role.get("displayName") == display_name)

    def get_role_template(self, display_name: str) -> Optional[dict]:
        """Return the role template with this display name, if any."""
        templates = self.client.get_all("/directoryRoleTemplates")
        return first_by_id(template for template in templates if template.get("displayName") == display_name)

    def require_role_available(self, display_name: str) -> None:
        """Fail fast when the role can neither be found active nor activated.

        Raises:
            ConfigurationError: If no active role and no template match the name
        """
        if self.get_active_role(display_name):
            return
        if self.get_role_template(display_name):
            return
        raise ConfigurationError(
            f"Directory role '{display_name}' not found: no active role and no role template with this name"
        )

    def ensure_active(self, display_name: str) -> dict:
        """Idempotently activate a built-in role and return its representation.

        When the activated role does not become visible in time, the activation
        response is returned instead.

        Raises:
            ConfigurationError: If no template exists for the role name
            AzureAPIError: If the activation call fails
        """
        try:
            role, _ = self.activate(display_name)
        except VerificationMismatch as exc:
            return exc.entity
        return role

    def activate(self, display_name: str) -> tuple[dict, bool]:
        """Like ensure_active, also reporting whether activation was performed.

        Returns:
            (role, was_activated)

        Raises:
            VerificationMismatch: Activation was accepted but the role is not
                listed yet; ``entity`` carries the activation response
        """
        active = self.get_active_role(display_name)
        if active:
            logger.info("[role] '%s' already active (id=%s)", display_name, active["id"])
            return active, False

        template = self.get_role_template(display_name)
        if not template:
            raise ConfigurationError(f"Directory role template '{display_name}' not found in this tenant")

        activated = self.client.post("/directoryRoles", json={"roleTemplateId": template["id"]})
        logger.info("[role] Activation requested for '%s' (template=%s)", display_name, template["id"])

        visible = poll_until(
            lambda: self.get_active_role(display_name),
            attempts=self.activation_attempts,
            delay=self.activation_delay,
            label="role",
        )
        if visible:
            logger.info("[role] '%s' activated (id=%s)", display_name, visible["id"])
            return visible, True

        logger.warning(
            "[role] '%s' not yet visible after %d checks; continuing with activation response (id=%s)",
            display_name, self.activation_attempts, activated.get("id"),
        )
        raise VerificationMismatch(
            f"role '{display_name}' activated but not listed after {self.activation_attempts} checks",
            entity=activated,
        )

    def list_member_ids(self, role_id: str) -> set[str]:
        members = self.client.get_all(f"/directoryRoles/{role_id}/members", params={"$select": "id"})
        return {member["id"] for member in members if member.get("id")}

    def ensure_assigned(self, role_id: str, principal_id: str) -> bool:
        """Add a principal to a directory role (idempotent).

        Membership is checked before the write; the platform rejects duplicate
        references with an error rather than ignoring them.

        Returns:
            True if newly assigned, False if already a member
        """
        if principal_id in self.list_member_ids(role_id):
            logger.info("[role-assign] %s already a member of role %s", principal_id, role_id)
            return False

        reference = {"@odata.id": f"{self.client.base_url}/directoryObjects/{principal_id}"}
        self.client.post(f"/directoryRoles/{role_id}/members/$ref", json=reference)
        logger.info("[role-assign] %s added to role %s", principal_id, role_id)
        return True
