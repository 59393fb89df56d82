"""Directory security group operations."""
from __future__ import annotations
import logging
import re

from crossadmin.core.resolver import resolve_or_create
from .client import GraphClient, odata_quote

logger = logging.getLogger(__name__)


def mail_nickname(display_name: str) -> str:
    """Derive a mailNickname (ASCII, no spaces, max 64 chars) from a display name."""
    nickname = re.sub(r"[^A-Za-z0-9._-]", "", display_name)[:64]
    return nickname or "group"


class GroupService:
    """Service for managing directory groups."""

    def __init__(self, client: GraphClient):
        """Initialize group service.

        Args:
            client: Authenticated Graph client
        """
        self.client = client

    def find_by_display_name(self, display_name: str) -> list[dict]:
        """Return every group whose displayName equals ``display_name``."""
        groups = self.client.get_all(
            "/groups",
            params={
                "$filter": f"displayName eq {odata_quote(display_name)}",
                "$select": "id,displayName,isAssignableToRole,securityEnabled",
            },
        )
        return [group for group in groups if group.get("displayName") == display_name]

    def create_group(self, display_name: str, description: str = "", role_assignable: bool = True) -> dict:
        """Create a security group; role-assignable groups can hold directory roles."""
        payload = {
            "displayName": display_name,
            "description": description or display_name,
            "mailEnabled": False,
            "mailNickname": mail_nickname(display_name),
            "securityEnabled": True,
            "isAssignableToRole": role_assignable,
        }
        return self.client.post("/groups", json=payload)

    def ensure_group(self, display_name: str, description: str = "") -> tuple[dict, bool]:
        """Idempotently create a role-assignable security group.

        Returns:
            (group, was_created)
        """
        group, created = resolve_or_create(
            "group",
            display_name,
            self.find_by_display_name,
            lambda: self.create_group(display_name, description),
        )
        if not created and group.get("isAssignableToRole") is False:
            logger.warning(
                "[group] '%s' exists but is not role-assignable; directory role assignment will be rejected",
                display_name,
            )
        return group, created
