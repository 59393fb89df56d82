"""Guest user lookup, invitation and attribute tagging."""
from __future__ import annotations
import logging
from typing import Optional

from crossadmin.core.resolver import first_by_id
from .client import GraphClient, odata_quote

logger = logging.getLogger(__name__)

TAG_ATTRIBUTE = "employeeId"
EVENTUAL_CONSISTENCY = {"ConsistencyLevel": "eventual"}


class GuestUserService:
    """Service for external (B2B guest) users."""

    def __init__(self, client: GraphClient, *, invite_redirect_url: str = "https://myapps.microsoft.com",
                 send_invitation_message: bool = True):
        """Initialize guest user service.

        Args:
            client: Authenticated Graph client
            invite_redirect_url: Where invitees land after redemption
            send_invitation_message: Whether the platform emails the invitation
        """
        self.client = client
        self.invite_redirect_url = invite_redirect_url
        self.send_invitation_message = send_invitation_message

    def find_by_email(self, email: str) -> Optional[dict]:
        """Return the user whose mail matches ``email`` (case-insensitive), if any.

        Uses the eventual-consistency query mode, which supports ``$count``
        and is the mode in which newly invited guests surface first.
        """
        users = self.client.get_all(
            "/users",
            params={
                "$filter": f"mail eq {odata_quote(email)}",
                "$select": f"id,displayName,mail,userType,{TAG_ATTRIBUTE}",
                "$count": "true",
            },
            headers=EVENTUAL_CONSISTENCY,
        )
        matches = [user for user in users if (user.get("mail") or "").lower() == email.lower()]
        if len(matches) > 1:
            logger.warning("[guest] %d users share mail '%s'; using lowest id", len(matches), email)
        return first_by_id(matches)

    def invite(self, email: str, display_name: str) -> dict:
        """Invite an external user and return the created user representation."""
        payload = {
            "invitedUserEmailAddress": email,
            "invitedUserDisplayName": display_name,
            "inviteRedirectUrl": self.invite_redirect_url,
            "sendInvitationMessage": self.send_invitation_message,
        }
        invitation = self.client.post("/invitations", json=payload)
        invited_user = invitation.get("invitedUser") or {}
        logger.info("[guest] Invited '%s' (id=%s)", email, invited_user.get("id"))
        return invited_user

    def get_tag(self, user_id: str) -> Optional[str]:
        user = self.client.get(f"/users/{user_id}", params={"$select": f"id,{TAG_ATTRIBUTE}"})
        return user.get(TAG_ATTRIBUTE)

    def set_tag(self, user_id: str, value: str) -> None:
        self.client.patch(f"/users/{user_id}", json={TAG_ATTRIBUTE: value})
