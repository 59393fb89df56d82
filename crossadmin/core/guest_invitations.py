"""Guest invitation engine.

Invites external identities that do not exist yet and tags every invited or
pre-existing guest with a correlating attribute used by the auto-assignment
policy.

Two passes:
    1. Invite: detect existing principals by email, invite the missing ones.
    2. Tag: re-resolve each principal (new guests may not have propagated yet),
       write the tag if needed and confirm it by reading it back.

All invitations are issued before any propagation wait is spent.
"""
from __future__ import annotations
import logging
import time
from typing import Callable, Optional

from crossadmin.core.azure.exceptions import AzureAPIError, InsufficientPermissionsError
from crossadmin.core.azure.users import GuestUserService
from crossadmin.core.models import GuestRecord, GuestResult, GuestStatus, ProgressEvent

logger = logging.getLogger(__name__)


class GuestInvitationEngine:
    """Invite and tag a list of guests, one record at a time."""

    def __init__(
        self,
        users: GuestUserService,
        *,
        default_tag: str,
        retry_count: int = 5,
        retry_delay: float = 10.0,
        on_event: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        self.users = users
        self.default_tag = default_tag
        self.retry_count = retry_count
        self.retry_delay = retry_delay
        self.on_event = on_event

    def _emit(self, message: str, level: str = "info") -> None:
        if self.on_event:
            self.on_event(ProgressEvent("guests", message, level))

    def target_tag(self, record: GuestRecord) -> str:
        return record.employee_tag or self.default_tag

    def run(self, records: list[GuestRecord]) -> list[GuestResult]:
        """Invite then tag every record; failures are recorded per record.

        Raises:
            InsufficientPermissionsError: The caller may not read or invite users
        """
        results = [self.invite_one(record) for record in records]
        for result in results:
            if result.invitation_status == GuestStatus.FAILED:
                continue
            self.tag_one(result)
        return results

    def invite_one(self, record: GuestRecord) -> GuestResult:
        try:
            existing = self.users.find_by_email(record.email)
        except InsufficientPermissionsError:
            raise
        except AzureAPIError as exc:
            logger.error("[guest] Lookup failed for '%s': %s", record.email, exc)
            self._emit(f"{record.email}: lookup failed", "error")
            return GuestResult(record, GuestStatus.FAILED, detail=str(exc))

        if existing:
            logger.info("[guest] '%s' already exists (id=%s)", record.email, existing["id"])
            self._emit(f"{record.email}: already exists")
            return GuestResult(record, GuestStatus.ALREADY_EXISTS, principal_id=existing["id"])

        try:
            invited = self.users.invite(record.email, record.display_name)
        except InsufficientPermissionsError:
            raise
        except AzureAPIError as exc:
            logger.error("[guest] Invitation failed for '%s': %s", record.email, exc)
            self._emit(f"{record.email}: invitation failed", "error")
            return GuestResult(record, GuestStatus.FAILED, detail=str(exc))

        self._emit(f"{record.email}: invited")
        return GuestResult(record, GuestStatus.INVITED, principal_id=invited.get("id"))

    def tag_one(self, result: GuestResult) -> GuestResult:
        """Converge the guest's tag attribute, tolerating propagation delay.

        Read failures count as "not resolvable yet" and use up an attempt.
        """
        record = result.record
        tag = self.target_tag(record)
        last_error = None

        for attempt in range(1, self.retry_count + 1):
            principal = current = None
            try:
                principal = self.users.find_by_email(record.email)
                if principal:
                    current = self.users.get_tag(principal["id"])
            except InsufficientPermissionsError:
                raise
            except AzureAPIError as exc:
                logger.warning("[guest] Reading '%s' failed (attempt %d/%d): %s",
                               record.email, attempt, self.retry_count, exc)
                principal, last_error = None, exc
            if principal:
                result.principal_id = principal["id"]
                result.tag_status, result.detail = self._apply_tag(principal["id"], current, tag, record.email)
                self._emit(f"{record.email}: {result.tag_status}")
                return result
            if attempt < self.retry_count:
                logger.info(
                    "[guest] '%s' not resolvable yet (attempt %d/%d); waiting %ss",
                    record.email, attempt, self.retry_count, self.retry_delay,
                )
                time.sleep(self.retry_delay)

        logger.warning("[guest] '%s' not found after %d attempts", record.email, self.retry_count)
        result.tag_status = GuestStatus.NOT_FOUND
        result.detail = f"not resolvable after {self.retry_count} attempts"
        if last_error is not None:
            result.detail += f" (last error: {last_error})"
        self._emit(f"{record.email}: not found", "warning")
        return result

    def _apply_tag(self, user_id: str, current: Optional[str], tag: str, email: str) -> tuple[str, str]:
        """Write the tag unless already set and confirm it by reading it back.

        Returns:
            (tag status, detail)
        """
        if current == tag:
            logger.info("[guest] '%s' already tagged '%s'", email, tag)
            return GuestStatus.ALREADY_CORRECT, ""

        try:
            self.users.set_tag(user_id, tag)
            stored = self.users.get_tag(user_id)
        except InsufficientPermissionsError:
            raise
        except AzureAPIError as exc:
            logger.error("[guest] Tag update failed for '%s': %s", email, exc)
            return GuestStatus.UPDATE_FAILED, str(exc)

        if stored == tag:
            logger.info("[guest] '%s' tagged '%s'", email, tag)
            return GuestStatus.UPDATED, ""
        logger.warning("[guest] '%s' tag write not reflected on read-back", email)
        return GuestStatus.UPDATE_FAILED, f"tag did not read back as '{tag}'"
