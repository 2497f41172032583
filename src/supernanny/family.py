"""Family (tenant) operations: tenant lookup, baby profiles, caregiver invitations."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from .constants import INVITATION_ROLES, INVITE_FUNCTION
from .errors import AuthenticationError, PlatformError, TenantNotFoundError
from .models import BabyProfile, Invitation, InvitationResult, User
from .platform import PlatformClient

logger = logging.getLogger(__name__)


async def resolve_tenant_id(client: PlatformClient, user: User) -> str:
    """Find the family a user belongs to.

    Lookup order: ``users_to_tenants``, then ``users.tenant_id``, then the
    ``tenant_id`` claim in app metadata.

    Raises:
        TenantNotFoundError: If none of them has a tenant
    """
    for table, column in (("users_to_tenants", "user_id"), ("users", "id")):
        try:
            row = await client.table(table).select("tenant_id").eq(column, user.id).single().execute()
        except PlatformError as e:
            logger.debug(f"No tenant in {table} for user {user.id}: {e}")
            continue
        if isinstance(row, dict) and row.get("tenant_id"):
            return str(row["tenant_id"])

    claim = user.app_metadata.get("tenant_id")
    if claim:
        return str(claim)

    logger.error(f"No tenant_id found for user {user.id}")
    raise TenantNotFoundError()


class FamilyService:
    """Baby profiles and invitations for the signed-in user's family."""

    def __init__(self, client: PlatformClient):
        self.client = client

    async def _current_user(self) -> User:
        user = await self.client.auth.get_user()
        if user is None:
            raise AuthenticationError("Authentication error: You must be logged in")
        return user

    async def create_baby_profile(
        self,
        name: str,
        dob: date | str,
        sex: str | None = None,
        birth_weight: float | None = None,
    ) -> BabyProfile:
        """Add a baby to the family.

        Raises:
            ValueError: If name or date of birth is missing
            TenantNotFoundError: If the user has no family yet
        """
        if not name or not dob:
            raise ValueError("Name and date of birth are required")

        user = await self._current_user()
        tenant_id = await resolve_tenant_id(self.client, user)

        row = await self.client.table("babies").insert({
            "name": name,
            "dob": dob.isoformat() if isinstance(dob, date) else dob,
            "tenant_id": tenant_id,
            "metadata": {"sex": sex, "birth_weight": birth_weight},
        }).select().single().execute()

        logger.info(f"Created baby profile {row.get('id')} for tenant {tenant_id}")
        return BabyProfile.model_validate(row)

    async def list_babies(self) -> list[BabyProfile]:
        user = await self._current_user()
        tenant_id = await resolve_tenant_id(self.client, user)
        rows = await self.client.table("babies").select().eq("tenant_id", tenant_id).execute()
        return [BabyProfile.model_validate(r) for r in rows or []]

    async def invite_partner(self, email: str, role: str) -> InvitationResult:
        """Ask the invitation function to invite ``email`` into the family.

        Failures come back as an unsuccessful result carrying the platform's
        message; nothing is retried.
        """
        if not email or not role:
            return InvitationResult(success=False, error="Email and role are required")
        if role not in INVITATION_ROLES:
            return InvitationResult(
                success=False,
                error=f"Invalid role '{role}'. Choose one of: {', '.join(INVITATION_ROLES)}",
            )

        session = await self.client.auth.get_session()
        if session is None:
            return InvitationResult(success=False, error="Authentication error: You must be logged in")

        try:
            body: Any = await self.client.functions.invoke(
                INVITE_FUNCTION,
                {"email": email, "role": role},
                access_token=session.access_token,
            )
        except PlatformError as e:
            logger.error(f"Invitation for {email} failed: {e}")
            return InvitationResult(success=False, error=e.message)

        result = InvitationResult.model_validate(body or {})
        if result.success:
            logger.info(f"Invitation sent to {email} as {role}")
        else:
            logger.warning(f"Invitation for {email} rejected: {result.display_message}")
        return result

    async def list_invitations(self) -> list[Invitation]:
        user = await self._current_user()
        tenant_id = await resolve_tenant_id(self.client, user)
        rows = await (
            self.client.table("invitations")
            .select()
            .eq("tenant_id", tenant_id)
            .order("created_at", ascending=False)
            .execute()
        )
        return [Invitation.model_validate(r) for r in rows or []]
