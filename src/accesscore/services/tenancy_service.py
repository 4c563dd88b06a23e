"""Tenancy service — organizations, members, invitations and projects.

Learn: Two invariants live here rather than in the schema:

1. An organization always has at least one owner. change_role and
   remove_member count owners with SELECT ... FOR UPDATE before demoting
   or removing one, so two admins can't concurrently strip the last two.
2. Invitations are single-use. accept_invitation claims the row with a
   conditional UPDATE (... WHERE accepted_at IS NULL) and inserts the
   member in the same transaction; the loser of a double-accept race
   sees zero rows updated and gets a ConflictError.
"""

import re
from datetime import timedelta
from typing import Iterable, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.auth.tokens import new_invitation_token
from accesscore.config import settings
from accesscore.db.models import (
    Invitation,
    Member,
    MemberRole,
    Organization,
    Project,
    User,
    utcnow,
)
from accesscore.errors import (
    ConflictError,
    ExpiredError,
    InvalidValueError,
    InvariantViolationError,
    NotFoundError,
    PermissionDeniedError,
)
from accesscore.events.store import EventStore
from accesscore.events.types import (
    INVITATION_REVOKED,
    MEMBER_INVITED,
    MEMBER_JOINED,
    MEMBER_REMOVED,
    MEMBER_ROLE_CHANGED,
    ORG_CREATED,
    ORG_DELETED,
    ORG_UPDATED,
    PROJECT_CREATED,
)

logger = structlog.get_logger()

SLUG_RE = re.compile(r"^[a-z0-9-]+$")


def parse_role(role: str | MemberRole) -> MemberRole:
    try:
        return MemberRole(role)
    except ValueError:
        raise InvalidValueError(f"Unknown role: {role}")


class TenancyService:
    """Business logic for the organization graph."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventStore(db)

    # ─── Organizations ──────────────────────────────────

    async def _add_organization(
        self,
        display_name: str,
        slug: str,
        owner_id: int,
        logo_url: Optional[str] = None,
    ) -> Organization:
        """Insert org + owner membership and flush. The caller commits."""
        if not SLUG_RE.match(slug):
            raise InvalidValueError(f"Invalid slug: {slug}")
        if await self.get_organization_by_slug(slug):
            raise ConflictError(f"Slug '{slug}' is already taken")

        org = Organization(display_name=display_name, slug=slug, logo_url=logo_url)
        self.db.add(org)
        try:
            async with self.db.begin_nested():
                await self.db.flush()
        except IntegrityError:
            raise ConflictError(f"Slug '{slug}' is already taken")

        self.db.add(
            Member(
                organization_id=org.id,
                user_id=owner_id,
                role=MemberRole.OWNER.value,
            )
        )
        await self.db.flush()

        await self.events.append(
            stream_id=f"organization:{org.id}",
            event_type=ORG_CREATED,
            data={"slug": slug, "owner_id": owner_id},
        )
        return org

    async def create_organization(
        self,
        display_name: str,
        slug: str,
        owner_id: int,
        logo_url: Optional[str] = None,
    ) -> Organization:
        org = await self._add_organization(display_name, slug, owner_id, logo_url)
        await self.db.commit()
        logger.info("organization.created", organization_id=org.id, slug=slug)
        return org

    async def get_organization(self, org_id: int) -> Organization | None:
        return await self.db.get(Organization, org_id)

    async def get_organization_by_slug(self, slug: str) -> Organization | None:
        result = await self.db.execute(
            select(Organization).where(Organization.slug == slug)
        )
        return result.scalars().first()

    async def _require_organization(self, org_id: int) -> Organization:
        org = await self.get_organization(org_id)
        if not org:
            raise NotFoundError(f"Organization {org_id} not found")
        return org

    async def update_organization(
        self,
        org_id: int,
        display_name: Optional[str] = None,
        slug: Optional[str] = None,
        logo_url: Optional[str] = None,
    ) -> Organization:
        org = await self._require_organization(org_id)
        changes = {}
        if slug is not None and slug != org.slug:
            if not SLUG_RE.match(slug):
                raise InvalidValueError(f"Invalid slug: {slug}")
            if await self.get_organization_by_slug(slug):
                raise ConflictError(f"Slug '{slug}' is already taken")
            org.slug = slug
            changes["slug"] = slug
        if display_name is not None:
            org.display_name = display_name
            changes["display_name"] = display_name
        if logo_url is not None:
            org.logo_url = logo_url
            changes["logo_url"] = logo_url

        try:
            async with self.db.begin_nested():
                await self.db.flush()
        except IntegrityError:
            raise ConflictError(f"Slug '{slug}' is already taken")

        if changes:
            await self.events.append(
                stream_id=f"organization:{org.id}",
                event_type=ORG_UPDATED,
                data=changes,
            )
        await self.db.commit()
        return org

    async def delete_organization(self, org_id: int) -> None:
        """Delete an organization. Members, invitations, keys and projects cascade."""
        org = await self._require_organization(org_id)
        await self.db.delete(org)
        await self.events.append(
            stream_id=f"organization:{org_id}",
            event_type=ORG_DELETED,
            data={"slug": org.slug},
        )
        await self.db.commit()
        logger.info("organization.deleted", organization_id=org_id)

    async def list_user_organizations(
        self, user_id: int
    ) -> list[tuple[Organization, str]]:
        result = await self.db.execute(
            select(Organization, Member.role)
            .join(Member, Member.organization_id == Organization.id)
            .where(Member.user_id == user_id)
            .order_by(Organization.display_name, Organization.id)
        )
        return [(org, role) for org, role in result.all()]

    # ─── Members ────────────────────────────────────────

    async def get_member(self, org_id: int, user_id: int) -> Member | None:
        result = await self.db.execute(
            select(Member).where(
                Member.organization_id == org_id, Member.user_id == user_id
            )
        )
        return result.scalars().first()

    async def require_role(
        self, org_id: int, user_id: int, roles: Iterable[MemberRole]
    ) -> Member:
        """Return the caller's membership if its role is in `roles`."""
        member = await self.get_member(org_id, user_id)
        if not member:
            raise PermissionDeniedError("You are not a member of this organization")
        if MemberRole(member.role) not in set(roles):
            raise PermissionDeniedError(
                "You do not have permission to perform this action"
            )
        return member

    async def list_members(self, org_id: int) -> list[tuple[Member, User]]:
        result = await self.db.execute(
            select(Member, User)
            .join(User, User.id == Member.user_id)
            .where(Member.organization_id == org_id)
            .order_by(Member.id)
        )
        return [(member, user) for member, user in result.all()]

    async def _locked_owner_count(self, org_id: int) -> int:
        result = await self.db.execute(
            select(Member.id)
            .where(
                Member.organization_id == org_id,
                Member.role == MemberRole.OWNER.value,
            )
            .with_for_update()
        )
        return len(result.scalars().all())

    async def _require_member(self, org_id: int, user_id: int) -> Member:
        member = await self.get_member(org_id, user_id)
        if not member:
            raise NotFoundError(
                f"User {user_id} is not a member of organization {org_id}"
            )
        return member

    async def change_role(
        self, org_id: int, user_id: int, new_role: str | MemberRole
    ) -> Member:
        role = parse_role(new_role)
        member = await self._require_member(org_id, user_id)
        old_role = member.role

        if old_role == MemberRole.OWNER.value and role is not MemberRole.OWNER:
            if await self._locked_owner_count(org_id) <= 1:
                await self.db.rollback()
                raise InvariantViolationError(
                    "An organization must keep at least one owner"
                )

        member.role = role.value
        await self.events.append(
            stream_id=f"organization:{org_id}",
            event_type=MEMBER_ROLE_CHANGED,
            data={"user_id": user_id, "from": old_role, "to": role.value},
        )
        await self.db.commit()
        logger.info(
            "member.role_changed",
            organization_id=org_id,
            user_id=user_id,
            role=role.value,
        )
        return member

    async def remove_member(self, org_id: int, user_id: int) -> None:
        member = await self._require_member(org_id, user_id)

        if member.role == MemberRole.OWNER.value:
            if await self._locked_owner_count(org_id) <= 1:
                await self.db.rollback()
                raise InvariantViolationError(
                    "Cannot remove the last owner of an organization"
                )

        await self.db.delete(member)
        await self.events.append(
            stream_id=f"organization:{org_id}",
            event_type=MEMBER_REMOVED,
            data={"user_id": user_id},
        )
        await self.db.commit()
        logger.info("member.removed", organization_id=org_id, user_id=user_id)

    # ─── Invitations ────────────────────────────────────

    async def invite_member(
        self,
        org_id: int,
        email: str,
        role: str | MemberRole,
        inviter_id: Optional[int],
    ) -> Invitation:
        """Create a pending invitation. Fails if the email already belongs to a member."""
        role = parse_role(role)
        await self._require_organization(org_id)
        email = email.strip().lower()

        existing = await self.db.execute(
            select(Member.id)
            .join(User, User.id == Member.user_id)
            .where(Member.organization_id == org_id, User.email == email)
        )
        if existing.scalars().first() is not None:
            raise ConflictError("User is already a member of this organization")

        invitation = Invitation(
            organization_id=org_id,
            email=email,
            role=role.value,
            token=new_invitation_token(),
            invited_by=inviter_id,
            expires_at=utcnow() + timedelta(hours=settings.invitation_ttl_hours),
        )
        self.db.add(invitation)
        await self.db.flush()

        await self.events.append(
            stream_id=f"organization:{org_id}",
            event_type=MEMBER_INVITED,
            data={
                "invitation_id": invitation.id,
                "email": email,
                "role": role.value,
                "invited_by": inviter_id,
            },
        )
        await self.db.commit()
        logger.info(
            "member.invited", organization_id=org_id, invitation_id=invitation.id
        )
        return invitation

    async def list_invitations(self, org_id: int) -> list[Invitation]:
        """Pending invitations only."""
        result = await self.db.execute(
            select(Invitation)
            .where(
                Invitation.organization_id == org_id,
                Invitation.accepted_at.is_(None),
                Invitation.expires_at > utcnow(),
            )
            .order_by(Invitation.id)
        )
        return list(result.scalars().all())

    async def revoke_invitation(self, org_id: int, invitation_id: int) -> None:
        invitation = await self.db.get(Invitation, invitation_id)
        if not invitation or invitation.organization_id != org_id:
            raise NotFoundError(f"Invitation {invitation_id} not found")
        if invitation.accepted_at is not None:
            raise ConflictError("Invitation has already been accepted")

        await self.db.delete(invitation)
        await self.events.append(
            stream_id=f"organization:{org_id}",
            event_type=INVITATION_REVOKED,
            data={"invitation_id": invitation_id},
        )
        await self.db.commit()

    async def accept_invitation(self, token: str, user_id: int) -> Member:
        """Redeem an invitation token for the given user.

        Learn: check-expiry, check-not-accepted, mark-accepted and
        insert-member happen in one transaction. Any failure rolls the
        whole thing back, so a rejected accept never leaves the
        invitation consumed.
        """
        try:
            result = await self.db.execute(
                select(Invitation).where(Invitation.token == token)
            )
            invitation = result.scalars().first()
            if invitation is None:
                raise NotFoundError("Invalid invitation token")
            if invitation.accepted_at is not None:
                raise ConflictError("Invitation has already been accepted")
            now = utcnow()
            if invitation.expires_at <= now:
                raise ExpiredError("Invitation has expired")

            user = await self.db.get(User, user_id)
            if user is None or user.email != invitation.email.lower():
                raise PermissionDeniedError(
                    "This invitation was sent to a different email address"
                )

            claimed = await self.db.execute(
                update(Invitation)
                .where(Invitation.id == invitation.id, Invitation.accepted_at.is_(None))
                .values(accepted_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise ConflictError("Invitation has already been accepted")

            if await self.get_member(invitation.organization_id, user_id):
                raise ConflictError("You are already a member of this organization")

            member = Member(
                organization_id=invitation.organization_id,
                user_id=user_id,
                role=invitation.role,
                invited_by=invitation.invited_by,
            )
            self.db.add(member)
            try:
                async with self.db.begin_nested():
                    await self.db.flush()
            except IntegrityError:
                raise ConflictError("You are already a member of this organization")

            await self.events.append(
                stream_id=f"organization:{invitation.organization_id}",
                event_type=MEMBER_JOINED,
                data={
                    "user_id": user_id,
                    "role": invitation.role,
                    "invitation_id": invitation.id,
                },
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "member.joined",
            organization_id=member.organization_id,
            user_id=user_id,
        )
        return member

    # ─── Projects ───────────────────────────────────────

    async def create_project(self, org_id: int, display_name: str) -> Project:
        await self._require_organization(org_id)
        project = Project(organization_id=org_id, display_name=display_name)
        self.db.add(project)
        await self.db.flush()
        await self.events.append(
            stream_id=f"project:{project.id}",
            event_type=PROJECT_CREATED,
            data={"organization_id": org_id, "display_name": display_name},
        )
        await self.db.commit()
        return project

    async def get_project(self, project_id: int) -> Project | None:
        return await self.db.get(Project, project_id)

    async def list_projects(self, org_id: int) -> list[Project]:
        result = await self.db.execute(
            select(Project)
            .where(Project.organization_id == org_id)
            .order_by(Project.id)
        )
        return list(result.scalars().all())

    async def is_project_member(self, project_id: int, user_id: int) -> bool:
        """True when the user belongs to the organization owning the project."""
        result = await self.db.execute(
            select(func.count(Member.id))
            .join(Project, Project.organization_id == Member.organization_id)
            .where(Project.id == project_id, Member.user_id == user_id)
        )
        return result.scalar_one() > 0
