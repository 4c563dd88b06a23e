"""Credential service — users, passwords and opaque sessions.

Learn: Every authentication failure collapses to one AuthenticationError
("Invalid credentials") so callers can't probe which emails exist or
which accounts are disabled. Unknown emails still pay for a bcrypt
comparison against a dummy hash so response timing doesn't leak either.

Sessions are rows, not signed tokens:
- token: 48 random bytes, hex encoded
- absolute expiry (settings.session_ttl_hours), no sliding refresh
- an expired row reads as "not found"; sweeping is a separate bulk delete
"""

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.auth.password import DUMMY_PASSWORD_HASH, hash_password, verify_password
from accesscore.auth.tokens import constant_time_equals, new_session_token
from accesscore.config import settings
from accesscore.db.models import (
    Member,
    MemberRole,
    Organization,
    User,
    UserSession,
    utcnow,
)
from accesscore.errors import (
    AuthenticationError,
    ConflictError,
    InvariantViolationError,
    NotFoundError,
)
from accesscore.events.store import EventStore
from accesscore.events.types import (
    USER_ACTIVATED,
    USER_CREATED,
    USER_DELETED,
    USER_DISABLED,
    USER_LOGGED_IN,
    USER_UPDATED,
)
from accesscore.services.tenancy_service import TenancyService

logger = structlog.get_logger()


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialService:
    """Business logic for users, password checks and sessions.

    The hash/verify pair is injectable; defaults are bcrypt.
    """

    def __init__(
        self,
        db: AsyncSession,
        hasher: Callable[[str], str] = hash_password,
        verifier: Callable[[str, str], bool] = verify_password,
    ):
        self.db = db
        self.events = EventStore(db)
        self.hasher = hasher
        self.verifier = verifier

    # ─── Users ──────────────────────────────────────────

    async def _add_user(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> User:
        email = normalize_email(email)
        if await self.find_by_email(email):
            raise ConflictError("Email already registered")

        user = User(
            email=email,
            password_hash=self.hasher(password),
            display_name=display_name or email.split("@", 1)[0],
            is_active=True,
        )
        self.db.add(user)
        try:
            async with self.db.begin_nested():
                await self.db.flush()
        except IntegrityError:
            raise ConflictError("Email already registered")

        await self.events.append(
            stream_id=f"user:{user.id}",
            event_type=USER_CREATED,
            data={"email": email},
        )
        return user

    async def create_user(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> User:
        user = await self._add_user(email, password, display_name)
        await self.db.commit()
        logger.info("user.created", user_id=user.id)
        return user

    async def find_by_email(self, email: str) -> User | None:
        result = await self.db.execute(
            select(User).where(User.email == normalize_email(email))
        )
        return result.scalars().first()

    async def get_user(self, user_id: int) -> User | None:
        return await self.db.get(User, user_id)

    async def _require_user(self, user_id: int) -> User:
        user = await self.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def update_profile(
        self,
        user_id: int,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        user = await self._require_user(user_id)
        changes = {}
        if display_name is not None:
            user.display_name = display_name
            changes["display_name"] = display_name
        if avatar_url is not None:
            user.avatar_url = avatar_url
            changes["avatar_url"] = avatar_url

        if changes:
            await self.events.append(
                stream_id=f"user:{user.id}",
                event_type=USER_UPDATED,
                data=changes,
            )
        await self.db.commit()
        return user

    async def set_active(self, user_id: int, active: bool) -> User:
        """Soft-enable/disable. Existing sessions and keys stop working at once."""
        user = await self._require_user(user_id)
        if user.is_active != active:
            user.is_active = active
            await self.events.append(
                stream_id=f"user:{user.id}",
                event_type=USER_ACTIVATED if active else USER_DISABLED,
                data={},
            )
        await self.db.commit()
        logger.info("user.active_changed", user_id=user.id, active=active)
        return user

    async def delete_user(self, user_id: int) -> None:
        """Hard delete. Memberships, sessions and the user's API keys cascade.

        Organizations where the user is the only member go with them;
        being the last owner of an organization that still has other
        members is refused.
        """
        user = await self._require_user(user_id)

        owned = await self.db.execute(
            select(Member.organization_id).where(
                Member.user_id == user_id, Member.role == MemberRole.OWNER.value
            )
        )
        solo_orgs = []
        for org_id in owned.scalars().all():
            owners = await self._count(org_id, MemberRole.OWNER.value)
            if owners > 1:
                continue
            members = await self._count(org_id)
            if members > 1:
                raise InvariantViolationError(
                    f"User {user_id} is the last owner of organization {org_id}"
                )
            solo_orgs.append(org_id)

        if solo_orgs:
            await self.db.execute(
                delete(Organization).where(Organization.id.in_(solo_orgs))
            )
        await self.db.delete(user)
        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=USER_DELETED,
            data={"deleted_organizations": solo_orgs},
        )
        await self.db.commit()
        logger.info("user.deleted", user_id=user_id)

    async def _count(self, org_id: int, role: Optional[str] = None) -> int:
        q = select(func.count(Member.id)).where(Member.organization_id == org_id)
        if role:
            q = q.where(Member.role == role)
        return (await self.db.execute(q)).scalar_one()

    # ─── Password verification ──────────────────────────

    async def verify_password(self, email: str, password: str) -> User:
        """Return the user for a correct password, else AuthenticationError.

        Disabled users fail before any hash comparison, even with the
        right password.
        """
        user = await self.find_by_email(email)
        if user is None:
            self.verifier(password, DUMMY_PASSWORD_HASH)
            raise AuthenticationError()
        if not user.is_active:
            raise AuthenticationError()
        if not self.verifier(password, user.password_hash):
            raise AuthenticationError()
        return user

    # ─── Sessions ───────────────────────────────────────

    def _new_session(self, user_id: int) -> UserSession:
        session = UserSession(
            user_id=user_id,
            token=new_session_token(),
            expires_at=utcnow() + timedelta(hours=settings.session_ttl_hours),
        )
        self.db.add(session)
        return session

    async def create_session(self, user_id: int) -> UserSession:
        session = self._new_session(user_id)
        await self.db.flush()
        await self.db.commit()
        return session

    async def find_session(
        self, token: str, now: Optional[datetime] = None
    ) -> UserSession | None:
        """Look up a live session. Expired rows read as missing and are left in place."""
        if not token:
            return None
        result = await self.db.execute(
            select(UserSession).where(UserSession.token == token)
        )
        session = result.scalars().first()
        if session is None or not constant_time_equals(session.token, token):
            return None
        if session.expires_at <= (now or utcnow()):
            return None
        return session

    async def validate_session(self, token: str) -> User | None:
        """Resolve a token to its active user, or None."""
        session = await self.find_session(token)
        if session is None:
            return None
        user = await self.db.get(User, session.user_id)
        if user is None or not user.is_active:
            return None
        return user

    async def invalidate_session(self, token: str) -> bool:
        result = await self.db.execute(
            delete(UserSession).where(UserSession.token == token)
        )
        await self.db.commit()
        return result.rowcount > 0

    async def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        """Bulk-delete expired sessions. Idempotent; returns rows removed."""
        result = await self.db.execute(
            delete(UserSession).where(UserSession.expires_at <= (now or utcnow()))
        )
        await self.db.commit()
        logger.info("session.swept", deleted=result.rowcount)
        return result.rowcount

    # ─── Signup / login flows ───────────────────────────

    async def login(self, email: str, password: str) -> tuple[User, UserSession]:
        user = await self.verify_password(email, password)
        user.last_login_at = utcnow()
        session = self._new_session(user.id)
        await self.db.flush()
        await self.events.append(
            stream_id=f"user:{user.id}",
            event_type=USER_LOGGED_IN,
            data={},
        )
        await self.db.commit()
        logger.info("user.logged_in", user_id=user.id)
        return user, session

    async def signup(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> tuple[User, Organization, UserSession]:
        """Create user + personal organization + owner membership + session.

        Learn: One transaction. If any step fails nothing is left behind,
        so a half-onboarded user without an organization can't exist.
        """
        user = await self._add_user(email, password, display_name)
        local = user.email.split("@", 1)[0]
        slug_base = "".join(c if c.isascii() and c.isalnum() else "-" for c in local).strip("-") or "org"
        org = await TenancyService(self.db)._add_organization(
            display_name=f"{user.display_name}'s Organization",
            slug=f"{slug_base}-{secrets.token_hex(4)}",
            owner_id=user.id,
        )
        user.last_login_at = utcnow()
        session = self._new_session(user.id)
        await self.db.flush()
        await self.db.commit()
        logger.info("user.signed_up", user_id=user.id, organization_id=org.id)
        return user, org, session
