"""RLS service — session properties, per-user values and row filter policies.

Learn: Row-level security is split between two parties. This service
owns the *inputs*: which typed session properties a project defines,
what value each user holds, and which policy conditions reference them.
The query engine owns the *application*: it substitutes the resolved
context into the conditions. Nothing here parses or runs SQL.

resolve_context(project, user) walks every property of the project:

    user has a value        → typed value (str / int / float / bool)
    optional + default      → DeferredExpression(default_expr)
    optional, no default    → omitted
    required, no value      → collected; all missing names raised together

A required property never falls back to its default: the user must
hold a value.
"""

import math
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Union

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.db.models import (
    Member,
    Project,
    PropertyType,
    RlsPolicy,
    RlsPolicyModel,
    RlsPolicySessionProperty,
    SessionProperty,
    User,
    UserSessionPropertyValue,
)
from accesscore.errors import (
    ConflictError,
    InvalidValueError,
    MissingRequiredContextError,
    NotFoundError,
)
from accesscore.events.store import EventStore
from accesscore.events.types import (
    RLS_POLICY_CREATED,
    RLS_POLICY_DELETED,
    RLS_POLICY_UPDATED,
    SESSION_PROPERTY_DEFINED,
    SESSION_PROPERTY_DELETED,
    SESSION_PROPERTY_UPDATED,
    SESSION_PROPERTY_VALUE_CLEARED,
    SESSION_PROPERTY_VALUE_SET,
)

logger = structlog.get_logger()

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

_UNSET = object()


@dataclass(frozen=True)
class DeferredExpression:
    """A default expression handed to the query engine unevaluated."""

    expression: str


ContextValue = Union[str, int, float, bool, DeferredExpression]


# ─── Typed values ────────────────────────────────────────


def parse_value(property_type: str | PropertyType, raw: str) -> str:
    """Validate `raw` against the declared type and return its canonical text form."""
    ptype = PropertyType(property_type)
    if not isinstance(raw, str):
        raise InvalidValueError(f"Value must be a string, got {type(raw).__name__}")

    if ptype is PropertyType.STRING:
        return raw
    if ptype is PropertyType.BOOLEAN:
        lowered = raw.strip().lower()
        if lowered not in ("true", "false"):
            raise InvalidValueError(f"'{raw}' is not a boolean (expected true/false)")
        return lowered

    text = raw.strip()
    if not NUMBER_RE.match(text):
        raise InvalidValueError(f"'{raw}' is not a number")
    number = float(text)
    if not math.isfinite(number):
        raise InvalidValueError(f"'{raw}' is not a finite number")
    return text


def to_typed(property_type: str | PropertyType, stored: str) -> str | int | float | bool:
    """Convert a canonical stored value to its Python type."""
    ptype = PropertyType(property_type)
    if ptype is PropertyType.BOOLEAN:
        return stored == "true"
    if ptype is PropertyType.NUMBER:
        if re.fullmatch(r"[+-]?\d+", stored):
            return int(stored)
        return float(stored)
    return stored


def _parse_type(value: str | PropertyType) -> PropertyType:
    try:
        return PropertyType(value)
    except ValueError:
        raise InvalidValueError(f"Unknown property type: {value}")


def _check_name(name: str) -> str:
    if not IDENTIFIER_RE.match(name or ""):
        raise InvalidValueError(
            f"Invalid property name '{name}': use letters, digits and underscores"
        )
    return name


@dataclass
class PolicyDetail:
    policy: RlsPolicy
    session_property_ids: list[int]
    model_ids: list[int]


class RlsService:
    """Business logic for session properties and RLS policies."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventStore(db)

    # ─── Session properties ─────────────────────────────

    async def list_properties(self, project_id: int) -> list[SessionProperty]:
        result = await self.db.execute(
            select(SessionProperty)
            .where(SessionProperty.project_id == project_id)
            .order_by(SessionProperty.id)
        )
        return list(result.scalars().all())

    async def get_property(self, project_id: int, property_id: int) -> SessionProperty:
        prop = await self.db.get(SessionProperty, property_id)
        if prop is None or prop.project_id != project_id:
            raise NotFoundError(
                f"Session property {property_id} not found in project {project_id}"
            )
        return prop

    async def _name_taken(self, project_id: int, name: str, exclude_id: int | None = None) -> bool:
        q = select(SessionProperty.id).where(
            SessionProperty.project_id == project_id, SessionProperty.name == name
        )
        if exclude_id is not None:
            q = q.where(SessionProperty.id != exclude_id)
        return (await self.db.execute(q)).scalars().first() is not None

    async def define_property(
        self,
        project_id: int,
        name: str,
        type: str | PropertyType,
        required: bool = False,
        default_expr: Optional[str] = None,
    ) -> SessionProperty:
        ptype = _parse_type(type)
        _check_name(name)
        if not await self.db.get(Project, project_id):
            raise NotFoundError(f"Project {project_id} not found")
        if await self._name_taken(project_id, name):
            raise ConflictError(f"Session property '{name}' already exists in this project")

        prop = SessionProperty(
            project_id=project_id,
            name=name,
            type=ptype.value,
            required=required,
            default_expr=default_expr,
        )
        self.db.add(prop)
        try:
            async with self.db.begin_nested():
                await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Session property '{name}' already exists in this project")

        await self.events.append(
            stream_id=f"project:{project_id}",
            event_type=SESSION_PROPERTY_DEFINED,
            data={"property_id": prop.id, "name": name, "type": ptype.value, "required": required},
        )
        await self.db.commit()
        logger.info("session_property.defined", project_id=project_id, name=name)
        return prop

    async def update_property(
        self,
        project_id: int,
        property_id: int,
        name: Optional[str] = None,
        type: Optional[str | PropertyType] = None,
        required: Optional[bool] = None,
        default_expr=_UNSET,
    ) -> SessionProperty:
        """Patch a property. A type change must fit every value already assigned."""
        prop = await self.get_property(project_id, property_id)
        changes = {}

        if name is not None and name != prop.name:
            _check_name(name)
            if await self._name_taken(project_id, name, exclude_id=prop.id):
                raise ConflictError(f"Session property '{name}' already exists in this project")
            prop.name = name
            changes["name"] = name

        if type is not None:
            ptype = _parse_type(type)
            if ptype.value != prop.type:
                values = await self.db.execute(
                    select(UserSessionPropertyValue).where(
                        UserSessionPropertyValue.session_property_id == prop.id
                    )
                )
                try:
                    for row in values.scalars().all():
                        row.value = parse_value(ptype, row.value)
                except InvalidValueError:
                    await self.db.rollback()
                    raise
                prop.type = ptype.value
                changes["type"] = ptype.value

        if required is not None:
            prop.required = required
            changes["required"] = required
        if default_expr is not _UNSET:
            prop.default_expr = default_expr
            changes["default_expr"] = default_expr

        # Rollback expires prop, so read the name first.
        final_name = prop.name
        try:
            async with self.db.begin_nested():
                await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Session property '{final_name}' already exists in this project")

        if changes:
            await self.events.append(
                stream_id=f"project:{project_id}",
                event_type=SESSION_PROPERTY_UPDATED,
                data={"property_id": prop.id, **changes},
            )
        await self.db.commit()
        return prop

    async def delete_property(self, project_id: int, property_id: int) -> None:
        """Delete a property; its user values and policy links cascade."""
        prop = await self.get_property(project_id, property_id)
        await self.db.delete(prop)
        await self.events.append(
            stream_id=f"project:{project_id}",
            event_type=SESSION_PROPERTY_DELETED,
            data={"property_id": property_id, "name": prop.name},
        )
        await self.db.commit()

    # ─── User values ────────────────────────────────────

    async def _require_project_member(self, project_id: int, user_id: int) -> None:
        if await self.db.get(User, user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
        result = await self.db.execute(
            select(func.count(Member.id))
            .join(Project, Project.organization_id == Member.organization_id)
            .where(Project.id == project_id, Member.user_id == user_id)
        )
        if result.scalar_one() == 0:
            raise InvalidValueError(f"User {user_id} is not a member of this project")

    async def _upsert_value(self, user_id: int, prop: SessionProperty, value: str) -> UserSessionPropertyValue:
        canonical = parse_value(prop.type, value)
        await self._require_project_member(prop.project_id, user_id)
        result = await self.db.execute(
            select(UserSessionPropertyValue).where(
                UserSessionPropertyValue.user_id == user_id,
                UserSessionPropertyValue.session_property_id == prop.id,
            )
        )
        row = result.scalars().first()
        if row is None:
            row = UserSessionPropertyValue(
                user_id=user_id, session_property_id=prop.id, value=canonical
            )
            self.db.add(row)
        else:
            row.value = canonical
        await self.db.flush()
        await self.events.append(
            stream_id=f"project:{prop.project_id}",
            event_type=SESSION_PROPERTY_VALUE_SET,
            data={"property_id": prop.id, "user_id": user_id},
        )
        return row

    async def assign_value(self, user_id: int, property_id: int, value: str) -> UserSessionPropertyValue:
        """Set (or replace) a user's value. Rejects values that don't parse as the property's type."""
        prop = await self.db.get(SessionProperty, property_id)
        if prop is None:
            raise NotFoundError(f"Session property {property_id} not found")
        row = await self._upsert_value(user_id, prop, value)
        await self.db.commit()
        return row

    async def assign_values(
        self, project_id: int, assignments: Iterable[tuple[int, int, str]]
    ) -> list[UserSessionPropertyValue]:
        """Apply (user_id, property_id, value) triples all-or-nothing."""
        rows = []
        try:
            for user_id, property_id, value in assignments:
                prop = await self.get_property(project_id, property_id)
                rows.append(await self._upsert_value(user_id, prop, value))
        except Exception:
            await self.db.rollback()
            raise
        await self.db.commit()
        return rows

    async def unassign_value(self, user_id: int, property_id: int) -> None:
        prop = await self.db.get(SessionProperty, property_id)
        result = await self.db.execute(
            delete(UserSessionPropertyValue).where(
                UserSessionPropertyValue.user_id == user_id,
                UserSessionPropertyValue.session_property_id == property_id,
            )
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise NotFoundError(f"User {user_id} has no value for property {property_id}")
        await self.events.append(
            stream_id=f"project:{prop.project_id if prop else 'unknown'}",
            event_type=SESSION_PROPERTY_VALUE_CLEARED,
            data={"property_id": property_id, "user_id": user_id},
        )
        await self.db.commit()

    async def list_user_values(
        self, user_id: int, project_id: Optional[int] = None
    ) -> list[tuple[UserSessionPropertyValue, SessionProperty]]:
        q = (
            select(UserSessionPropertyValue, SessionProperty)
            .join(
                SessionProperty,
                SessionProperty.id == UserSessionPropertyValue.session_property_id,
            )
            .where(UserSessionPropertyValue.user_id == user_id)
            .order_by(SessionProperty.id)
        )
        if project_id is not None:
            q = q.where(SessionProperty.project_id == project_id)
        result = await self.db.execute(q)
        return [(value, prop) for value, prop in result.all()]

    # ─── Resolution ─────────────────────────────────────

    async def resolve_context(self, project_id: int, user_id: int) -> dict[str, ContextValue]:
        """Build the property → value map for one user in one project.

        Raises MissingRequiredContextError naming every required property
        the user has no value for.
        """
        properties = await self.list_properties(project_id)
        values = {
            prop.id: value.value
            for value, prop in await self.list_user_values(user_id, project_id)
        }

        context: dict[str, ContextValue] = {}
        missing: list[str] = []
        for prop in properties:
            if prop.id in values:
                context[prop.name] = to_typed(prop.type, values[prop.id])
            elif prop.required:
                missing.append(prop.name)
            elif prop.default_expr is not None:
                context[prop.name] = DeferredExpression(prop.default_expr)

        if missing:
            logger.info(
                "rls.context_incomplete",
                project_id=project_id,
                user_id=user_id,
                missing=missing,
            )
            raise MissingRequiredContextError(missing)
        return context

    # ─── Policies ───────────────────────────────────────

    async def _detail(self, policy: RlsPolicy) -> PolicyDetail:
        props = await self.db.execute(
            select(RlsPolicySessionProperty.session_property_id)
            .where(RlsPolicySessionProperty.rls_policy_id == policy.id)
            .order_by(RlsPolicySessionProperty.session_property_id)
        )
        models = await self.db.execute(
            select(RlsPolicyModel.model_id)
            .where(RlsPolicyModel.rls_policy_id == policy.id)
            .order_by(RlsPolicyModel.model_id)
        )
        return PolicyDetail(
            policy=policy,
            session_property_ids=list(props.scalars().all()),
            model_ids=list(models.scalars().all()),
        )

    async def _require_policy(self, project_id: int, policy_id: int) -> RlsPolicy:
        policy = await self.db.get(RlsPolicy, policy_id)
        if policy is None or policy.project_id != project_id:
            raise NotFoundError(f"RLS policy {policy_id} not found in project {project_id}")
        return policy

    async def _set_links(
        self,
        policy: RlsPolicy,
        session_property_ids: Optional[list[int]],
        model_ids: Optional[list[int]],
    ) -> None:
        if session_property_ids is not None:
            ids = list(dict.fromkeys(session_property_ids))
            if ids:
                found = await self.db.execute(
                    select(SessionProperty.id).where(
                        SessionProperty.id.in_(ids),
                        SessionProperty.project_id == policy.project_id,
                    )
                )
                foreign = set(ids) - set(found.scalars().all())
                if foreign:
                    raise InvalidValueError(
                        "Session properties not in this project: "
                        + ", ".join(map(str, sorted(foreign)))
                    )
            await self.db.execute(
                delete(RlsPolicySessionProperty).where(
                    RlsPolicySessionProperty.rls_policy_id == policy.id
                )
            )
            self.db.add_all(
                RlsPolicySessionProperty(rls_policy_id=policy.id, session_property_id=pid)
                for pid in ids
            )
        if model_ids is not None:
            await self.db.execute(
                delete(RlsPolicyModel).where(RlsPolicyModel.rls_policy_id == policy.id)
            )
            self.db.add_all(
                RlsPolicyModel(rls_policy_id=policy.id, model_id=mid)
                for mid in dict.fromkeys(model_ids)
            )
        await self.db.flush()

    async def create_policy(
        self,
        project_id: int,
        name: str,
        condition: str,
        session_property_ids: Optional[list[int]] = None,
        model_ids: Optional[list[int]] = None,
    ) -> PolicyDetail:
        """Store a policy. The condition is kept verbatim for the query engine."""
        if not await self.db.get(Project, project_id):
            raise NotFoundError(f"Project {project_id} not found")
        try:
            policy = RlsPolicy(project_id=project_id, name=name, condition=condition)
            self.db.add(policy)
            await self.db.flush()
            await self._set_links(policy, session_property_ids or [], model_ids or [])
            await self.events.append(
                stream_id=f"project:{project_id}",
                event_type=RLS_POLICY_CREATED,
                data={"policy_id": policy.id, "name": name},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("rls_policy.created", project_id=project_id, policy_id=policy.id)
        return await self._detail(policy)

    async def get_policy(self, project_id: int, policy_id: int) -> PolicyDetail:
        return await self._detail(await self._require_policy(project_id, policy_id))

    async def list_policies(self, project_id: int) -> list[PolicyDetail]:
        result = await self.db.execute(
            select(RlsPolicy)
            .where(RlsPolicy.project_id == project_id)
            .order_by(RlsPolicy.id)
        )
        return [await self._detail(p) for p in result.scalars().all()]

    async def update_policy(
        self,
        project_id: int,
        policy_id: int,
        name: Optional[str] = None,
        condition: Optional[str] = None,
        session_property_ids: Optional[list[int]] = None,
        model_ids: Optional[list[int]] = None,
    ) -> PolicyDetail:
        policy = await self._require_policy(project_id, policy_id)
        try:
            if name is not None:
                policy.name = name
            if condition is not None:
                policy.condition = condition
            await self._set_links(policy, session_property_ids, model_ids)
            await self.events.append(
                stream_id=f"project:{project_id}",
                event_type=RLS_POLICY_UPDATED,
                data={"policy_id": policy_id},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return await self._detail(policy)

    async def delete_policy(self, project_id: int, policy_id: int) -> None:
        policy = await self._require_policy(project_id, policy_id)
        await self.db.delete(policy)
        await self.events.append(
            stream_id=f"project:{project_id}",
            event_type=RLS_POLICY_DELETED,
            data={"policy_id": policy_id},
        )
        await self.db.commit()
