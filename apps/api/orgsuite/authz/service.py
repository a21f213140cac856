from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orgsuite import audit, events
from orgsuite.authz.models import Membership, Role
from orgsuite.authz.permissions import (
    PermissionMap,
    entries_grant,
    grants_action,
    merge_permission_maps,
    normalize_permission_entries,
    normalize_permissions,
    permission_details,
    serialize_permission_map,
    summarize,
)
from orgsuite.authz.restrictions import merge_restrictions
from orgsuite.authz.schemas import (
    ApplicationSummaryRead,
    EffectivePermissionsRead,
    MembershipCreate,
    MembershipRead,
    PermissionDetailRead,
    PermissionSummaryRead,
    RoleCreate,
    RoleRead,
    RoleUpdate,
)
from orgsuite.core.config import get_settings
from orgsuite.errors import (
    ConflictError,
    NoPrimaryEntityError,
    NotFoundError,
    RoleInUseError,
    SystemRoleImmutableError,
)
from orgsuite.hierarchy.models import Entity
from orgsuite.hierarchy.service import entity_tree_service
from orgsuite.metrics import observe_permission_check, observe_primary_anomaly, observe_resolution


logger = logging.getLogger("orgsuite.authz")
tracer = trace.get_tracer("orgsuite.authz")

# actions any member of the target tenant may exercise there
TENANT_WIDE_ACTIONS = frozenset({"read", "view", "list"})


class RoleCatalogService:
    entity_type = "authz.role"

    def create_role(self, session: Session, dto: RoleCreate, *, actor_user_id: str | None = None) -> RoleRead:
        name = dto.name.strip()
        self._ensure_name_free(session, dto.tenant_id, name)
        role = Role(
            tenant_id=dto.tenant_id,
            name=name,
            description=dto.description,
            color=dto.color,
            icon=dto.icon,
            is_system=dto.is_system,
            priority=dto.priority,
            permissions=serialize_permission_map(normalize_permissions(dto.permissions)),
            restrictions=dict(dto.restrictions),
        )
        session.add(role)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("role already exists", name=name)
        session.refresh(role)

        after = RoleRead.model_validate(role)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(role.id),
            action="role.created",
            before=None,
            after=after.model_dump(mode="json"),
        )
        return after

    def list_roles(self, session: Session, *, tenant_id: str | None = None) -> list[RoleRead]:
        """Platform roles plus, when ``tenant_id`` is given, that tenant's own roles.

        Ordered by ascending priority then name; the invitation draft takes its
        default role from the head of this listing.
        """

        stmt = select(Role)
        if tenant_id is not None:
            stmt = stmt.where((Role.tenant_id == tenant_id) | Role.tenant_id.is_(None))
        rows = session.scalars(stmt.order_by(Role.priority.asc(), Role.name.asc())).all()
        return [RoleRead.model_validate(row) for row in rows]

    def get_role_model(self, session: Session, role_id: uuid.UUID) -> Role:
        role = session.scalar(select(Role).where(Role.id == role_id))
        if role is None:
            raise NotFoundError("role", role_id)
        return role

    def get_role(self, session: Session, role_id: uuid.UUID) -> RoleRead:
        return RoleRead.model_validate(self.get_role_model(session, role_id))

    def update_role(
        self,
        session: Session,
        role_id: uuid.UUID,
        dto: RoleUpdate,
        *,
        actor_user_id: str | None = None,
    ) -> RoleRead:
        role = self.get_role_model(session, role_id)
        if role.is_system:
            raise SystemRoleImmutableError("system role cannot be modified", role_id=str(role_id))
        before = RoleRead.model_validate(role).model_dump(mode="json")

        if dto.name is not None and dto.name.strip() != role.name:
            self._ensure_name_free(session, role.tenant_id, dto.name.strip())
            role.name = dto.name.strip()
        if "description" in dto.model_fields_set:
            role.description = dto.description
        if "color" in dto.model_fields_set:
            role.color = dto.color
        if "icon" in dto.model_fields_set:
            role.icon = dto.icon
        if dto.priority is not None:
            role.priority = dto.priority
        if dto.permissions is not None:
            role.permissions = serialize_permission_map(normalize_permissions(dto.permissions))
        if dto.restrictions is not None:
            role.restrictions = dict(dto.restrictions)

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("role already exists", name=role.name)
        session.refresh(role)

        after = RoleRead.model_validate(role)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(role.id),
            action="role.updated",
            before=before,
            after=after.model_dump(mode="json"),
        )
        return after

    def delete_role(self, session: Session, role_id: uuid.UUID, *, actor_user_id: str | None = None) -> None:
        role = self.get_role_model(session, role_id)
        if role.is_system:
            raise SystemRoleImmutableError("system role cannot be deleted", role_id=str(role_id))

        in_use = session.scalar(
            select(Membership.id).where(Membership.role_id == role.id, Membership.is_active.is_(True)).limit(1)
        )
        if in_use is not None:
            raise RoleInUseError("role is referenced by active memberships", role_id=str(role_id))

        before = RoleRead.model_validate(role).model_dump(mode="json")
        try:
            session.execute(update(Membership).where(Membership.role_id == role.id).values(role_id=None))
            session.delete(role)
            session.commit()
        except Exception:
            session.rollback()
            raise

        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(role_id),
            action="role.deleted",
            before=before,
            after=None,
        )

    def _ensure_name_free(self, session: Session, tenant_id: str | None, name: str) -> None:
        tenant_clause = Role.tenant_id.is_(None) if tenant_id is None else Role.tenant_id == tenant_id
        existing = session.scalar(select(Role.id).where(tenant_clause, Role.name == name))
        if existing is not None:
            raise ConflictError("role already exists", name=name)


class MembershipService:
    entity_type = "authz.membership"

    def add_membership(
        self,
        session: Session,
        dto: MembershipCreate,
        *,
        actor_user_id: str | None = None,
    ) -> MembershipRead:
        """Create or update the user's membership at ``dto.entity_id``.

        The user's first active membership becomes primary, as does any
        membership added with ``is_primary``; every other primary flag of that
        user is cleared in the same transaction.
        """

        entity = entity_tree_service.get_entity_model(session, dto.entity_id)
        if dto.role_id is not None:
            role = role_catalog_service.get_role_model(session, dto.role_id)
            if role.tenant_id is not None and role.tenant_id != entity.tenant_id:
                raise ConflictError("role belongs to another tenant", role_id=str(role.id))

        membership = session.scalar(
            select(Membership).where(Membership.user_id == dto.user_id, Membership.entity_id == dto.entity_id)
        )
        has_primary = session.scalar(
            select(Membership.id).where(
                Membership.user_id == dto.user_id,
                Membership.is_primary.is_(True),
                Membership.is_active.is_(True),
                Membership.entity_id != dto.entity_id,
            ).limit(1)
        )
        make_primary = dto.is_primary or has_primary is None

        try:
            if membership is None:
                membership = Membership(user_id=dto.user_id, entity_id=dto.entity_id)
                session.add(membership)
            membership.role_id = dto.role_id
            membership.membership_type = dto.membership_type
            membership.is_active = True
            if make_primary:
                self._clear_primary(session, dto.user_id, keep_entity_id=dto.entity_id)
                membership.is_primary = True
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("membership could not be stored", user_id=dto.user_id)
        session.refresh(membership)

        after = MembershipRead.model_validate(membership)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(membership.id),
            action="membership.upserted",
            before=None,
            after=after.model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "membership.upserted",
                actor_user_id,
                {"user_id": dto.user_id, "entity_id": str(dto.entity_id), "is_primary": membership.is_primary},
            )
        )
        logger.info(
            "membership.upserted",
            extra={"user_id": dto.user_id, "entity_id": str(dto.entity_id), "role_id": str(dto.role_id) if dto.role_id else None},
        )
        return after

    def list_memberships(
        self,
        session: Session,
        *,
        user_id: str | None = None,
        entity_id: uuid.UUID | None = None,
        include_inactive: bool = False,
    ) -> list[MembershipRead]:
        stmt = select(Membership)
        if user_id is not None:
            stmt = stmt.where(Membership.user_id == user_id)
        if entity_id is not None:
            stmt = stmt.where(Membership.entity_id == entity_id)
        if not include_inactive:
            stmt = stmt.where(Membership.is_active.is_(True))
        rows = session.scalars(stmt.order_by(Membership.created_at.asc(), Membership.id.asc())).all()
        return [MembershipRead.model_validate(row) for row in rows]

    def set_primary(
        self,
        session: Session,
        user_id: str,
        entity_id: uuid.UUID,
        *,
        actor_user_id: str | None = None,
    ) -> MembershipRead:
        membership = self._get_active(session, user_id, entity_id)
        try:
            self._clear_primary(session, user_id, keep_entity_id=entity_id)
            membership.is_primary = True
            session.commit()
        except Exception:
            session.rollback()
            raise
        session.refresh(membership)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(membership.id),
            action="membership.primary_set",
            before=None,
            after={"user_id": user_id, "entity_id": str(entity_id)},
        )
        return MembershipRead.model_validate(membership)

    def remove_membership(
        self,
        session: Session,
        user_id: str,
        entity_id: uuid.UUID,
        *,
        actor_user_id: str | None = None,
    ) -> None:
        membership = session.scalar(
            select(Membership).where(Membership.user_id == user_id, Membership.entity_id == entity_id)
        )
        if membership is None:
            raise NotFoundError("membership", f"{user_id}@{entity_id}")

        membership_id = membership.id
        was_primary = membership.is_primary and membership.is_active
        try:
            session.delete(membership)
            session.flush()
            if was_primary:
                successor = session.scalar(
                    select(Membership)
                    .where(Membership.user_id == user_id, Membership.is_active.is_(True))
                    .order_by(Membership.created_at.asc(), Membership.id.asc())
                    .limit(1)
                )
                if successor is not None:
                    successor.is_primary = True
            session.commit()
        except Exception:
            session.rollback()
            raise

        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(membership_id),
            action="membership.removed",
            before={"user_id": user_id, "entity_id": str(entity_id), "is_primary": was_primary},
            after=None,
        )

    def deactivate_user(self, session: Session, user_id: str, *, actor_user_id: str | None = None) -> int:
        try:
            result = session.execute(delete(Membership).where(Membership.user_id == user_id))
            session.commit()
        except Exception:
            session.rollback()
            raise

        removed = result.rowcount or 0
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=user_id,
            action="membership.user_deactivated",
            before=None,
            after={"removed": removed},
        )
        events.publish(events.build_envelope("membership.user_deactivated", actor_user_id, {"user_id": user_id, "removed": removed}))
        logger.info("membership.user_deactivated", extra={"user_id": user_id})
        return removed

    def _get_active(self, session: Session, user_id: str, entity_id: uuid.UUID) -> Membership:
        membership = session.scalar(
            select(Membership).where(
                Membership.user_id == user_id,
                Membership.entity_id == entity_id,
                Membership.is_active.is_(True),
            )
        )
        if membership is None:
            raise NotFoundError("membership", f"{user_id}@{entity_id}")
        return membership

    @staticmethod
    def _clear_primary(session: Session, user_id: str, *, keep_entity_id: uuid.UUID) -> None:
        session.execute(
            update(Membership)
            .where(
                Membership.user_id == user_id,
                Membership.entity_id != keep_entity_id,
                Membership.is_primary.is_(True),
            )
            .values(is_primary=False)
            .execution_options(synchronize_session="fetch")
        )


@dataclass(slots=True)
class Grant:
    membership_id: uuid.UUID
    entity_id: uuid.UUID
    tenant_id: str
    at_root: bool
    is_primary: bool
    role_id: uuid.UUID | None
    role_name: str | None
    role_priority: int
    permissions: PermissionMap
    restrictions: Mapping[str, Any]


@dataclass(slots=True)
class Resolution:
    """Everything one resolution call needs, loaded by a single query."""

    user_id: str
    grants: list[Grant] = field(default_factory=list)

    @property
    def entity_ids(self) -> list[uuid.UUID]:
        return [grant.entity_id for grant in self.grants]

    @property
    def role_grants(self) -> list[Grant]:
        return [grant for grant in self.grants if grant.role_id is not None]

    @property
    def primary_grants(self) -> list[Grant]:
        return [grant for grant in self.grants if grant.is_primary]

    def merged_permissions(self) -> PermissionMap:
        return merge_permission_maps(grant.permissions for grant in self.role_grants)


@dataclass(frozen=True, slots=True)
class PermissionScope:
    """Where a permission is exercised.

    An ``entity_id`` targets one entity. ``tenant_ids`` without an entity
    targets whole tenants. Neither targets the platform, which no entity
    membership can reach.
    """

    entity_id: uuid.UUID | None = None
    tenant_ids: frozenset[str] = frozenset()

    @classmethod
    def for_entity(cls, entity_id: uuid.UUID) -> PermissionScope:
        return cls(entity_id=entity_id)

    @classmethod
    def for_tenant(cls, tenant_id: str | None) -> PermissionScope:
        return cls(tenant_ids=frozenset({tenant_id}) if tenant_id else frozenset())


@dataclass(frozen=True, slots=True)
class _ScopeBounds:
    tenant_ids: frozenset[str]
    # entity plus its ancestors, when the scope targets an entity
    covering_ids: frozenset[uuid.UUID] | None

    def admits(self, grant: Grant, *, write: bool) -> bool:
        if grant.tenant_id not in self.tenant_ids:
            return False
        if not write:
            return True
        if self.covering_ids is None:
            return grant.at_root
        return grant.entity_id in self.covering_ids


class MembershipResolver:
    def resolve(self, session: Session, user_id: str) -> Resolution:
        rows = session.execute(
            select(Membership, Role, Entity)
            .join(Entity, Membership.entity_id == Entity.id)
            .outerjoin(Role, Membership.role_id == Role.id)
            .where(
                Membership.user_id == user_id,
                Membership.is_active.is_(True),
                Entity.is_active.is_(True),
            )
            .order_by(Membership.created_at.asc(), Membership.id.asc())
        ).all()

        role_maps: dict[uuid.UUID, PermissionMap] = {}
        resolution = Resolution(user_id=user_id)
        for membership, role, entity in rows:
            if role is not None and role.id not in role_maps:
                role_maps[role.id] = normalize_permissions(role.permissions)
            resolution.grants.append(
                Grant(
                    membership_id=membership.id,
                    entity_id=membership.entity_id,
                    tenant_id=entity.tenant_id,
                    at_root=entity.parent_entity_id is None,
                    is_primary=membership.is_primary,
                    role_id=role.id if role is not None else None,
                    role_name=role.name if role is not None else None,
                    role_priority=role.priority if role is not None else 0,
                    permissions=role_maps[role.id] if role is not None else {},
                    restrictions=(role.restrictions or {}) if role is not None else {},
                )
            )
        return resolution

    def effective_permissions(self, session: Session, user_id: str) -> EffectivePermissionsRead:
        with tracer.start_as_current_span("authz.effective_permissions") as span:
            span.set_attribute("user_id", user_id)
            started = time.perf_counter()

            resolution = self.resolve(session, user_id)
            merged = resolution.merged_permissions()
            details = permission_details(merged)
            summary = summarize(details)

            detail_rows = [
                PermissionDetailRead(
                    application=detail.application,
                    module=detail.module,
                    action=detail.action,
                    category=detail.category.value,
                    risk=detail.risk.value,
                    granted_by=_granting_roles(resolution.role_grants, detail.application, detail.module, detail.action),
                )
                for detail in details
            ]
            primary = self._pick_primary(resolution)

            result = EffectivePermissionsRead(
                user_id=user_id,
                entity_ids=resolution.entity_ids,
                primary_entity_id=primary.entity_id if primary is not None else None,
                permissions=serialize_permission_map(merged),
                details=detail_rows,
                summary=PermissionSummaryRead(
                    total=summary.total,
                    by_category=summary.by_category,
                    by_risk=summary.by_risk,
                    applications={
                        application: ApplicationSummaryRead(
                            total=app_summary.total,
                            admin=app_summary.admin,
                            write=app_summary.write,
                            read=app_summary.read,
                            modules=sorted(app_summary.modules),
                        )
                        for application, app_summary in sorted(summary.applications.items())
                    },
                ),
                restrictions=self._merge_restrictions(resolution),
            )

            span.set_attribute("membership_count", len(resolution.grants))
            span.set_attribute("permission_count", summary.total)
            observe_resolution(time.perf_counter() - started)
            return result

    def has_permission(
        self,
        session: Session,
        user_id: str,
        application: str,
        module: str,
        action: str,
        *,
        provider_permissions: Mapping[str, Any] | Iterable[Any] | None = None,
        provider_tenant_id: str | None = None,
        scope: PermissionScope | None = None,
    ) -> bool:
        """True when a role grants the action (or a wildcard) or the identity provider does.

        Without a ``scope`` every membership counts. With one, read-only actions
        accept grants anywhere in the target tenant, while write and admin
        actions need a grant on the target entity or one of its ancestors
        (a tenant root for tenant-wide targets). Provider entries issued for
        one tenant only count inside that tenant.
        """

        with tracer.start_as_current_span("authz.has_permission") as span:
            span.set_attribute("user_id", user_id)
            span.set_attribute("permission", f"{application}.{module}.{action}")

            bounds = self._scope_bounds(session, scope) if scope is not None else None
            provider_applies = bounds is None or provider_tenant_id is None or provider_tenant_id in bounds.tenant_ids
            allowed = provider_applies and entries_grant(
                normalize_permission_entries(provider_permissions), application, module, action
            )
            if not allowed:
                write = action.lower() not in TENANT_WIDE_ACTIONS
                resolution = self.resolve(session, user_id)
                allowed = any(
                    grants_action(grant.permissions, application, module, action)
                    and (bounds is None or bounds.admits(grant, write=write))
                    for grant in resolution.role_grants
                )

            span.set_attribute("allowed", allowed)
            observe_permission_check(allowed)
            logger.debug(
                "authz.permission_checked",
                extra={"user_id": user_id, "application": application, "status": "allow" if allowed else "deny"},
            )
            return allowed

    @staticmethod
    def _scope_bounds(session: Session, scope: PermissionScope) -> _ScopeBounds:
        if scope.entity_id is None:
            return _ScopeBounds(tenant_ids=scope.tenant_ids, covering_ids=None)
        target = session.get(Entity, scope.entity_id)
        if target is None:
            # unknown targets admit no membership
            return _ScopeBounds(tenant_ids=frozenset(), covering_ids=frozenset())
        return _ScopeBounds(
            tenant_ids=frozenset({target.tenant_id}),
            covering_ids=frozenset({target.id, *target.ancestor_ids}),
        )

    def tenant_ids_for_user(self, session: Session, user_id: str) -> frozenset[str]:
        """Tenants in which the user holds an active membership."""
        rows = session.scalars(
            select(Entity.tenant_id)
            .join(Membership, Membership.entity_id == Entity.id)
            .where(Membership.user_id == user_id, Membership.is_active.is_(True))
            .distinct()
        ).all()
        return frozenset(rows)

    def effective_restrictions(self, session: Session, user_id: str) -> dict[str, Any]:
        return self._merge_restrictions(self.resolve(session, user_id))

    def primary_entity(self, session: Session, user_id: str) -> Entity:
        primaries = session.scalars(
            select(Entity)
            .join(Membership, Membership.entity_id == Entity.id)
            .where(
                Membership.user_id == user_id,
                Membership.is_primary.is_(True),
                Membership.is_active.is_(True),
                Entity.is_active.is_(True),
            )
            .order_by(Membership.created_at.asc(), Membership.id.asc())
        ).all()
        if not primaries:
            observe_primary_anomaly("missing")
            logger.warning("membership.primary_missing", extra={"user_id": user_id})
            raise NoPrimaryEntityError(user_id)
        if len(primaries) > 1:
            observe_primary_anomaly("multiple")
            logger.warning(
                "membership.primary_multiple",
                extra={"user_id": user_id, "entity_id": str(primaries[0].id), "count": len(primaries)},
            )
        return primaries[0]

    @staticmethod
    def _pick_primary(resolution: Resolution) -> Grant | None:
        primaries = resolution.primary_grants
        if len(primaries) > 1:
            observe_primary_anomaly("multiple")
            logger.warning("membership.primary_multiple", extra={"user_id": resolution.user_id})
        return primaries[0] if primaries else None

    @staticmethod
    def _merge_restrictions(resolution: Resolution) -> dict[str, Any]:
        return merge_restrictions(
            ((grant.role_priority, grant.restrictions) for grant in resolution.role_grants),
            get_settings().restriction_merge_policy,
        )


def _granting_roles(grants: Iterable[Grant], application: str, module: str, action: str) -> list[str]:
    names = {
        grant.role_name
        for grant in grants
        if grant.role_name is not None and action in grant.permissions.get(application, {}).get(module, frozenset())
    }
    return sorted(names)


role_catalog_service = RoleCatalogService()
membership_service = MembershipService()
membership_resolver = MembershipResolver()
