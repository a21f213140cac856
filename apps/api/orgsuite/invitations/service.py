from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from orgsuite import audit, events
from orgsuite.authz.models import Membership, Role
from orgsuite.authz.schemas import MembershipRead
from orgsuite.core.config import get_settings
from orgsuite.errors import (
    ConflictError,
    DuplicateEntityInInvitationError,
    EmptyEntityListError,
    InvalidPrimaryEntityError,
    InvitationNotPendingError,
    NotFoundError,
)
from orgsuite.hierarchy.models import Entity
from orgsuite.invitations.models import Invitation, InvitationEntity, utcnow
from orgsuite.invitations.schemas import (
    InvitationAcceptedRead,
    InvitationCreate,
    InvitationCreatedRead,
    InvitationRead,
)
from orgsuite.metrics import observe_invitation_transition


logger = logging.getLogger("orgsuite.invitations")
tracer = trace.get_tracer("orgsuite.invitations")


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class InvitationService:
    entity_type = "invitation"

    def create_invitation(self, session: Session, dto: InvitationCreate, *, invited_by: str) -> InvitationCreatedRead:
        if not dto.entities:
            raise EmptyEntityListError("invitation needs at least one entity")
        entity_ids = [item.entity_id for item in dto.entities]
        if len(set(entity_ids)) != len(entity_ids):
            raise DuplicateEntityInInvitationError("an entity may appear only once per invitation")
        if dto.primary_entity_id is None or dto.primary_entity_id not in entity_ids:
            raise InvalidPrimaryEntityError(
                "primary entity must be one of the invited entities",
                primary_entity_id=str(dto.primary_entity_id) if dto.primary_entity_id else None,
            )

        entities = {
            entity.id: entity
            for entity in session.scalars(
                select(Entity).where(Entity.id.in_(entity_ids), Entity.is_active.is_(True))
            ).all()
        }
        for entity_id in entity_ids:
            if entity_id not in entities:
                raise NotFoundError("entity", entity_id)
        tenant_id = entities[dto.primary_entity_id].tenant_id
        if any(entity.tenant_id != tenant_id for entity in entities.values()):
            raise ConflictError("invited entities must belong to one tenant", tenant_id=tenant_id)

        role_ids = {item.role_id for item in dto.entities if item.role_id is not None}
        roles = {role.id: role for role in session.scalars(select(Role).where(Role.id.in_(role_ids))).all()} if role_ids else {}
        for role_id in role_ids:
            role = roles.get(role_id)
            if role is None:
                raise NotFoundError("role", role_id)
            if role.tenant_id is not None and role.tenant_id != tenant_id:
                raise ConflictError("role belongs to another tenant", role_id=str(role_id))

        ttl_days = dto.expires_in_days or get_settings().invitation_ttl_days
        invitation = Invitation(
            tenant_id=tenant_id,
            email=dto.email.strip().lower(),
            name=dto.name,
            message=dto.message,
            primary_entity_id=dto.primary_entity_id,
            status="pending",
            token=secrets.token_urlsafe(32),
            invited_by=invited_by,
            expires_at=utcnow() + timedelta(days=ttl_days),
            entities=[
                InvitationEntity(
                    position=position,
                    entity_id=item.entity_id,
                    role_id=item.role_id,
                    entity_type=entities[item.entity_id].entity_type,
                    membership_type=item.membership_type,
                )
                for position, item in enumerate(dto.entities)
            ],
        )
        session.add(invitation)
        try:
            session.commit()
        except Exception:
            session.rollback()
            raise
        session.refresh(invitation)

        observe_invitation_transition("pending")
        audit.record(
            actor_user_id=invited_by,
            entity_type=self.entity_type,
            entity_id=str(invitation.id),
            action="invitation.created",
            before=None,
            after={"email": invitation.email, "entities": [str(item) for item in entity_ids]},
        )
        events.publish(
            events.build_envelope(
                "invitation.created",
                invited_by,
                {"invitation_id": str(invitation.id), "tenant_id": tenant_id, "email": invitation.email},
            )
        )
        logger.info("invitation.created", extra={"invitation_id": str(invitation.id), "tenant_id": tenant_id})
        return InvitationCreatedRead.model_validate(invitation)

    def get_invitation(self, session: Session, invitation_id: uuid.UUID) -> InvitationRead:
        return InvitationRead.model_validate(self._get(session, invitation_id))

    def list_invitations(
        self,
        session: Session,
        *,
        tenant_id: str | None = None,
        status: str | None = None,
    ) -> list[InvitationRead]:
        stmt = select(Invitation).options(selectinload(Invitation.entities))
        if tenant_id is not None:
            stmt = stmt.where(Invitation.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(Invitation.status == status)
        rows = session.scalars(stmt.order_by(Invitation.created_at.desc(), Invitation.id.asc())).all()
        return [InvitationRead.model_validate(row) for row in rows]

    def accept(
        self,
        session: Session,
        invitation_id: uuid.UUID,
        user_id: str,
        *,
        token: str | None = None,
        now: datetime | None = None,
    ) -> InvitationAcceptedRead:
        """Turn every invited entity into a membership of ``user_id``, all or nothing."""

        now = now or utcnow()
        invitation = self._get(session, invitation_id)
        if token is not None and not secrets.compare_digest(token, invitation.token):
            raise NotFoundError("invitation", invitation_id)
        self._ensure_pending(session, invitation, now)

        with tracer.start_as_current_span("invitations.accept") as span:
            span.set_attribute("invitation_id", str(invitation.id))
            span.set_attribute("entry_count", len(invitation.entities))
            try:
                self._claim(session, invitation, "accepted", accepted_by_user_id=user_id, accepted_at=now)
                memberships = [
                    self._materialize_membership(session, invitation, entry, user_id) for entry in invitation.entities
                ]
                session.execute(
                    update(Membership)
                    .where(
                        Membership.user_id == user_id,
                        Membership.entity_id != invitation.primary_entity_id,
                        Membership.is_primary.is_(True),
                    )
                    .values(is_primary=False)
                    .execution_options(synchronize_session="fetch")
                )
                session.commit()
            except Exception as exc:
                session.rollback()
                logger.warning(
                    "invitation.accept_failed",
                    extra={"invitation_id": str(invitation_id), "user_id": user_id, "error": str(exc)[:500]},
                )
                raise

        for membership in memberships:
            session.refresh(membership)
        session.refresh(invitation)

        observe_invitation_transition("accepted")
        audit.record(
            actor_user_id=user_id,
            entity_type=self.entity_type,
            entity_id=str(invitation.id),
            action="invitation.accepted",
            before={"status": "pending"},
            after={"status": "accepted", "memberships": len(memberships)},
        )
        events.publish(
            events.build_envelope(
                "invitation.accepted",
                user_id,
                {
                    "invitation_id": str(invitation.id),
                    "tenant_id": invitation.tenant_id,
                    "user_id": user_id,
                    "primary_entity_id": str(invitation.primary_entity_id),
                },
            )
        )
        logger.info("invitation.accepted", extra={"invitation_id": str(invitation.id), "user_id": user_id})
        return InvitationAcceptedRead(
            invitation=InvitationRead.model_validate(invitation),
            memberships=[MembershipRead.model_validate(item) for item in memberships],
        )

    def revoke(self, session: Session, invitation_id: uuid.UUID, *, actor_user_id: str | None = None) -> InvitationRead:
        invitation = self._get(session, invitation_id)
        if invitation.status != "pending":
            raise InvitationNotPendingError("only pending invitations can be revoked", status=invitation.status)

        try:
            self._claim(session, invitation, "revoked", revoked_at=utcnow())
            session.commit()
        except InvitationNotPendingError:
            session.rollback()
            raise
        session.refresh(invitation)

        observe_invitation_transition("revoked")
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(invitation.id),
            action="invitation.revoked",
            before={"status": "pending"},
            after={"status": "revoked"},
        )
        events.publish(
            events.build_envelope("invitation.revoked", actor_user_id, {"invitation_id": str(invitation.id)})
        )
        return InvitationRead.model_validate(invitation)

    def expire_stale(self, session: Session, now: datetime | None = None) -> int:
        now = now or utcnow()
        stale = session.scalars(
            select(Invitation).where(Invitation.status == "pending", Invitation.expires_at <= now)
        ).all()
        for invitation in stale:
            invitation.status = "expired"
        session.commit()

        observe_invitation_transition("expired", len(stale))
        if stale:
            logger.info("invitation.expired", extra={"status": "expired", "count": len(stale)})
        return len(stale)

    def _materialize_membership(
        self,
        session: Session,
        invitation: Invitation,
        entry: InvitationEntity,
        user_id: str,
    ) -> Membership:
        entity = session.scalar(select(Entity).where(Entity.id == entry.entity_id, Entity.is_active.is_(True)))
        if entity is None:
            raise NotFoundError("entity", entry.entity_id)

        membership = session.scalar(
            select(Membership).where(Membership.user_id == user_id, Membership.entity_id == entry.entity_id)
        )
        if membership is None:
            membership = Membership(user_id=user_id, entity_id=entry.entity_id)
            session.add(membership)
        membership.role_id = entry.role_id
        membership.membership_type = entry.membership_type
        membership.is_active = True
        membership.is_primary = entry.entity_id == invitation.primary_entity_id
        session.flush()
        return membership

    def _ensure_pending(self, session: Session, invitation: Invitation, now: datetime) -> None:
        if invitation.status == "pending" and _as_aware(invitation.expires_at) <= now:
            invitation.status = "expired"
            session.commit()
            observe_invitation_transition("expired")
        if invitation.status != "pending":
            raise InvitationNotPendingError("invitation is no longer pending", status=invitation.status)

    @staticmethod
    def _claim(session: Session, invitation: Invitation, status: str, **values: object) -> None:
        """Move a pending invitation to ``status``; only one concurrent caller can win."""
        result = session.execute(
            update(Invitation)
            .where(Invitation.id == invitation.id, Invitation.status == "pending")
            .values(status=status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvitationNotPendingError("invitation is no longer pending", invitation_id=str(invitation.id))

    @staticmethod
    def _get(session: Session, invitation_id: uuid.UUID) -> Invitation:
        invitation = session.scalar(
            select(Invitation).options(selectinload(Invitation.entities)).where(Invitation.id == invitation_id)
        )
        if invitation is None:
            raise NotFoundError("invitation", invitation_id)
        return invitation


invitation_service = InvitationService()
