from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orgsuite import audit, events
from orgsuite.errors import (
    ConcurrentModificationError,
    ConflictError,
    CorruptHierarchyError,
    CycleDetectedError,
    EntityHasActiveChildrenError,
    InvalidEntityRequestError,
    NotFoundError,
)
from orgsuite.hierarchy.models import Entity, utcnow
from orgsuite.hierarchy.schemas import (
    EntityCreate,
    EntityRead,
    EntityTreeRead,
    EntityTypeCounts,
    EntityUpdate,
)
from orgsuite.hierarchy.tree import ancestor_chain, count_types, walk_subtree
from orgsuite.metrics import observe_hierarchy_corruption, observe_hierarchy_move


logger = logging.getLogger("orgsuite.hierarchy")
tracer = trace.get_tracer("orgsuite.hierarchy")


@dataclass(slots=True)
class TenantIndex:
    entities: dict[uuid.UUID, Entity] = field(default_factory=dict)
    children_of: dict[uuid.UUID, list[uuid.UUID]] = field(default_factory=dict)
    parent_of: dict[uuid.UUID, uuid.UUID | None] = field(default_factory=dict)


class EntityTreeService:
    entity_type = "org.entity"

    def create_entity(self, session: Session, dto: EntityCreate, *, actor_user_id: str | None = None) -> EntityRead:
        if dto.parent_entity_id is not None:
            parent = self.get_entity_model(session, dto.parent_entity_id)
            if dto.tenant_id is not None and dto.tenant_id != parent.tenant_id:
                raise ConflictError("parent entity belongs to another tenant")
            tenant_id = parent.tenant_id
            hierarchy_path = [*parent.hierarchy_path, str(parent.id)]
            entity_level = parent.entity_level + 1
        elif dto.tenant_id is None:
            raise InvalidEntityRequestError("tenant_id is required for a root entity")
        else:
            tenant_id = dto.tenant_id
            hierarchy_path = []
            entity_level = 0

        entity = Entity(
            tenant_id=tenant_id,
            entity_name=dto.entity_name.strip(),
            entity_type=dto.entity_type,
            description=dto.description,
            parent_entity_id=dto.parent_entity_id,
            entity_level=entity_level,
            hierarchy_path=hierarchy_path,
            is_active=True,
            responsible_person_id=dto.responsible_person_id,
            total_credits=dto.total_credits,
        )
        session.add(entity)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("entity could not be created")
        session.refresh(entity)

        after = EntityRead.model_validate(entity)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(entity.id),
            action="entity.created",
            before=None,
            after=after.model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "entity.created",
                actor_user_id,
                {"entity_id": str(entity.id), "tenant_id": tenant_id, "entity_type": entity.entity_type},
            )
        )
        logger.info("entity.created", extra={"entity_id": str(entity.id), "tenant_id": tenant_id})
        return after

    def get_entity_model(self, session: Session, entity_id: uuid.UUID, *, include_inactive: bool = False) -> Entity:
        entity = session.scalar(select(Entity).where(Entity.id == entity_id))
        if entity is None or (not entity.is_active and not include_inactive):
            raise NotFoundError("entity", entity_id)
        return entity

    def get_entity(self, session: Session, entity_id: uuid.UUID, *, include_inactive: bool = False) -> EntityRead:
        return EntityRead.model_validate(self.get_entity_model(session, entity_id, include_inactive=include_inactive))

    def update_entity(
        self,
        session: Session,
        entity_id: uuid.UUID,
        dto: EntityUpdate,
        *,
        actor_user_id: str | None = None,
    ) -> EntityRead:
        entity = self.get_entity_model(session, entity_id)
        before = EntityRead.model_validate(entity).model_dump(mode="json")

        if dto.entity_name is not None:
            entity.entity_name = dto.entity_name.strip()
        if "description" in dto.model_fields_set:
            entity.description = dto.description
        if "responsible_person_id" in dto.model_fields_set:
            entity.responsible_person_id = dto.responsible_person_id
        entity.row_version = entity.row_version + 1
        session.commit()
        session.refresh(entity)

        after = EntityRead.model_validate(entity)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(entity.id),
            action="entity.updated",
            before=before,
            after=after.model_dump(mode="json"),
        )
        return after

    def get_subtree(self, session: Session, entity_id: uuid.UUID, *, include_inactive: bool = False) -> EntityTreeRead:
        with tracer.start_as_current_span("hierarchy.get_subtree") as span:
            span.set_attribute("entity_id", str(entity_id))
            root = self.get_entity_model(session, entity_id, include_inactive=include_inactive)
            index = self._load_tenant_index(session, root.tenant_id)
            order = self._walk(index, root.id)

            nodes: dict[uuid.UUID, EntityTreeRead] = {root.id: EntityTreeRead.model_validate(root)}
            for node_id in order[1:]:
                entity = index.entities[node_id]
                parent_node = nodes.get(index.parent_of[node_id])  # type: ignore[arg-type]
                if parent_node is None:
                    continue
                if not entity.is_active and not include_inactive:
                    continue
                node = EntityTreeRead.model_validate(entity)
                nodes[node_id] = node
                parent_node.children.append(node)

            span.set_attribute("node_count", len(nodes))
            return nodes[root.id]

    def get_ancestors(self, session: Session, entity_id: uuid.UUID) -> list[EntityRead]:
        return [EntityRead.model_validate(item) for item in self.ancestor_entities(session, entity_id)]

    def ancestor_entities(self, session: Session, entity_id: uuid.UUID) -> list[Entity]:
        entity = self.get_entity_model(session, entity_id, include_inactive=True)
        index = self._load_tenant_index(session, entity.tenant_id)
        try:
            chain = ancestor_chain(entity.id, index.parent_of)
        except CorruptHierarchyError as exc:
            self._report_corruption(exc, entity.tenant_id)
            raise
        return [index.entities[item] for item in chain]

    def move_entity(
        self,
        session: Session,
        entity_id: uuid.UUID,
        new_parent_id: uuid.UUID,
        *,
        expected_row_version: int | None = None,
        actor_user_id: str | None = None,
    ) -> EntityRead:
        with tracer.start_as_current_span("hierarchy.move_entity") as span:
            span.set_attribute("entity_id", str(entity_id))
            span.set_attribute("new_parent_id", str(new_parent_id))

            entity = self.get_entity_model(session, entity_id)
            new_parent = self.get_entity_model(session, new_parent_id)
            if new_parent.tenant_id != entity.tenant_id:
                raise ConflictError("cannot move an entity into another tenant")
            if expected_row_version is not None and expected_row_version != entity.row_version:
                raise ConcurrentModificationError("entity was modified concurrently", entity_id=str(entity_id))

            index = self._load_tenant_index(session, entity.tenant_id)
            subtree = self._walk(index, entity.id)
            if new_parent.id in subtree:
                raise CycleDetectedError(
                    "new parent is the entity itself or one of its descendants",
                    entity_id=str(entity_id),
                    new_parent_id=str(new_parent_id),
                )
            if entity.parent_entity_id == new_parent.id:
                return EntityRead.model_validate(entity)

            before = {
                "parent_entity_id": str(entity.parent_entity_id) if entity.parent_entity_id else None,
                "entity_level": entity.entity_level,
                "hierarchy_path": list(entity.hierarchy_path),
            }
            seen_version = entity.row_version
            now = utcnow()
            try:
                result = session.execute(
                    update(Entity)
                    .where(Entity.id == entity.id, Entity.row_version == seen_version)
                    .values(
                        parent_entity_id=new_parent.id,
                        hierarchy_path=[*new_parent.hierarchy_path, str(new_parent.id)],
                        entity_level=new_parent.entity_level + 1,
                        row_version=seen_version + 1,
                        updated_at=now,
                    )
                )
                if result.rowcount == 0:
                    raise ConcurrentModificationError("entity was modified concurrently", entity_id=str(entity_id))

                index.parent_of[entity.id] = new_parent.id
                for node_id in subtree[1:]:
                    node = index.entities[node_id]
                    parent = index.entities[index.parent_of[node_id]]  # type: ignore[index]
                    node.hierarchy_path = [*parent.hierarchy_path, str(parent.id)]
                    node.entity_level = parent.entity_level + 1
                    node.row_version = node.row_version + 1
                    node.updated_at = now
                session.commit()
            except Exception:
                session.rollback()
                raise

            session.refresh(entity)
            observe_hierarchy_move()
            after = EntityRead.model_validate(entity)
            audit.record(
                actor_user_id=actor_user_id,
                entity_type=self.entity_type,
                entity_id=str(entity.id),
                action="entity.moved",
                before=before,
                after={
                    "parent_entity_id": str(new_parent.id),
                    "entity_level": after.entity_level,
                    "hierarchy_path": [str(item) for item in after.hierarchy_path],
                    "moved_descendants": len(subtree) - 1,
                },
            )
            events.publish(
                events.build_envelope(
                    "entity.moved",
                    actor_user_id,
                    {
                        "entity_id": str(entity.id),
                        "tenant_id": entity.tenant_id,
                        "new_parent_id": str(new_parent.id),
                        "subtree_size": len(subtree),
                    },
                )
            )
            logger.info(
                "entity.moved",
                extra={"entity_id": str(entity.id), "parent_entity_id": str(new_parent.id), "tenant_id": entity.tenant_id},
            )
            return after

    def count_by_type(
        self,
        session: Session,
        subtree_root: uuid.UUID,
        *,
        include_inactive: bool = False,
    ) -> EntityTypeCounts:
        root = self.get_entity_model(session, subtree_root, include_inactive=include_inactive)
        index = self._load_tenant_index(session, root.tenant_id)
        order = self._walk(index, root.id)

        visible: set[uuid.UUID] = {root.id}
        types = [root.entity_type]
        for node_id in order[1:]:
            entity = index.entities[node_id]
            if index.parent_of[node_id] not in visible:
                continue
            if not entity.is_active and not include_inactive:
                continue
            visible.add(node_id)
            types.append(entity.entity_type)

        return EntityTypeCounts(root_entity_id=root.id, total=len(types), counts=count_types(types))

    def deactivate_entity(self, session: Session, entity_id: uuid.UUID, *, actor_user_id: str | None = None) -> EntityRead:
        entity = self.get_entity_model(session, entity_id)
        active_children = session.scalar(
            select(Entity.id).where(Entity.parent_entity_id == entity.id, Entity.is_active.is_(True)).limit(1)
        )
        if active_children is not None:
            raise EntityHasActiveChildrenError("entity has active children", entity_id=str(entity_id))

        entity.is_active = False
        entity.row_version = entity.row_version + 1
        session.commit()
        session.refresh(entity)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(entity.id),
            action="entity.deactivated",
            before={"is_active": True},
            after={"is_active": False},
        )
        events.publish(
            events.build_envelope("entity.deactivated", actor_user_id, {"entity_id": str(entity.id), "tenant_id": entity.tenant_id})
        )
        return EntityRead.model_validate(entity)

    def flatten(self, session: Session, tenant_id: str, *, include_inactive: bool = False) -> list[EntityRead]:
        """Every entity of the tenant in pre-order, roots first."""

        index = self._load_tenant_index(session, tenant_id)
        roots = [entity_id for entity_id, parent_id in index.parent_of.items() if parent_id is None]
        flattened: list[EntityRead] = []
        for root_id in roots:
            for node_id in self._walk(index, root_id):
                entity = index.entities[node_id]
                if entity.is_active or include_inactive:
                    flattened.append(EntityRead.model_validate(entity))
        return flattened

    def _load_tenant_index(self, session: Session, tenant_id: str) -> TenantIndex:
        rows = session.scalars(
            select(Entity).where(Entity.tenant_id == tenant_id).order_by(Entity.entity_name.asc(), Entity.id.asc())
        ).all()
        index = TenantIndex()
        for entity in rows:
            index.entities[entity.id] = entity
            index.children_of.setdefault(entity.id, [])
        for entity in rows:
            parent_id = entity.parent_entity_id if entity.parent_entity_id in index.entities else None
            index.parent_of[entity.id] = parent_id
            if parent_id is not None:
                index.children_of[parent_id].append(entity.id)
        return index

    def _walk(self, index: TenantIndex, root_id: uuid.UUID) -> list[uuid.UUID]:
        try:
            return walk_subtree(root_id, index.children_of)
        except CorruptHierarchyError as exc:
            tenant_id = index.entities[root_id].tenant_id if root_id in index.entities else None
            self._report_corruption(exc, tenant_id)
            raise

    @staticmethod
    def _report_corruption(exc: CorruptHierarchyError, tenant_id: str | None) -> None:
        observe_hierarchy_corruption()
        logger.error(
            "hierarchy.corrupt",
            extra={"entity_id": str(exc.entity_id), "tenant_id": tenant_id, "error": str(exc)},
        )


entity_tree_service = EntityTreeService()
