"""Client-side staging of an invitation before it is submitted.

The draft tracks which entities are selected, the role chosen for each and the
primary entity. It is plain in-memory state; ``to_request`` turns it into the
``InvitationCreate`` payload the service validates.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Literal

from orgsuite.authz.schemas import RoleRead
from orgsuite.errors import EmptyEntityListError, InvalidPrimaryEntityError, NotFoundError
from orgsuite.invitations.schemas import InvitationCreate, InvitationEntityInput

DefaultRolePolicy = Callable[[Sequence[RoleRead]], uuid.UUID | None]


def first_available_role(catalog: Sequence[RoleRead]) -> uuid.UUID | None:
    return catalog[0].id if catalog else None


@dataclass
class DraftEntry:
    entity_id: uuid.UUID
    entity_type: str
    role_id: uuid.UUID | None
    membership_type: Literal["direct", "inherited"] = "direct"


@dataclass
class InvitationDraft:
    email: str
    catalog: Sequence[RoleRead] = ()
    name: str | None = None
    message: str | None = None
    default_role_for: DefaultRolePolicy = first_available_role
    entries: dict[uuid.UUID, DraftEntry] = field(default_factory=dict)
    primary_entity_id: uuid.UUID | None = None

    def toggle_entity(self, entity_id: uuid.UUID, entity_type: str, role_id: uuid.UUID | None = None) -> bool:
        """Select or unselect an entity; returns whether it is selected afterwards.

        The first entity added to an empty draft becomes primary. Unselecting
        the primary leaves the draft without one.
        """

        if entity_id in self.entries:
            del self.entries[entity_id]
            if self.primary_entity_id == entity_id:
                self.primary_entity_id = None
            return False

        was_empty = not self.entries
        self.entries[entity_id] = DraftEntry(
            entity_id=entity_id,
            entity_type=entity_type,
            role_id=role_id if role_id is not None else self.default_role_for(self.catalog),
        )
        if was_empty and self.primary_entity_id is None:
            self.primary_entity_id = entity_id
        return True

    def set_role(self, entity_id: uuid.UUID, role_id: uuid.UUID | None) -> None:
        entry = self.entries.get(entity_id)
        if entry is None:
            raise NotFoundError("draft entity", entity_id)
        entry.role_id = role_id

    def set_primary(self, entity_id: uuid.UUID) -> None:
        if entity_id not in self.entries:
            raise InvalidPrimaryEntityError("primary entity must be one of the selected entities", entity_id=str(entity_id))
        self.primary_entity_id = entity_id

    def to_request(self) -> InvitationCreate:
        if not self.entries:
            raise EmptyEntityListError("invitation needs at least one entity")
        if self.primary_entity_id is None:
            raise InvalidPrimaryEntityError("choose a primary entity before sending the invitation")
        return InvitationCreate(
            email=self.email,
            name=self.name,
            message=self.message,
            entities=[
                InvitationEntityInput(entity_id=entry.entity_id, role_id=entry.role_id, membership_type=entry.membership_type)
                for entry in self.entries.values()
            ],
            primary_entity_id=self.primary_entity_id,
        )
