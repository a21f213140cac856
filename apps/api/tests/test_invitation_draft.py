from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest

from orgsuite.authz.schemas import RoleRead
from orgsuite.errors import EmptyEntityListError, InvalidPrimaryEntityError, NotFoundError
from orgsuite.invitations.staging import InvitationDraft


def _role(name: str, priority: int) -> RoleRead:
    return RoleRead(
        id=uuid.uuid4(),
        tenant_id=None,
        name=name,
        description=None,
        color=None,
        icon=None,
        is_system=True,
        priority=priority,
        permissions={},
        restrictions={},
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


def test_first_selected_entity_becomes_primary_with_default_role() -> None:
    viewer, member = _role("Viewer", 0), _role("Member", 10)
    draft = InvitationDraft(email="a@example.com", catalog=[viewer, member])
    first, second = uuid.uuid4(), uuid.uuid4()

    assert draft.toggle_entity(first, "team") is True
    assert draft.toggle_entity(second, "department", role_id=member.id) is True

    assert draft.primary_entity_id == first
    assert draft.entries[first].role_id == viewer.id
    assert draft.entries[second].role_id == member.id


def test_unselecting_primary_leaves_no_primary() -> None:
    draft = InvitationDraft(email="a@example.com")
    first, second = uuid.uuid4(), uuid.uuid4()
    draft.toggle_entity(first, "team")
    draft.toggle_entity(second, "team")

    assert draft.toggle_entity(first, "team") is False
    assert draft.primary_entity_id is None
    assert list(draft.entries) == [second]

    with pytest.raises(InvalidPrimaryEntityError):
        draft.to_request()

    draft.set_primary(second)
    request = draft.to_request()
    assert request.primary_entity_id == second
    assert [item.entity_id for item in request.entities] == [second]


def test_empty_catalog_leaves_role_unset() -> None:
    draft = InvitationDraft(email="a@example.com")
    entity_id = uuid.uuid4()
    draft.toggle_entity(entity_id, "team")
    assert draft.entries[entity_id].role_id is None


def test_set_role_and_primary_require_selected_entity() -> None:
    draft = InvitationDraft(email="a@example.com")
    with pytest.raises(NotFoundError):
        draft.set_role(uuid.uuid4(), None)
    with pytest.raises(InvalidPrimaryEntityError):
        draft.set_primary(uuid.uuid4())


def test_empty_draft_cannot_be_submitted() -> None:
    with pytest.raises(EmptyEntityListError):
        InvitationDraft(email="a@example.com").to_request()


def test_custom_default_role_policy() -> None:
    viewer, member = _role("Viewer", 0), _role("Member", 10)
    draft = InvitationDraft(
        email="a@example.com",
        catalog=[viewer, member],
        default_role_for=lambda catalog: catalog[-1].id,
    )
    entity_id = uuid.uuid4()
    draft.toggle_entity(entity_id, "team")
    assert draft.entries[entity_id].role_id == member.id
