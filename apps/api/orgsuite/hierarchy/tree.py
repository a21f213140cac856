from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping, Sequence

from orgsuite.errors import CorruptHierarchyError

ENTITY_TYPES = ("tenant", "organization", "location", "department", "team")


def walk_subtree(root_id: uuid.UUID, children_of: Mapping[uuid.UUID, Sequence[uuid.UUID]]) -> list[uuid.UUID]:
    """Pre-order ids of the subtree under ``root_id``.

    Iterative, with an explicit visited set: reaching an id twice means the
    stored parent links form a cycle.
    """

    order: list[uuid.UUID] = []
    visited: set[uuid.UUID] = set()
    stack = [root_id]
    while stack:
        node_id = stack.pop()
        if node_id in visited:
            raise CorruptHierarchyError(node_id)
        visited.add(node_id)
        order.append(node_id)
        stack.extend(reversed(children_of.get(node_id, ())))
    return order


def ancestor_chain(entity_id: uuid.UUID, parent_of: Mapping[uuid.UUID, uuid.UUID | None]) -> list[uuid.UUID]:
    """Ancestor ids ordered from the root down to the immediate parent."""

    chain: list[uuid.UUID] = []
    visited = {entity_id}
    current = parent_of.get(entity_id)
    while current is not None:
        if current in visited:
            raise CorruptHierarchyError(current)
        visited.add(current)
        chain.append(current)
        current = parent_of.get(current)
    chain.reverse()
    return chain


def count_types(entity_types: Iterable[str]) -> dict[str, int]:
    counts = {entity_type: 0 for entity_type in ENTITY_TYPES}
    for entity_type in entity_types:
        counts[entity_type] = counts.get(entity_type, 0) + 1
    return counts
