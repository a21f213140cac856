from __future__ import annotations

import uuid

import pytest

from orgsuite.errors import CorruptHierarchyError
from orgsuite.hierarchy.tree import ancestor_chain, count_types, walk_subtree


def _ids(count: int) -> list[uuid.UUID]:
    return [uuid.uuid4() for _ in range(count)]


def test_walk_subtree_is_pre_order_and_keeps_sibling_order() -> None:
    root, a, b, a1, a2 = _ids(5)
    children = {root: [a, b], a: [a1, a2], b: [], a1: [], a2: []}

    assert walk_subtree(root, children) == [root, a, a1, a2, b]
    assert walk_subtree(a, children) == [a, a1, a2]


def test_walk_subtree_raises_on_revisit() -> None:
    root, child = _ids(2)
    children = {root: [child], child: [root]}

    with pytest.raises(CorruptHierarchyError) as exc_info:
        walk_subtree(root, children)
    assert exc_info.value.entity_id == root


def test_walk_subtree_handles_deep_chains_without_recursion() -> None:
    chain = _ids(5000)
    children = {parent: [child] for parent, child in zip(chain, chain[1:])}

    assert len(walk_subtree(chain[0], children)) == 5000


def test_ancestor_chain_runs_root_to_parent() -> None:
    root, org, team = _ids(3)
    parents = {root: None, org: root, team: org}

    assert ancestor_chain(team, parents) == [root, org]
    assert ancestor_chain(root, parents) == []


def test_ancestor_chain_detects_cycles() -> None:
    a, b = _ids(2)
    with pytest.raises(CorruptHierarchyError):
        ancestor_chain(a, {a: b, b: a})


def test_count_types_reports_every_known_type() -> None:
    assert count_types(["team", "team", "organization"]) == {
        "tenant": 0,
        "organization": 1,
        "location": 0,
        "department": 0,
        "team": 2,
    }
