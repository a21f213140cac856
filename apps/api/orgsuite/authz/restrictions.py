"""Merging of per-role restriction values (quotas, limits, feature switches).

A user holding several roles may see the same restriction key more than once.
``merge_restrictions`` collapses them under one of three policies:

``most_restrictive``
    numeric minimum; booleans compare as 0/1, so ``False`` wins.
``most_permissive``
    numeric maximum.
``priority``
    the value from the highest-priority role defining the key; roles sharing
    that priority fall back to ``most_restrictive`` among themselves.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

logger = logging.getLogger("orgsuite.authz.restrictions")

MERGE_POLICIES = ("most_restrictive", "most_permissive", "priority")

RestrictionValue = bool | int | float


def merge_restrictions(
    role_restrictions: Iterable[tuple[int, Mapping[str, Any]]],
    policy: str = "most_restrictive",
) -> dict[str, RestrictionValue]:
    if policy not in MERGE_POLICIES:
        raise ValueError(f"unknown restriction merge policy: {policy}")

    candidates: dict[str, list[tuple[int, RestrictionValue]]] = {}
    for priority, restrictions in role_restrictions:
        for key, value in restrictions.items():
            if not _is_restriction_value(value):
                logger.debug("restriction_value_ignored", extra={"error": f"{key}={value!r}"})
                continue
            candidates.setdefault(key, []).append((priority, value))

    merged: dict[str, RestrictionValue] = {}
    for key in sorted(candidates):
        values = candidates[key]
        if policy == "priority":
            top = max(priority for priority, _ in values)
            merged[key] = _pick([value for priority, value in values if priority == top], prefer_min=True)
        else:
            merged[key] = _pick([value for _, value in values], prefer_min=policy == "most_restrictive")
    return merged


def _is_restriction_value(value: Any) -> bool:
    return isinstance(value, (bool, int, float))


def _pick(values: list[RestrictionValue], *, prefer_min: bool) -> RestrictionValue:
    chosen = min(values, key=float) if prefer_min else max(values, key=float)
    if all(isinstance(value, bool) for value in values):
        return bool(chosen)
    if isinstance(chosen, bool):
        return int(chosen)
    return chosen
