"""Permission normalization, classification and summaries.

Roles carry permissions either as a nested ``application -> module -> actions``
mapping or as a flat list of dotted ``application.module.action`` strings. Both
shapes are folded into one canonical ``PermissionMap`` here and nowhere else;
the rest of the service only ever sees the canonical form.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger("orgsuite.authz.permissions")

WILDCARD = "*"

ADMIN_KEYWORDS = ("delete", "admin", "manage", "approve", "assign", "calculate", "pay", "reject", "cancel")
WRITE_KEYWORDS = ("create", "update", "edit", "import", "upload", "modify")

PermissionMap = dict[str, dict[str, frozenset[str]]]
PermissionEntry = str | Mapping[str, Any]


class PermissionCategory(StrEnum):
    ADMIN = "admin"
    WRITE = "write"
    READ = "read"


class RiskLevel(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True, slots=True)
class Classification:
    category: PermissionCategory
    risk: RiskLevel


@dataclass(frozen=True, slots=True)
class PermissionDetail:
    application: str
    module: str
    action: str
    category: PermissionCategory
    risk: RiskLevel

    @property
    def key(self) -> str:
        return f"{self.application}.{self.module}.{self.action}"


@dataclass(slots=True)
class ApplicationSummary:
    total: int = 0
    admin: int = 0
    write: int = 0
    read: int = 0
    modules: set[str] = field(default_factory=set)


@dataclass(slots=True)
class PermissionSummary:
    total: int
    by_category: dict[str, int]
    by_risk: dict[str, int]
    applications: dict[str, ApplicationSummary]


def classify(action_code: str) -> Classification:
    """Lexical risk classification of an action code."""

    code = action_code.lower()
    if any(keyword in code for keyword in ADMIN_KEYWORDS):
        return Classification(PermissionCategory.ADMIN, RiskLevel.HIGH)
    if any(keyword in code for keyword in WRITE_KEYWORDS):
        return Classification(PermissionCategory.WRITE, RiskLevel.MEDIUM)
    return Classification(PermissionCategory.READ, RiskLevel.LOW)


def normalize_permissions(raw: Mapping[str, Any] | Iterable[str] | None) -> PermissionMap:
    """Fold either permission shape into ``{application: {module: frozenset(actions)}}``.

    Flat strings need at least three dot-separated segments; anything past the
    second dot is kept as the action code (``crm.leads.export.csv`` grants
    action ``export.csv``). Malformed entries are dropped, so the result may be
    empty, which is how a "no access" role is expressed.
    """

    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        collected = _collect_nested(raw)
    elif isinstance(raw, str):
        collected = _collect_flat([raw])
    elif isinstance(raw, Iterable):
        collected = _collect_flat(raw)
    else:
        raise TypeError(f"unsupported permission payload: {type(raw).__name__}")

    return {
        application: {module: frozenset(actions) for module, actions in modules.items() if actions}
        for application, modules in collected.items()
        if any(modules.values())
    }


def _collect_nested(raw: Mapping[str, Any]) -> dict[str, dict[str, set[str]]]:
    collected: dict[str, dict[str, set[str]]] = {}
    for application, modules in raw.items():
        app_code = str(application).strip()
        if not app_code or not isinstance(modules, Mapping):
            logger.debug("permission_entry_dropped", extra={"application": application})
            continue
        for module, actions in modules.items():
            module_code = str(module).strip()
            if not module_code:
                continue
            if isinstance(actions, Mapping):
                action_codes = [str(action) for action, granted in actions.items() if granted]
            elif isinstance(actions, str):
                action_codes = [actions]
            elif isinstance(actions, Iterable):
                action_codes = [str(action) for action in actions]
            else:
                continue
            for action in action_codes:
                action_code = action.strip()
                if action_code:
                    collected.setdefault(app_code, {}).setdefault(module_code, set()).add(action_code)
    return collected


def _collect_flat(raw: Iterable[Any]) -> dict[str, dict[str, set[str]]]:
    collected: dict[str, dict[str, set[str]]] = {}
    for item in raw:
        if not isinstance(item, str):
            continue
        parts = [part.strip() for part in item.strip().split(".")]
        if len(parts) < 3 or not all(parts):
            logger.debug("permission_entry_dropped", extra={"error": f"malformed permission {item!r}"})
            continue
        application, module = parts[0], parts[1]
        action = ".".join(parts[2:])
        collected.setdefault(application, {}).setdefault(module, set()).add(action)
    return collected


def merge_permission_maps(maps: Iterable[PermissionMap]) -> PermissionMap:
    merged: dict[str, dict[str, set[str]]] = {}
    for permission_map in maps:
        for application, modules in permission_map.items():
            for module, actions in modules.items():
                merged.setdefault(application, {}).setdefault(module, set()).update(actions)
    return {
        application: {module: frozenset(actions) for module, actions in modules.items()}
        for application, modules in merged.items()
    }


def serialize_permission_map(permission_map: PermissionMap) -> dict[str, dict[str, list[str]]]:
    return {
        application: {module: sorted(permission_map[application][module]) for module in sorted(permission_map[application])}
        for application in sorted(permission_map)
    }


def permission_keys(permission_map: PermissionMap) -> list[str]:
    return [detail.key for detail in permission_details(permission_map)]


def permission_details(permission_map: PermissionMap) -> list[PermissionDetail]:
    details: list[PermissionDetail] = []
    for application in sorted(permission_map):
        modules = permission_map[application]
        for module in sorted(modules):
            for action in sorted(modules[module]):
                classification = classify(action)
                details.append(
                    PermissionDetail(
                        application=application,
                        module=module,
                        action=action,
                        category=classification.category,
                        risk=classification.risk,
                    )
                )
    return details


def summarize(details: Iterable[PermissionDetail]) -> PermissionSummary:
    by_category = {category.value: 0 for category in PermissionCategory}
    by_risk = {risk.value: 0 for risk in RiskLevel}
    applications: dict[str, ApplicationSummary] = {}
    total = 0

    for detail in details:
        total += 1
        by_category[detail.category.value] += 1
        by_risk[detail.risk.value] += 1
        app_summary = applications.setdefault(detail.application, ApplicationSummary())
        app_summary.total += 1
        app_summary.modules.add(detail.module)
        if detail.category is PermissionCategory.ADMIN:
            app_summary.admin += 1
        elif detail.category is PermissionCategory.WRITE:
            app_summary.write += 1
        else:
            app_summary.read += 1

    return PermissionSummary(total=total, by_category=by_category, by_risk=by_risk, applications=applications)


def grants_action(permission_map: PermissionMap, application: str, module: str, action: str) -> bool:
    modules = permission_map.get(application)
    if not modules:
        return False
    for module_code in (module, WILDCARD):
        actions = modules.get(module_code)
        if actions and (action in actions or WILDCARD in actions):
            return True
    return False


def normalize_permission_entries(payload: Mapping[str, Any] | Iterable[PermissionEntry] | None) -> set[str]:
    """Granted keys from identity-provider permission entries.

    Accepts the provider's ``{"permissions": [...]}`` envelope or the bare list,
    where each entry is either a string key or a ``{"key", "isGranted"}`` mapping.
    """

    if payload is None:
        return set()
    entries: Any = payload.get("permissions", []) if isinstance(payload, Mapping) else payload
    if isinstance(entries, str) or not isinstance(entries, Iterable):
        return set()

    granted: set[str] = set()
    for entry in entries:
        if isinstance(entry, str):
            key = entry.strip()
            if key:
                granted.add(key)
        elif isinstance(entry, Mapping):
            key = entry.get("key")
            is_granted = entry.get("isGranted", entry.get("is_granted", False))
            if isinstance(key, str) and key.strip() and is_granted is True:
                granted.add(key.strip())
    return granted


def entries_grant(granted_keys: set[str], application: str, module: str, action: str) -> bool:
    return bool(
        granted_keys
        & {
            f"{application}.{module}.{action}",
            f"{application}.{module}.{WILDCARD}",
            f"{application}.{WILDCARD}.{WILDCARD}",
        }
    )
