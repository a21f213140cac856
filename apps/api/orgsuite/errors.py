from __future__ import annotations

from typing import Any


class OrgSuiteError(Exception):
    """Base class for domain errors surfaced to API callers."""

    status_code = 400
    code = "orgsuite_error"
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.retryable:
            payload["retryable"] = True
        return payload


class NotFoundError(OrgSuiteError):
    status_code = 404
    code = "not_found"

    def __init__(self, kind: str, identifier: object) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found", kind=kind, identifier=str(identifier))


class ConflictError(OrgSuiteError):
    status_code = 409
    code = "conflict"


class CycleDetectedError(OrgSuiteError):
    status_code = 409
    code = "cycle_detected"


class CorruptHierarchyError(OrgSuiteError):
    """Raised when a traversal revisits a node; never retried automatically."""

    status_code = 500
    code = "corrupt_hierarchy"

    def __init__(self, entity_id: object) -> None:
        self.entity_id = entity_id
        super().__init__(f"hierarchy cycle detected at entity {entity_id}", entity_id=str(entity_id))


class EntityHasActiveChildrenError(OrgSuiteError):
    status_code = 409
    code = "entity_has_active_children"


class InsufficientAvailableCreditsError(OrgSuiteError):
    status_code = 422
    code = "insufficient_available_credits"


class AllocationExceededError(OrgSuiteError):
    status_code = 422
    code = "allocation_exceeded"


class DeallocationExceedsAllocatedError(OrgSuiteError):
    status_code = 422
    code = "deallocation_exceeds_allocated"


class UnsupportedApplicationError(OrgSuiteError):
    status_code = 422
    code = "unsupported_application"


class ConcurrentModificationError(OrgSuiteError):
    status_code = 409
    code = "concurrent_modification"
    retryable = True


class RoleInUseError(OrgSuiteError):
    status_code = 409
    code = "role_in_use"


class SystemRoleImmutableError(OrgSuiteError):
    status_code = 400
    code = "system_role_immutable"


class EmptyEntityListError(OrgSuiteError):
    status_code = 422
    code = "empty_entity_list"


class InvalidPrimaryEntityError(OrgSuiteError):
    status_code = 422
    code = "invalid_primary_entity"


class DuplicateEntityInInvitationError(OrgSuiteError):
    status_code = 422
    code = "duplicate_entity_in_invitation"


class InvitationNotPendingError(OrgSuiteError):
    status_code = 409
    code = "invitation_not_pending"


class NoPrimaryEntityError(OrgSuiteError):
    status_code = 404
    code = "no_primary_entity"

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("user has no primary entity", user_id=user_id)


class InvalidCreditRequestError(OrgSuiteError):
    status_code = 422
    code = "invalid_credit_request"


class CreditLimitExceededError(OrgSuiteError):
    status_code = 422
    code = "credit_limit_exceeded"


class CrossTenantTransferError(OrgSuiteError):
    status_code = 422
    code = "cross_tenant_transfer"


class InvalidEntityRequestError(OrgSuiteError):
    status_code = 422
    code = "invalid_entity_request"
