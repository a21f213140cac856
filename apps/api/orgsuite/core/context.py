import re
import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

_TENANT_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


@dataclass(frozen=True)
class RequestScope:
    """Tenant and entity a caller says it is acting within, taken from request headers."""

    request_id: str
    tenant_id: str | None
    entity_id: str | None


def _parse_tenant(raw: str | None) -> str | None:
    if raw is None:
        return None
    candidate = raw.strip()
    return candidate if _TENANT_PATTERN.fullmatch(candidate) else None


def _parse_entity(raw: str | None) -> str | None:
    if not raw:
        return None
    try:
        return str(uuid.UUID(raw.strip()))
    except ValueError:
        return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        scope = RequestScope(
            request_id=getattr(request.state, "correlation_id", None) or str(uuid.uuid4()),
            tenant_id=_parse_tenant(request.headers.get("x-tenant-id")),
            entity_id=_parse_entity(request.headers.get("x-entity-id")),
        )
        request.state.scope = scope
        response = await call_next(request)
        response.headers["x-request-id"] = scope.request_id
        return response
