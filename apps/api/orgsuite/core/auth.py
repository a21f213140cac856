from dataclasses import dataclass, field

from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from orgsuite.authz.permissions import normalize_permission_entries
from orgsuite.context import set_actor_user_id
from orgsuite.core.config import get_settings

ADMIN_ROLES = frozenset({"admin", "system.admin"})


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    permissions: set[str] = field(default_factory=set)
    tenant_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return any(role in ADMIN_ROLES for role in self.roles)


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    tenant_id = payload.get("tenant_id")

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
        if context.tenant_id is None and isinstance(tenant_id, str):
            context.tenant_id = tenant_id
    set_actor_user_id(subject)

    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        permissions=normalize_permission_entries(payload.get("permissions")),
        tenant_id=tenant_id if isinstance(tenant_id, str) else None,
    )
