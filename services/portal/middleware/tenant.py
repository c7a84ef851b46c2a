from contextvars import ContextVar
from typing import Optional

from fastapi import Depends, HTTPException, Request

tenant_context: ContextVar[Optional[int]] = ContextVar("tenant_context", default=None)
user_context: ContextVar[Optional[dict]] = ContextVar("user_context", default=None)

ADMIN_ROLES = ("owner", "admin")


def set_tenant_context(tenant_id: Optional[int], user: dict) -> None:
    tenant_context.set(tenant_id)
    user_context.set(user)


def get_tenant_id() -> int:
    tenant_id = tenant_context.get()
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Tenant context not established")
    return tenant_id


def get_user() -> dict:
    user = user_context.get()
    if not user:
        raise HTTPException(status_code=401, detail="User context not established")
    return user


def get_user_role() -> str:
    return str(get_user().get("role") or "")


def _extract_tenant_id(user: dict) -> Optional[int]:
    raw = user.get("tenant_id")
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


async def inject_tenant_context(request: Request) -> None:
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(status_code=401, detail="Missing authorization")
    set_tenant_context(_extract_tenant_id(user), user)


async def require_tenant_user(request: Request, _: None = Depends(inject_tenant_context)) -> None:
    user = get_user()
    if user.get("user_type", "tenant") != "tenant":
        raise HTTPException(status_code=403, detail="Tenant access required")
    if tenant_context.get() is None:
        raise HTTPException(status_code=403, detail="No tenant membership")


async def require_tenant_admin(request: Request, _: None = Depends(require_tenant_user)) -> None:
    if get_user_role() not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Owner or admin role required")


async def require_platform_admin(request: Request, _: None = Depends(inject_tenant_context)) -> None:
    if get_user().get("user_type") != "admin":
        raise HTTPException(status_code=403, detail="Platform admin access required")
