"""
API key authentication for the /api/v1 routes.

Keys are stored as sha256 hashes with a comma separated scope list. A scope
is "<resource>:<action>" (telemetry:write, alerts:read). A bare action such
as "write" grants that action on every resource, and "*" grants everything.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException, Request

from services.portal.db import queries
from services.portal.db.pool import system_connection
from services.portal.middleware.tenant import set_tenant_context

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def parse_scopes(raw) -> frozenset:
    if not raw:
        return frozenset()
    if isinstance(raw, (list, tuple, set, frozenset)):
        items = raw
    else:
        items = str(raw).split(",")
    return frozenset(s.strip() for s in items if s and s.strip())


@dataclass(frozen=True)
class ApiKeyPrincipal:
    key_id: int
    tenant_id: int
    scopes: frozenset

    def has_scope(self, required: str) -> bool:
        if "*" in self.scopes or required in self.scopes:
            return True
        resource, _, action = required.partition(":")
        return bool(action) and (action in self.scopes or f"{resource}:*" in self.scopes)


def extract_api_key(request: Request) -> Optional[str]:
    key = request.headers.get(API_KEY_HEADER)
    if key:
        return key.strip()
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


async def resolve_api_key(pool, raw_key: str) -> Optional[ApiKeyPrincipal]:
    """Look up an active, unexpired key. Returns None when it doesn't authenticate."""
    async with system_connection(pool) as conn:
        row = await queries.fetch_api_key(conn, hash_api_key(raw_key))
        if not row or not row.get("is_active"):
            return None
        expires_at = row.get("expires_at")
        if expires_at is not None and expires_at <= datetime.now(timezone.utc):
            return None
        await queries.touch_api_key(conn, row["key_id"])
    return ApiKeyPrincipal(
        key_id=row["key_id"],
        tenant_id=row["tenant_id"],
        scopes=parse_scopes(row.get("scopes")),
    )


class ApiKeyAuth:
    """Dependency: authenticates the request's API key and checks one scope."""

    def __init__(self, scope: str):
        self.scope = scope

    async def __call__(self, request: Request) -> ApiKeyPrincipal:
        raw_key = extract_api_key(request)
        if not raw_key:
            raise HTTPException(status_code=401, detail="Missing API key")
        try:
            principal = await resolve_api_key(request.app.state.pool, raw_key)
        except Exception:
            logger.exception("API key lookup failed")
            raise HTTPException(status_code=500, detail="Internal server error")
        if principal is None:
            raise HTTPException(status_code=401, detail="Invalid API key")
        if not principal.has_scope(self.scope):
            raise HTTPException(status_code=403, detail=f"API key lacks scope {self.scope}")

        request.state.api_key = principal
        set_tenant_context(principal.tenant_id, {"api_key_id": principal.key_id})
        return principal
