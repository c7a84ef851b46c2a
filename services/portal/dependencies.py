"""FastAPI dependencies for app-scoped collaborators and common validation."""
from __future__ import annotations

from fastapi import HTTPException, Query, Request, Response

from services.shared.rate_limiter import RateLimiter

MAX_PAGE_SIZE = 100


def parse_id(value, param_name: str = "id") -> int:
    """Numeric IDs arrive as strings in paths and JSON bodies; malformed ones are a 400."""
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise HTTPException(400, f"Invalid {param_name} format")
    if parsed <= 0:
        raise HTTPException(400, f"Invalid {param_name} format")
    return parsed


def page_pagination(
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(20, ge=1, description="Items per page, capped at 100"),
):
    limit = min(limit, MAX_PAGE_SIZE)
    return {"page": page, "limit": limit, "offset": (page - 1) * limit}


def offset_pagination(
    limit: int = Query(50, ge=1, description="Items per page, capped at 100"),
    offset: int = Query(0, ge=0, description="Items to skip"),
):
    limit = min(limit, MAX_PAGE_SIZE)
    return {"limit": limit, "offset": offset}


async def get_db_pool(request: Request):
    """Get database pool from app state."""
    return request.app.state.pool


async def get_event_bus(request: Request):
    return request.app.state.event_bus


async def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


async def get_evaluator(request: Request):
    return request.app.state.evaluator


async def get_dispatcher(request: Request):
    return request.app.state.dispatcher


async def get_health_monitor(request: Request):
    return request.app.state.health_monitor


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def rate_limit(preset: str = "standard"):
    """
    Apply a rate limit preset keyed by API key (when authenticated) or
    client IP. Sets X-RateLimit-* headers; raises 429 once exhausted.
    """

    async def _check(request: Request, response: Response) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        principal = getattr(request.state, "api_key", None)
        identifier = f"key:{principal.key_id}" if principal else f"ip:{client_ip(request)}"
        result = limiter.check(identifier, preset)
        headers = result.headers()
        if not result.allowed:
            raise HTTPException(429, "Too many requests", headers=headers)
        for name, value in headers.items():
            response.headers[name] = value

    return _check

