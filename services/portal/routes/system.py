import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from services.portal.dependencies import get_db_pool
from services.portal.middleware.auth import JWTBearer
from services.portal.middleware.tenant import require_tenant_admin

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


@router.get("/health")
async def health(pool=Depends(get_db_pool)):
    checked_at = datetime.now(timezone.utc).isoformat()
    try:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
    except Exception as exc:
        logger.warning("Health check: database unreachable", extra={"error": str(exc)})
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "down", "timestamp": checked_at},
        )
    return {"status": "healthy", "database": "up", "timestamp": checked_at}


@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get(
    "/api/portal/rate-limits",
    dependencies=[Depends(JWTBearer()), Depends(require_tenant_admin)],
)
async def rate_limit_stats(request: Request):
    """Rate limiting statistics for monitoring."""
    limiter = request.app.state.rate_limiter
    return {
        "rateLimitStats": limiter.get_stats(),
        "trackedKeys": len(limiter.store) if hasattr(limiter.store, "__len__") else None,
        "realtimeConnections": request.app.state.event_bus.connection_count(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
