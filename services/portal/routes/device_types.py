import logging

from fastapi import APIRouter, Depends, HTTPException

from services.portal.db import queries
from services.portal.db.pool import tenant_connection
from services.portal.dependencies import get_db_pool, parse_id
from services.portal.middleware.auth import JWTBearer
from services.portal.middleware.tenant import get_tenant_id, inject_tenant_context, require_tenant_user
from services.portal.schemas import variable_out

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/portal",
    tags=["device-types"],
    dependencies=[
        Depends(JWTBearer()),
        Depends(inject_tenant_context),
        Depends(require_tenant_user),
    ],
)


@router.get("/device-types/{device_type_id}/variables")
async def list_device_type_variables(device_type_id: str, pool=Depends(get_db_pool)):
    """Variable catalog used by the rule editor (labels, units, alertable flag)."""
    tenant_id = get_tenant_id()
    type_id = parse_id(device_type_id, "device_type_id")
    try:
        async with tenant_connection(pool, tenant_id) as conn:
            if not await queries.device_type_exists(conn, type_id):
                raise HTTPException(status_code=404, detail="Device type not found")
            rows = await queries.fetch_device_type_variables(conn, type_id)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to fetch device type variables")
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"deviceTypeId": str(type_id), "variables": [variable_out(r) for r in rows]}
