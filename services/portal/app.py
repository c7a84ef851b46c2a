import logging
import os

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request

from services.evaluator.engine import RuleEvaluator
from services.health_monitor.monitor import DeviceHealthMonitor
from services.portal.db.pool import create_pool
from services.portal.middleware.trace import TraceMiddleware
from services.portal.notifications.dispatcher import NotificationDispatcher
from services.portal.routes.admin_rules import router as admin_rules_router
from services.portal.routes.alert_rules import router as alert_rules_router
from services.portal.routes.alerts import api_router as api_alerts_router
from services.portal.routes.alerts import router as alerts_router
from services.portal.routes.cron import router as cron_router
from services.portal.routes.device_types import router as device_types_router
from services.portal.routes.ingest import router as ingest_router
from services.portal.routes.realtime import router as realtime_router
from services.portal.routes.reports import router as reports_router
from services.portal.routes.system import router as system_router
from services.portal.routes.telemetry import router as telemetry_router
from services.shared.config import require_env
from services.shared.event_bus import InMemoryEventBus
from services.shared.logging import configure_logging
from services.shared.rate_limiter import InMemoryRateLimitStore, RateLimiter

CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "*")
PORTAL_BASE_URL = os.getenv("PORTAL_BASE_URL", "http://localhost:3000")
REALTIME_QUEUE_SIZE = int(os.getenv("REALTIME_QUEUE_SIZE", "100"))
REALTIME_MAX_PER_TENANT = int(os.getenv("REALTIME_MAX_PER_TENANT", "10"))

logger = logging.getLogger(__name__)

app = FastAPI(title="Mechatronics telemetry alerting")
app.add_middleware(TraceMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(system_router)
app.include_router(telemetry_router)
app.include_router(ingest_router)
app.include_router(alert_rules_router)
app.include_router(admin_rules_router)
app.include_router(device_types_router)
app.include_router(alerts_router)
app.include_router(api_alerts_router)
app.include_router(reports_router)
app.include_router(cron_router)
app.include_router(realtime_router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        detail = f"{where}: {first.get('msg')}" if where else first.get("msg")
    else:
        detail = "Invalid request"
    return JSONResponse(status_code=400, content={"detail": detail})


@app.on_event("startup")
async def startup():
    configure_logging("portal")
    require_env("SESSION_SECRET")

    app.state.pool = await create_pool()
    app.state.event_bus = InMemoryEventBus(
        queue_size=REALTIME_QUEUE_SIZE, max_per_tenant=REALTIME_MAX_PER_TENANT
    )
    app.state.rate_limiter = RateLimiter(store=InMemoryRateLimitStore())
    app.state.evaluator = RuleEvaluator(portal_base_url=PORTAL_BASE_URL)
    app.state.health_monitor = DeviceHealthMonitor()
    app.state.dispatcher = NotificationDispatcher(app.state.pool, app.state.event_bus)
    logger.info("Portal started", extra={"cors_origins": CORS_ALLOWED_ORIGINS})


@app.on_event("shutdown")
async def shutdown():
    pool = getattr(app.state, "pool", None)
    if pool is not None:
        await pool.close()
