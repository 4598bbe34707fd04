"""Health check endpoint.

Checks: execution store, SQL database (when configured), progress monitor sampler.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text

from execflow.api.deps import get_services
from execflow.services import Services

router = APIRouter()

VERSION = "0.1.0"


class HealthStatus(BaseModel):
    status: str  # "healthy" | "degraded" | "unhealthy"
    version: str
    checks: dict[str, dict]
    dependencies: dict[str, str]
    timestamp: datetime


@router.get("/health", response_model=HealthStatus)
async def health_check(services: Services = Depends(get_services)) -> HealthStatus:
    checks: dict[str, dict] = {}
    overall_healthy = True
    has_warning = False

    # 1. Execution store
    try:
        services.executions.exists("__health__")
        checks["store"] = {"status": "ok", "detail": f"backend={services.settings.store_backend}"}
    except Exception as e:
        checks["store"] = {"status": "error", "detail": str(e)}
        overall_healthy = False

    # 2. SQLite DB
    if services.db_engine is not None:
        try:
            with services.db_engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
                wal = conn.execute(text("PRAGMA journal_mode")).fetchone()
                checks["database"] = {"status": "ok", "detail": f"journal_mode={wal[0]}"}
        except Exception as e:
            checks["database"] = {"status": "error", "detail": str(e)}
            overall_healthy = False
    else:
        checks["database"] = {"status": "disabled", "detail": "in-memory store"}

    # 3. Progress monitor
    monitor = services.monitor
    if not monitor.enabled:
        checks["monitor"] = {"status": "disabled", "detail": "set MONITOR_ENABLED=true to sample resources"}
    elif monitor.is_sampling:
        checks["monitor"] = {
            "status": "ok",
            "detail": f"{len(monitor.active_executions())} active, interval={monitor.sample_interval_seconds}s",
        }
    else:
        checks["monitor"] = {"status": "warning", "detail": "sampler not running"}
        has_warning = True

    dependencies = {name: check["status"] for name, check in checks.items()}

    if overall_healthy:
        status = "degraded" if has_warning else "healthy"
    else:
        status = "unhealthy"

    return HealthStatus(
        status=status,
        version=VERSION,
        checks=checks,
        dependencies=dependencies,
        timestamp=datetime.now(timezone.utc),
    )
