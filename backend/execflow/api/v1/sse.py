"""SSE (Server-Sent Events) endpoints for live execution updates.

Events follow the MonitorEvent schema defined in execflow.models.monitor.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from execflow.api.deps import get_services
from execflow.services import Services

router = APIRouter(prefix="/api/v1", tags=["sse"])


@router.get("/sse")
async def sse_endpoint(services: Services = Depends(get_services)):
    """Every monitor event, for dashboards."""
    return services.hub.create_response()


@router.get("/sse/executions/{execution_id}")
async def sse_execution_endpoint(execution_id: str, services: Services = Depends(get_services)):
    """Monitor events of one execution only.

    Connect via EventSource:
        new EventSource('/api/v1/sse/executions/<execution_id>')
    """
    return services.hub.create_execution_response(execution_id)
