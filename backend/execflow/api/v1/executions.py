"""Execution API — trigger, status updates, node reports, history and recovery.

POST   /api/v1/executions                           — trigger a run of a stored graph
GET    /api/v1/executions                           — query history
GET    /api/v1/executions/stats                     — aggregate stats
POST   /api/v1/executions/cleanup                   — delete old records
GET    /api/v1/executions/{id}                      — one record
DELETE /api/v1/executions/{id}                      — delete a record
PUT    /api/v1/executions/{id}/status               — status transition
POST   /api/v1/executions/{id}/nodes                — report a node outcome
POST   /api/v1/executions/{id}/checkpoints          — store a checkpoint
GET    /api/v1/executions/{id}/progress|logs|metrics|rollback-points
POST   /api/v1/executions/{id}/rollback|resume|cancel
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from execflow.api.deps import get_services
from execflow.api.responses import RECOVERY_STATUS_CODES, fail, ok, page_size_for
from execflow.models.execution import (
    ExecutionContext,
    ExecutionError,
    ExecutionQuery,
    ExecutionStatus,
    ExecutionTrigger,
    NodeExecutionRecord,
    SortField,
    TriggerType,
)
from execflow.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["executions"])


# === Request Models ===


class CreateExecutionRequest(BaseModel):
    graph_id: str
    trigger_type: TriggerType = "manual"
    actor_id: str = ""
    actor_name: str = ""
    trigger_data: dict = Field(default_factory=dict)
    context: ExecutionContext | None = None
    execution_id: str | None = None


class StatusUpdateRequest(BaseModel):
    status: ExecutionStatus
    error_message: str | None = None
    error_code: str = ""
    node_id: str | None = None


class CheckpointRequest(BaseModel):
    node_id: str
    state: dict = Field(default_factory=dict)


class RollbackRequest(BaseModel):
    target_node_id: str
    force: bool = False


class CancelRequest(BaseModel):
    reason: str | None = None


class CleanupRequest(BaseModel):
    older_than_days: int | None = Field(default=None, ge=0)


# === Lifecycle ===


@router.post("/executions")
async def create_execution(request: CreateExecutionRequest, services: Services = Depends(get_services)):
    trigger = ExecutionTrigger(
        type=request.trigger_type,
        actor_id=request.actor_id,
        actor_name=request.actor_name,
        data=request.trigger_data,
    )
    record = services.coordinator.trigger(
        request.graph_id, trigger, request.context, execution_id=request.execution_id,
    )
    return ok(record)


@router.get("/executions")
async def list_executions(
    graph_id: str | None = None,
    status: list[ExecutionStatus] | None = Query(default=None),
    start_after: datetime | None = None,
    start_before: datetime | None = None,
    trigger_type: TriggerType | None = None,
    actor_id: str | None = None,
    sort_by: SortField = "start_time",
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    services: Services = Depends(get_services),
):
    query = ExecutionQuery(
        graph_id=graph_id,
        statuses=status or [],
        start_after=start_after,
        start_before=start_before,
        trigger_type=trigger_type,
        actor_id=actor_id,
        sort_by=sort_by,
        sort_order=sort_order,  # type: ignore[arg-type]
        page=page,
        page_size=page_size_for(services.settings, page_size),
    )
    return ok(services.coordinator.query(query))


@router.get("/executions/stats")
async def execution_stats(services: Services = Depends(get_services)):
    return ok(services.coordinator.stats())


@router.post("/executions/cleanup")
async def cleanup_executions(
    request: CleanupRequest | None = None,
    services: Services = Depends(get_services),
):
    days = services.settings.retention_days
    if request is not None and request.older_than_days is not None:
        days = request.older_than_days
    deleted = services.coordinator.cleanup(days)
    return ok({"deleted": len(deleted), "execution_ids": deleted, "older_than_days": days})


@router.get("/executions/{execution_id}")
async def get_execution(execution_id: str, services: Services = Depends(get_services)):
    return ok(services.coordinator.get_execution(execution_id))


@router.delete("/executions/{execution_id}")
async def delete_execution(execution_id: str, services: Services = Depends(get_services)):
    services.coordinator.delete(execution_id)
    return ok({"execution_id": execution_id, "deleted": True})


@router.put("/executions/{execution_id}/status")
async def update_status(
    execution_id: str,
    request: StatusUpdateRequest,
    services: Services = Depends(get_services),
):
    error = None
    if request.error_message:
        error = ExecutionError(
            message=request.error_message,
            code=request.error_code,
            node_id=request.node_id,
        )
    record = services.coordinator.update_status(execution_id, request.status, error)
    return ok(record)


@router.post("/executions/{execution_id}/nodes")
async def report_node(
    execution_id: str,
    request: NodeExecutionRecord,
    services: Services = Depends(get_services),
):
    record = services.coordinator.report_node(execution_id, request)
    return ok({"node": record.get_node(request.node_id), "stats": record.stats})


@router.post("/executions/{execution_id}/checkpoints")
async def add_checkpoint(
    execution_id: str,
    request: CheckpointRequest,
    services: Services = Depends(get_services),
):
    checkpoint = services.coordinator.checkpoint(execution_id, request.node_id, request.state)
    return ok(checkpoint)


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    request: CancelRequest | None = None,
    services: Services = Depends(get_services),
):
    record = services.coordinator.cancel(execution_id, request.reason if request else None)
    return ok(record)


# === Live view ===


@router.get("/executions/{execution_id}/progress")
async def get_progress(execution_id: str, services: Services = Depends(get_services)):
    return ok(services.coordinator.progress(execution_id))


@router.get("/executions/{execution_id}/logs")
async def get_logs(
    execution_id: str,
    limit: int | None = Query(default=None, ge=1),
    services: Services = Depends(get_services),
):
    return ok(services.coordinator.logs(execution_id, limit))


@router.get("/executions/{execution_id}/metrics")
async def get_metrics(execution_id: str, services: Services = Depends(get_services)):
    return ok(services.coordinator.metrics(execution_id))


# === Recovery ===


@router.get("/executions/{execution_id}/rollback-points")
async def get_rollback_points(execution_id: str, services: Services = Depends(get_services)):
    return ok(services.coordinator.rollback_points(execution_id))


@router.post("/executions/{execution_id}/rollback")
async def rollback_execution(
    execution_id: str,
    request: RollbackRequest,
    services: Services = Depends(get_services),
):
    result = services.coordinator.rollback(execution_id, request.target_node_id, force=request.force)
    if not result.success and result.error is not None:
        return fail(
            result.error.code,
            result.error.message,
            result.model_dump(mode="json", exclude={"error"}),
            RECOVERY_STATUS_CODES.get(result.error.code, 400),
        )
    return ok(result)


@router.post("/executions/{execution_id}/resume")
async def resume_execution(execution_id: str, services: Services = Depends(get_services)):
    result = services.coordinator.resume(execution_id)
    if not result.success and result.error is not None:
        return fail(
            result.error.code,
            result.error.message,
            result.error.details,
            RECOVERY_STATUS_CODES.get(result.error.code, 400),
        )
    return ok(result)
