"""Graph API — validate, register, list, clone, import/export and delete graph definitions."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from execflow.api.deps import get_services
from execflow.api.responses import ok, page_size_for
from execflow.models.graph import GraphDefinition, GraphQuery, GraphSortField, GraphStatus
from execflow.services import Services

router = APIRouter(prefix="/api/v1", tags=["graphs"])


class ImportGraphsRequest(BaseModel):
    graphs: list[dict] = Field(min_length=1)
    overwrite: bool = False


class CloneGraphRequest(BaseModel):
    new_id: str | None = None
    name: str | None = None


@router.post("/graphs/validate")
async def validate_graph(document: dict = Body(...), services: Services = Depends(get_services)):
    """Validate a raw graph document without storing it.

    Always 200: validation problems are part of the result, not an error.
    """
    return ok(services.coordinator.validate_graph(document))


@router.post("/graphs")
async def register_graph(
    graph: GraphDefinition,
    overwrite: bool = Query(default=False),
    services: Services = Depends(get_services),
):
    result = services.coordinator.register_graph(graph, overwrite=overwrite)
    return ok({"graph": services.coordinator.get_graph(graph.id), "validation": result})


@router.get("/graphs")
async def list_graphs(
    tags: list[str] | None = Query(default=None),
    category: str | None = None,
    status: GraphStatus | None = None,
    published_only: bool = False,
    author: str | None = None,
    search: str | None = None,
    sort_by: GraphSortField = "updated_at",
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    services: Services = Depends(get_services),
):
    query = GraphQuery(
        tags=tags or [],
        category=category,
        status=status,
        published_only=published_only,
        author=author,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,  # type: ignore[arg-type]
        page=page,
        page_size=page_size_for(services.settings, page_size),
    )
    return ok(services.coordinator.query_graphs(query))


@router.get("/graphs/export")
async def export_graphs(services: Services = Depends(get_services)):
    graphs = services.coordinator.export_graphs()
    return ok({"graphs": graphs, "count": len(graphs)})


@router.post("/graphs/import")
async def import_graphs(request: ImportGraphsRequest, services: Services = Depends(get_services)):
    """Import a batch of graph documents.

    Always 200 once the body parses: per-graph problems are listed under
    ``failed`` and do not stop the rest of the batch.
    """
    return ok(services.coordinator.import_graphs(request.graphs, overwrite=request.overwrite))


@router.get("/graphs/stats")
async def graph_stats(services: Services = Depends(get_services)):
    return ok(services.coordinator.graph_stats())


@router.get("/graphs/{graph_id}")
async def get_graph(graph_id: str, services: Services = Depends(get_services)):
    return ok(services.coordinator.get_graph(graph_id))


@router.delete("/graphs/{graph_id}")
async def delete_graph(graph_id: str, services: Services = Depends(get_services)):
    services.coordinator.delete_graph(graph_id)
    return ok({"graph_id": graph_id, "deleted": True})


@router.post("/graphs/{graph_id}/clone")
async def clone_graph(
    graph_id: str,
    request: CloneGraphRequest | None = None,
    services: Services = Depends(get_services),
):
    request = request or CloneGraphRequest()
    clone = services.coordinator.clone_graph(graph_id, new_id=request.new_id, new_name=request.name)
    return ok(clone)
