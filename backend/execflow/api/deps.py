"""FastAPI dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request

from execflow.services import Services


def get_services(request: Request) -> Services:
    """Services built by the application lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services
