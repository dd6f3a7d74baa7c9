"""FastAPI dependencies."""

from fastapi import HTTPException, Request, status

from listing_healer.container import Components
from listing_healer.db.repository import ItemRepository
from listing_healer.worker.scheduler import ProbeScheduler


def get_components(request: Request) -> Components:
    """Component graph built by the application lifespan."""
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return components


def get_repository(request: Request) -> ItemRepository:
    return get_components(request).repository


def get_probe_scheduler(request: Request) -> ProbeScheduler:
    return get_components(request).probe_scheduler
