"""Monitored item routes: inspection, manual probe and re-arm."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from listing_healer.api.deps import get_probe_scheduler, get_repository
from listing_healer.db.repository import ItemNotFoundError, ItemRepository
from listing_healer.worker.scheduler import ProbeScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/items", tags=["items"])


class ItemResponse(BaseModel):
    id: int
    user_id: str
    name: str | None
    supplier_url: str
    status: str
    price: Decimal | None
    stock_level: int
    supplier_rating: float | None
    shipping_method: str | None
    risk_score: int
    heal_outcome: str | None
    rearmed: bool
    last_checked: datetime | None
    last_probe_error: str | None
    version: int

    class Config:
        from_attributes = True


class LogEntryResponse(BaseModel):
    id: int
    action: str
    old_value: str | None
    new_value: str | None
    details: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class ProbeQueuedResponse(BaseModel):
    item_id: int
    task_id: str


class RearmRequest(BaseModel):
    supplier_url: Optional[str] = None


@router.get("/{item_id}", response_model=ItemResponse)
async def get_item(item_id: int, repository: ItemRepository = Depends(get_repository)):
    """Get one monitored item."""
    item = await repository.get(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")
    return item


@router.get("/{item_id}/log", response_model=List[LogEntryResponse])
async def get_item_log(item_id: int, repository: ItemRepository = Depends(get_repository)):
    """Automation log of one item, oldest first."""
    if await repository.get(item_id) is None:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")
    return await repository.get_log(item_id)


@router.post("/{item_id}/probe", response_model=ProbeQueuedResponse, status_code=202)
async def probe_item(item_id: int, probe_scheduler: ProbeScheduler = Depends(get_probe_scheduler)):
    """Queue an immediate probe of one item."""
    try:
        task_id = await probe_scheduler.enqueue_item(item_id)
    except ItemNotFoundError:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")
    return ProbeQueuedResponse(item_id=item_id, task_id=task_id)


@router.post("/{item_id}/rearm", response_model=ItemResponse)
async def rearm_item(
    item_id: int,
    body: RearmRequest | None = None,
    repository: ItemRepository = Depends(get_repository),
):
    """
    Re-arm a REMOVED item so the scheduler probes it again.

    Optionally point it at a new supplier URL.
    """
    supplier_url = body.supplier_url if body else None
    try:
        return await repository.rearm(item_id, supplier_url=supplier_url)
    except ItemNotFoundError:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
