"""Probe worker: checks one monitored item per task and routes the outcome."""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from listing_healer.config import Settings, settings as default_settings
from listing_healer.db.models import ItemStatus, LogAction, MonitoredItem, utcnow
from listing_healer.db.repository import ItemNotFoundError, ItemRepository, LogRecord
from listing_healer.heal.engine import AutoHealEngine
from listing_healer.heal.price_handler import PriceChangeHandler
from listing_healer.ingest.probe import ProbeProvider, ProbeResult, TransientProbeError
from listing_healer.logging_config import get_logger
from listing_healer.metrics import record_probe
from listing_healer.sync.storefront import StockSync, StockSyncError
from listing_healer.worker.task_queue import InvalidTaskError

logger = logging.getLogger(__name__)


class ProbeOutcome(str, Enum):
    NOT_FOUND = "not_found"
    PRICE_CHANGED = "price_changed"
    UNCHANGED = "unchanged"


@dataclass
class ProbeTask:
    """Payload of one probe task."""

    item_id: int
    url: str
    user_id: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProbeTask":
        """
        Validate a queue payload.

        Raises:
            InvalidTaskError: If a field is missing or malformed
        """
        if not isinstance(payload, dict):
            raise InvalidTaskError("payload is not an object")

        missing = [key for key in ("item_id", "url", "user_id") if payload.get(key) in (None, "")]
        if missing:
            raise InvalidTaskError(f"missing field(s): {', '.join(missing)}")

        try:
            item_id = int(payload["item_id"])
        except (TypeError, ValueError) as e:
            raise InvalidTaskError(f"item_id is not an integer: {payload['item_id']!r}") from e

        return cls(item_id=item_id, url=str(payload["url"]), user_id=str(payload["user_id"]))


def classify_probe(result: ProbeResult, stored_price: Optional[Decimal]) -> ProbeOutcome:
    """Map a probe result onto not-found, price-changed or unchanged."""
    if not result.found:
        return ProbeOutcome.NOT_FOUND
    if result.price is not None and result.price != stored_price:
        return ProbeOutcome.PRICE_CHANGED
    return ProbeOutcome.UNCHANGED


def _observed_fields(result: ProbeResult) -> dict:
    """Secondary fields refreshed on every successful probe."""
    fields = {"last_checked": utcnow(), "last_probe_error": None}
    if result.stock is not None:
        fields["stock_level"] = result.stock
    if result.rating is not None:
        fields["supplier_rating"] = result.rating
    if result.shipping:
        fields["shipping_method"] = result.shipping
    return fields


class ProbeWorker:
    """
    Handles probe tasks. Safe under duplicate delivery.

    Transport failures never change the item's status; the failure is
    recorded on the item and the next scheduler tick probes again.
    """

    def __init__(
        self,
        repository: ItemRepository,
        probe_provider: ProbeProvider,
        heal_engine: AutoHealEngine,
        price_handler: PriceChangeHandler,
        stock_sync: StockSync,
        settings: Settings | None = None,
    ):
        self.repository = repository
        self.probe_provider = probe_provider
        self.heal_engine = heal_engine
        self.price_handler = price_handler
        self.stock_sync = stock_sync
        self.settings = settings or default_settings

    async def handle(self, payload: Dict[str, Any]) -> str:
        """
        Process one probe task.

        Returns:
            Short outcome label (for logs and tests)

        Raises:
            InvalidTaskError: If the payload is malformed
        """
        task = ProbeTask.from_payload(payload)
        log = get_logger(__name__, item_id=task.item_id, user_id=task.user_id)

        item = await self.repository.get(task.item_id)
        if item is None:
            log.warning(f"Item {task.item_id} no longer exists, dropping probe task")
            return "missing"

        if item.supplier_url != task.url:
            log.info(f"Stale probe task for item {task.item_id}: {task.url} is no longer the supplier")
            return "stale"

        if item.status == ItemStatus.REMOVED and not item.rearmed:
            if item.heal_outcome is None:
                # Removal already confirmed; an earlier heal attempt failed before concluding
                log.info(f"Resuming interrupted heal of item {task.item_id}")
                heal_outcome = await self.heal_engine.handle_removal(task.item_id, task.url)
                return heal_outcome.value
            log.info(f"Item {task.item_id} is REMOVED and not re-armed, skipping probe")
            return "skipped"

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.probe_provider.probe(task.url),
                timeout=self.settings.probe_timeout_seconds,
            )
        except (TransientProbeError, asyncio.TimeoutError) as e:
            record_probe("transient", time.monotonic() - started)
            await self._record_probe_failure(item, task, e)
            return "probe_failed"

        outcome = classify_probe(result, item.price)
        record_probe(outcome.value, time.monotonic() - started)

        if item.status == ItemStatus.REMOVED and result.found:
            await self._restore(task, result)
            return "restored"

        if outcome == ProbeOutcome.NOT_FOUND:
            if item.status != ItemStatus.REMOVED:
                await self.repository.record_analytics(
                    "product_removed",
                    item_id=task.item_id,
                    user_id=item.user_id,
                    metadata={"url": task.url, "status_code": result.status_code},
                )
            heal_outcome = await self.heal_engine.handle_removal(task.item_id, task.url)
            return heal_outcome.value

        await self._refresh(task, result)

        if outcome == ProbeOutcome.PRICE_CHANGED:
            await self.price_handler.handle_price_change(task.item_id, item.price, result.price)
            return outcome.value

        log.debug(f"Item {task.item_id} unchanged")
        return outcome.value

    async def _refresh(self, task: ProbeTask, result: ProbeResult):
        """Overwrite last_checked and the secondary fields, without a log entry."""

        def mutate(current: MonitoredItem):
            # A concurrent removal wins over this probe's stale read
            if current.supplier_url != task.url or current.status == ItemStatus.REMOVED:
                return None
            return _observed_fields(result)

        try:
            await self.repository.apply(task.item_id, mutate)
        except ItemNotFoundError:
            logger.warning(f"Item {task.item_id} deleted during probe")

    async def _record_probe_failure(self, item: MonitoredItem, task: ProbeTask, error: Exception):
        message = f"{type(error).__name__}: {error}"[:500]
        logger.warning(f"Probe failed for item {task.item_id} ({task.url}): {message}")

        def mutate(current: MonitoredItem):
            if current.supplier_url != task.url:
                return None
            return {"last_checked": utcnow(), "last_probe_error": message}

        try:
            await self.repository.apply(task.item_id, mutate)
        except ItemNotFoundError:
            return

        await self.repository.record_analytics(
            "probe_failed",
            item_id=task.item_id,
            user_id=item.user_id,
            metadata={"url": task.url, "error": message},
        )

    async def _restore(self, task: ProbeTask, result: ProbeResult):
        """A re-armed removed item whose supplier answers again goes back to ACTIVE."""

        def mutate(current: MonitoredItem):
            if current.status != ItemStatus.REMOVED or current.supplier_url != task.url:
                return None
            fields = _observed_fields(result)
            fields.update({
                "status": ItemStatus.ACTIVE,
                "rearmed": False,
                "heal_outcome": None,
            })
            if result.price is not None:
                fields["price"] = result.price
            if result.stock is None:
                fields["stock_level"] = self.settings.default_restock_level
            return fields, LogRecord(
                action=LogAction.PRODUCT_RESTORED,
                old_value=ItemStatus.REMOVED.value,
                new_value=ItemStatus.ACTIVE.value,
                details=f"Supplier listing available again: {task.url}",
            )

        item, changed = await self.repository.apply(task.item_id, mutate)
        if not changed:
            return

        logger.info(f"Item {task.item_id} restored to ACTIVE")
        await self.repository.record_analytics(
            "product_restored",
            item_id=task.item_id,
            user_id=item.user_id,
            metadata={"url": task.url, "stock_level": item.stock_level},
        )
        try:
            await self.stock_sync.set_stock(item, item.stock_level)
        except StockSyncError as e:
            logger.error(f"Stock sync failed after restoring item {task.item_id}: {e}")
            await self.repository.record_analytics(
                "stock_sync_failed",
                item_id=task.item_id,
                user_id=item.user_id,
                metadata={"error": str(e)},
            )
