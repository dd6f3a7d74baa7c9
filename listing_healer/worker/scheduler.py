"""Probe scheduler and APScheduler job definitions."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from listing_healer import metrics
from listing_healer.ai.risk_scorer import RiskScorer
from listing_healer.config import Settings, settings as default_settings
from listing_healer.db.repository import DueItem, ItemNotFoundError, ItemRepository
from listing_healer.utils.batch import chunked
from listing_healer.worker.task_queue import TaskQueue, enqueue_with_metrics

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """Result of one scheduler run."""

    considered: int = 0
    queued: int = 0
    failed: int = 0


class ProbeScheduler:
    """
    Fans out one probe task per monitored item.

    The scheduler never probes anything itself. A failed enqueue is counted
    and never stops the remaining batches.
    """

    def __init__(
        self,
        repository: ItemRepository,
        queue: TaskQueue,
        settings: Settings | None = None,
    ):
        self.repository = repository
        self.queue = queue
        self.settings = settings or default_settings

    def _payload(self, item: DueItem) -> dict:
        return {"item_id": item.item_id, "url": item.url, "user_id": item.user_id}

    async def _enqueue(self, item: DueItem) -> bool:
        try:
            await enqueue_with_metrics(self.queue, self.settings.probe_queue_name, self._payload(item))
            return True
        except Exception as e:
            logger.error(f"Failed to enqueue probe for item {item.item_id}: {e}")
            return False

    async def run_tick(self) -> TickSummary:
        """Enqueue a probe for every due item, batch by batch."""
        summary = TickSummary()

        try:
            items = await self.repository.list_due_items()
        except Exception as e:
            logger.error(f"Scheduler could not load items: {e}")
            metrics.record_scheduler_run("probe_fanout", success=False)
            raise

        summary.considered = len(items)
        metrics.items_considered.set(summary.considered)

        batches = list(chunked(items, self.settings.probe_batch_size))
        for index, batch in enumerate(batches):
            results = await asyncio.gather(*(self._enqueue(item) for item in batch))
            batch_queued = sum(1 for ok in results if ok)
            summary.queued += batch_queued
            summary.failed += len(batch) - batch_queued

            if index < len(batches) - 1 and self.settings.inter_batch_delay_seconds > 0:
                await asyncio.sleep(self.settings.inter_batch_delay_seconds)

        try:
            await self.repository.record_system_metric(
                "probe_fanout",
                items_considered=summary.considered,
                tasks_queued=summary.queued,
                enqueue_failures=summary.failed,
            )
        except Exception as e:
            logger.error(f"Failed to record scheduler metrics row: {e}")

        metrics.record_scheduler_run("probe_fanout", success=summary.failed == 0)
        logger.info(
            f"Scheduler tick: {summary.considered} considered, {summary.queued} queued, "
            f"{summary.failed} failed"
        )
        return summary

    async def enqueue_item(self, item_id: int) -> str:
        """
        Queue an immediate probe for one item.

        Raises:
            ItemNotFoundError: If the item does not exist
        """
        item = await self.repository.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)

        task_id = await enqueue_with_metrics(
            self.queue,
            self.settings.probe_queue_name,
            {"item_id": item.id, "url": item.supplier_url, "user_id": item.user_id},
        )
        logger.info(f"Manual probe queued for item {item_id} (task {task_id})")
        return task_id


def setup_scheduler(
    probe_scheduler: ProbeScheduler,
    risk_scorer: Optional[RiskScorer] = None,
    settings: Settings | None = None,
) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Probe fan-out every settings.probe_interval_minutes
    - Risk scoring daily at settings.risk_scoring_hour when ai_risk_scoring_enabled

    Returns:
        Configured scheduler instance
    """
    settings = settings or default_settings
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        probe_scheduler.run_tick,
        IntervalTrigger(minutes=max(1, settings.probe_interval_minutes)),
        id="probe_fanout",
        name="Enqueue probes for monitored items",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    if settings.ai_risk_scoring_enabled and risk_scorer is not None:
        scheduler.add_job(
            risk_scorer.refresh_all,
            CronTrigger(hour=settings.risk_scoring_hour, minute=0),
            id="risk_scoring",
            name="Refresh supplier removal risk scores",
            max_instances=1,
            replace_existing=True,
        )

    logger.info(
        "Scheduler configured: probe fan-out every %d minutes, risk scoring %s",
        settings.probe_interval_minutes,
        f"daily at {settings.risk_scoring_hour}:00" if settings.ai_risk_scoring_enabled else "disabled",
    )

    return scheduler
