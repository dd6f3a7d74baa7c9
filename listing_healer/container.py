"""Component graph wiring."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_healer.ai.llm_service import LLMService
from listing_healer.ai.risk_scorer import RiskScorer
from listing_healer.ai.supplier_vetter import LLMSupplierVetter, RuleBasedVetter, SupplierVetter
from listing_healer.config import Settings, settings as default_settings
from listing_healer.db.repository import ItemRepository
from listing_healer.heal.engine import AutoHealEngine
from listing_healer.heal.price_handler import PriceChangeHandler
from listing_healer.ingest.discovery import CandidateDiscovery, SerpApiLensDiscovery
from listing_healer.ingest.probe import HttpProbeProvider, ProbeProvider
from listing_healer.notify.discord import DiscordNotifier, Notifier
from listing_healer.sync.storefront import StockSync, build_stock_sync
from listing_healer.worker.probe_worker import ProbeWorker
from listing_healer.worker.scheduler import ProbeScheduler
from listing_healer.worker.task_queue import QueueConsumer, RedisTaskQueue, TaskQueue

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Everything the service runs, built once per process."""

    settings: Settings
    repository: ItemRepository
    queue: TaskQueue
    probe_provider: ProbeProvider
    discovery: CandidateDiscovery
    vetter: SupplierVetter
    notifier: Notifier
    stock_sync: StockSync
    heal_engine: AutoHealEngine
    price_handler: PriceChangeHandler
    probe_worker: ProbeWorker
    probe_scheduler: ProbeScheduler
    consumer: QueueConsumer
    llm_service: Optional[LLMService] = None
    risk_scorer: Optional[RiskScorer] = None

    async def close(self):
        """Close every collaborator's connections."""
        for resource in (
            self.probe_provider,
            self.discovery,
            self.vetter,
            self.notifier,
            self.stock_sync,
            self.llm_service,
            self.queue,
        ):
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception:
                logger.exception(f"Error closing {type(resource).__name__}")


def build_components(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    queue: Optional[TaskQueue] = None,
    probe_provider: Optional[ProbeProvider] = None,
    discovery: Optional[CandidateDiscovery] = None,
    vetter: Optional[SupplierVetter] = None,
    notifier: Optional[Notifier] = None,
    stock_sync: Optional[StockSync] = None,
) -> Components:
    """Build the production graph; any collaborator can be swapped in."""
    settings = settings or default_settings
    repository = ItemRepository(session_factory, settings)

    llm_service = LLMService(settings) if settings.openai_api_key else None

    queue = queue or RedisTaskQueue(settings)
    probe_provider = probe_provider or HttpProbeProvider(settings)
    discovery = discovery or SerpApiLensDiscovery(probe_provider, settings)
    if vetter is None:
        if settings.ai_vetting_enabled and llm_service is not None:
            vetter = LLMSupplierVetter(llm_service, settings)
        else:
            logger.warning("AI vetting disabled or OpenAI key missing, using rule-based vetter")
            vetter = RuleBasedVetter(settings)
    notifier = notifier or DiscordNotifier(repository, settings)
    stock_sync = stock_sync or build_stock_sync(settings)

    heal_engine = AutoHealEngine(repository, discovery, vetter, notifier, stock_sync, settings)
    price_handler = PriceChangeHandler(repository, notifier, settings)
    probe_worker = ProbeWorker(repository, probe_provider, heal_engine, price_handler, stock_sync, settings)
    probe_scheduler = ProbeScheduler(repository, queue, settings)
    consumer = QueueConsumer(queue, settings.probe_queue_name, probe_worker.handle, settings)

    risk_scorer = RiskScorer(repository, llm_service, settings) if llm_service is not None else None

    return Components(
        settings=settings,
        repository=repository,
        queue=queue,
        probe_provider=probe_provider,
        discovery=discovery,
        vetter=vetter,
        notifier=notifier,
        stock_sync=stock_sync,
        heal_engine=heal_engine,
        price_handler=price_handler,
        probe_worker=probe_worker,
        probe_scheduler=probe_scheduler,
        consumer=consumer,
        llm_service=llm_service,
        risk_scorer=risk_scorer,
    )
