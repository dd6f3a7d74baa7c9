"""Shared fixtures: a throwaway SQLite database and in-process collaborators."""

import asyncio
from collections import deque
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from listing_healer.ai.supplier_vetter import SupplierVetter, VettingVerdict
from listing_healer.config import Settings
from listing_healer.container import build_components
from listing_healer.db.models import Base, MonitoredItem, UserAccount
from listing_healer.ingest.discovery import CandidateDiscovery, SupplierCandidate
from listing_healer.ingest.probe import ProbeProvider, ProbeResult
from listing_healer.notify.discord import Notifier
from listing_healer.sync.storefront import StockSync
from listing_healer.worker.task_queue import Task, TaskQueue


class InMemoryTaskQueue(TaskQueue):
    """FIFO queue kept in process; records acks, retries and dead letters."""

    def __init__(self, settings: Settings, fail_item_ids=()):
        self.settings = settings
        self.fail_item_ids = set(fail_item_ids)
        self.pending: deque[Task] = deque()
        self.acked: list[Task] = []
        self.retried: list[tuple[Task, str]] = []
        self.dead: list[tuple[Task, str]] = []
        self._next_id = 0

    @property
    def payloads(self) -> list[dict]:
        return [task.payload for task in self.pending]

    async def enqueue(self, queue_name, payload):
        if payload.get("item_id") in self.fail_item_ids:
            raise ConnectionError("queue unavailable")
        self._next_id += 1
        task = Task(id=f"t{self._next_id}", queue=queue_name, payload=payload)
        self.pending.append(task)
        return task.id

    async def reserve(self, queue_name, timeout):
        if not self.pending:
            await asyncio.sleep(0.01)
            return None
        return self.pending.popleft()

    async def ack(self, task):
        self.acked.append(task)

    async def retry(self, task, error):
        attempts = task.attempts + 1
        if attempts >= self.settings.task_max_attempts:
            await self.dead_letter(task, error)
            return False
        self.retried.append((task, error))
        self.pending.append(Task(id=task.id, queue=task.queue, payload=task.payload, attempts=attempts))
        return True

    async def dead_letter(self, task, error):
        self.dead.append((task, error))


class FakeProbeProvider(ProbeProvider):
    """Returns a scripted ProbeResult (or raises a scripted exception) per URL."""

    def __init__(self):
        self.responses = {}
        self.calls: list[str] = []

    def set(self, url, response):
        self.responses[url] = response

    async def probe(self, url):
        self.calls.append(url)
        response = self.responses.get(url)
        if response is None:
            return ProbeResult(found=True, status_code=200)
        if isinstance(response, BaseException):
            raise response
        return response


class FakeDiscovery(CandidateDiscovery):
    def __init__(self):
        self.candidates: list[SupplierCandidate] = []
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def find_candidates(self, reference_image_url):
        self.calls.append(reference_image_url)
        if self.error is not None:
            raise self.error
        return list(self.candidates)


class ScriptedVetter(SupplierVetter):
    """Approves everything unless a URL is scripted otherwise."""

    def __init__(self):
        self.verdicts = {}
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def vet(self, candidate, item):
        self.calls.append(candidate.url)
        if self.error is not None:
            raise self.error
        return self.verdicts.get(candidate.url, VettingVerdict(True, "looks good", 10))


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[dict] = []

    async def notify(self, user_id, subject, body, fields=None, kind="general", color=0):
        self.sent.append(
            {"user_id": user_id, "subject": subject, "body": body, "fields": fields or [], "kind": kind}
        )
        return True


class RecordingStockSync(StockSync):
    def __init__(self):
        self.pushes: list[tuple[int, int]] = []
        self.error: Exception | None = None

    async def set_stock(self, item, quantity):
        if self.error is not None:
            raise self.error
        self.pushes.append((item.id, quantity))


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        openai_api_key="",
        serpapi_api_key="",
        storefront_sync_url="",
        inter_batch_delay_seconds=0,
        probe_batch_size=2,
        task_max_attempts=3,
        task_timeout_seconds=5,
        probe_timeout_seconds=5,
        queue_poll_timeout_seconds=0,
        auto_heal_enabled=True,
    )


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'healer.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def make_user(session_factory):
    async def _make_user(user_id="user-1", **overrides):
        fields = {
            "id": user_id,
            "email": f"{user_id}@example.com",
            "auto_replace": True,
            "min_supplier_rating": 4.5,
            "max_price_variance": 10.0,
            "notification_target": "https://discord.example/webhook",
            "active_plugins": ["auto_healer"],
        }
        fields.update(overrides)
        async with session_factory() as db:
            user = UserAccount(**fields)
            db.add(user)
            await db.commit()
            return user

    return _make_user


@pytest.fixture
def make_item(session_factory):
    async def _make_item(user_id="user-1", **overrides):
        fields = {
            "user_id": user_id,
            "name": "Wireless Earbuds",
            "reference_image_url": "https://img.example/earbuds.jpg",
            "supplier_url": "https://www.aliexpress.com/item/1001.html",
            "status": "ACTIVE",
            "price": Decimal("10.00"),
            "stock_level": 50,
            "supplier_rating": 4.7,
            "shipping_method": "ePacket",
        }
        fields.update(overrides)
        async with session_factory() as db:
            item = MonitoredItem(**fields)
            db.add(item)
            await db.commit()
            return item

    return _make_item


@pytest.fixture
def healer(session_factory, test_settings):
    """Full component graph with in-process collaborators."""
    queue = InMemoryTaskQueue(test_settings)
    probe = FakeProbeProvider()
    discovery = FakeDiscovery()
    vetter = ScriptedVetter()
    notifier = RecordingNotifier()
    stock_sync = RecordingStockSync()

    components = build_components(
        session_factory,
        test_settings,
        queue=queue,
        probe_provider=probe,
        discovery=discovery,
        vetter=vetter,
        notifier=notifier,
        stock_sync=stock_sync,
    )
    return SimpleNamespace(
        components=components,
        settings=test_settings,
        repository=components.repository,
        engine=components.heal_engine,
        price_handler=components.price_handler,
        worker=components.probe_worker,
        scheduler=components.probe_scheduler,
        consumer=components.consumer,
        queue=queue,
        probe=probe,
        discovery=discovery,
        vetter=vetter,
        notifier=notifier,
        stock_sync=stock_sync,
    )
