"""Tests for the probe worker."""

from decimal import Decimal

import pytest

from listing_healer.db.models import HealOutcome, ItemStatus, LogAction
from listing_healer.ingest.discovery import SupplierCandidate
from listing_healer.ingest.probe import ProbeProvider, ProbeResult, TransientProbeError
from listing_healer.worker.probe_worker import ProbeOutcome, ProbeTask, ProbeWorker, classify_probe
from listing_healer.worker.task_queue import InvalidTaskError

URL = "https://www.aliexpress.com/item/1001.html"


def _payload(item, url=URL):
    return {"item_id": item.id, "url": url, "user_id": item.user_id}


def test_classify_probe():
    stored = Decimal("10.00")
    assert classify_probe(ProbeResult.not_found(), stored) == ProbeOutcome.NOT_FOUND
    assert classify_probe(ProbeResult(True, 200, price=Decimal("12.00")), stored) == ProbeOutcome.PRICE_CHANGED
    assert classify_probe(ProbeResult(True, 200, price=Decimal("10.00")), stored) == ProbeOutcome.UNCHANGED
    assert classify_probe(ProbeResult(True, 200, price=None), stored) == ProbeOutcome.UNCHANGED
    assert classify_probe(ProbeResult(True, 200, price=Decimal("3.00")), None) == ProbeOutcome.PRICE_CHANGED


def test_invalid_payloads():
    with pytest.raises(InvalidTaskError):
        ProbeTask.from_payload({"url": URL, "user_id": "u"})
    with pytest.raises(InvalidTaskError):
        ProbeTask.from_payload({"item_id": "abc", "url": URL, "user_id": "u"})
    with pytest.raises(InvalidTaskError):
        ProbeTask.from_payload(["not", "a", "dict"])

    task = ProbeTask.from_payload({"item_id": "7", "url": URL, "user_id": "u"})
    assert task.item_id == 7


@pytest.mark.asyncio
async def test_unchanged_refreshes_secondary_fields(healer, make_user, make_item):
    await make_user()
    item = await make_item()
    healer.probe.set(
        URL,
        ProbeResult(True, 200, price=Decimal("10.00"), stock=120, rating=4.9, shipping="ePacket tracked"),
    )

    outcome = await healer.worker.handle(_payload(item))

    assert outcome == ProbeOutcome.UNCHANGED.value
    stored = await healer.repository.get(item.id)
    assert stored.status == ItemStatus.ACTIVE
    assert stored.stock_level == 120
    assert stored.supplier_rating == 4.9
    assert stored.shipping_method == "ePacket tracked"
    assert stored.last_checked is not None
    assert await healer.repository.get_log(item.id) == []


@pytest.mark.asyncio
async def test_price_change_routes_to_handler(healer, make_user, make_item):
    await make_user()
    item = await make_item()
    healer.probe.set(URL, ProbeResult(True, 200, price=Decimal("12.00"), stock=40))

    outcome = await healer.worker.handle(_payload(item))

    assert outcome == ProbeOutcome.PRICE_CHANGED.value
    stored = await healer.repository.get(item.id)
    assert stored.status == ItemStatus.PRICE_CHANGED
    assert stored.price == Decimal("12.00")
    assert stored.stock_level == 40
    assert len(healer.notifier.sent) == 1


@pytest.mark.asyncio
async def test_not_found_routes_to_removal(healer, make_user, make_item):
    await make_user(auto_replace=False)
    item = await make_item()
    healer.probe.set(URL, ProbeResult.not_found())

    outcome = await healer.worker.handle(_payload(item))

    assert outcome == HealOutcome.AUTO_REPLACE_DISABLED.value
    stored = await healer.repository.get(item.id)
    assert stored.status == ItemStatus.REMOVED
    assert stored.stock_level == 0
    assert len(await healer.repository.list_analytics("product_removed")) == 1


@pytest.mark.asyncio
async def test_transient_failure_leaves_status(healer, make_user, make_item):
    await make_user()
    item = await make_item()
    healer.probe.set(URL, TransientProbeError("probe service 503"))

    outcome = await healer.worker.handle(_payload(item))

    assert outcome == "probe_failed"
    stored = await healer.repository.get(item.id)
    assert stored.status == ItemStatus.ACTIVE
    assert stored.stock_level == 50
    assert "probe service 503" in stored.last_probe_error
    assert stored.last_checked is not None
    assert await healer.repository.get_log(item.id) == []
    assert len(await healer.repository.list_analytics("probe_failed")) == 1


@pytest.mark.asyncio
async def test_stale_task_dropped(healer, make_user, make_item):
    await make_user()
    item = await make_item()

    outcome = await healer.worker.handle(_payload(item, url="https://www.aliexpress.com/item/old.html"))

    assert outcome == "stale"
    assert healer.probe.calls == []


@pytest.mark.asyncio
async def test_missing_item_completes(healer):
    outcome = await healer.worker.handle({"item_id": 999, "url": URL, "user_id": "nobody"})
    assert outcome == "missing"


@pytest.mark.asyncio
async def test_removed_item_not_probed_unless_rearmed(healer, make_user, make_item):
    await make_user()
    item = await make_item(status="REMOVED", stock_level=0, heal_outcome="no_candidates")

    assert await healer.worker.handle(_payload(item)) == "skipped"
    assert healer.probe.calls == []


@pytest.mark.asyncio
async def test_rearmed_item_restored_when_supplier_returns(healer, make_user, make_item):
    await make_user()
    item = await make_item(status="REMOVED", stock_level=0, heal_outcome="no_candidates")
    await healer.repository.rearm(item.id)
    healer.probe.set(URL, ProbeResult(True, 200, price=Decimal("10.00"), stock=None))

    outcome = await healer.worker.handle(_payload(item))

    assert outcome == "restored"
    stored = await healer.repository.get(item.id)
    assert stored.status == ItemStatus.ACTIVE
    assert stored.rearmed is False
    assert stored.heal_outcome is None
    assert stored.stock_level == 999
    log = await healer.repository.get_log(item.id)
    assert log[-1].action == LogAction.PRODUCT_RESTORED.value
    assert healer.stock_sync.pushes == [(item.id, 999)]


@pytest.mark.asyncio
async def test_rearmed_item_heals_again_when_still_missing(healer, make_user, make_item):
    await make_user()
    item = await make_item(status="REMOVED", stock_level=0, heal_outcome="no_candidates")
    await healer.repository.rearm(item.id)
    healer.probe.set(URL, ProbeResult.not_found())
    healer.discovery.candidates = [
        SupplierCandidate(
            url="https://www.aliexpress.com/item/2002.html",
            price=Decimal("10.20"),
            rating=4.9,
            shipping="AliExpress Standard with tracking",
            confidence=92.0,
        )
    ]

    outcome = await healer.worker.handle(_payload(item))

    assert outcome == HealOutcome.HEALED.value
    stored = await healer.repository.get(item.id)
    assert stored.status == ItemStatus.ACTIVE
    assert stored.rearmed is False
    # Already REMOVED, so no second removal entry
    actions = [entry.action for entry in await healer.repository.get_log(item.id)]
    assert LogAction.PRODUCT_REMOVED.value not in actions
    assert actions[-1] == LogAction.AUTO_HEAL.value


class RemovedDuringProbe(ProbeProvider):
    """Confirms a removal through the engine while this probe is in flight, then answers found."""

    def __init__(self, engine, result):
        self.engine = engine
        self.result = result

    async def probe(self, url):
        item_id = (await self.engine.repository.list_item_ids())[0]
        await self.engine.handle_removal(item_id, url)
        return self.result


@pytest.mark.asyncio
@pytest.mark.parametrize("price", [Decimal("12.00"), Decimal("10.00")])
async def test_concurrent_removal_wins_over_stale_read(healer, make_user, make_item, price):
    await make_user(auto_replace=False)
    item = await make_item()
    racing = RemovedDuringProbe(healer.engine, ProbeResult(True, 200, price=price, stock=30))
    worker = ProbeWorker(
        healer.repository, racing, healer.engine, healer.price_handler, healer.stock_sync, healer.settings
    )

    await worker.handle(_payload(item))

    stored = await healer.repository.get(item.id)
    assert stored.status == ItemStatus.REMOVED
    assert stored.stock_level == 0
    assert stored.price == Decimal("10.00")
    assert stored.heal_outcome == HealOutcome.AUTO_REPLACE_DISABLED.value
    actions = [entry.action for entry in await healer.repository.get_log(item.id)]
    assert actions == [LogAction.PRODUCT_REMOVED.value, LogAction.HEAL_SKIPPED.value]
    assert [alert["kind"] for alert in healer.notifier.sent] == ["product_removed"]


@pytest.mark.asyncio
async def test_unconcluded_removal_resumes_heal_directly(healer, make_user, make_item):
    await make_user(auto_replace=False)
    item = await make_item(status="REMOVED", stock_level=0)

    outcome = await healer.worker.handle(_payload(item))

    assert outcome == HealOutcome.AUTO_REPLACE_DISABLED.value
    assert healer.probe.calls == []
    stored = await healer.repository.get(item.id)
    assert stored.heal_outcome == HealOutcome.AUTO_REPLACE_DISABLED.value
