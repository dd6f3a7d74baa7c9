"""Tests for the item repository."""

import asyncio
from decimal import Decimal

import pytest

from listing_healer.db.models import ItemStatus, LogAction
from listing_healer.db.repository import (
    ItemNotFoundError,
    LogRecord,
    VersionConflictError,
)


@pytest.mark.asyncio
async def test_update_bumps_version_and_writes_log(healer, make_user, make_item):
    await make_user()
    item = await make_item()

    updated = await healer.repository.update(
        item.id,
        {"price": Decimal("11.00"), "status": ItemStatus.PRICE_CHANGED},
        expected_version=item.version,
        log=LogRecord(action=LogAction.PRICE_UPDATE, old_value=Decimal("10.00"), new_value=Decimal("11.00")),
    )

    assert updated.version == item.version + 1
    assert updated.status == ItemStatus.PRICE_CHANGED.value
    log = await healer.repository.get_log(item.id)
    assert [(e.action, e.old_value, e.new_value) for e in log] == [("PRICE_UPDATE", "10.00", "11.00")]


@pytest.mark.asyncio
async def test_stale_version_is_rejected(healer, make_user, make_item):
    await make_user()
    item = await make_item()
    await healer.repository.update(item.id, {"stock_level": 10}, expected_version=item.version)

    with pytest.raises(VersionConflictError):
        await healer.repository.update(
            item.id,
            {"stock_level": 20},
            expected_version=item.version,
            log=LogRecord(action=LogAction.PRICE_UPDATE),
        )

    stored = await healer.repository.get(item.id)
    assert stored.stock_level == 10
    # The log record of the rejected write is not persisted
    assert await healer.repository.get_log(item.id) == []


@pytest.mark.asyncio
async def test_update_validation(healer, make_user, make_item):
    await make_user()
    item = await make_item()

    with pytest.raises(ValueError):
        await healer.repository.update(item.id, {"stock_level": -1})
    with pytest.raises(ItemNotFoundError):
        await healer.repository.update(999, {"stock_level": 1})


@pytest.mark.asyncio
async def test_apply_rereads_after_conflict(healer, make_user, make_item):
    await make_user()
    item = await make_item()
    calls = []

    async def mutate(current):
        calls.append(current.version)
        if len(calls) == 1:
            # A concurrent writer lands between our read and our write
            await healer.repository.update(item.id, {"stock_level": 7})
        return {"stock_level": current.stock_level + 1}

    updated, changed = await healer.repository.apply(item.id, mutate)

    assert changed is True
    assert calls == [1, 2]
    assert updated.stock_level == 8


@pytest.mark.asyncio
async def test_apply_noop(healer, make_user, make_item):
    await make_user()
    item = await make_item()

    current, changed = await healer.repository.apply(item.id, lambda current: None)

    assert changed is False
    assert current.version == item.version
    with pytest.raises(ItemNotFoundError):
        await healer.repository.apply(999, lambda current: None)


@pytest.mark.asyncio
async def test_concurrent_appliers_both_land(healer, make_user, make_item):
    await make_user()
    item = await make_item(stock_level=0)

    def increment(current):
        return {"stock_level": current.stock_level + 1}, LogRecord(action="STOCK_BUMP")

    await asyncio.gather(
        healer.repository.apply(item.id, increment),
        healer.repository.apply(item.id, increment),
    )

    stored = await healer.repository.get(item.id)
    assert stored.stock_level == 2
    assert len(await healer.repository.get_log(item.id)) == 2


@pytest.mark.asyncio
async def test_log_is_ordered(healer, make_user, make_item):
    await make_user()
    item = await make_item()
    for n in range(3):
        await healer.repository.append_log(item.id, LogRecord(action=LogAction.CANDIDATE_VETTED, details=str(n)))

    log = await healer.repository.get_log(item.id)

    assert [entry.details for entry in log] == ["0", "1", "2"]


@pytest.mark.asyncio
async def test_rearm(healer, make_user, make_item):
    await make_user()
    active = await make_item()
    removed = await make_item(status="REMOVED", stock_level=0, heal_outcome="no_candidates")

    with pytest.raises(ValueError):
        await healer.repository.rearm(active.id)

    rearmed = await healer.repository.rearm(removed.id, supplier_url="https://www.aliexpress.com/item/5005.html")

    assert rearmed.rearmed is True
    assert rearmed.heal_outcome is None
    assert rearmed.supplier_url == "https://www.aliexpress.com/item/5005.html"
    due = await healer.repository.list_due_items()
    assert {d.item_id for d in due} == {active.id, removed.id}


@pytest.mark.asyncio
async def test_analytics_events(healer):
    await healer.repository.record_analytics("probe_failed", item_id=3, user_id="user-1", metadata={"error": "x"})
    await healer.repository.record_analytics("auto_heal_success", item_id=4)

    failed = await healer.repository.list_analytics("probe_failed")

    assert len(failed) == 1
    assert failed[0].metadata_json == {"error": "x"}
    assert len(await healer.repository.list_analytics()) == 2
