"""Tests for the task queue and consumer loop."""

import asyncio
import uuid

import pytest
import redis.asyncio as redis

from listing_healer.config import Settings
from listing_healer.worker.task_queue import (
    InvalidTaskError,
    QueueConsumer,
    RedisTaskQueue,
    retry_delay,
)


def test_retry_delay_backoff():
    assert retry_delay(1, 30, 1800) == 30
    assert retry_delay(2, 30, 1800) == 60
    assert retry_delay(3, 30, 1800) == 120
    assert retry_delay(10, 30, 1800) == 1800


@pytest.mark.asyncio
async def test_consumer_acks_successful_task(healer):
    handled = []

    async def handler(payload):
        handled.append(payload)

    consumer = QueueConsumer(healer.queue, "probe", handler, healer.settings)
    await healer.queue.enqueue("probe", {"item_id": 1})

    status = await consumer.process_one()

    assert status == "ok"
    assert handled == [{"item_id": 1}]
    assert len(healer.queue.acked) == 1


@pytest.mark.asyncio
async def test_consumer_retries_then_dead_letters(healer):
    async def handler(payload):
        raise RuntimeError("collaborator down")

    consumer = QueueConsumer(healer.queue, "probe", handler, healer.settings)
    await healer.queue.enqueue("probe", {"item_id": 1})

    statuses = [await consumer.process_one() for _ in range(healer.settings.task_max_attempts)]

    assert statuses == ["retry", "retry", "dead"]
    assert len(healer.queue.dead) == 1
    assert "collaborator down" in healer.queue.dead[0][1]
    assert await consumer.process_one() is None


@pytest.mark.asyncio
async def test_invalid_task_dead_lettered_without_retry(healer):
    async def handler(payload):
        raise InvalidTaskError("missing field(s): url")

    consumer = QueueConsumer(healer.queue, "probe", handler, healer.settings)
    await healer.queue.enqueue("probe", {"item_id": 1})

    assert await consumer.process_one() == "dead"
    assert healer.queue.retried == []


@pytest.mark.asyncio
async def test_task_timeout_is_retried(healer):
    async def handler(payload):
        await asyncio.sleep(10)

    settings = healer.settings.model_copy(update={"task_timeout_seconds": 0.01})
    consumer = QueueConsumer(healer.queue, "probe", handler, settings)
    await healer.queue.enqueue("probe", {"item_id": 1})

    assert await consumer.process_one() == "retry"
    assert healer.queue.retried[0][1] == "timeout"


@pytest.mark.asyncio
async def test_one_failing_task_does_not_block_others(healer, make_user, make_item):
    await make_user()
    good = await make_item(supplier_url="https://a.example/good")
    await healer.queue.enqueue("probe", {"item_id": good.id})  # Missing url and user_id
    await healer.queue.enqueue(
        "probe", {"item_id": good.id, "url": good.supplier_url, "user_id": good.user_id}
    )

    first = await healer.consumer.process_one()
    second = await healer.consumer.process_one()

    assert (first, second) == ("dead", "ok")
    assert healer.probe.calls == ["https://a.example/good"]


@pytest.mark.asyncio
async def test_consumer_start_and_stop(healer, make_user, make_item):
    await make_user()
    item = await make_item()
    await healer.scheduler.enqueue_item(item.id)

    await healer.consumer.start(concurrency=2)
    for _ in range(50):
        if healer.queue.acked:
            break
        await asyncio.sleep(0.02)
    await healer.consumer.stop(grace_seconds=1)

    assert len(healer.queue.acked) == 1
    stored = await healer.repository.get(item.id)
    assert stored.last_checked is not None


async def _redis_available(url: str) -> bool:
    try:
        client = redis.from_url(url, decode_responses=True)
        await client.ping()
        await client.close()
        return True
    except Exception:
        return False


@pytest.fixture
async def redis_queue():
    settings = Settings(_env_file=None, task_max_attempts=2, task_retry_base_seconds=0)
    if not await _redis_available(settings.redis_url):
        pytest.skip("Redis not available")
    queue = RedisTaskQueue(settings)
    queue_name = f"test-{uuid.uuid4().hex[:8]}"
    yield queue, queue_name
    client = await queue._get_redis()
    await client.delete(
        queue.pending_key(queue_name),
        queue.processing_key(queue_name),
        queue.delayed_key(queue_name),
        queue.dead_key(queue_name),
    )
    await queue.close()


@pytest.mark.asyncio
async def test_redis_enqueue_reserve_ack(redis_queue):
    queue, name = redis_queue

    task_id = await queue.enqueue(name, {"item_id": 1, "url": "https://a.example/1", "user_id": "u"})
    task = await queue.reserve(name, timeout=1)

    assert task.id == task_id
    assert task.payload["item_id"] == 1
    assert (await queue.stats(name))["processing"] == 1

    await queue.ack(task)
    stats = await queue.stats(name)
    assert stats["processing"] == 0
    assert stats["pending"] == 0


@pytest.mark.asyncio
async def test_redis_fifo_order(redis_queue):
    queue, name = redis_queue
    for n in range(3):
        await queue.enqueue(name, {"n": n})

    order = []
    for _ in range(3):
        task = await queue.reserve(name, timeout=1)
        order.append(task.payload["n"])
        await queue.ack(task)

    assert order == [0, 1, 2]


@pytest.mark.asyncio
async def test_redis_retry_then_dead_letter(redis_queue):
    queue, name = redis_queue
    await queue.enqueue(name, {"item_id": 1})

    task = await queue.reserve(name, timeout=1)
    assert await queue.retry(task, "boom") is True
    assert (await queue.stats(name))["delayed"] == 1

    # Zero backoff: promoted on the next reserve
    task = await queue.reserve(name, timeout=1)
    assert task.attempts == 1
    assert task.last_error == "boom"

    assert await queue.retry(task, "boom again") is False
    stats = await queue.stats(name)
    assert stats["dead"] == 1
    assert stats["processing"] == 0


@pytest.mark.asyncio
async def test_redis_recover_inflight(redis_queue):
    queue, name = redis_queue
    await queue.enqueue(name, {"item_id": 1})
    await queue.reserve(name, timeout=1)  # Reserved, never acked

    recovered = await queue.recover_inflight(name)

    assert recovered == 1
    task = await queue.reserve(name, timeout=1)
    assert task.payload == {"item_id": 1}
