"""Redis-backed task queue with at-least-once delivery, plus the consumer loop."""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from listing_healer.config import Settings, settings as default_settings
from listing_healer.metrics import record_enqueue, record_task_result

logger = logging.getLogger(__name__)


class InvalidTaskError(ValueError):
    """Task payload is malformed. Dead-lettered without retry."""
    pass


@dataclass
class Task:
    """One reserved delivery of a queued payload."""

    id: str
    queue: str
    payload: Dict[str, Any]
    attempts: int = 0
    last_error: Optional[str] = None
    enqueued_at: Optional[str] = None
    raw: str = field(default="", repr=False)  # Envelope as stored in the processing list

    def to_envelope(self) -> str:
        return json.dumps({
            "id": self.id,
            "payload": self.payload,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at,
        })

    @classmethod
    def from_envelope(cls, queue: str, raw: str) -> "Task":
        data = json.loads(raw)
        if not isinstance(data, dict) or "id" not in data:
            raise ValueError("Task envelope is not an object with an id")
        return cls(
            id=data["id"],
            queue=queue,
            payload=data.get("payload") or {},
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            enqueued_at=data.get("enqueued_at"),
            raw=raw,
        )


def retry_delay(attempts: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at max."""
    return min(max_seconds, base_seconds * (2 ** max(0, attempts - 1)))


class TaskQueue(ABC):
    """Abstract durable work queue."""

    @abstractmethod
    async def enqueue(self, queue_name: str, payload: Dict[str, Any]) -> str:
        """Push a payload. Returns the task id."""
        pass

    @abstractmethod
    async def reserve(self, queue_name: str, timeout: float) -> Optional[Task]:
        """Take the next task, waiting up to timeout seconds."""
        pass

    @abstractmethod
    async def ack(self, task: Task) -> None:
        pass

    @abstractmethod
    async def retry(self, task: Task, error: str) -> bool:
        """Schedule a redelivery. Returns False if the task was dead-lettered instead."""
        pass

    @abstractmethod
    async def dead_letter(self, task: Task, error: str) -> None:
        pass

    async def recover_inflight(self, queue_name: str) -> int:
        return 0

    async def close(self):
        pass


class RedisTaskQueue(TaskQueue):
    """
    Task queue on Redis lists.

    Keys per queue name ``q``:
    - ``tasks:q``: pending envelopes (LPUSH in, BLMOVE out)
    - ``tasks:q:processing``: reserved envelopes until ack
    - ``tasks:q:delayed``: retry envelopes scored by due time
    - ``tasks:q:dead``: envelopes that exhausted their attempts
    """

    def __init__(self, settings: Settings | None = None, redis_url: Optional[str] = None):
        self.settings = settings or default_settings
        self.redis_url = redis_url or self.settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    @staticmethod
    def pending_key(queue_name: str) -> str:
        return f"tasks:{queue_name}"

    @staticmethod
    def processing_key(queue_name: str) -> str:
        return f"tasks:{queue_name}:processing"

    @staticmethod
    def delayed_key(queue_name: str) -> str:
        return f"tasks:{queue_name}:delayed"

    @staticmethod
    def dead_key(queue_name: str) -> str:
        return f"tasks:{queue_name}:dead"

    async def enqueue(self, queue_name: str, payload: Dict[str, Any]) -> str:
        redis_client = await self._get_redis()
        task = Task(
            id=uuid4().hex,
            queue=queue_name,
            payload=payload,
            enqueued_at=datetime.now(timezone.utc).isoformat(),
        )
        await redis_client.lpush(self.pending_key(queue_name), task.to_envelope())
        return task.id

    async def promote_delayed(self, queue_name: str) -> int:
        """Move retry envelopes whose backoff has elapsed back to the pending list."""
        redis_client = await self._get_redis()
        due = await redis_client.zrangebyscore(self.delayed_key(queue_name), "-inf", time.time())

        promoted = 0
        for raw in due:
            # Only the consumer that wins the ZREM re-queues the envelope
            if await redis_client.zrem(self.delayed_key(queue_name), raw) == 1:
                await redis_client.lpush(self.pending_key(queue_name), raw)
                promoted += 1
        return promoted

    async def reserve(self, queue_name: str, timeout: float) -> Optional[Task]:
        redis_client = await self._get_redis()
        await self.promote_delayed(queue_name)

        raw = await redis_client.blmove(
            self.pending_key(queue_name),
            self.processing_key(queue_name),
            timeout,
            src="RIGHT",
            dest="LEFT",
        )
        if raw is None:
            return None

        try:
            return Task.from_envelope(queue_name, raw)
        except (ValueError, TypeError) as e:
            logger.error(f"Unreadable task envelope on {queue_name}, dead-lettering: {e}")
            async with redis_client.pipeline(transaction=True) as pipe:
                pipe.lrem(self.processing_key(queue_name), 1, raw)
                pipe.lpush(self.dead_key(queue_name), raw)
                await pipe.execute()
            return None

    async def ack(self, task: Task) -> None:
        redis_client = await self._get_redis()
        await redis_client.lrem(self.processing_key(task.queue), 1, task.raw)

    async def retry(self, task: Task, error: str) -> bool:
        attempts = task.attempts + 1
        if attempts >= self.settings.task_max_attempts:
            await self.dead_letter(task, error)
            return False

        delay = retry_delay(
            attempts,
            self.settings.task_retry_base_seconds,
            self.settings.task_retry_max_seconds,
        )
        retried = Task(
            id=task.id,
            queue=task.queue,
            payload=task.payload,
            attempts=attempts,
            last_error=error[:500],
            enqueued_at=task.enqueued_at,
        )

        redis_client = await self._get_redis()
        async with redis_client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key(task.queue), 1, task.raw)
            pipe.zadd(self.delayed_key(task.queue), {retried.to_envelope(): time.time() + delay})
            await pipe.execute()

        logger.info(f"Task {task.id} on {task.queue} retrying in {delay:.0f}s (attempt {attempts})")
        return True

    async def dead_letter(self, task: Task, error: str) -> None:
        dead = Task(
            id=task.id,
            queue=task.queue,
            payload=task.payload,
            attempts=task.attempts + 1,
            last_error=error[:500],
            enqueued_at=task.enqueued_at,
        )

        redis_client = await self._get_redis()
        async with redis_client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key(task.queue), 1, task.raw)
            pipe.lpush(self.dead_key(task.queue), dead.to_envelope())
            await pipe.execute()

        logger.error(f"Task {task.id} on {task.queue} dead-lettered: {error}")

    async def recover_inflight(self, queue_name: str) -> int:
        """
        Return reservations left behind by a crashed process to the pending list.

        Only call this before this queue's consumers start.
        """
        redis_client = await self._get_redis()
        recovered = 0
        while await redis_client.lmove(
            self.processing_key(queue_name),
            self.pending_key(queue_name),
            src="RIGHT",
            dest="RIGHT",
        ) is not None:
            recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} in-flight task(s) on {queue_name}")
        return recovered

    async def stats(self, queue_name: str) -> Dict[str, int]:
        """Queue depths for health reporting."""
        redis_client = await self._get_redis()
        return {
            "pending": await redis_client.llen(self.pending_key(queue_name)),
            "processing": await redis_client.llen(self.processing_key(queue_name)),
            "delayed": await redis_client.zcard(self.delayed_key(queue_name)),
            "dead": await redis_client.llen(self.dead_key(queue_name)),
        }


TaskHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


async def enqueue_with_metrics(queue: TaskQueue, queue_name: str, payload: Dict[str, Any]) -> str:
    """Enqueue and count the attempt; errors propagate to the caller."""
    try:
        task_id = await queue.enqueue(queue_name, payload)
    except Exception:
        record_enqueue(queue_name, success=False)
        raise
    record_enqueue(queue_name, success=True)
    return task_id


class QueueConsumer:
    """
    Runs N concurrent consumer coroutines over one queue.

    Each task runs under ``task_timeout_seconds``. Handler exceptions and
    timeouts schedule a retry with backoff; InvalidTaskError dead-letters
    immediately. A task that has not been acked when the process dies stays
    in the processing list until ``recover_inflight`` runs.
    """

    def __init__(
        self,
        queue: TaskQueue,
        queue_name: str,
        handler: TaskHandler,
        settings: Settings | None = None,
    ):
        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.settings = settings or default_settings
        self._workers: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    async def process_one(self, poll_timeout: Optional[float] = None) -> Optional[str]:
        """
        Reserve and handle a single task.

        Returns:
            "ok", "retry", "dead", or None when no task arrived
        """
        if poll_timeout is None:
            poll_timeout = self.settings.queue_poll_timeout_seconds

        task = await self.queue.reserve(self.queue_name, poll_timeout)
        if task is None:
            return None

        started = time.monotonic()
        try:
            await asyncio.wait_for(self.handler(task.payload), timeout=self.settings.task_timeout_seconds)
        except InvalidTaskError as e:
            await self.queue.dead_letter(task, f"invalid payload: {e}")
            status = "dead"
        except asyncio.TimeoutError:
            logger.warning(
                f"Task {task.id} timed out after {self.settings.task_timeout_seconds}s"
            )
            retried = await self.queue.retry(task, "timeout")
            status = "retry" if retried else "dead"
        except Exception as e:
            logger.exception(f"Task {task.id} on {self.queue_name} failed: {e}")
            retried = await self.queue.retry(task, f"{type(e).__name__}: {e}")
            status = "retry" if retried else "dead"
        else:
            await self.queue.ack(task)
            status = "ok"

        record_task_result(self.queue_name, status, time.monotonic() - started)
        return status

    async def _run_worker(self, worker_id: int):
        logger.info(f"Consumer {worker_id} started on {self.queue_name}")
        while not self._stopping.is_set():
            try:
                await self.process_one()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Queue backend errors; back off and keep consuming
                logger.error(f"Consumer {worker_id} on {self.queue_name} error: {e}")
                await asyncio.sleep(1.0)
        logger.info(f"Consumer {worker_id} stopped on {self.queue_name}")

    async def start(self, concurrency: Optional[int] = None):
        """Recover orphaned reservations, then spawn the consumer coroutines."""
        concurrency = concurrency or self.settings.worker_concurrency
        await self.queue.recover_inflight(self.queue_name)
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._run_worker(i), name=f"{self.queue_name}-consumer-{i}")
            for i in range(concurrency)
        ]
        logger.info(f"Started {concurrency} consumer(s) on {self.queue_name}")

    async def stop(self, grace_seconds: float = 10.0):
        """Stop consuming; cancel workers still busy after the grace period."""
        self._stopping.set()
        if not self._workers:
            return
        done, pending = await asyncio.wait(self._workers, timeout=grace_seconds)
        for worker in pending:
            worker.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []
        logger.info(f"Consumers on {self.queue_name} stopped")
