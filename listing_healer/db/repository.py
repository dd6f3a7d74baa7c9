"""Item repository: conditional single-row updates plus the append-only automation log."""

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_healer.config import Settings, settings as default_settings
from listing_healer.db.models import (
    AnalyticsEvent,
    AutomationLogEntry,
    ItemStatus,
    MonitoredItem,
    SystemMetric,
    UserAccount,
    utcnow,
)
from listing_healer.logging_config import log_event

logger = logging.getLogger(__name__)

# Statuses the scheduler probes on every tick
PROBED_STATUSES = (ItemStatus.ACTIVE.value, ItemStatus.PRICE_CHANGED.value)


class ItemNotFoundError(LookupError):
    """Raised when a monitored item does not exist."""

    def __init__(self, item_id: int):
        super().__init__(f"Monitored item {item_id} not found")
        self.item_id = item_id


class VersionConflictError(RuntimeError):
    """Raised when a conditional update loses against a concurrent write."""

    def __init__(self, item_id: int, expected_version: int):
        super().__init__(f"Version conflict on item {item_id} (expected v{expected_version})")
        self.item_id = item_id
        self.expected_version = expected_version


@dataclass
class LogRecord:
    """Automation log entry to append alongside an item update."""

    action: str
    details: Optional[str] = None
    old_value: Any = None
    new_value: Any = None


@dataclass
class DueItem:
    """Lightweight row handed to the scheduler."""

    item_id: int
    url: str
    user_id: str


# A mutator inspects the current item and returns the fields to write (and an
# optional log record), or None when nothing needs to change.
MutationResult = Optional[Union[dict, tuple[dict, Optional[LogRecord]]]]
Mutator = Callable[[MonitoredItem], Union[MutationResult, Awaitable[MutationResult]]]


def _stringify(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class ItemRepository:
    """
    Durable store for monitored items.

    Every item write is a single-row UPDATE guarded by the item's version
    column, so concurrent workers never need a lock. A log record passed to
    an update is inserted in the same transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings

    async def get(self, item_id: int) -> Optional[MonitoredItem]:
        """Read one item, or None if it does not exist."""
        async with self.session_factory() as db:
            return await db.get(MonitoredItem, item_id)

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        """Read the owning user (automation settings are read-only here)."""
        async with self.session_factory() as db:
            return await db.get(UserAccount, user_id)

    async def update(
        self,
        item_id: int,
        fields: dict,
        expected_version: Optional[int] = None,
        log: Optional[LogRecord] = None,
    ) -> MonitoredItem:
        """
        Apply a conditional update to one item.

        Args:
            item_id: Item to update
            fields: Column values to set
            expected_version: If given, the write only applies when the stored
                version still matches
            log: Optional automation log record written in the same transaction

        Returns:
            The item as stored after the update

        Raises:
            ItemNotFoundError: If the item does not exist
            VersionConflictError: If expected_version no longer matches
        """
        if "stock_level" in fields and fields["stock_level"] is not None and fields["stock_level"] < 0:
            raise ValueError("stock_level must be non-negative")

        values = {
            key: (value.value if isinstance(value, Enum) else value)
            for key, value in fields.items()
        }
        values["version"] = MonitoredItem.version + 1
        values["updated_at"] = utcnow()

        conditions = [MonitoredItem.id == item_id]
        if expected_version is not None:
            conditions.append(MonitoredItem.version == expected_version)

        async with self.session_factory() as db:
            result = await db.execute(
                update(MonitoredItem)
                .where(and_(*conditions))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                if await db.get(MonitoredItem, item_id) is None:
                    raise ItemNotFoundError(item_id)
                raise VersionConflictError(item_id, expected_version)

            if log is not None:
                db.add(self._build_log_entry(item_id, log))

            await db.commit()

            item = await db.get(MonitoredItem, item_id, populate_existing=True)
            return item

    async def apply(
        self,
        item_id: int,
        mutator: Mutator,
        max_attempts: Optional[int] = None,
    ) -> tuple[MonitoredItem, bool]:
        """
        Read-modify-write an item, re-reading on version conflict.

        Returns:
            (item, changed): the current item and whether a write happened

        Raises:
            ItemNotFoundError: If the item does not exist
            VersionConflictError: If every attempt lost a race
        """
        attempts = max_attempts or self.settings.repository_max_conflict_retries
        last_conflict: Optional[VersionConflictError] = None

        for attempt in range(1, attempts + 1):
            item = await self.get(item_id)
            if item is None:
                raise ItemNotFoundError(item_id)

            outcome = mutator(item)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if outcome is None:
                return item, False

            if isinstance(outcome, tuple):
                fields, log = outcome
            else:
                fields, log = outcome, None

            try:
                updated = await self.update(item_id, fields, expected_version=item.version, log=log)
                return updated, True
            except VersionConflictError as e:
                last_conflict = e
                logger.debug(
                    f"Version conflict on item {item_id} (attempt {attempt}/{attempts}), re-reading"
                )

        raise last_conflict

    async def append_log(self, item_id: int, log: LogRecord) -> None:
        """Append an automation log entry without touching the item row."""
        async with self.session_factory() as db:
            db.add(self._build_log_entry(item_id, log))
            await db.commit()

    async def get_log(self, item_id: int) -> list[AutomationLogEntry]:
        """Automation log of one item, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(AutomationLogEntry)
                .where(AutomationLogEntry.item_id == item_id)
                .order_by(AutomationLogEntry.id.asc())
            )
            return list(result.scalars().all())

    async def list_due_items(self) -> list[DueItem]:
        """
        Items the scheduler should queue.

        Active and price-changed items, re-armed removals, and removals whose
        heal never concluded (every delivery of those failed).
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(MonitoredItem.id, MonitoredItem.supplier_url, MonitoredItem.user_id)
                .where(
                    or_(
                        MonitoredItem.status.in_(PROBED_STATUSES),
                        and_(
                            MonitoredItem.status == ItemStatus.REMOVED.value,
                            MonitoredItem.rearmed.is_(True),
                        ),
                        and_(
                            MonitoredItem.status == ItemStatus.REMOVED.value,
                            MonitoredItem.heal_outcome.is_(None),
                        ),
                    )
                )
                .order_by(MonitoredItem.id.asc())
            )
            return [DueItem(item_id=row[0], url=row[1], user_id=row[2]) for row in result.all()]

    async def list_item_ids(self) -> list[int]:
        """All item ids, for batch jobs such as risk scoring."""
        async with self.session_factory() as db:
            result = await db.execute(select(MonitoredItem.id).order_by(MonitoredItem.id.asc()))
            return [row[0] for row in result.all()]

    async def rearm(self, item_id: int, supplier_url: Optional[str] = None) -> MonitoredItem:
        """
        Re-arm a removed item so the scheduler probes it again.

        Clears the concluded heal outcome so a subsequent not-found runs the
        heal pipeline again. Optionally points the item at a new supplier URL.
        """
        def mutate(item: MonitoredItem):
            if item.status != ItemStatus.REMOVED:
                raise ValueError(f"Item {item_id} is {item.status}, only REMOVED items can be re-armed")
            fields = {"rearmed": True, "heal_outcome": None}
            if supplier_url:
                fields["supplier_url"] = supplier_url
            return fields

        item, _ = await self.apply(item_id, mutate)
        logger.info(f"Re-armed item {item_id}")
        return item

    async def record_analytics(
        self,
        event_type: str,
        item_id: Optional[int] = None,
        user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Write an operator-visible analytics event. Never raises.

        The event is mirrored to the log with its item context, so failure
        events also reach the operator error stream.
        """
        log_event(
            logger,
            event_type,
            f"{event_type} (item {item_id})",
            item_id=item_id,
            user_id=user_id,
        )
        try:
            async with self.session_factory() as db:
                db.add(
                    AnalyticsEvent(
                        event_type=event_type,
                        item_id=item_id,
                        user_id=user_id,
                        metadata_json=metadata or {},
                    )
                )
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to record analytics event {event_type} for item {item_id}: {e}")

    async def list_analytics(self, event_type: Optional[str] = None) -> list[AnalyticsEvent]:
        async with self.session_factory() as db:
            query = select(AnalyticsEvent).order_by(AnalyticsEvent.id.asc())
            if event_type:
                query = query.where(AnalyticsEvent.event_type == event_type)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def record_system_metric(
        self,
        event: str,
        items_considered: int,
        tasks_queued: int,
        enqueue_failures: int = 0,
    ) -> None:
        """Write one system metrics row (one per scheduler run)."""
        async with self.session_factory() as db:
            db.add(
                SystemMetric(
                    event=event,
                    items_considered=items_considered,
                    tasks_queued=tasks_queued,
                    enqueue_failures=enqueue_failures,
                )
            )
            await db.commit()

    @staticmethod
    def _build_log_entry(item_id: int, log: LogRecord) -> AutomationLogEntry:
        return AutomationLogEntry(
            item_id=item_id,
            action=log.action.value if isinstance(log.action, Enum) else log.action,
            details=log.details,
            old_value=_stringify(log.old_value),
            new_value=_stringify(log.new_value),
        )
