"""SQLAlchemy database models."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ItemStatus(str, Enum):
    """Lifecycle status of a monitored listing."""
    ACTIVE = "ACTIVE"
    REMOVED = "REMOVED"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    PRICE_CHANGED = "PRICE_CHANGED"


class LogAction(str, Enum):
    """Automation log actions."""
    PRODUCT_REMOVED = "PRODUCT_REMOVED"
    PRODUCT_RESTORED = "PRODUCT_RESTORED"
    PRICE_UPDATE = "PRICE_UPDATE"
    AUTO_HEAL = "AUTO_HEAL"
    AUTO_HEAL_FAILED = "AUTO_HEAL_FAILED"
    HEAL_SKIPPED = "HEAL_SKIPPED"
    CANDIDATE_VETTED = "CANDIDATE_VETTED"
    RISK_SCORED = "RISK_SCORED"


class HealOutcome(str, Enum):
    """How a removal handler run concluded."""
    HEALED = "HEALED"
    AUTO_HEAL_DISABLED = "auto_heal_disabled"
    PLUGIN_MISSING = "plugin_missing"
    AUTO_REPLACE_DISABLED = "auto_replace_disabled"
    NO_CANDIDATES = "no_candidates"
    NO_QUALIFIED_CANDIDATES = "no_qualified_candidates"
    ALL_REJECTED = "all_candidates_rejected"
    # Not persisted: returned for duplicate/stale deliveries
    ALREADY_CONCLUDED = "already_concluded"
    STALE = "stale"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class UserAccount(Base):
    """User record; only the automation settings are read by the monitoring core."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    # Automation settings
    auto_replace: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    min_supplier_rating: Mapped[float] = mapped_column(Float, default=4.5, nullable=False)
    max_price_variance: Mapped[float] = mapped_column(Float, default=10.0, nullable=False)  # Percent
    notification_target: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Webhook URL

    # Plugin entitlements, e.g. ["auto_healer"]
    active_plugins: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def has_plugin(self, plugin_id: str) -> bool:
        return plugin_id in (self.active_plugins or [])


class MonitoredItem(Base):
    """One tracked supplier listing."""

    __tablename__ = "monitored_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), ForeignKey("users.id"), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Storefront identifiers (shopify / woocommerce product id)
    platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    platform_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Monitored supplier
    supplier_url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ItemStatus.ACTIVE.value, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    stock_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    supplier_rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    shipping_method: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_checked: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_probe_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # AI insights
    risk_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    image_match_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Healing state: heal_outcome is set once a removal handler run concludes
    heal_outcome: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    rearmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("stock_level >= 0", name="ck_item_stock_non_negative"),
        CheckConstraint("risk_score >= 0 AND risk_score <= 100", name="ck_item_risk_score_range"),
        Index("ix_monitored_items_status", "status"),
    )


class AutomationLogEntry(Base):
    """Append-only automation log, ordered by id within an item."""

    __tablename__ = "automation_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("monitored_items.id"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AnalyticsEvent(Base):
    """Operator-visible analytics / error stream."""

    __tablename__ = "analytics_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class SystemMetric(Base):
    """One row per scheduler run."""

    __tablename__ = "system_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    items_considered: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tasks_queued: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    enqueue_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
