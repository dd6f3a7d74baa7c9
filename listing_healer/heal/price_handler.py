"""Price-change handler: record supplier price moves and alert beyond the user's threshold."""

import logging
from decimal import Decimal
from typing import Optional

from listing_healer.config import Settings, settings as default_settings
from listing_healer.db.models import ItemStatus, LogAction, MonitoredItem
from listing_healer.db.repository import ItemRepository, LogRecord
from listing_healer.metrics import record_price_change
from listing_healer.notify.discord import Notifier
from listing_healer.notify.formatters import format_price_change_alert

logger = logging.getLogger(__name__)


def percent_change(old_price: Optional[Decimal], new_price: Decimal) -> Optional[Decimal]:
    """Signed percent change, or None when the old price is unknown or zero."""
    if old_price is None or old_price == 0:
        return None
    return (new_price - old_price) / old_price * Decimal("100")


class PriceChangeHandler:
    """Updates the stored price and alerts when the move exceeds the variance threshold."""

    def __init__(
        self,
        repository: ItemRepository,
        notifier: Notifier,
        settings: Settings | None = None,
    ):
        self.repository = repository
        self.notifier = notifier
        self.settings = settings or default_settings

    async def handle_price_change(
        self,
        item_id: int,
        old_price: Optional[Decimal],
        new_price: Decimal,
    ) -> Optional[Decimal]:
        """
        Record a price change for one item.

        The percent change and the logged old price come from the stored
        row the write is conditioned on, so a conflict re-read never reports
        a stale baseline.

        Args:
            item_id: Item whose supplier price moved
            old_price: Price the probe worker observed as stored
            new_price: Price the probe returned

        Returns:
            Signed percent change, or None if undefined (old price unknown or zero)
        """
        baseline = {"price": old_price}

        def mutate(current: MonitoredItem):
            # A concurrent removal owns the item now
            if current.status == ItemStatus.REMOVED:
                return None
            if current.price is not None and current.price == new_price:
                return None

            baseline["price"] = current.price
            pct = percent_change(current.price, new_price)
            details = (
                f"Price changed by {pct:+.2f}%" if pct is not None else "Price recorded (no previous price)"
            )
            return {
                "price": new_price,
                "status": ItemStatus.PRICE_CHANGED,
            }, LogRecord(
                action=LogAction.PRICE_UPDATE,
                old_value=current.price,
                new_value=new_price,
                details=details,
            )

        item, changed = await self.repository.apply(item_id, mutate)
        old_price = baseline["price"]
        pct = percent_change(old_price, new_price)
        if not changed:
            logger.info(f"Price change of item {item_id} to {new_price} not applied (already recorded or removed)")
            return pct

        await self.repository.record_analytics(
            "price_changed",
            item_id=item_id,
            user_id=item.user_id,
            metadata={
                "old_price": str(old_price) if old_price is not None else None,
                "new_price": str(new_price),
                "percent_change": f"{pct:.2f}" if pct is not None else None,
            },
        )

        if pct is None:
            return None

        record_price_change(old_price, new_price)

        user = await self.repository.get_user(item.user_id)
        threshold = self.settings.default_max_price_variance
        if user is not None and user.max_price_variance is not None:
            threshold = user.max_price_variance

        if abs(pct) > Decimal(str(threshold)):
            logger.info(
                f"Price of item {item_id} moved {pct:+.2f}% (threshold {threshold}%), alerting"
            )
            await self.notifier.send(
                item.user_id,
                format_price_change_alert(item, old_price, new_price, pct, threshold),
            )
        else:
            logger.debug(f"Price of item {item_id} moved {pct:+.2f}%, within {threshold}%")

        return pct
