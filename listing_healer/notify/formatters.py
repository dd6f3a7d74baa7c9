"""Alert message builders.

Each builder returns an ``Alert`` that the notifier renders as a Discord
embed (title, description, inline fields).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from listing_healer.db.models import HealOutcome, MonitoredItem
from listing_healer.ingest.discovery import SupplierCandidate

COLOR_SUCCESS = 0x00FF00
COLOR_WARNING = 0xFFA500
COLOR_ALERT = 0xFF0000

SKIP_REASONS = {
    HealOutcome.AUTO_HEAL_DISABLED: "Auto-heal is disabled",
    HealOutcome.PLUGIN_MISSING: "Auto-healer plugin is not active on your account",
    HealOutcome.AUTO_REPLACE_DISABLED: "Auto-replace is turned off in your settings",
    HealOutcome.NO_CANDIDATES: "No alternative suppliers were found",
    HealOutcome.NO_QUALIFIED_CANDIDATES: "No alternative supplier met your rating, price and shipping rules",
    HealOutcome.ALL_REJECTED: "All alternative suppliers were rejected by vetting",
}


@dataclass
class Alert:
    """One user-facing notification."""

    kind: str
    subject: str
    body: str
    fields: List[Dict[str, Any]] = field(default_factory=list)
    color: int = COLOR_WARNING


def _field(name: str, value: Any, inline: bool = True) -> Dict[str, Any]:
    return {"name": name, "value": str(value)[:1024], "inline": inline}


def _money(value: Optional[Decimal]) -> str:
    return f"${value:.2f}" if value is not None else "Unknown"


def _product_name(item: MonitoredItem) -> str:
    return item.name or f"Item #{item.id}"


def format_removal_alert(item: MonitoredItem, outcome: HealOutcome) -> Alert:
    """Supplier removed and no automatic replacement happened."""
    reason = SKIP_REASONS.get(outcome, outcome.value)
    return Alert(
        kind="product_removed",
        subject=f"⚠️ Supplier removed: {_product_name(item)}",
        body=(
            f"The supplier listing for **{_product_name(item)}** is no longer available. "
            f"Stock has been set to 0.\n{reason}. Manual action required."
        ),
        fields=[
            _field("Supplier URL", item.supplier_url, inline=False),
            _field("Reason", outcome.value),
        ],
        color=COLOR_ALERT,
    )


def format_heal_success(item: MonitoredItem, old_url: str, candidate: SupplierCandidate) -> Alert:
    """Supplier swapped in automatically."""
    return Alert(
        kind="auto_heal_success",
        subject=f"✅ Auto-healed: {_product_name(item)}",
        body=(
            f"The supplier for **{_product_name(item)}** was removed and has been replaced "
            f"automatically. The listing is active again."
        ),
        fields=[
            _field("New Price", _money(candidate.price)),
            _field("Rating", f"{candidate.rating}/5.0"),
            _field("Match Confidence", f"{candidate.confidence:.0f}%"),
            _field("Shipping", candidate.shipping),
            _field("Old Supplier", old_url, inline=False),
            _field("New Supplier", candidate.url, inline=False),
        ],
        color=COLOR_SUCCESS,
    )


def format_price_change_alert(
    item: MonitoredItem,
    old_price: Decimal,
    new_price: Decimal,
    percent_change: Decimal,
    threshold: float,
) -> Alert:
    """Supplier price moved beyond the user's variance threshold."""
    direction = "increased" if new_price > old_price else "decreased"
    return Alert(
        kind="price_change",
        subject=f"💲 Price {direction}: {_product_name(item)}",
        body=(
            f"The supplier price for **{_product_name(item)}** {direction} by "
            f"{abs(percent_change):.1f}%, above your {threshold:g}% threshold."
        ),
        fields=[
            _field("Old Price", _money(old_price)),
            _field("New Price", _money(new_price)),
            _field("Change", f"{percent_change:+.1f}%"),
            _field("Threshold", f"{threshold:g}%"),
        ],
        color=COLOR_WARNING,
    )
