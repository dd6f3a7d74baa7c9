"""Qualification filter and value ranking for replacement candidates."""

from decimal import Decimal
from typing import Iterable, Optional, Sequence

from listing_healer.ingest.discovery import SupplierCandidate


def max_allowed_price(original_price: Optional[Decimal], max_price_variance: float) -> Optional[Decimal]:
    """Highest acceptable candidate price, or None when the original price is unknown."""
    if original_price is None or original_price <= 0:
        return None
    return original_price * (Decimal("1") + Decimal(str(max_price_variance)) / Decimal("100"))


def has_tracked_shipping(shipping: Optional[str], keywords: Iterable[str]) -> bool:
    """Case-insensitive substring match against the tracking keywords."""
    if not shipping:
        return False
    lowered = shipping.lower()
    return any(keyword.lower() in lowered for keyword in keywords)


def filter_candidates(
    candidates: Sequence[SupplierCandidate],
    original_price: Optional[Decimal],
    min_rating: float,
    max_price_variance: float,
    min_confidence: float,
    tracking_keywords: Iterable[str],
) -> list[SupplierCandidate]:
    """
    Keep only candidates that satisfy every qualification rule.

    Args:
        candidates: Discovered candidates
        original_price: Item's last known price (price cap skipped if unknown)
        min_rating: User's minimum supplier rating (inclusive)
        max_price_variance: User's price variance, percent (cap inclusive)
        min_confidence: Minimum image-match confidence (inclusive)
        tracking_keywords: Shipping keywords proving a tracked method

    Returns:
        Qualified candidates, in input order
    """
    keywords = list(tracking_keywords)
    price_cap = max_allowed_price(original_price, max_price_variance)

    qualified = []
    for candidate in candidates:
        if candidate.price is None or candidate.price <= 0:
            continue
        if candidate.rating is None or candidate.rating < min_rating:
            continue
        if price_cap is not None and candidate.price > price_cap:
            continue
        if candidate.confidence < min_confidence:
            continue
        if not has_tracked_shipping(candidate.shipping, keywords):
            continue
        qualified.append(candidate)

    return qualified


def value_score(candidate: SupplierCandidate) -> Decimal:
    """(confidence x rating) / price. Higher is better."""
    return (
        Decimal(str(candidate.confidence)) * Decimal(str(candidate.rating))
    ) / candidate.price


def rank_candidates(candidates: Sequence[SupplierCandidate]) -> list[SupplierCandidate]:
    """Sort by value score descending; ties broken by URL for a stable order."""
    return sorted(candidates, key=lambda c: (-value_score(c), c.url))


def select_top_candidates(candidates: Sequence[SupplierCandidate], top_n: int = 3) -> list[SupplierCandidate]:
    return rank_candidates(candidates)[:top_n]
