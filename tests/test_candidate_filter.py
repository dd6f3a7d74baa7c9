"""Tests for candidate qualification and ranking."""

from decimal import Decimal

from listing_healer.heal.candidate_filter import (
    filter_candidates,
    has_tracked_shipping,
    max_allowed_price,
    rank_candidates,
    select_top_candidates,
    value_score,
)
from listing_healer.ingest.discovery import SupplierCandidate

KEYWORDS = ["tracking", "epacket"]


def _candidate(url="https://a.example/1", price="10.50", rating=4.8, shipping="ePacket tracking", confidence=90.0):
    return SupplierCandidate(
        url=url,
        price=Decimal(price),
        rating=rating,
        shipping=shipping,
        confidence=confidence,
    )


def _filter(candidates, original_price=Decimal("10.00"), min_rating=4.5, variance=10.0):
    return filter_candidates(
        candidates,
        original_price=original_price,
        min_rating=min_rating,
        max_price_variance=variance,
        min_confidence=85,
        tracking_keywords=KEYWORDS,
    )


def test_qualifying_candidate_passes():
    candidate = _candidate()
    assert _filter([candidate]) == [candidate]


def test_low_confidence_rejected():
    assert _filter([_candidate(confidence=60)]) == []


def test_boundaries_are_inclusive():
    # Rating exactly at minimum, price exactly at cap, confidence exactly 85
    candidate = _candidate(price="11.00", rating=4.5, confidence=85)
    assert _filter([candidate]) == [candidate]


def test_price_above_variance_cap_rejected():
    assert _filter([_candidate(price="11.01")]) == []


def test_rating_below_minimum_rejected():
    assert _filter([_candidate(rating=4.4)]) == []


def test_untracked_shipping_rejected():
    assert _filter([_candidate(shipping="Standard Shipping")]) == []
    assert _filter([_candidate(shipping="")]) == []


def test_non_positive_price_rejected():
    assert _filter([_candidate(price="0")]) == []


def test_unknown_original_price_skips_cap():
    candidate = _candidate(price="99.00")
    assert _filter([candidate], original_price=None) == [candidate]
    assert max_allowed_price(None, 10) is None


def test_tracking_match_is_case_insensitive():
    assert has_tracked_shipping("EPACKET", KEYWORDS)
    assert has_tracked_shipping("AliExpress Standard with Tracking", KEYWORDS)
    assert not has_tracked_shipping(None, KEYWORDS)


def test_value_score():
    candidate = _candidate(price="10.00", rating=5.0, confidence=90)
    assert value_score(candidate) == Decimal("45")


def test_rank_orders_by_value_then_url():
    cheap = _candidate(url="https://a.example/cheap", price="5.00")
    pricey = _candidate(url="https://a.example/pricey", price="20.00")
    tie_b = _candidate(url="https://b.example/tie", price="10.00")
    tie_a = _candidate(url="https://a.example/tie", price="10.00")

    ranked = rank_candidates([pricey, tie_b, cheap, tie_a])

    assert [c.url for c in ranked] == [
        "https://a.example/cheap",
        "https://a.example/tie",
        "https://b.example/tie",
        "https://a.example/pricey",
    ]


def test_select_top_candidates_limits_to_n():
    candidates = [_candidate(url=f"https://a.example/{i}", price=f"{10 + i}.00") for i in range(5)]
    top = select_top_candidates(candidates, 3)
    assert [c.url for c in top] == ["https://a.example/0", "https://a.example/1", "https://a.example/2"]
