"""Supplier vetting: approve or reject a replacement candidate before the swap."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from listing_healer.ai.llm_service import LLMService
from listing_healer.ai.prompts import (
    VETTING_RESPONSE_SCHEMA,
    VETTING_SYSTEM_PROMPT,
    SupplierVettingPrompt,
)
from listing_healer.config import Settings, settings as default_settings
from listing_healer.db.models import MonitoredItem
from listing_healer.ingest.discovery import SupplierCandidate
from listing_healer.metrics import record_vetting

logger = logging.getLogger(__name__)


class VettingError(RuntimeError):
    """The vetting oracle could not be reached (transient)."""
    pass


@dataclass
class VettingVerdict:
    """Decision on one candidate."""

    approved: bool
    reason: str
    risk_score: int = 50


class SupplierVetter(ABC):
    """Abstract vetting oracle."""

    @abstractmethod
    async def vet(self, candidate: SupplierCandidate, item: MonitoredItem) -> VettingVerdict:
        """
        Vet one candidate against the item it would replace.

        Raises:
            VettingError: If no verdict could be obtained
        """
        pass

    async def close(self):
        pass


def clamp_score(value: Any, default: int = 50) -> int:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return default


class LLMSupplierVetter(SupplierVetter):
    """
    Vetting through the LLM service.

    Transport failures raise VettingError so the task is retried. A reply
    that does not match the expected shape is treated as a rejection.
    """

    def __init__(self, llm_service: Optional[LLMService] = None, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.llm_service = llm_service or LLMService(self.settings)

    def _build_prompt(self, candidate: SupplierCandidate, item: MonitoredItem) -> str:
        return SupplierVettingPrompt(
            product_name=item.name or "Unknown product",
            original_price=float(item.price) if item.price is not None else None,
            original_rating=item.supplier_rating,
            candidate_url=candidate.url,
            candidate_price=float(candidate.price),
            candidate_rating=candidate.rating,
            candidate_shipping=candidate.shipping,
            image_match_confidence=candidate.confidence,
            total_orders=candidate.total_orders,
        ).to_prompt()

    async def vet(self, candidate: SupplierCandidate, item: MonitoredItem) -> VettingVerdict:
        prompt = self._build_prompt(candidate, item)

        try:
            response = await self.llm_service.call_llm_structured(
                prompt=prompt,
                response_schema=VETTING_RESPONSE_SCHEMA,
                system_prompt=VETTING_SYSTEM_PROMPT,
                use_cache=False,
            )
        except ValueError as e:
            logger.warning(f"Malformed vetting reply for {candidate.url}, rejecting: {e}")
            verdict = VettingVerdict(approved=False, reason="Malformed vetting response", risk_score=100)
            record_vetting(verdict.approved)
            return verdict
        except Exception as e:
            raise VettingError(f"Vetting call failed for {candidate.url}: {e}") from e

        approved = response.get("approved")
        if not isinstance(approved, bool):
            logger.warning(f"Vetting reply for {candidate.url} has no boolean 'approved', rejecting")
            approved = False

        verdict = VettingVerdict(
            approved=approved,
            reason=str(response.get("reason") or "No reason given")[:200],
            risk_score=clamp_score(response.get("riskScore")),
        )
        record_vetting(verdict.approved)
        logger.info(
            f"Vetted {candidate.url}: {'approved' if verdict.approved else 'rejected'} "
            f"(risk {verdict.risk_score}) - {verdict.reason}"
        )
        return verdict


class RuleBasedVetter(SupplierVetter):
    """Deterministic vetter for offline runs and tests."""

    def __init__(self, settings: Settings | None = None, max_price_ratio: float = 1.2):
        self.settings = settings or default_settings
        self.max_price_ratio = max_price_ratio

    async def vet(self, candidate: SupplierCandidate, item: MonitoredItem) -> VettingVerdict:
        if candidate.rating < self.settings.default_min_supplier_rating:
            verdict = VettingVerdict(False, f"Supplier rating {candidate.rating} too low", 80)
        elif item.price and float(candidate.price) > float(item.price) * self.max_price_ratio:
            verdict = VettingVerdict(False, "Price more than 20% above original", 70)
        elif candidate.confidence < self.settings.heal_min_image_confidence:
            verdict = VettingVerdict(False, "Image match too weak", 75)
        else:
            verdict = VettingVerdict(True, "Candidate meets supplier criteria", 20)

        record_vetting(verdict.approved)
        return verdict
