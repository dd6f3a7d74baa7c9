"""Predictive supplier-removal risk scoring."""

import logging
from typing import Optional

from listing_healer.ai.llm_service import LLMService
from listing_healer.ai.prompts import RISK_RESPONSE_SCHEMA, RISK_SYSTEM_PROMPT, RiskScorePrompt
from listing_healer.ai.supplier_vetter import clamp_score
from listing_healer.config import Settings, settings as default_settings
from listing_healer.db.models import LogAction, MonitoredItem
from listing_healer.db.repository import ItemNotFoundError, ItemRepository, LogRecord

logger = logging.getLogger(__name__)

FALLBACK_RISK_SCORE = 50
HISTORY_ENTRIES = 5


class RiskScorer:
    """Scores each item's risk of supplier removal (0-100) with the LLM."""

    def __init__(
        self,
        repository: ItemRepository,
        llm_service: Optional[LLMService] = None,
        settings: Settings | None = None,
    ):
        self.repository = repository
        self.settings = settings or default_settings
        self.llm_service = llm_service or LLMService(self.settings)

    async def score_item(self, item: MonitoredItem) -> int:
        """
        Predict the removal risk of one item.

        Returns:
            Risk score 0-100; FALLBACK_RISK_SCORE if the LLM call fails
        """
        log = await self.repository.get_log(item.id)
        history = [
            f"{entry.action}: {entry.details or ''}".strip()
            for entry in log[-HISTORY_ENTRIES:]
        ]

        prompt = RiskScorePrompt(
            current_price=float(item.price) if item.price is not None else None,
            supplier_rating=item.supplier_rating,
            stock_level=item.stock_level,
            last_checked=item.last_checked.isoformat() if item.last_checked else None,
            status=item.status,
            history=history,
        ).to_prompt()

        try:
            response = await self.llm_service.call_llm_structured(
                prompt=prompt,
                response_schema=RISK_RESPONSE_SCHEMA,
                system_prompt=RISK_SYSTEM_PROMPT,
            )
        except Exception as e:
            logger.warning(f"Risk scoring failed for item {item.id}, using fallback: {e}")
            return FALLBACK_RISK_SCORE

        return clamp_score(response.get("riskScore"), FALLBACK_RISK_SCORE)

    async def refresh_all(self) -> int:
        """Re-score every item. Returns the number of items whose score changed."""
        changed_count = 0

        for item_id in await self.repository.list_item_ids():
            item = await self.repository.get(item_id)
            if item is None:
                continue

            score = await self.score_item(item)

            def mutate(current: MonitoredItem):
                if current.risk_score == score:
                    return None
                return {"risk_score": score}, LogRecord(
                    action=LogAction.RISK_SCORED,
                    old_value=current.risk_score,
                    new_value=score,
                    details=f"Risk score updated to {score}",
                )

            try:
                _, changed = await self.repository.apply(item_id, mutate)
            except ItemNotFoundError:
                continue
            if changed:
                changed_count += 1

        logger.info(f"Risk scoring complete: {changed_count} item(s) updated")
        return changed_count
