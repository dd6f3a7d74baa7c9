"""Removal handler and auto-heal engine.

A confirmed removal always takes the item offline first (status REMOVED,
stock 0) and then, if the user is entitled and opted in, tries to swap in a
vetted replacement supplier. Every run ends in exactly one terminal outcome
that is written to the item before the single user alert goes out, so a
duplicate delivery of the same removal finds the outcome and does nothing.
"""

import logging
from typing import Optional

from listing_healer.ai.supplier_vetter import SupplierVetter
from listing_healer.config import Settings, settings as default_settings
from listing_healer.db.models import HealOutcome, ItemStatus, LogAction, MonitoredItem, UserAccount
from listing_healer.db.repository import ItemNotFoundError, ItemRepository, LogRecord
from listing_healer.heal.candidate_filter import filter_candidates, select_top_candidates
from listing_healer.ingest.discovery import CandidateDiscovery, SupplierCandidate
from listing_healer.logging_config import get_logger
from listing_healer.metrics import record_heal
from listing_healer.notify.discord import Notifier
from listing_healer.notify.formatters import format_heal_success, format_removal_alert
from listing_healer.sync.storefront import StockSync, StockSyncError

logger = logging.getLogger(__name__)


class AutoHealEngine:
    """Handles confirmed supplier removals."""

    def __init__(
        self,
        repository: ItemRepository,
        discovery: CandidateDiscovery,
        vetter: SupplierVetter,
        notifier: Notifier,
        stock_sync: StockSync,
        settings: Settings | None = None,
    ):
        self.repository = repository
        self.discovery = discovery
        self.vetter = vetter
        self.notifier = notifier
        self.stock_sync = stock_sync
        self.settings = settings or default_settings

    async def handle_removal(self, item_id: int, probed_url: str) -> HealOutcome:
        """
        Process a confirmed not-found for the given supplier URL.

        Args:
            item_id: Item whose supplier disappeared
            probed_url: Supplier URL the probe checked

        Returns:
            The terminal HealOutcome, or STALE / ALREADY_CONCLUDED for
            deliveries that no longer apply

        Raises:
            ItemNotFoundError: If the item does not exist
            Exception: Any collaborator failure, after it has been recorded
        """
        item = await self.repository.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)

        log = get_logger(__name__, item_id=item_id, user_id=item.user_id)

        if item.supplier_url != probed_url:
            log.info(f"Removal of {probed_url} is stale, item {item_id} now uses {item.supplier_url}")
            return HealOutcome.STALE

        if item.status == ItemStatus.REMOVED and item.heal_outcome is not None:
            log.info(f"Removal of item {item_id} already concluded as {item.heal_outcome}")
            return HealOutcome.ALREADY_CONCLUDED

        try:
            return await self._heal(item_id, probed_url, log)
        except Exception as e:
            await self._record_failure(item, e)
            raise

    async def _heal(self, item_id: int, probed_url: str, log) -> HealOutcome:
        # Step 1: take the listing offline
        item = await self._mark_removed(item_id, probed_url)
        if item.supplier_url != probed_url:
            return HealOutcome.STALE
        if item.heal_outcome is not None:
            return HealOutcome.ALREADY_CONCLUDED

        # Step 2: policy
        user = await self.repository.get_user(item.user_id)
        blocked = self._check_policy(user)
        if blocked is not None:
            return await self._conclude_skipped(
                item, probed_url, blocked, f"Auto-heal not permitted: {blocked.value}"
            )

        # Step 3: discovery
        candidates = await self.discovery.find_candidates(item.reference_image_url)
        log.info(f"Discovery returned {len(candidates)} candidate(s) for item {item_id}")
        if not candidates:
            return await self._conclude_skipped(
                item, probed_url, HealOutcome.NO_CANDIDATES, "No alternative suppliers found"
            )

        # Step 4: qualification and ranking
        qualified = filter_candidates(
            candidates,
            original_price=item.price,
            min_rating=self._user_min_rating(user),
            max_price_variance=self._user_max_variance(user),
            min_confidence=self.settings.heal_min_image_confidence,
            tracking_keywords=self.settings.heal_tracking_keywords,
        )
        if not qualified:
            return await self._conclude_skipped(
                item,
                probed_url,
                HealOutcome.NO_QUALIFIED_CANDIDATES,
                f"0 of {len(candidates)} candidates met rating, price, confidence and shipping rules",
            )
        shortlist = select_top_candidates(qualified, self.settings.heal_vetting_top_n)

        # Step 5: vetting in rank order
        chosen = await self._vet_shortlist(item, shortlist)
        if chosen is None:
            return await self._conclude_skipped(
                item,
                probed_url,
                HealOutcome.ALL_REJECTED,
                f"All {len(shortlist)} shortlisted candidates rejected by vetting",
            )

        # Step 6: atomic swap
        healed = await self._swap_supplier(item_id, probed_url, chosen)
        if healed is None:
            return HealOutcome.ALREADY_CONCLUDED

        try:
            await self.stock_sync.set_stock(healed, healed.stock_level)
        except StockSyncError as e:
            # The swap is committed; a queue retry would only see a stale task
            log.error(f"Stock restore failed after healing item {item_id}: {e}")
            await self._record_failure(healed, e, stage="stock_restore")

        # Step 7: success
        await self.notifier.send(healed.user_id, format_heal_success(healed, probed_url, chosen))
        await self.repository.record_analytics(
            "auto_heal_success",
            item_id=item_id,
            user_id=healed.user_id,
            metadata={
                "old_url": probed_url,
                "new_url": chosen.url,
                "price": str(chosen.price),
                "rating": chosen.rating,
                "confidence": chosen.confidence,
            },
        )
        record_heal(HealOutcome.HEALED.value)
        log.info(f"Auto-healed item {item_id}: {probed_url} -> {chosen.url}")
        return HealOutcome.HEALED

    async def _mark_removed(self, item_id: int, probed_url: str) -> MonitoredItem:
        """Status REMOVED and stock 0 in one write, unless already removed."""

        def mutate(current: MonitoredItem):
            if current.supplier_url != probed_url or current.status == ItemStatus.REMOVED:
                return None
            return {
                "status": ItemStatus.REMOVED,
                "stock_level": 0,
                "heal_outcome": None,
            }, LogRecord(
                action=LogAction.PRODUCT_REMOVED,
                old_value=current.status,
                new_value=ItemStatus.REMOVED.value,
                details=f"Supplier listing not found: {probed_url}",
            )

        item, changed = await self.repository.apply(item_id, mutate)
        if changed:
            logger.warning(f"Item {item_id} marked REMOVED, stock set to 0")
        return item

    def _check_policy(self, user: Optional[UserAccount]) -> Optional[HealOutcome]:
        if not self.settings.auto_heal_enabled:
            return HealOutcome.AUTO_HEAL_DISABLED
        if user is None or not user.has_plugin(self.settings.auto_heal_plugin_id):
            return HealOutcome.PLUGIN_MISSING
        if not user.auto_replace:
            return HealOutcome.AUTO_REPLACE_DISABLED
        return None

    def _user_min_rating(self, user: UserAccount) -> float:
        if user.min_supplier_rating is None:
            return self.settings.default_min_supplier_rating
        return user.min_supplier_rating

    def _user_max_variance(self, user: UserAccount) -> float:
        if user.max_price_variance is None:
            return self.settings.default_max_price_variance
        return user.max_price_variance

    async def _vet_shortlist(
        self, item: MonitoredItem, shortlist: list[SupplierCandidate]
    ) -> Optional[SupplierCandidate]:
        for rank, candidate in enumerate(shortlist, start=1):
            verdict = await self.vetter.vet(candidate, item)

            await self.repository.append_log(
                item.id,
                LogRecord(
                    action=LogAction.CANDIDATE_VETTED,
                    new_value=candidate.url,
                    details=(
                        f"#{rank} {'approved' if verdict.approved else 'rejected'} "
                        f"(risk {verdict.risk_score}): {verdict.reason}"
                    ),
                ),
            )
            await self.repository.record_analytics(
                "candidate_vetted",
                item_id=item.id,
                user_id=item.user_id,
                metadata={
                    "url": candidate.url,
                    "rank": rank,
                    "approved": verdict.approved,
                    "reason": verdict.reason,
                    "risk_score": verdict.risk_score,
                },
            )

            if verdict.approved:
                return candidate
        return None

    async def _swap_supplier(
        self, item_id: int, probed_url: str, chosen: SupplierCandidate
    ) -> Optional[MonitoredItem]:
        """Replace the supplier and reactivate in one conditional write."""

        def mutate(current: MonitoredItem):
            if (
                current.status != ItemStatus.REMOVED
                or current.supplier_url != probed_url
                or current.heal_outcome is not None
            ):
                return None
            return {
                "supplier_url": chosen.url,
                "price": chosen.price,
                "supplier_rating": chosen.rating,
                "shipping_method": chosen.shipping,
                "image_match_confidence": chosen.confidence,
                "status": ItemStatus.ACTIVE,
                "stock_level": self.settings.default_restock_level,
                "heal_outcome": HealOutcome.HEALED,
                "rearmed": False,
                "last_probe_error": None,
            }, LogRecord(
                action=LogAction.AUTO_HEAL,
                old_value=probed_url,
                new_value=chosen.url,
                details=(
                    f"Replaced supplier (confidence {chosen.confidence:.0f}%, "
                    f"rating {chosen.rating}, price ${chosen.price:.2f})"
                ),
            )

        item, changed = await self.repository.apply(item_id, mutate)
        return item if changed else None

    async def _conclude_skipped(
        self,
        item: MonitoredItem,
        probed_url: str,
        outcome: HealOutcome,
        details: str,
    ) -> HealOutcome:
        """Write the terminal skip outcome, then alert once."""

        def mutate(current: MonitoredItem):
            if (
                current.status != ItemStatus.REMOVED
                or current.supplier_url != probed_url
                or current.heal_outcome is not None
            ):
                return None
            return {"heal_outcome": outcome, "rearmed": False}, LogRecord(
                action=LogAction.HEAL_SKIPPED,
                new_value=outcome.value,
                details=details,
            )

        current, changed = await self.repository.apply(item.id, mutate)
        if not changed:
            logger.info(f"Item {item.id} concluded concurrently, not alerting")
            return HealOutcome.ALREADY_CONCLUDED

        await self.notifier.send(current.user_id, format_removal_alert(current, outcome))
        record_heal(outcome.value)
        logger.info(f"Heal skipped for item {item.id}: {outcome.value}")
        return outcome

    async def _record_failure(self, item: MonitoredItem, error: Exception, stage: str = "heal") -> None:
        """Record a collaborator failure on the item and in analytics."""
        logger.error(f"Auto-heal failed for item {item.id} ({stage}): {error}")
        record_heal("failed")

        await self.repository.record_analytics(
            "auto_heal_failed",
            item_id=item.id,
            user_id=item.user_id,
            metadata={"stage": stage, "error": str(error), "error_type": type(error).__name__},
        )
        try:
            await self.repository.append_log(
                item.id,
                LogRecord(
                    action=LogAction.AUTO_HEAL_FAILED,
                    details=f"{stage}: {type(error).__name__}: {error}"[:1000],
                ),
            )
        except Exception as log_error:
            logger.error(f"Could not append failure log for item {item.id}: {log_error}")
