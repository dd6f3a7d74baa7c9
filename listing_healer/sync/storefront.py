"""Storefront stock sync: push stock levels to the connected shop."""

import logging
from abc import ABC, abstractmethod

import httpx

from listing_healer.config import Settings, settings as default_settings
from listing_healer.db.models import MonitoredItem
from listing_healer.ingest.http_client import (
    BlockedError,
    PermanentURLError,
    RateLimitedError,
    ServicePolicy,
    TransientFetchError,
    request_with_policy,
    timeout_for,
)

logger = logging.getLogger(__name__)


class StockSyncError(RuntimeError):
    """The storefront connector rejected or failed a stock update."""
    pass


class StockSync(ABC):
    """Abstract storefront stock sync. Setting the same quantity twice is harmless."""

    @abstractmethod
    async def set_stock(self, item: MonitoredItem, quantity: int) -> None:
        pass

    async def close(self):
        pass


class NullStockSync(StockSync):
    """Used when no storefront connector is configured."""

    async def set_stock(self, item: MonitoredItem, quantity: int) -> None:
        logger.debug(f"Storefront sync disabled, not pushing stock {quantity} for item {item.id}")


class HttpStockSync(StockSync):
    """
    Pushes stock to a storefront connector endpoint.

    ``POST {storefront_sync_url}`` with
    ``{"platform", "platform_id", "item_id", "quantity"}``. Items with no
    storefront identifiers are skipped.
    """

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None):
        self.settings = settings or default_settings
        self._http_client = client
        self.policy = ServicePolicy(
            name="storefront",
            max_attempts=2,
            timeout=timeout_for(self.settings.storefront_sync_timeout_seconds),
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def set_stock(self, item: MonitoredItem, quantity: int) -> None:
        if not item.platform or not item.platform_id:
            logger.debug(f"Item {item.id} has no storefront product, skipping stock sync")
            return

        client = await self._get_client()
        try:
            await request_with_policy(
                client,
                "POST",
                self.settings.storefront_sync_url,
                self.policy,
                json={
                    "platform": item.platform,
                    "platform_id": item.platform_id,
                    "item_id": item.id,
                    "quantity": quantity,
                },
            )
        except (TransientFetchError, RateLimitedError, BlockedError, PermanentURLError) as e:
            raise StockSyncError(f"Stock sync failed for item {item.id}: {e}") from e

        logger.info(f"Synced storefront stock for item {item.id} to {quantity}")


def build_stock_sync(settings: Settings | None = None) -> StockSync:
    """HttpStockSync when a connector URL is configured, else NullStockSync."""
    settings = settings or default_settings
    if settings.storefront_sync_url:
        return HttpStockSync(settings)
    return NullStockSync()
