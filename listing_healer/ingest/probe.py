"""Probe provider: checks a supplier listing's availability, price, stock and seller signals."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from listing_healer.config import Settings, settings as default_settings
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


class TransientProbeError(RuntimeError):
    """Probe could not reach a verdict (timeout, network, provider failure).

    Never interpreted as "not found".
    """
    pass


@dataclass
class ProbeResult:
    """Outcome of a single probe. Ephemeral, never persisted."""

    found: bool
    status_code: int
    price: Optional[Decimal] = None
    stock: Optional[int] = None
    rating: Optional[float] = None
    shipping: Optional[str] = None

    @classmethod
    def not_found(cls, status_code: int = 404) -> "ProbeResult":
        return cls(found=False, status_code=status_code)


def parse_price(value: Any) -> Optional[Decimal]:
    """Parse a price field into a 2-place Decimal, or None."""
    if value is None or value == "":
        return None
    try:
        if isinstance(value, str):
            value = "".join(ch for ch in value if ch.isdigit() or ch == ".")
        price = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None
    return price if price > 0 else None


def _parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return None


def _parse_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ProbeProvider(ABC):
    """Abstract probe provider."""

    @abstractmethod
    async def probe(self, url: str) -> ProbeResult:
        """
        Probe a listing URL.

        Returns:
            ProbeResult; found=False only on a confirmed not-found signal

        Raises:
            TransientProbeError: If no verdict could be reached
        """
        pass

    async def close(self):
        pass


class HttpProbeProvider(ProbeProvider):
    """
    Probe provider backed by a JSON scraping service.

    The service answers ``GET {probe_api_url}?url=<listing>`` with::

        {"status": "ok" | "not_found" | "error",
         "target_status": 200,
         "price": 10.5, "stock_level": 120,
         "seller_rating": 4.8, "shipping_method": "ePacket with tracking"}

    Only an explicit ``status == "not_found"`` or ``target_status == 404`` in
    the body counts as a confirmed removal. HTTP errors of the service itself
    (including its own 404) are transient.
    """

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None):
        self.settings = settings or default_settings
        self._http_client = client
        self.policy = ServicePolicy(
            name="probe",
            max_attempts=1,  # Retries belong to the task queue
            timeout=timeout_for(self.settings.probe_timeout_seconds),
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {"Accept": "application/json"}
            if self.settings.probe_api_key:
                headers["Authorization"] = f"Bearer {self.settings.probe_api_key}"
            self._http_client = httpx.AsyncClient(headers=headers)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def probe(self, url: str) -> ProbeResult:
        client = await self._get_client()

        try:
            resp = await request_with_policy(
                client,
                "GET",
                self.settings.probe_api_url,
                self.policy,
                params={"url": url},
            )
        except (TransientFetchError, RateLimitedError, BlockedError, PermanentURLError) as e:
            raise TransientProbeError(f"Probe service failed for {url}: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise TransientProbeError(f"Probe service returned invalid JSON for {url}") from e

        if not isinstance(data, dict):
            raise TransientProbeError(
                f"Probe service returned {type(data).__name__} instead of an object for {url}"
            )

        return self._parse(url, data)

    @staticmethod
    def _parse(url: str, data: dict) -> ProbeResult:
        status = str(data.get("status", "")).lower()
        target_status = _parse_int(data.get("target_status")) or 0

        if status == "not_found" or target_status == 404:
            logger.debug(f"Probe confirmed not-found for {url}")
            return ProbeResult.not_found()

        if status != "ok":
            raise TransientProbeError(
                f"Probe service gave no verdict for {url} (status={status or 'missing'}, "
                f"target_status={target_status or 'missing'})"
            )

        return ProbeResult(
            found=True,
            status_code=target_status or 200,
            price=parse_price(data.get("price")),
            stock=_parse_int(data.get("stock_level")),
            rating=_parse_float(data.get("seller_rating")),
            shipping=data.get("shipping_method") or None,
        )
