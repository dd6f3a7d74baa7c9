"""Candidate discovery: find replacement supplier listings by reverse image search."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from urllib.parse import urlparse

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
from listing_healer.ingest.probe import ProbeProvider, TransientProbeError

logger = logging.getLogger(__name__)


class DiscoveryError(RuntimeError):
    """Discovery service call failed (transient)."""
    pass


@dataclass
class SupplierCandidate:
    """A potential replacement listing. Discarded after the heal attempt."""

    url: str
    price: Decimal
    rating: float
    shipping: str
    confidence: float  # Image-match confidence, 0-100
    total_orders: Optional[int] = None


class CandidateDiscovery(ABC):
    """Abstract candidate discovery service."""

    @abstractmethod
    async def find_candidates(self, reference_image_url: str) -> list[SupplierCandidate]:
        """Return zero or more candidates (unordered)."""
        pass

    async def close(self):
        pass


class SerpApiLensDiscovery(CandidateDiscovery):
    """
    Reverse image search through SerpApi's Google Lens engine.

    Visual matches are restricted to the allowed supplier domains, and the
    first ``discovery_max_candidates`` are detailed through the probe
    provider (price, seller rating, shipping). Matches that cannot be
    detailed are skipped.
    """

    def __init__(
        self,
        probe_provider: ProbeProvider,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.probe_provider = probe_provider
        self.settings = settings or default_settings
        self._http_client = client
        self.policy = ServicePolicy(
            name="serpapi",
            max_attempts=2,
            timeout=timeout_for(self.settings.discovery_timeout_seconds),
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

    def _is_allowed(self, url: Optional[str]) -> bool:
        if not url:
            return False
        host = (urlparse(url).hostname or "").lower()
        return any(
            host == domain or host.endswith(f".{domain}")
            for domain in self.settings.discovery_allowed_domains
        )

    def _confidence(self, match: dict) -> float:
        score = match.get("thumbnail_score")
        if score is None:
            return self.settings.discovery_default_confidence
        try:
            return round(min(100.0, max(0.0, float(score) * 100)), 1)
        except (TypeError, ValueError):
            return self.settings.discovery_default_confidence

    async def find_candidates(self, reference_image_url: str) -> list[SupplierCandidate]:
        if not reference_image_url:
            logger.warning("No reference image, skipping reverse image search")
            return []
        if not self.settings.serpapi_api_key:
            raise DiscoveryError("SERPAPI_API_KEY not configured")

        client = await self._get_client()
        try:
            resp = await request_with_policy(
                client,
                "GET",
                self.settings.serpapi_url,
                self.policy,
                params={
                    "engine": "google_lens",
                    "url": reference_image_url,
                    "api_key": self.settings.serpapi_api_key,
                },
            )
            data = resp.json()
        except (TransientFetchError, RateLimitedError, BlockedError, PermanentURLError) as e:
            raise DiscoveryError(f"Reverse image search failed: {e}") from e
        except ValueError as e:
            raise DiscoveryError("Reverse image search returned invalid JSON") from e

        if not isinstance(data, dict):
            raise DiscoveryError("Reverse image search returned a non-object body")

        matches = [m for m in data.get("visual_matches", []) if self._is_allowed(m.get("link"))]
        logger.info(f"SerpApi found {len(matches)} supplier matches for {reference_image_url}")

        candidates: list[SupplierCandidate] = []
        for match in matches[: self.settings.discovery_max_candidates]:
            link = match["link"]
            try:
                result = await self.probe_provider.probe(link)
            except TransientProbeError as e:
                logger.warning(f"Failed to detail candidate {link}: {e}")
                continue

            if not result.found or result.price is None or result.rating is None:
                continue

            candidates.append(
                SupplierCandidate(
                    url=link,
                    price=result.price,
                    rating=result.rating,
                    shipping=result.shipping or "Standard Shipping",
                    confidence=self._confidence(match),
                )
            )

        return candidates
