"""Discord webhook integration for user alerts."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from listing_healer.config import Settings, settings as default_settings
from listing_healer.db.repository import ItemRepository
from listing_healer.metrics import record_alert
from listing_healer.notify.formatters import COLOR_WARNING, Alert

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Delivers alerts to users. Implementations never raise."""

    @abstractmethod
    async def notify(
        self,
        user_id: str,
        subject: str,
        body: str,
        fields: Optional[List[Dict[str, Any]]] = None,
        kind: str = "general",
        color: int = COLOR_WARNING,
    ) -> bool:
        """
        Send one alert.

        Returns:
            True if delivered, False otherwise
        """
        pass

    async def send(self, user_id: str, alert: Alert) -> bool:
        """Send a pre-formatted alert."""
        return await self.notify(
            user_id,
            alert.subject,
            alert.body,
            fields=alert.fields,
            kind=alert.kind,
            color=alert.color,
        )

    async def close(self):
        pass


class DiscordNotifier(Notifier):
    """Posts alert embeds to the user's configured webhook URL."""

    def __init__(
        self,
        repository: ItemRepository,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.repository = repository
        self.settings = settings or default_settings
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.settings.notification_timeout_seconds)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _build_payload(
        self,
        subject: str,
        body: str,
        fields: Optional[List[Dict[str, Any]]],
        color: int,
    ) -> Dict[str, Any]:
        embed = {
            "title": subject[:256],
            "description": body[:4096],
            "color": color,
            "fields": (fields or [])[:25],
            "footer": {"text": f"Dashboard: {self.settings.dashboard_base_url}"},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return {
            "embeds": [embed],
            "username": self.settings.notification_username,
        }

    async def notify(
        self,
        user_id: str,
        subject: str,
        body: str,
        fields: Optional[List[Dict[str, Any]]] = None,
        kind: str = "general",
        color: int = COLOR_WARNING,
    ) -> bool:
        try:
            user = await self.repository.get_user(user_id)
            if user is None or not user.notification_target:
                logger.info(f"No notification target for user {user_id}, dropping {kind} alert")
                record_alert(kind, success=False)
                return False

            client = await self._get_client()
            response = await client.post(
                user.notification_target,
                json=self._build_payload(subject, body, fields, color),
            )
            response.raise_for_status()

            logger.info(f"Sent {kind} alert to user {user_id}: {subject}")
            record_alert(kind, success=True)
            return True

        except Exception as e:
            # Alert delivery failures never propagate into healing
            logger.error(f"Failed to send {kind} alert to user {user_id}: {e}")
            record_alert(kind, success=False)
            return False
