"""
Optional calendar webhook.
Creates a tentative event when a request is queued and confirms it once booked.
"""

import logging
from datetime import date
from typing import Any, Optional

import httpx

from courtwatch.models.schemas import Player

logger = logging.getLogger(__name__)


def confirmed_title(court_name: str) -> str:
    return f"squash! {court_name.lower()}"


class CalendarClient:
    """Posts JSON actions to a calendar webhook; disabled without a URL."""

    def __init__(
        self,
        webhook_url: Optional[str],
        attendees: Optional[list[Player]] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.attendees = [p.email for p in attendees or [] if p.email]
        self.client = httpx.AsyncClient(
            timeout=timeout, transport=transport, follow_redirects=True
        )

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def _post(self, body: dict[str, Any]) -> Optional[dict[str, Any]]:
        if not self.enabled:
            return None

        try:
            response = await self.client.post(
                self.webhook_url, json={**body, "attendees": self.attendees}
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Calendar webhook request failed: {e}")
            return None

        return payload if isinstance(payload, dict) else None

    async def create_tentative_event(
        self, for_date: date, time_from: str, time_to: str
    ) -> Optional[str]:
        """Create a placeholder event and return its id, if the webhook gave one."""
        result = await self._post(
            {
                "action": "createTentative",
                "title": "squash! (placeholder)",
                "date": for_date.isoformat(),
                "timeFrom": time_from,
                "timeTo": time_to,
            }
        )
        event_id = (result or {}).get("eventId")
        return str(event_id) if event_id else None

    async def confirm_event(
        self, event_id: str, court_name: str, for_date: date, time: str
    ) -> None:
        await self._post(
            {
                "action": "confirm",
                "title": confirmed_title(court_name),
                "eventId": event_id,
                "date": for_date.isoformat(),
                "time": time,
            }
        )

    async def create_confirmed_event(
        self, court_name: str, for_date: date, time: str
    ) -> None:
        await self._post(
            {
                "action": "createConfirmed",
                "title": confirmed_title(court_name),
                "date": for_date.isoformat(),
                "time": time,
            }
        )

    async def close(self) -> None:
        await self.client.aclose()
