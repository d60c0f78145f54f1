"""
Notification service for sending Telegram alerts.
Handles async Telegram delivery, digest formatting, and error handling.
"""

import asyncio
import html
import logging
from typing import Optional

import httpx

from courtwatch.models.schemas import BookingResult, NotificationResult, utcnow
from courtwatch.services.slots import GroupedSlots

logger = logging.getLogger(__name__)

DEFAULT_HEADING = "Hello! I've found some newly available squash courts:"


def build_digest(grouped: GroupedSlots, heading: str = DEFAULT_HEADING) -> str:
    """
    Format slots grouped by date then time as a Telegram HTML message.

    Args:
        grouped: date -> start time -> slots, as produced by group_by_date_then_time
        heading: First line of the message

    Returns:
        Formatted message text
    """
    lines = [html.escape(heading), ""]
    for for_date, by_time in grouped.items():
        lines.append(f"🗓️ <b>{for_date.isoformat()}</b> ({for_date.strftime('%A')})")
        for start_time, slots in by_time.items():
            courts = ", ".join(html.escape(s.court_name) for s in slots)
            lines.append(f"- {start_time}: {courts}")
        lines.append("")
    return "\n".join(lines).strip()


def build_booking_message(result: BookingResult) -> str:
    slot = result.slot
    message = (
        f"✅ Booked <b>{html.escape(slot.court_name)}</b> on "
        f"{slot.date.isoformat()} at {slot.start_time}"
    )
    if result.reservation_id:
        message += f"\nReservation ID: {html.escape(result.reservation_id)}"
    return message


def build_booking_failure_message(result: BookingResult) -> str:
    slot = result.slot
    return (
        f"❌ Could not book {html.escape(slot.court_name)} on "
        f"{slot.date.isoformat()} at {slot.start_time}\n"
        f"Reason: {html.escape(result.error or 'unknown')}"
    )


class NotificationService:
    """Service for sending Telegram notifications via the Bot API."""

    def __init__(
        self,
        bot_token: Optional[str],
        default_chat_ids: Optional[list[str]] = None,
        api_base: str = "https://api.telegram.org",
        timeout: float = 15.0,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize notification service.

        Args:
            bot_token: Telegram bot token; without it messages are only logged
            default_chat_ids: Chats used when notify() gets no recipient
            api_base: Telegram Bot API base URL
            timeout: Request timeout in seconds
            retry_delay: Base backoff delay in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.bot_token = bot_token
        self.default_chat_ids = default_chat_ids or []
        self.api_base = api_base.rstrip("/")
        self.retry_delay = retry_delay
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        logger.info("Telegram notification service initialized")

    async def send_message(
        self,
        chat_id: str,
        message: str,
        max_retries: int = 3,
    ) -> NotificationResult:
        """
        Send a Telegram message with retry logic.

        Args:
            chat_id: Recipient chat id
            message: Message content (Telegram HTML)
            max_retries: Maximum number of retry attempts

        Returns:
            NotificationResult with delivery status
        """
        if not self.bot_token:
            logger.warning(f"No Telegram bot token configured, not sending to {chat_id}:\n{message}")
            return NotificationResult(
                success=False, recipient=chat_id, error="Telegram bot token not configured"
            )

        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": message,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

        error = "Max retries exceeded"
        for attempt in range(1, max_retries + 1):
            try:
                logger.info(
                    f"Sending Telegram message to {chat_id} "
                    f"(attempt {attempt}/{max_retries})"
                )
                response = await self.client.post(url, json=payload)
                body = response.json()

                if response.is_success and body.get("ok"):
                    message_id = body.get("result", {}).get("message_id")
                    logger.info(
                        f"Telegram message sent successfully to {chat_id} "
                        f"(message_id: {message_id})"
                    )
                    return NotificationResult(
                        success=True,
                        message_id=message_id,
                        recipient=chat_id,
                        sent_at=utcnow(),
                    )

                error = f"Telegram error: {body.get('description', response.status_code)}"
                logger.error(f"{error} sending to {chat_id} (attempt {attempt})")

            except (httpx.HTTPError, ValueError) as e:
                error = f"Unexpected error: {e}"
                logger.error(
                    f"Unexpected error sending to {chat_id} "
                    f"(attempt {attempt}): {e}"
                )

            if attempt < max_retries:
                # Exponential backoff
                wait_time = self.retry_delay * 2 ** (attempt - 1)
                logger.info(f"Retrying in {wait_time} seconds...")
                await asyncio.sleep(wait_time)

        return NotificationResult(
            success=False,
            recipient=chat_id,
            error=error,
            sent_at=utcnow(),
        )

    async def notify(
        self, message: str, recipient: Optional[str] = None
    ) -> list[NotificationResult]:
        """Send one message to a recipient, or to every default chat."""
        recipients = [recipient] if recipient else self.default_chat_ids
        if not recipients:
            logger.warning(f"No recipients configured, dropping message:\n{message}")
            return []

        results = [await self.send_message(chat_id, message) for chat_id in recipients]
        successful = sum(1 for r in results if r.success)
        logger.info(f"Notification sent: {successful}/{len(recipients)} successful deliveries")
        return results

    async def close(self) -> None:
        await self.client.aclose()
