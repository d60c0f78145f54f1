"""
Booking engine: candidate selection and the three-step reservation flow.

1. GET the booking form for (court, utc), keep its hidden fields and
   pre-selected dropdown values, add the booking partners.
2. POST it to the confirm endpoint; a redirect is followed because the
   confirmation page carries a fresh CSRF token.
3. POST the confirmation page's fields again with ``confirmed=1``.

Booking failures never propagate: every outcome is a BookingResult so callers
can move on to the next candidate.
"""

import json
import logging
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional
from urllib.parse import urljoin
from zoneinfo import ZoneInfo

import httpx
import logfire
from bs4 import BeautifulSoup

from courtwatch.errors import AuthError, BookingError
from courtwatch.models.schemas import (
    BookingResult,
    CourtAvailability,
    Player,
    Session,
    time_to_minutes,
    utcnow,
)
from courtwatch.services.fetcher import PageFetcher
from courtwatch.services.session import SessionManager

logger = logging.getLogger(__name__)

CSRF_FIELD = "_token"
REDIRECT_STATUSES = (301, 302, 303)


def select_candidates(
    slots: Iterable[CourtAvailability],
    booked_slots: Iterable[CourtAvailability],
    time_from: str,
    time_to: str,
) -> list[CourtAvailability]:
    """
    Pick bookable slots in [time_from, time_to], earliest first.

    Dates on which the account already holds a booking inside the same block
    are excluded so one evening is never booked twice.
    """
    start = time_to_minutes(time_from)
    end = time_to_minutes(time_to)

    booked_dates: set[date] = {
        b.date for b in booked_slots if start <= b.start_time_in_minutes <= end
    }

    candidates = [
        s
        for s in slots
        if s.is_available
        and start <= s.start_time_in_minutes <= end
        and s.date not in booked_dates
    ]
    return sorted(candidates, key=lambda s: (s.date, s.start_time_in_minutes))


def extract_form_fields(html: str, include_selects: bool = True) -> dict[str, str]:
    """Collect hidden inputs and, optionally, the selected option of each select."""
    soup = BeautifulSoup(html, "html.parser")
    fields: dict[str, str] = {}

    for el in soup.select("form input[type=hidden]"):
        name = el.get("name")
        if name:
            fields[name] = el.get("value") or ""

    if include_selects:
        for el in soup.select("form select"):
            name = el.get("name")
            if not name:
                continue
            selected = el.select_one("option[selected]")
            fields[name] = (selected.get("value") or "") if selected else ""

    return fields


def interpret_final_response(
    slot: CourtAvailability, status_code: int, body: str
) -> BookingResult:
    """
    Decide whether the final confirmation POST booked the slot.

    JSON with an ``id`` is a reservation; JSON without one is a rejection
    carrying the server message. A non-JSON 200/302 is a success only when the
    page shows a success alert.
    """
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    else:
        if isinstance(payload, dict) and payload.get("id"):
            return BookingResult(
                success=True, slot=slot, reservation_id=str(payload["id"])
            )
        message = payload.get("message") if isinstance(payload, dict) else None
        return BookingResult(
            success=False, slot=slot, error=message or "Unknown booking error"
        )

    if status_code in (200, 302):
        soup = BeautifulSoup(body, "html.parser")
        banner = soup.select_one(".alert-success")
        if banner is not None and banner.get_text(strip=True):
            return BookingResult(success=True, slot=slot)

    return BookingResult(
        success=False, slot=slot, error=f"Unexpected response (status {status_code})"
    )


class BookingEngine:
    """Executes reservations against the booking site."""

    def __init__(
        self,
        fetcher: PageFetcher,
        session_manager: SessionManager,
        base_url: str,
        partners: Optional[list[Player]] = None,
        min_lead_hours: float = 0.0,
        timezone: ZoneInfo = ZoneInfo("Europe/Amsterdam"),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.fetcher = fetcher
        self.session_manager = session_manager
        self.base_url = base_url.rstrip("/")
        self.partners = partners or []
        self.min_lead_hours = min_lead_hours
        self.timezone = timezone
        self.clock = clock

    @property
    def confirm_url(self) -> str:
        return f"{self.base_url}/reservations/confirm"

    def make_url(self, slot: CourtAvailability) -> str:
        return f"{self.base_url}/reservations/make/{slot.court_id}/{slot.utc}"

    def _check_lead_time(self, slot: CourtAvailability) -> None:
        if self.min_lead_hours <= 0:
            return
        hours, minutes = slot.start_time.split(":")
        starts_at = datetime(
            slot.date.year, slot.date.month, slot.date.day,
            int(hours), int(minutes), tzinfo=self.timezone,
        )
        lead = starts_at - self.clock()
        if lead < timedelta(hours=self.min_lead_hours):
            raise BookingError(
                f"Slot starts in {lead.total_seconds() / 3600:.1f} hours; "
                f"minimum lead time is {self.min_lead_hours:g} hours"
            )

    async def book_slot(
        self, slot: CourtAvailability, session: Optional[Session] = None
    ) -> BookingResult:
        """
        Book one slot. Never raises: failures come back as BookingResult.

        Args:
            slot: Slot to reserve, carrying its court id and utc token
            session: Session to use; fetched from the session manager if omitted
        """
        with logfire.span(
            "book_slot",
            court_id=slot.court_id,
            date=slot.date.isoformat(),
            start_time=slot.start_time,
        ):
            try:
                self._check_lead_time(slot)
                if not slot.utc:
                    raise BookingError("Slot has no booking token")
                if session is None:
                    session = await self.session_manager.get_session()
                result = await self._book(slot, session)

            except AuthError as e:
                logger.error(f"Booking aborted, session rejected: {e}")
                self.session_manager.invalidate_session()
                result = BookingResult(success=False, slot=slot, error=str(e))

            except Exception as e:
                logger.error(f"Booking failed for {slot.key}: {e}", exc_info=True)
                result = BookingResult(success=False, slot=slot, error=str(e))

        if result.success:
            logger.info(
                f"Booked {slot.court_name} on {slot.date.isoformat()} at "
                f"{slot.start_time} (reservation {result.reservation_id or 'n/a'})"
            )
        else:
            logger.warning(f"Booking failed for {slot.key}: {result.error}")
        return result

    async def _book(self, slot: CourtAvailability, session: Session) -> BookingResult:
        # Step 1: booking form
        make_url = self.make_url(slot)
        logger.info(f"Step 1: fetching booking form {make_url}")
        form_html = await self.fetcher.get_page(make_url, session)

        fields = extract_form_fields(form_html)
        for index, partner in enumerate(self.partners, start=2):
            fields[f"players[{index}]"] = partner.user_id

        if not fields.get(CSRF_FIELD):
            raise BookingError("No CSRF token found in booking form")

        # Step 2: confirmation page
        logger.info(f"Step 2: posting booking form to {self.confirm_url}")
        response = await self.fetcher.post_page(
            self.confirm_url, fields, session, referer=make_url
        )

        location = response.headers.get("location")
        if response.status_code in REDIRECT_STATUSES and location:
            confirm_page_url = urljoin(self.base_url + "/", location)
            logger.info(f"Step 2: following redirect to {confirm_page_url}")
            confirm_html = await self.fetcher.get_page(confirm_page_url, session)
        elif response.status_code in (200, 302):
            confirm_page_url = self.confirm_url
            confirm_html = response.text
        else:
            raise BookingError(f"Step 2 failed with status {response.status_code}")

        return await self._finalise(slot, session, confirm_html, confirm_page_url)

    async def _finalise(
        self,
        slot: CourtAvailability,
        session: Session,
        confirm_html: str,
        referer: str,
    ) -> BookingResult:
        # Step 3: confirmed submission
        fields = extract_form_fields(confirm_html, include_selects=False)
        if not fields.get(CSRF_FIELD):
            raise BookingError("No CSRF token found in confirmation form")
        fields.setdefault("confirmed", "1")

        logger.info(f"Step 3: finalising booking at {self.confirm_url}")
        response: httpx.Response = await self.fetcher.post_page(
            self.confirm_url, fields, session, referer=referer
        )
        return interpret_final_response(slot, response.status_code, response.text)

    async def book_first_available(
        self,
        candidates: list[CourtAvailability],
        session: Optional[Session] = None,
    ) -> Optional[BookingResult]:
        """
        Try candidates in order until one books.

        Each candidate is attempted once; the next scheduler tick re-fetches
        availability before any retry. Returns None when there is nothing to try.
        """
        result: Optional[BookingResult] = None
        for candidate in candidates:
            result = await self.book_slot(candidate, session)
            if result.success:
                return result
            logger.info(f"Candidate {candidate.key} failed, trying next")
        return result
