"""
Reservation matrix parser.

The site renders one HTML table per date: header cells map ``r-{courtId}``
classes to court names, every ``tr[data-time]`` row is a start time carrying a
``utc`` booking token, and each ``td.slot`` cell's classes encode the court and
its state (free, taken, closed, off-peak).
"""

import logging
import re
from datetime import date
from typing import Optional

from bs4 import BeautifulSoup, Tag

from courtwatch.errors import ParseError
from courtwatch.models.schemas import CourtAvailability

logger = logging.getLogger(__name__)

COURT_ID_REGEX = re.compile(r"^r-(\d+)$")
TIME_REGEX = re.compile(r"^\d{1,2}:\d{2}$")
OWN_BOOKING_CLASSES = {"mine", "own"}
PAGE_SAMPLE_LENGTH = 500


def _classes(el: Tag) -> list[str]:
    return el.get("class") or []


def _court_id(classes: list[str]) -> Optional[int]:
    for cls in classes:
        match = COURT_ID_REGEX.match(cls)
        if match:
            return int(match.group(1))
    return None


def parse_court_headers(soup: BeautifulSoup) -> dict[int, str]:
    """Map court id -> display name from the matrix header row."""
    courts: dict[int, str] = {}
    for th in soup.select("thead.matrix-header th.header-name"):
        name = th.get_text(strip=True)
        court_id = _court_id(_classes(th))
        if court_id is not None and name:
            courts[court_id] = name
    return courts


def parse_availability(html: str, for_date: date) -> list[CourtAvailability]:
    """
    Parse a reservation matrix page into slots for one date.

    Closed cells are skipped. An empty list means the matrix had no bookable
    rows; a page whose structure is broken raises instead.

    Raises:
        ParseError: If the court header or row/cell metadata is missing
    """
    sample = html[:PAGE_SAMPLE_LENGTH]
    soup = BeautifulSoup(html, "html.parser")

    courts = parse_court_headers(soup)
    if not courts:
        raise ParseError("Court header not found in reservations page", sample)

    slots: list[CourtAvailability] = []
    for row in soup.select("tr[data-time]"):
        start_time = (row.get("data-time") or "").strip()
        if not TIME_REGEX.match(start_time):
            raise ParseError(f"Invalid or missing time on row: {start_time!r}", sample)
        start_time = start_time.zfill(5)
        utc = (row.get("utc") or "").strip()

        for cell in row.select("td.slot"):
            classes = _classes(cell)
            if "closed" in classes:
                continue

            court_id = _court_id(classes)
            if court_id is None:
                raise ParseError(
                    f"Court ID not found for cell with class {' '.join(classes)!r}",
                    sample,
                )
            court_name = courts.get(court_id)
            if court_name is None:
                raise ParseError(f"Court name not found for court ID {court_id}", sample)

            slots.append(
                CourtAvailability(
                    court_id=court_id,
                    court_name=court_name,
                    date=for_date,
                    start_time=start_time,
                    is_available="free" in classes,
                    is_own_booking=bool(OWN_BOOKING_CLASSES.intersection(classes)),
                    off_peak="off-peak" in classes,
                    utc=utc,
                )
            )

    logger.info(
        f"Parsed {len(slots)} slots across {len(courts)} courts for {for_date.isoformat()}"
    )
    return slots
