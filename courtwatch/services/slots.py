"""
Slot repository: fetch, filter and group court availability.
Query-only; nothing here mutates persisted state.
"""

import logging
from datetime import date
from typing import Iterable

from courtwatch.errors import AuthError, ParseError
from courtwatch.models.schemas import (
    CourtAvailability,
    DailyAvailability,
    Session,
    time_to_minutes,
)
from courtwatch.services.fetcher import PageFetcher
from courtwatch.services.parser import parse_availability

logger = logging.getLogger(__name__)

GroupedSlots = dict[date, dict[str, list[CourtAvailability]]]


def filter_by_time_range(
    slots: Iterable[CourtAvailability], time_from: str, time_to: str
) -> list[CourtAvailability]:
    """Keep slots whose start time lies in [time_from, time_to], both inclusive."""
    start = time_to_minutes(time_from)
    end = time_to_minutes(time_to)
    return [s for s in slots if start <= s.start_time_in_minutes <= end]


def only_available(slots: Iterable[CourtAvailability]) -> list[CourtAvailability]:
    return [s for s in slots if s.is_available]


def sort_chronologically(slots: Iterable[CourtAvailability]) -> list[CourtAvailability]:
    return sorted(slots, key=lambda s: (s.date, s.start_time_in_minutes, s.court_id))


def group_by_date_then_time(slots: Iterable[CourtAvailability]) -> GroupedSlots:
    """Group slots as date -> start time -> slots, chronological at both levels."""
    grouped: GroupedSlots = {}
    for slot in sort_chronologically(slots):
        by_time = grouped.setdefault(slot.date, {})
        by_time.setdefault(slot.start_time, []).append(slot)
    return grouped


def merge_grouped(target: GroupedSlots, source: GroupedSlots) -> GroupedSlots:
    """Merge one grouping into another and return it re-sorted."""
    merged = [s for by_time in target.values() for group in by_time.values() for s in group]
    merged += [s for by_time in source.values() for group in by_time.values() for s in group]
    return group_by_date_then_time(merged)


class SlotRepository:
    """Fetches and parses the reservation matrix for dates."""

    def __init__(self, fetcher: PageFetcher, base_url: str, sport_id: int):
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")
        self.sport_id = sport_id

    def reservations_url(self, for_date: date) -> str:
        return f"{self.base_url}/reservations/{for_date.isoformat()}/sport/{self.sport_id}"

    async def get_all_slots_on_date(
        self, session: Session, for_date: date
    ) -> list[CourtAvailability]:
        """Fetch and parse every slot for one date."""
        html = await self.fetcher.get_page(self.reservations_url(for_date), session)
        return parse_availability(html, for_date)

    async def fetch_availability_for_dates(
        self,
        session: Session,
        dates: Iterable[date],
        time_from: str,
        time_to: str,
    ) -> list[DailyAvailability]:
        """
        Fetch several dates, isolating failures per date.

        A date whose fetch or parse fails is logged and skipped so the other
        dates still produce results. AuthError is not isolated: every other
        date would fail the same way.
        """
        results: list[DailyAvailability] = []
        for for_date in sorted(set(dates)):
            try:
                slots = await self.get_all_slots_on_date(session, for_date)
            except AuthError:
                raise
            except ParseError as e:
                logger.error(
                    f"Failed to parse availability for {for_date.isoformat()}: {e}\n"
                    f"Page sample: {e.page_sample}"
                )
                continue
            except Exception as e:
                logger.error(f"Failed to fetch availability for {for_date.isoformat()}: {e}")
                continue

            available = sort_chronologically(
                only_available(filter_by_time_range(slots, time_from, time_to))
            )
            results.append(DailyAvailability(date=for_date, slots=slots, available=available))

        return results

    async def list_own_bookings(
        self, session: Session, dates: Iterable[date]
    ) -> list[CourtAvailability]:
        """Return the account's own reservations on the given dates."""
        own: list[CourtAvailability] = []
        for daily in await self.fetch_availability_for_dates(session, dates, "00:00", "23:59"):
            own.extend(s for s in daily.slots if s.is_own_booking)
        return sort_chronologically(own)
