"""Event processor turning parsed calendar events into calendar blocks."""
import hashlib
import logging
import re
from datetime import date, datetime, timedelta
from typing import Optional

from processor.ics_parser import parse_duration_days
from processor.models import CalendarBlock, RawCalendarEvent

logger = logging.getLogger(__name__)

MISSING_START_DATE = 'missing_start_date'
INVALID_DATE_FORMAT = 'invalid_date_format'
END_BEFORE_START = 'end_before_start'
PAST_EVENT = 'past_event'

_STRICT_DATE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


class EventValidationError(Exception):
    """Event cannot become a calendar block."""

    def __init__(self, reason: str, detail: str = ''):
        super().__init__(detail or reason)
        self.reason = reason


class EventProcessor:
    """Validate and normalize calendar events for one feed."""

    DEFAULT_REASON = 'ICS'
    MAX_REASON_LENGTH = 500

    def __init__(self, today: date):
        """
        Args:
            today: First day still considered current; events ending
                before it are ignored
        """
        self.today = today

    def build_block(
        self,
        event: RawCalendarEvent,
        property_id: str,
        host_id: Optional[str],
        channel: str,
        created_by: Optional[str] = None,
    ) -> CalendarBlock:
        """
        Build the block a calendar event should be stored as.

        Args:
            event: Parsed event
            property_id: Property the feed belongs to
            host_id: Owner of the property
            channel: Channel name of the feed (e.g. airbnb)
            created_by: Actor recorded on new rows

        Returns:
            CalendarBlock ready to be written

        Raises:
            EventValidationError: If the event must be skipped
        """
        start_date, end_date = self.derive_date_range(event)
        self.validate_date_range(start_date, end_date)

        summary = event.summary or ''
        external_id = self.external_id_for(event, start_date, end_date)
        reason = (summary.strip() or self.DEFAULT_REASON)[:self.MAX_REASON_LENGTH]

        return CalendarBlock(
            property_id=property_id,
            host_id=host_id,
            start_date=start_date,
            end_date=end_date,
            reason=reason,
            source=self.source_for(channel),
            external_id=external_id,
            is_active=self.is_active(event),
            created_by=created_by,
        )

    def derive_date_range(self, event: RawCalendarEvent) -> tuple:
        """
        Compute (start_date, end_date) for an event.

        End date precedence: DTEND, then DTSTART + DURATION, then
        DTSTART + 1 day.
        """
        if not event.start or not event.start.strip():
            raise EventValidationError(MISSING_START_DATE)

        start_date = _date_portion(event.start)
        start = self._parse_date(start_date)

        if event.end and event.end.strip():
            end_date = _date_portion(event.end)
        elif event.duration:
            end_date = (start + timedelta(days=parse_duration_days(event.duration))).isoformat()
        else:
            end_date = (start + timedelta(days=1)).isoformat()

        return start_date, end_date

    def validate_date_range(self, start_date: str, end_date: str) -> None:
        start = self._parse_date(start_date)
        end = self._parse_date(end_date)

        if end < start:
            raise EventValidationError(
                END_BEFORE_START, f"end {end_date} is before start {start_date}"
            )
        if end < self.today:
            raise EventValidationError(
                PAST_EVENT, f"ended {end_date}, before {self.today.isoformat()}"
            )

    @staticmethod
    def _parse_date(value: str) -> date:
        if not _STRICT_DATE.match(value or ''):
            raise EventValidationError(INVALID_DATE_FORMAT, f"not a YYYY-MM-DD date: {value!r}")
        try:
            return datetime.strptime(value, '%Y-%m-%d').date()
        except ValueError:
            raise EventValidationError(INVALID_DATE_FORMAT, f"not a calendar date: {value!r}")

    def external_id_for(self, event: RawCalendarEvent, start_date: str, end_date: str) -> str:
        """Feed UID, or a stable hash of the event content when it has none."""
        uid = (event.uid or '').strip()
        if uid:
            return uid
        return self.generate_external_id(start_date, end_date, event.summary or '')

    @staticmethod
    def generate_external_id(start_date: str, end_date: str, summary: str) -> str:
        """
        Generate a deterministic identifier from start + end + summary.

        Returns:
            SHA256 hex digest
        """
        composite = f"{start_date}|{end_date}|{summary}"
        return hashlib.sha256(composite.encode('utf-8')).hexdigest()

    @staticmethod
    def is_active(event: RawCalendarEvent) -> bool:
        return (event.status or '').strip().upper() != 'CANCELLED'

    @staticmethod
    def source_for(channel: str) -> str:
        return f"ical_{(channel or '').strip()}".strip().lower()


def _date_portion(value: str) -> str:
    return value.strip().split('T', 1)[0]
