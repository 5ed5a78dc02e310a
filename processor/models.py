"""Data models for calendar feed processing."""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional


@dataclass
class RawCalendarEvent:
    """Event parsed from an ICS feed."""
    start: str
    uid: Optional[str] = None
    end: Optional[str] = None
    duration: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    dtstamp: Optional[str] = None
    location: Optional[str] = None
    organizer: Optional[str] = None
    attendees: List[str] = field(default_factory=list)


@dataclass
class EnrichedCalendarEvent(RawCalendarEvent):
    """Parsed event plus best-effort booking metadata."""
    guest_name: Optional[str] = None
    guests_count: Optional[int] = None
    listing_title: Optional[str] = None
    source_ref: Optional[str] = None
    channel: str = 'other'
    status_label: str = 'Unknown'

    def to_dict(self) -> dict:
        """Serialize for JSON responses, dropping empty fields."""
        return {
            key: value for key, value in asdict(self).items()
            if value not in (None, [])
        }


@dataclass
class CalendarBlock:
    """Period during which a property is unavailable."""
    property_id: str
    host_id: Optional[str]
    start_date: str
    end_date: str
    reason: str
    source: str
    external_id: str
    is_active: bool = True
    created_by: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def key(self) -> tuple:
        """Identity of the logical block."""
        return (self.property_id, self.source, self.external_id)

    def mutable_fields(self) -> dict:
        """Fields refreshed on every sync of an existing block."""
        return {
            'start_date': self.start_date,
            'end_date': self.end_date,
            'reason': self.reason,
            'is_active': self.is_active,
        }


SYNC_IDLE = 'idle'
SYNC_RUNNING = 'running'
SYNC_SUCCESS = 'success'
SYNC_ERROR_PREFIX = 'error: '


@dataclass
class SyncState:
    """Last recorded run state of a feed."""
    last_sync_at: Optional[str] = None
    last_sync_status: str = SYNC_IDLE

    @property
    def is_running(self) -> bool:
        return self.last_sync_status == SYNC_RUNNING

    @property
    def is_error(self) -> bool:
        return self.last_sync_status.startswith(SYNC_ERROR_PREFIX.strip())

    def is_stale(self, grace_period: timedelta, now: datetime) -> bool:
        """
        Whether a 'running' state has outlived the grace period.

        A run that crashed before recording its terminal state leaves the
        feed in 'running'; schedulers treat it as free again after this.

        Args:
            grace_period: Maximum expected duration of a run
            now: Timezone-aware current time

        Returns:
            True if the feed is stuck in 'running'
        """
        if not self.is_running:
            return False
        if not self.last_sync_at:
            return True
        try:
            started = datetime.fromisoformat(self.last_sync_at)
        except ValueError:
            return True
        return now - started > grace_period


FEED_KIND_ICAL_URL = 'ical_url'
FEED_KIND_CHANNEL_ACCOUNT = 'channel_account'


@dataclass
class FeedRegistration:
    """Remote calendar registered for a property."""
    id: str
    property_id: Optional[str]
    host_id: Optional[str]
    channel: str
    url: str
    is_active: bool = True
    kind: str = FEED_KIND_ICAL_URL
    state: SyncState = field(default_factory=SyncState)


@dataclass
class SyncReport:
    """Result of reconciling one feed."""
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    skip_reasons: Dict[str, int] = field(default_factory=dict)

    def record_skip(self, reason: str) -> None:
        self.skipped += 1
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1

    def to_dict(self) -> dict:
        return {
            'processed': self.processed,
            'created': self.created,
            'updated': self.updated,
            'skipped': self.skipped,
            'skipReasons': dict(self.skip_reasons),
        }
