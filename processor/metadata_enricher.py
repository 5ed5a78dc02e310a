"""Best-effort extraction of booking metadata from calendar events.

Each field is recovered by an ordered tuple of independent extractors.
The first extractor returning a value wins, so earlier (more
trustworthy) patterns take precedence over later, looser ones. New
channel-specific patterns are added by inserting an extractor at the
right position.
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Callable, List, Optional, Pattern, Sequence

from bs4 import BeautifulSoup

from processor.models import EnrichedCalendarEvent, RawCalendarEvent

logger = logging.getLogger(__name__)

_NAME_CHARS = r"A-Za-zÀ-ÖØ-öø-ÿ'’."

NON_NAME_TOKENS = {
    'airbnb', 'apartment', 'blocked', 'booking', 'booking.com', 'closed',
    'confirmed', 'guest', 'listing', 'not available', 'ospite',
    'prenotazione', 'reservation', 'reserved', 'smoobu', 'unavailable',
    'vrbo',
}

LISTING_STOP_WORDS = {
    'airbnb', 'booking', 'booking.com', 'guest', 'ospite', 'prenotazione',
    'reservation', 'reserved', 'smoobu', 'vrbo',
}

CHANNEL_MARKERS = (
    ('booking.com', 'booking.com'),
    ('airbnb', 'airbnb'),
    ('vrbo', 'vrbo'),
    ('smoobu', 'smoobu'),
)

STATUS_LABELS = (
    ('cancel', 'Cancelled'),
    ('tent', 'Tentative'),
)


@dataclass
class ExtractionContext:
    """Text fields an extractor may look at."""
    summary: str = ''
    description: str = ''
    attendees: List[str] = field(default_factory=list)
    organizer: str = ''

    @property
    def text(self) -> str:
        return f"{self.summary}\n{self.description}"


class Extractor(ABC):
    """Strategy returning a value or None."""

    name = 'extractor'

    @abstractmethod
    def extract(self, context: ExtractionContext):
        """Return the extracted value, or None when nothing matches."""


class RegexExtractor(Extractor):
    """
    Match a pattern against one field of the context.

    Args:
        name: Label used in debug logs
        pattern: Compiled pattern; the value is read from ``group``
        field_name: Context attribute to search ('summary', 'description'
            or 'text' for both)
        group: Capture group holding the value
        convert: Optional conversion applied to the captured text
        accept: Optional predicate; rejected values count as no match
    """

    def __init__(
        self,
        name: str,
        pattern: Pattern,
        field_name: str = 'text',
        group: int = 1,
        convert: Optional[Callable] = None,
        accept: Optional[Callable] = None,
    ):
        self.name = name
        self.pattern = pattern
        self.field_name = field_name
        self.group = group
        self.convert = convert
        self.accept = accept

    def extract(self, context: ExtractionContext):
        haystack = getattr(context, self.field_name) or ''
        match = self.pattern.search(haystack)
        if not match or not match.group(self.group):
            return None
        value = match.group(self.group).strip()
        if self.convert:
            try:
                value = self.convert(value)
            except ValueError:
                return None
        if self.accept and not self.accept(value):
            return None
        return value


class CommonNameExtractor(Extractor):
    """Read the CN= parameter from ATTENDEE or ORGANIZER lines."""

    _CN = re.compile(r'CN=("?)([^;:"]+)\1', re.IGNORECASE)

    def __init__(self, name: str, lines: Callable[[ExtractionContext], Sequence[str]]):
        self.name = name
        self.lines = lines

    def extract(self, context: ExtractionContext):
        for line in self.lines(context):
            match = self._CN.search(line or '')
            if match:
                value = match.group(2).strip()
                if _is_plausible_name(value):
                    return value
        return None


def first_match(extractors: Sequence[Extractor], context: ExtractionContext):
    """Run extractors in order and return the first value found."""
    for extractor in extractors:
        value = extractor.extract(context)
        if value is not None:
            logger.debug(f"Extractor '{extractor.name}' matched: {value}")
            return value
    return None


def _is_plausible_name(value: str) -> bool:
    value = value.strip()
    return (
        2 <= len(value) <= 50
        and value.lower() not in NON_NAME_TOKENS
        and any(ch.isalpha() for ch in value)
    )


def _is_guest_count(value: int) -> bool:
    return 1 <= value <= 50


def _is_listing_title(value: str) -> bool:
    return (
        3 <= len(value) <= 100
        and not value.isdigit()
        and value.lower() not in LISTING_STOP_WORDS
    )


def _is_reference(value: str) -> bool:
    return 4 <= len(value) <= 50


def _labeled_name(label: str) -> Pattern:
    return re.compile(
        rf"\b{label}\s*[:=]\s*([{_NAME_CHARS} -]+?)\s*(?:\n|$|,|\d)",
        re.IGNORECASE,
    )


def _labeled_count(label: str) -> Pattern:
    return re.compile(rf"\b{label}\s*[:=]?\s*(\d+)", re.IGNORECASE)


def _labeled_text(label: str) -> Pattern:
    return re.compile(rf"\b{label}\s*[:=]\s*([^,\n]+)", re.IGNORECASE)


def _labeled_ref(label: str) -> Pattern:
    return re.compile(
        rf"\b{label}(?:\s+(?:code|number|no\.?))?\s*[:#=]\s*([A-Z0-9][A-Z0-9\-_]*)",
        re.IGNORECASE,
    )


GUEST_NAME_EXTRACTORS = (
    CommonNameExtractor('attendee_cn', lambda ctx: ctx.attendees),
    CommonNameExtractor('organizer_cn', lambda ctx: [ctx.organizer]),
    RegexExtractor(
        'name_with_count',
        re.compile(r'^(.+?)\s*\((\d+)\)\s*$'),
        field_name='summary',
        accept=_is_plausible_name,
    ),
    RegexExtractor(
        'reservation_confirmed',
        re.compile(r'reservation\s+confirmed\s*[–—-]\s*(.+)', re.IGNORECASE),
        field_name='summary',
        accept=_is_plausible_name,
    ),
    RegexExtractor('primary_guest', _labeled_name(r'primary\s+guest'), accept=_is_plausible_name),
    RegexExtractor('guest', _labeled_name(r'guest(?:\s+name)?'), accept=_is_plausible_name),
    RegexExtractor('ospite', _labeled_name('ospite'), accept=_is_plausible_name),
    RegexExtractor('prenotazione_di', _labeled_name(r'prenotazione\s+di'), accept=_is_plausible_name),
    RegexExtractor('booked_by', _labeled_name(r'booked\s+by'), accept=_is_plausible_name),
    RegexExtractor('name', _labeled_name('name'), accept=_is_plausible_name),
    RegexExtractor('nome', _labeled_name('nome'), accept=_is_plausible_name),
    RegexExtractor(
        'channel_prefix',
        re.compile(
            rf"^(?:airbnb|booking\.com|vrbo|smoobu)\s*[-–:]\s*([{_NAME_CHARS} -]+)$",
            re.IGNORECASE,
        ),
        field_name='summary',
        accept=_is_plausible_name,
    ),
    RegexExtractor(
        'name_dash_listing',
        re.compile(rf"^([{_NAME_CHARS} ]+?)\s*[-–]\s*[^-–]+$"),
        field_name='summary',
        accept=_is_plausible_name,
    ),
    RegexExtractor(
        'leading_words',
        re.compile(rf"^([{_NAME_CHARS} ]{{2,30}}?)(?:\s*-|\s*\d|\s*\(|$)"),
        field_name='summary',
        accept=_is_plausible_name,
    ),
)

GUEST_COUNT_EXTRACTORS = (
    RegexExtractor(
        'parenthesized_count',
        re.compile(r'\((\d+)\)'),
        field_name='summary',
        convert=int,
        accept=_is_guest_count,
    ),
    RegexExtractor('number_of_guests', _labeled_count(r'number\s+of\s+guests?'),
                   convert=int, accept=_is_guest_count),
    RegexExtractor('guests', _labeled_count(r'guests?'), convert=int, accept=_is_guest_count),
    RegexExtractor('ospiti', _labeled_count('ospiti'), convert=int, accept=_is_guest_count),
    RegexExtractor('pax', _labeled_count('pax'), convert=int, accept=_is_guest_count),
    RegexExtractor('persone', _labeled_count('persone'), convert=int, accept=_is_guest_count),
    RegexExtractor('adults_and_children', re.compile(
        r'\badults?\s*[:=]\s*(\d+)\s*[,;\n]?\s*(?:children|child|bambini)\s*[:=]\s*(\d+)',
        re.IGNORECASE,
    ), group=0, convert=lambda text: sum(int(n) for n in re.findall(r'\d+', text)),
        accept=_is_guest_count),
    RegexExtractor('adults', _labeled_count(r'adults?'), convert=int, accept=_is_guest_count),
    RegexExtractor('trailing_guests', re.compile(r'(\d+)\s*(?:guests?|ospiti|pax|people|persone)\b',
                                                 re.IGNORECASE),
                   convert=int, accept=_is_guest_count),
)

LISTING_TITLE_EXTRACTORS = (
    RegexExtractor('listing', _labeled_text('listing'), accept=_is_listing_title),
    RegexExtractor('appartamento', _labeled_text('appartamento'), accept=_is_listing_title),
    RegexExtractor('property', _labeled_text('property'), accept=_is_listing_title),
    RegexExtractor('proprieta', _labeled_text('proprietà'), accept=_is_listing_title),
    RegexExtractor('alloggio', _labeled_text('alloggio'), accept=_is_listing_title),
    RegexExtractor('unit', _labeled_text('unit'), accept=_is_listing_title),
    RegexExtractor(
        'title_colon',
        re.compile(r'^([^:\n]+?):\s*\w+'),
        field_name='summary',
        accept=_is_listing_title,
    ),
    RegexExtractor(
        'listing_after_dash',
        re.compile(r'^[^-–\n]+[-–]\s*(.+)$'),
        field_name='summary',
        accept=_is_listing_title,
    ),
)

SOURCE_REF_EXTRACTORS = (
    RegexExtractor('reservation', _labeled_ref('reservation'), accept=_is_reference),
    RegexExtractor('booking', _labeled_ref('booking'), accept=_is_reference),
    RegexExtractor('confirmation', _labeled_ref('confirmation'), accept=_is_reference),
    RegexExtractor('conferma', _labeled_ref('conferma'), accept=_is_reference),
    RegexExtractor('codice', _labeled_ref('codice'), accept=_is_reference),
    RegexExtractor('ref', _labeled_ref('ref'), accept=_is_reference),
    RegexExtractor('id', _labeled_ref('id'), accept=_is_reference),
    RegexExtractor('letters_digits', re.compile(r'\b([A-Z]{2,4}\d{6,12})\b'), accept=_is_reference),
    RegexExtractor('airbnb_code', re.compile(r'\b(HM[A-Z0-9]{8,})\b'), accept=_is_reference),
    RegexExtractor('numeric_id', re.compile(r'\b(\d{8,12})\b'), accept=_is_reference),
)


def html_to_text(text: Optional[str]) -> str:
    """Reduce an HTML description to plain text; plain text is returned as-is."""
    if not text:
        return ''
    if '<' not in text or '>' not in text:
        return text
    soup = BeautifulSoup(text, 'html.parser')
    for br in soup.find_all('br'):
        br.replace_with('\n')
    for block in soup.find_all(['p', 'div', 'li', 'tr']):
        block.append('\n')
    return soup.get_text().strip()


def detect_channel(*texts: Optional[str]) -> str:
    """Guess the booking channel from free text."""
    haystack = ' '.join(t for t in texts if t).lower()
    for marker, channel in CHANNEL_MARKERS:
        if marker in haystack:
            return channel
    return 'other'


def status_label(status: Optional[str]) -> str:
    """Readable label for an ICS STATUS value."""
    value = (status or '').strip().lower()
    if not value:
        return 'Unknown'
    for marker, label in STATUS_LABELS:
        if marker in value:
            return label
    return 'Confirmed'


def extract_guest_name(context: ExtractionContext) -> Optional[str]:
    return first_match(GUEST_NAME_EXTRACTORS, context)


def extract_guest_count(context: ExtractionContext) -> Optional[int]:
    return first_match(GUEST_COUNT_EXTRACTORS, context)


def extract_listing_title(context: ExtractionContext) -> Optional[str]:
    return first_match(LISTING_TITLE_EXTRACTORS, context)


def extract_source_ref(context: ExtractionContext) -> Optional[str]:
    return first_match(SOURCE_REF_EXTRACTORS, context)


def enrich_event(
    event: RawCalendarEvent,
    description: Optional[str] = None,
    attendees: Optional[List[str]] = None,
) -> EnrichedCalendarEvent:
    """
    Attach guest metadata to a parsed event.

    Missing metadata is normal and leaves the field as None.

    Args:
        event: Parsed calendar event
        description: Description override (defaults to event.description)
        attendees: ATTENDEE lines override (defaults to event.attendees)

    Returns:
        EnrichedCalendarEvent carrying the original fields
    """
    if description is None:
        description = event.description
    if attendees is None:
        attendees = event.attendees

    context = ExtractionContext(
        summary=(event.summary or '').strip(),
        description=html_to_text(description),
        attendees=list(attendees or []),
        organizer=event.organizer or '',
    )

    base = {f.name: getattr(event, f.name) for f in fields(RawCalendarEvent)}
    base['description'] = description
    base['attendees'] = list(attendees or [])

    guest_name = extract_guest_name(context)
    listing_title = extract_listing_title(context)
    # "Reservation confirmed - Name" puts the guest on the listing side
    if listing_title and listing_title == guest_name:
        listing_title = None

    return EnrichedCalendarEvent(
        **base,
        guest_name=guest_name,
        guests_count=extract_guest_count(context),
        listing_title=listing_title,
        source_ref=extract_source_ref(context),
        channel=detect_channel(event.summary, description, event.location),
        status_label=status_label(event.status),
    )


def enrich_events(events: List[RawCalendarEvent]) -> List[EnrichedCalendarEvent]:
    """Enrich a batch of events."""
    return [enrich_event(event) for event in events]
