"""Parser turning raw ICS calendar text into events."""
import logging
import math
import re
from datetime import datetime
from typing import List, Optional, Tuple

from processor.models import RawCalendarEvent

logger = logging.getLogger(__name__)

_LINE_BREAK = re.compile(r'\r\n|\n|\r')
_DATE_ONLY = re.compile(r'^\d{8}$')
_DATE_TIME = re.compile(r'^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})(Z?)$')
_ISO_DATE = re.compile(r'^\d{4}-\d{2}-\d{2}')
# Some feeds join the parameter block and the value with '=' instead of ':'
_EQUALS_DATE_LINE = re.compile(r'^(.+)=(\d{8}(?:T\d{6}Z?)?)$')

_DATE_PROPERTIES = ('DTSTART', 'DTEND', 'DTSTAMP')

_FALLBACK_DATE_FORMATS = [
    '%Y/%m/%d',
    '%m/%d/%Y',
    '%d.%m.%Y',
    '%B %d, %Y',
    '%b %d, %Y',
    '%d %B %Y',
    '%d %b %Y',
    '%a, %d %b %Y %H:%M:%S',
    '%a, %d %b %Y %H:%M:%S %Z',
]

_TEXT_ESCAPE = re.compile(r'\\([nNt\\;,])')
_ESCAPED_CHARS = {'n': '\n', 'N': '\n', 't': '\t'}

_DURATION = re.compile(
    r'^[+-]?P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?'
    r'(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$'
)


def parse_ics(text: str) -> List[RawCalendarEvent]:
    """
    Parse ICS text into calendar events.

    Lines that cannot be understood are skipped; events without a start
    date are dropped.

    Args:
        text: Raw calendar text

    Returns:
        List of RawCalendarEvent objects in feed order
    """
    events = []
    current = None

    for line in unfold_lines(text or ''):
        line = line.strip()
        upper = line.upper()

        if upper == 'BEGIN:VEVENT':
            current = {'attendees': []}
            continue

        if upper == 'END:VEVENT':
            if current is not None and current.get('start'):
                events.append(RawCalendarEvent(**current))
            elif current is not None:
                logger.debug("Dropping VEVENT without DTSTART")
            current = None
            continue

        if current is None:
            continue

        parsed = _split_property(line)
        if parsed is None:
            continue
        key, value = parsed
        _apply_property(current, key, value, line)

    logger.debug(f"Parsed {len(events)} events from calendar")
    return events


def unfold_lines(text: str) -> List[str]:
    """
    Split text into logical lines, joining folded continuations.

    A physical line starting with a single space or tab continues the
    previous logical line; that one whitespace character is removed.
    """
    logical = []
    for physical in _LINE_BREAK.split(text):
        if physical[:1] in (' ', '\t') and logical:
            logical[-1] += physical[1:]
        else:
            logical.append(physical)
    return logical


def _split_property(line: str) -> Optional[Tuple[str, str]]:
    if ':' in line:
        key, value = line.split(':', 1)
        return key, value

    name = line.split(';', 1)[0].upper()
    if name in _DATE_PROPERTIES:
        match = _EQUALS_DATE_LINE.match(line)
        if match:
            return match.group(1), match.group(2)
    return None


def _apply_property(current: dict, key: str, value: str, line: str) -> None:
    name = key.split(';', 1)[0].strip().upper()
    params = key[len(name):].upper()

    if name == 'UID':
        current['uid'] = value
    elif name == 'DTSTART':
        current['start'] = normalize_ics_date(value, params)
    elif name == 'DTEND':
        current['end'] = normalize_ics_date(value, params)
    elif name == 'DTSTAMP':
        current['dtstamp'] = normalize_ics_date(value, params)
    elif name == 'DURATION':
        current['duration'] = value
    elif name == 'SUMMARY':
        current['summary'] = unescape_text(value)
    elif name == 'DESCRIPTION':
        current['description'] = unescape_text(value)
    elif name == 'LOCATION':
        current['location'] = unescape_text(value)
    elif name == 'STATUS':
        current['status'] = value
    elif name == 'ATTENDEE':
        current['attendees'].append(line)
    elif name == 'ORGANIZER':
        current['organizer'] = line


def normalize_ics_date(value: str, params: str = '') -> str:
    """
    Normalize an ICS date or date-time value.

    Args:
        value: Raw property value (e.g. 20250910 or 20250910T140000Z)
        params: Parameter block of the property (e.g. ;VALUE=DATE)

    Returns:
        YYYY-MM-DD for dates, YYYY-MM-DDTHH:MM:SS[Z] for date-times, or
        the original value if it cannot be interpreted
    """
    if not value:
        return ''
    value = value.strip()

    if ('VALUE=DATE' in params.upper() or _DATE_ONLY.match(value)) and len(value) == 8:
        return f"{value[0:4]}-{value[4:6]}-{value[6:8]}"

    match = _DATE_TIME.match(value)
    if match:
        year, month, day, hour, minute, second, zone = match.groups()
        return f"{year}-{month}-{day}T{hour}:{minute}:{second}{zone}"

    if _ISO_DATE.match(value):
        return value

    for fmt in _FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).strftime('%Y-%m-%d')
        except ValueError:
            continue

    logger.warning(f"Could not parse date: {value}")
    return value


def unescape_text(text: str) -> str:
    """Decode ICS TEXT escapes."""
    if not text:
        return ''
    return _TEXT_ESCAPE.sub(lambda m: _ESCAPED_CHARS.get(m.group(1), m.group(1)), text)


def parse_duration_days(duration: Optional[str]) -> int:
    """
    Convert an ISO 8601 duration to whole days.

    Partial days are rounded up and the result is at least one day, so
    PT2H blocks the start date and P1DT12H blocks two days.

    Args:
        duration: Duration such as P1D, P1W, PT36H or P1DT12H

    Returns:
        Number of days
    """
    if not duration:
        return 1
    match = _DURATION.match(duration.strip().upper())
    if not match:
        return 1

    parts = {key: int(val) for key, val in match.groupdict().items() if val}
    total_days = (
        parts.get('weeks', 0) * 7
        + parts.get('days', 0)
        + parts.get('hours', 0) / 24
        + parts.get('minutes', 0) / 1440
        + parts.get('seconds', 0) / 86400
    )
    return max(1, math.ceil(total_days))
