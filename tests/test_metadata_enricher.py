"""Unit tests for the metadata enricher."""
import re

import pytest

from processor.metadata_enricher import (
    ExtractionContext,
    Extractor,
    RegexExtractor,
    detect_channel,
    enrich_event,
    extract_guest_count,
    extract_guest_name,
    extract_listing_title,
    extract_source_ref,
    first_match,
    html_to_text,
    status_label,
)
from processor.models import RawCalendarEvent


def _event(summary='', description=None, **kwargs):
    return RawCalendarEvent(start='2025-09-10', summary=summary, description=description, **kwargs)


class TestGuestName:
    """Guest name extraction precedence."""

    def test_reservation_confirmed_summary(self):
        enriched = enrich_event(_event('Reservation confirmed – Jane Doe'))

        assert enriched.guest_name == 'Jane Doe'
        assert enriched.listing_title is None

    def test_attendee_cn_wins(self):
        event = _event(
            'Mario Rossi (2)',
            attendees=['ATTENDEE;CN=Jane Doe;ROLE=REQ-PARTICIPANT:mailto:jane@example.com'],
        )

        assert enrich_event(event).guest_name == 'Jane Doe'

    def test_attendee_override_argument(self):
        enriched = enrich_event(_event('Reserved'), attendees=['ATTENDEE;CN="Doe, Jane":mailto:x@y.z'])

        assert enriched.guest_name == 'Doe, Jane'
        assert enriched.attendees == ['ATTENDEE;CN="Doe, Jane":mailto:x@y.z']

    def test_organizer_cn_before_summary(self):
        event = _event('Luca Bianchi (3)', organizer='ORGANIZER;CN=Anna Verdi:mailto:anna@example.com')

        assert enrich_event(event).guest_name == 'Anna Verdi'

    def test_booking_style_name_with_count(self):
        enriched = enrich_event(_event('Joanna Starczewska (2)'))

        assert enriched.guest_name == 'Joanna Starczewska'
        assert enriched.guests_count == 2

    def test_labeled_english_description(self):
        enriched = enrich_event(_event('Reserved', 'Guest: John Smith\nGuests: 3'))

        assert enriched.guest_name == 'John Smith'
        assert enriched.guests_count == 3

    def test_labeled_italian_description(self):
        enriched = enrich_event(_event('Prenotazione', 'Ospite: Giulia Neri\nOspiti: 4'))

        assert enriched.guest_name == 'Giulia Neri'
        assert enriched.guests_count == 4

    def test_channel_prefixed_summary(self):
        assert enrich_event(_event('Booking.com - Joanna Starczewska')).guest_name == 'Joanna Starczewska'

    def test_name_dash_listing(self):
        enriched = enrich_event(_event('Mario Rossi - Casa al Mare'))

        assert enriched.guest_name == 'Mario Rossi'
        assert enriched.listing_title == 'Casa al Mare'

    def test_leading_words(self):
        assert enrich_event(_event('Sophie Martin 12345')).guest_name == 'Sophie Martin'

    def test_non_name_tokens_rejected(self):
        assert enrich_event(_event('Reserved')).guest_name is None
        assert enrich_event(_event('Airbnb (Not available)')).guest_name is None
        assert enrich_event(_event('Booking')).guest_name is None

    def test_length_band(self):
        assert extract_guest_name(ExtractionContext(summary='J')) is None
        assert extract_guest_name(ExtractionContext(summary='A' * 60 + ' (2)')) is None

    def test_empty_event(self):
        enriched = enrich_event(_event(''))

        assert enriched.guest_name is None
        assert enriched.guests_count is None
        assert enriched.listing_title is None
        assert enriched.source_ref is None


class TestGuestCount:
    """Guest count extraction."""

    def test_parenthesized_count_preferred(self):
        context = ExtractionContext(summary='Jane (2)', description='Guests: 5')

        assert extract_guest_count(context) == 2

    def test_out_of_range_parenthesized_falls_back(self):
        context = ExtractionContext(summary='Villa (120)', description='pax: 6')

        assert extract_guest_count(context) == 6

    def test_adults_and_children_summed(self):
        context = ExtractionContext(description='Adults: 2, Children: 1')

        assert extract_guest_count(context) == 3

    def test_trailing_guests(self):
        assert extract_guest_count(ExtractionContext(description='Booking for 4 guests')) == 4

    def test_no_count(self):
        assert extract_guest_count(ExtractionContext(summary='Reserved')) is None

    def test_bound(self):
        assert extract_guest_count(ExtractionContext(description='Guests: 0')) is None
        assert extract_guest_count(ExtractionContext(description='Guests: 51')) is None


class TestListingTitle:
    """Listing title extraction."""

    def test_labeled_listing(self):
        context = ExtractionContext(summary='Reserved', description='Listing: Loft Navigli, Milano')

        assert extract_listing_title(context) == 'Loft Navigli'

    def test_italian_label(self):
        context = ExtractionContext(description='Proprietà: Villa Lucia')

        assert extract_listing_title(context) == 'Villa Lucia'

    def test_title_colon_split(self):
        assert extract_listing_title(ExtractionContext(summary='Attico Centro: Mario Rossi')) == 'Attico Centro'

    def test_stop_words_and_numbers_rejected(self):
        assert extract_listing_title(ExtractionContext(summary='Airbnb: Mario')) is None
        assert extract_listing_title(ExtractionContext(summary='12345: booked')) is None


class TestSourceRef:
    """Booking reference extraction."""

    def test_labeled_reservation(self):
        context = ExtractionContext(description='Reservation: ABC-12345')

        assert extract_source_ref(context) == 'ABC-12345'

    def test_italian_codice(self):
        assert extract_source_ref(ExtractionContext(description='Codice: 4455XZ')) == '4455XZ'

    def test_airbnb_confirmation_code(self):
        context = ExtractionContext(
            description='https://www.airbnb.com/hosting/reservations/details/HMABCD1234'
        )

        assert extract_source_ref(context) == 'HMABCD1234'

    def test_letters_and_digits(self):
        assert extract_source_ref(ExtractionContext(summary='BK12345678 Smith')) == 'BK12345678'

    def test_numeric_id(self):
        assert extract_source_ref(ExtractionContext(description='Prenotazione 3456789012')) == '3456789012'

    def test_too_short_rejected(self):
        assert extract_source_ref(ExtractionContext(description='Ref: AB')) is None


class TestHelpers:
    """Extractor chain and text helpers."""

    def test_first_match_order(self):
        extractors = [
            RegexExtractor('first', re.compile(r'a(\d)')),
            RegexExtractor('second', re.compile(r'b(\d)')),
        ]

        assert first_match(extractors, ExtractionContext(summary='b2 a1')) == '1'
        assert first_match(extractors, ExtractionContext(summary='b2')) == '2'
        assert first_match(extractors, ExtractionContext(summary='c3')) is None

    def test_html_description(self):
        description = '<p>Guest: <b>Jane Doe</b><br>Guests: 2</p><p>Listing: Loft</p>'

        assert html_to_text(description) == 'Guest: Jane Doe\nGuests: 2\nListing: Loft'

        enriched = enrich_event(_event('Reserved', description))
        assert enriched.guest_name == 'Jane Doe'
        assert enriched.guests_count == 2
        assert enriched.description == description

    def test_plain_text_untouched(self):
        assert html_to_text('Guest: Jane') == 'Guest: Jane'
        assert html_to_text(None) == ''

    def test_detect_channel(self):
        assert detect_channel('Airbnb (Not available)') == 'airbnb'
        assert detect_channel('Reserved', 'Booking.com reservation') == 'booking.com'
        assert detect_channel(None, 'via VRBO') == 'vrbo'
        assert detect_channel('Reserved') == 'other'

    def test_to_dict_drops_empty_fields(self):
        data = enrich_event(_event('Jane Doe (2)', uid='u1')).to_dict()

        assert data['guest_name'] == 'Jane Doe'
        assert data['guests_count'] == 2
        assert data['uid'] == 'u1'
        assert 'attendees' not in data
        assert 'source_ref' not in data

    def test_extractor_requires_extract(self):
        with pytest.raises(TypeError):
            Extractor()


class TestStatusLabel:
    """Readable status labels for the preview."""

    def test_labels(self):
        assert status_label('CANCELLED') == 'Cancelled'
        assert status_label('TENTATIVE') == 'Tentative'
        assert status_label('CONFIRMED') == 'Confirmed'
        assert status_label(None) == 'Unknown'
        assert status_label('  ') == 'Unknown'

    def test_enriched_event_carries_label(self):
        assert enrich_event(_event('Reserved', status='CANCELLED')).status_label == 'Cancelled'
        assert enrich_event(_event('Reserved')).to_dict()['status_label'] == 'Unknown'
