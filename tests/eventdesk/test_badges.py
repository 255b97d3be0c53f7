from io import BytesIO

import pytest
from pypdf import PdfReader

from eventdesk import checkout
from eventdesk.badges import DEFAULT_TEMPLATE, apply_text_case, badge_size, fill_placeholders, hex_to_rgb, \
    render_badges, sheet_layout, verify_badge
from eventdesk.config import c
from eventdesk.errors import NotFound, ValidationError
from eventdesk.models import Registration, Session
from tests.eventdesk.conftest import event_id, ticket_id


def register(session, name='Anita Desai', email='anita@example.com'):
    return checkout.register_free(
        session, event_id(), {'name': name, 'email': email, 'institution': 'Kasturba Medical College'},
        ticket_id('Faculty'))


@pytest.mark.parametrize('value,rgb', [
    ('#ff0000', (1.0, 0.0, 0.0)),
    ('00FF00', (0.0, 1.0, 0.0)),
    ('#fff', (0.0, 0.0, 0.0)),
    ('blue', (0.0, 0.0, 0.0)),
    (None, (0.0, 0.0, 0.0)),
])
def test_hex_to_rgb(value, rgb):
    assert hex_to_rgb(value) == rgb


@pytest.mark.parametrize('text_case,expected', [
    (None, 'dr. anita desai'),
    ('none', 'dr. anita desai'),
    ('upper', 'DR. ANITA DESAI'),
    ('uppercase', 'DR. ANITA DESAI'),
    (c.CASE_LOWER, 'dr. anita desai'),
    ('capitalize', 'Dr. Anita Desai'),
])
def test_apply_text_case(text_case, expected):
    assert apply_text_case('dr. anita desai', text_case) == expected


def test_capitalize_after_periods():
    assert apply_text_case('DR.A. DESAI', 'capitalize') == 'Dr.A. Desai'


class TestBadgeSize:
    def test_default(self):
        assert badge_size({}) == c.BADGE_SIZES[c.DEFAULT_BADGE_SIZE]
        assert badge_size(None) == (288, 216)

    def test_named(self):
        assert badge_size({'size': '4x6'}) == (288, 432)

    def test_unknown(self):
        with pytest.raises(ValidationError):
            badge_size({'size': 'billboard'})


class TestPlaceholders:
    def test_fill(self):
        with Session() as session:
            registration = register(session)
            text = fill_placeholders(
                '{{ name }} | {{event_name}} | {{event_date}} | {{ticket_type}} | {{institution}} | {{bogus}}',
                registration, registration.event)
        assert text == 'Anita Desai | Medicon 2026 | 3 Dec - 5 Dec 2026 | Faculty | ' \
                       'Kasturba Medical College | {{bogus}}'

    def test_verify_url(self):
        with Session() as session:
            registration = register(session)
            token = registration.checkin_token
            assert fill_placeholders('{{verify_url}}', registration, registration.event) == \
                c.CHECKIN_LINK_BASE + token
            assert fill_placeholders('{{verify_url}}', registration, registration.event,
                                     base_url='https://badges.example.com/') == 'https://badges.example.com/v/' + token

    def test_empty_values(self):
        with Session() as session:
            registration = register(session)
            assert fill_placeholders('[{{phone}}]', registration, registration.event) == '[]'
            assert fill_placeholders(None, registration, registration.event) == ''


class TestRenderBadges:
    def test_one_page_per_registration(self):
        with Session() as session:
            registrations = [register(session), register(session, 'Rahul Iyer', 'rahul@example.com')]
            pdf = render_badges(registrations, registrations[0].event)
            assert all(r.badge_generated_at for r in registrations)

        assert pdf.startswith(b'%PDF')
        reader = PdfReader(BytesIO(pdf))
        assert len(reader.pages) == 2
        assert 'ANITA DESAI' in reader.pages[0].extract_text()
        assert float(reader.pages[0].mediabox.width) == 288

    def test_saved_template(self):
        template = {
            'size': '4x6',
            'text_case': 'upper',
            'elements': [
                {'type': 'shape', 'x': 0, 'y': 0, 'width': 288, 'height': 30, 'color': '#1f2937'},
                {'type': 'text', 'content': '{{event_name}}', 'x': 10, 'y': 40, 'width': 268, 'height': 30},
                {'type': 'line', 'x': 10, 'y': 80, 'width': 268, 'height': 1},
                {'type': 'qr_code', 'content': '{{verify_url}}', 'x': 94, 'y': 100, 'width': 100, 'height': 100},
                {'type': 'text', 'content': 'hidden', 'visible': False},
                {'type': 'sticker'},
            ],
        }
        with Session() as session:
            registration = register(session)
            registration.event.settings = dict(registration.event.settings or {}, badge_template=template)
            pdf = render_badges([registration], registration.event)

        page = PdfReader(BytesIO(pdf)).pages[0]
        assert float(page.mediabox.height) == 432
        text = page.extract_text()
        assert 'MEDICON 2026' in text
        assert 'hidden' not in text.lower()

    def test_long_names_still_render(self):
        with Session() as session:
            registration = register(session, 'Venkatanarasimharajuvaripeta Subrahmanyam Chandrasekharan')
            assert render_badges([registration], registration.event, DEFAULT_TEMPLATE).startswith(b'%PDF')

    def test_nothing_to_print(self):
        with Session() as session, pytest.raises(ValidationError):
            render_badges([], session.event(event_id()))

    def test_sheet_of_badges(self):
        with Session() as session:
            registrations = [register(session, 'Attendee {}'.format(i), 'attendee{}@example.com'.format(i))
                             for i in range(7)]
            pdf = render_badges(registrations, registrations[0].event, sheet=True)

        reader = PdfReader(BytesIO(pdf))
        assert len(reader.pages) == 2
        assert (float(reader.pages[0].mediabox.width), float(reader.pages[0].mediabox.height)) == (595, 842)
        assert 'ATTENDEE 5' in reader.pages[0].extract_text()
        assert 'ATTENDEE 6' in reader.pages[1].extract_text()


class TestSheetLayout:
    def test_four_by_three(self):
        slots = sheet_layout(288, 216)
        assert len(slots) == 6
        assert slots[0] == (9.5, 529.0)
        assert slots[1] == (297.5, 529.0)
        assert slots[-1] == (297.5, 97.0)

    def test_too_big(self):
        with pytest.raises(ValidationError):
            sheet_layout(600, 216)


class TestVerifyBadge:
    def test_confirmed(self):
        with Session() as session:
            token = register(session).checkin_token
        with Session() as session:
            result = verify_badge(session, token)
        assert result['valid']
        assert result['attendee_name'] == 'Anita Desai'
        assert result['ticket_type'] == 'Faculty'
        assert not result['checked_in']
        assert result['event']['name'] == 'Medicon 2026'
        assert result['event']['dates'] == '3 Dec - 5 Dec 2026'
        assert 'attendee_email' not in result

    def test_cancelled(self):
        with Session() as session:
            registration = register(session)
            registration.cancel()
            token = registration.checkin_token
        with Session() as session:
            result = verify_badge(session, token)
        assert not result['valid']
        assert result['status'] == 'Cancelled'

    def test_unknown_token(self):
        with Session() as session, pytest.raises(NotFound):
            verify_badge(session, 'not-a-real-token')

    def test_pending_registration_is_not_valid(self):
        with Session() as session:
            registration = Registration(
                event=session.event(event_id()), ticket_type=session.ticket_type(ticket_id('Delegate')),
                attendee_name='Unpaid Person', attendee_email='unpaid@example.com')
            session.add(registration)
            session.flush()
            assert not verify_badge(session, registration.checkin_token)['valid']
