from datetime import date

import pytest

from eventdesk.config import c
from eventdesk.models import Event, Registration, Session, TicketType
from tests.eventdesk.conftest import EVENT_SLUG, event_id


class TestEvent:
    def test_public_query_only_published_public_events(self):
        with Session() as session:
            names = [e.name for e in Event.public_query(session)]
        assert names == ['Medicon 2026']

    def test_slug_generated_from_name(self):
        with Session() as session:
            event = Event(name='Cardio Update: Chennai')
            session.add(event)
            session.flush()
            assert event.slug == 'cardio-update-chennai'

    def test_duplicate_slug_gets_suffix(self):
        with Session() as session:
            event = Event(name='Medicon 2026')
            session.add(event)
            session.flush()
            assert event.slug == EVENT_SLUG + '-2'

    @pytest.mark.parametrize('short_name,name,expected', [
        ('MEDI', 'Medicon 2026', 'MEDI'),
        ('', 'AMASICON 2026', 'AMAS'),
        ('', 'A.I.', 'AI'),
        ('', '', 'EVT'),
    ])
    def test_short_code(self, short_name, name, expected):
        assert Event(short_name=short_name, name=name).short_code == expected

    def test_setting(self):
        event = Event(settings={'auto_send_badge': True})
        assert event.setting('auto_send_badge') is True
        assert event.setting('auto_send_receipt', True) is True
        assert Event().setting('anything') is None

    @pytest.mark.parametrize('status,registration_open,expected', [
        (c.EVENT_PUBLISHED, True, True),
        (c.EVENT_PUBLISHED, False, False),
        (c.EVENT_DRAFT, True, False),
        (c.EVENT_CANCELLED, True, False),
    ])
    def test_is_accepting_registrations(self, status, registration_open, expected):
        assert Event(status=status, registration_open=registration_open).is_accepting_registrations == expected

    def test_public_dict_hides_settings(self):
        with Session() as session:
            data = session.event(event_id()).to_public_dict()
        assert data['slug'] == EVENT_SLUG
        assert data['registration_open']
        assert 'settings' not in data
        assert 'status' not in data


class TestEventSummaries:
    def _register(self, session, event, ticket_name, status, checked_in=False):
        ticket = session.query(TicketType).filter_by(name=ticket_name).one()
        registration = Registration(
            event=event, ticket_type=ticket, attendee_name='Someone', attendee_email='someone@example.com',
            unit_price=ticket.price, total_amount=ticket.price, checked_in=checked_in)
        session.add(registration)
        session.flush()
        if status == c.REG_CONFIRMED:
            registration.confirm()
        else:
            registration.status = status
        session.flush()
        return registration

    def test_registration_summary(self):
        with Session() as session:
            event = session.event(event_id())
            self._register(session, event, 'Delegate', c.REG_CONFIRMED, checked_in=True)
            self._register(session, event, 'Delegate', c.REG_CONFIRMED)
            self._register(session, event, 'Student', c.REG_PENDING)
            self._register(session, event, 'Student', c.REG_CANCELLED)

            summary = event.registration_summary()
            assert summary['total'] == 4
            assert summary['by_status']['reg_confirmed'] == 2
            assert summary['by_status']['reg_pending'] == 1
            assert summary['by_status']['reg_cancelled'] == 1
            assert summary['by_status']['reg_waitlist'] == 0
            assert summary['checked_in'] == 1
            assert summary['revenue'] == 1000000

    def test_ticket_sales_summary(self):
        with Session() as session:
            event = session.event(event_id())
            self._register(session, event, 'Delegate', c.REG_CONFIRMED)
            sales = {row['name']: row for row in event.ticket_sales_summary()}
            assert sales['Delegate']['quantity_sold'] == 1
            assert sales['Delegate']['quantity_available'] == 99
            assert sales['Delegate']['revenue'] == 500000
            assert sales['Faculty']['quantity_available'] is None
            assert sales['Student']['revenue'] == 0

    def test_is_full(self):
        with Session() as session:
            event = session.event(event_id())
            event.max_attendees = 1
            assert not event.is_full
            self._register(session, event, 'Delegate', c.REG_CONFIRMED)
            assert event.is_full

    def test_upcoming_and_ongoing(self):
        assert not Event().is_upcoming
        assert Event(start_date=date(2999, 1, 1)).is_upcoming
        assert not Event(start_date=date(2000, 1, 1), end_date=date(2000, 1, 2)).is_ongoing
