import pytest

from eventdesk import checkout
from eventdesk.checkin import CHECK_OUT, TOGGLE, bulk_check_in, check_in, search
from eventdesk.errors import ValidationError
from eventdesk.models import CheckinList, Registration, Session
from tests.eventdesk.conftest import addon_id, event_id, ticket_id


def register(session, name, email, ticket='Faculty'):
    return checkout.register_free(session, event_id(), {'name': name, 'email': email, 'phone': '9847012345'},
                                  ticket_id(ticket))


def checkin_list(session, **kwargs):
    values = dict(event_id=event_id(), name='Main Entrance', is_main=True)
    values.update(kwargs)
    door = CheckinList(**values)
    session.add(door)
    session.flush()
    return door


class TestCheckIn:
    def test_check_in_and_out(self):
        with Session() as session:
            door = checkin_list(session)
            registration = register(session, 'Anita Desai', 'anita@example.com')

            result = check_in(session, door, registration, user='door@example.com')
            assert result['result'] == 'checked_in'
            assert result['checked_in_at']
            assert registration.checked_in
            assert registration.checked_in_by == 'door@example.com'

            assert check_in(session, door, registration)['result'] == 'already_checked_in'

            assert check_in(session, door, registration, CHECK_OUT)['result'] == 'checked_out'
            assert not registration.checked_in
            assert registration.checked_in_at is None
            assert check_in(session, door, registration, CHECK_OUT)['result'] == 'already_checked_out'

    def test_toggle(self):
        with Session() as session:
            door = checkin_list(session)
            registration = register(session, 'Anita Desai', 'anita@example.com')
            assert check_in(session, door, registration, TOGGLE)['result'] == 'checked_in'
            assert check_in(session, door, registration, TOGGLE)['result'] == 'checked_out'
            assert check_in(session, door, registration, TOGGLE)['result'] == 'checked_in'
            assert len(door.records) == 1

    def test_other_lists_leave_main_flag_alone(self):
        with Session() as session:
            workshop = checkin_list(session, name='Workshop Hall', is_main=False)
            registration = register(session, 'Anita Desai', 'anita@example.com')
            assert check_in(session, workshop, registration)['result'] == 'checked_in'
            assert not registration.checked_in

    def test_unknown_action(self):
        with Session() as session:
            door = checkin_list(session)
            registration = register(session, 'Anita Desai', 'anita@example.com')
            with pytest.raises(ValidationError):
                check_in(session, door, registration, 'teleport')

    def test_check_in_is_saved(self):
        with Session() as session:
            door = checkin_list(session)
            registration = register(session, 'Anita Desai', 'anita@example.com')
            check_in(session, door, registration)
            registration_id = registration.id
        with Session() as session:
            registration = session.registration(registration_id)
            assert registration.checked_in
            assert registration.checkin_records[0].is_checked_in


class TestEligibility:
    def test_pending_registration(self):
        with Session() as session:
            door = checkin_list(session)
            registration = Registration(
                event=session.event(event_id()), ticket_type=session.ticket_type(ticket_id('Delegate')),
                attendee_name='Unpaid Person', attendee_email='unpaid@example.com')
            session.add(registration)
            session.flush()
            with pytest.raises(ValidationError) as e:
                check_in(session, door, registration)
            assert 'pending' in e.value.message

    def test_closed_list(self):
        with Session() as session:
            door = checkin_list(session, is_active=False)
            with pytest.raises(ValidationError) as e:
                check_in(session, door, register(session, 'Anita Desai', 'anita@example.com'))
            assert 'closed' in e.value.message

    def test_ticket_type_restriction(self):
        with Session() as session:
            door = checkin_list(session, name='Faculty Lounge', is_main=False,
                                ticket_type_ids=[ticket_id('Delegate')])
            with pytest.raises(ValidationError) as e:
                check_in(session, door, register(session, 'Anita Desai', 'anita@example.com'))
            assert e.value.message == 'Faculty tickets are not valid for Faculty Lounge'

    def test_addon_restriction(self):
        with Session() as session:
            door = checkin_list(session, name='Ultrasound Lab', is_main=False,
                                addon_ids=[addon_id('Ultrasound Workshop')])
            registration = register(session, 'Anita Desai', 'anita@example.com')
            with pytest.raises(ValidationError):
                check_in(session, door, registration)

            registration.add_addon(session.addon(addon_id('Ultrasound Workshop')))
            assert check_in(session, door, registration)['result'] == 'checked_in'

    def test_other_event(self):
        with Session() as session:
            door = checkin_list(session, event_id=event_id('hidden-summit'))
            with pytest.raises(ValidationError) as e:
                check_in(session, door, register(session, 'Anita Desai', 'anita@example.com'))
            assert 'different event' in e.value.message


class TestBulkCheckIn:
    def test_collects_errors(self):
        with Session() as session:
            door = checkin_list(session)
            ids = [register(session, 'Anita Desai', 'anita@example.com').id,
                   register(session, 'Rahul Iyer', 'rahul@example.com').id]
            result = bulk_check_in(session, door, ids + ['00000000-0000-0000-0000-000000000000'],
                                   user='door@example.com')
            assert result['processed'] == 2
            assert [r['result'] for r in result['results']] == ['checked_in', 'checked_in']
            assert len(result['errors']) == 1
            assert result['errors'][0]['id'] == '00000000-0000-0000-0000-000000000000'


class TestSearch:
    @pytest.fixture
    def attendees(self):
        with Session() as session:
            door = checkin_list(session)
            anita = register(session, 'Anita Desai', 'anita@example.com')
            register(session, 'Rahul Iyer', 'rahul@example.com')
            check_in(session, door, anita)
            return {'list_id': door.id, 'anita': anita.registration_number, 'token': anita.checkin_token}

    @pytest.mark.parametrize('query,names', [
        ('', ['Anita Desai', 'Rahul Iyer']),
        ('anita', ['Anita Desai']),
        ('RAHUL@EXAMPLE', ['Rahul Iyer']),
        ('nobody', []),
    ])
    def test_by_text(self, attendees, query, names):
        with Session() as session:
            assert [r['attendee_name'] for r in search(session, event_id(), query)] == names

    def test_by_number_and_token(self, attendees):
        with Session() as session:
            assert search(session, event_id(), attendees['anita'])[0]['attendee_name'] == 'Anita Desai'
            assert search(session, event_id(), attendees['token'])[0]['attendee_name'] == 'Anita Desai'

    def test_checked_in_filter(self, attendees):
        with Session() as session:
            assert [r['attendee_name'] for r in search(session, event_id(), checked_in=True)] == ['Anita Desai']
            assert [r['attendee_name'] for r in search(session, event_id(), checked_in=False)] == ['Rahul Iyer']

    def test_list_status(self, attendees):
        with Session() as session:
            door = session.checkin_list(attendees['list_id'])
            results = search(session, event_id(), checkin_list=door, checked_in=False)
            assert [r['attendee_name'] for r in results] == ['Rahul Iyer']
            assert results[0]['list_checked_in'] is False
            assert results[0]['eligible']
