import json
from unittest.mock import Mock

import cherrypy
import pytest

from eventdesk import checkout
from eventdesk.config import c
from eventdesk.models import Session, TeamMember
from eventdesk.payments import verify_payment
from eventdesk.site_sections import payments
from tests.eventdesk.conftest import decode, event_id, ticket_id


@pytest.fixture
def intent_id(gateway):
    with Session() as session:
        response = checkout.start_individual_checkout(
            session, event_id(), {'name': 'Meera Nair', 'email': 'meera@example.com'},
            tickets=[{'ticket_type_id': ticket_id('Delegate')}], gateway=gateway)
    return response['intent_id']


@pytest.fixture
def webhook_request(monkeypatch):
    def post(payload, signature='valid-signature'):
        monkeypatch.setattr(cherrypy.request, 'body', Mock(read=Mock(return_value=payload)), raising=False)
        monkeypatch.setitem(cherrypy.request.headers, 'Stripe-Signature', signature)
        return decode(payments.Root().webhook())
    return post


def test_verify(POST, csrf_token, gateway, intent_id, queued_tasks):
    gateway.succeed(intent_id)
    response = decode(payments.Root().verify(intent_id=intent_id))
    assert response['success']
    assert response['registrations'][0]['status'] == c.REG_CONFIRMED
    assert queued_tasks['run_auto_actions'].called


def test_verify_unpaid(POST, csrf_token, gateway, intent_id):
    response = decode(payments.Root().verify(intent_id=intent_id))
    assert not response['success']
    assert cherrypy.response.status == 400
    with Session() as session:
        assert session.payment_by_intent(intent_id).status == c.PAYMENT_PENDING


def test_webhook(gateway, intent_id, webhook_request):
    gateway.succeed(intent_id)
    payload = json.dumps({'type': 'payment_intent.succeeded', 'data': {'object': gateway.intents[intent_id]}})
    assert webhook_request(payload.encode('utf-8'))['received']
    with Session() as session:
        assert session.payment_by_intent(intent_id).status == c.PAYMENT_COMPLETED


def test_webhook_bad_signature(gateway, webhook_request):
    response = webhook_request(b'{}', signature='t=1,v1=forged')
    assert response == {'success': False, 'error': 'Invalid webhook signature'}
    assert cherrypy.response.status == 400


class TestRefund:
    @pytest.fixture
    def payment_id(self, gateway, intent_id):
        gateway.succeed(intent_id)
        with Session() as session:
            return verify_payment(session, intent_id, gateway=gateway)['payment']['id']

    def test_requires_login(self, POST, csrf_token, payment_id):
        response = decode(payments.Root().refund(id=payment_id))
        assert cherrypy.response.status == 401
        assert not response['success']

    def test_partial(self, POST, csrf_token, admin_login, gateway, payment_id):
        response = decode(payments.Root().refund(id=payment_id, amount='90000', reason='Skipping the dinner'))
        assert response['payment']['status'] == c.PAYMENT_PARTIALLY_REFUNDED
        assert response['payment']['refund_amount'] == 90000
        assert gateway.refunds[0]['amount'] == 90000

    def test_too_much(self, POST, csrf_token, admin_login, gateway, payment_id):
        response = decode(payments.Root().refund(id=payment_id, amount='9999999'))
        assert not response['success']
        assert not gateway.refunds

    def test_amount_not_a_number(self, POST, csrf_token, admin_login, gateway, payment_id):
        response = decode(payments.Root().refund(id=payment_id, amount='ninety'))
        assert response == {'success': False, 'error': "'ninety' is not a valid refund amount"}
        assert cherrypy.response.status == 400
        assert not gateway.refunds

    def test_without_event_access(self, POST, csrf_token, payment_id):
        with Session() as session:
            session.payment(payment_id).event_id = event_id('hidden-summit')
        cherrypy.session['team_email'] = 'registrar@example.com'
        with Session() as session:
            session.add(TeamMember(email='registrar@example.com', name='Reg', role=[c.COORDINATOR_ROLE],
                                   permissions=[c.REGISTRATIONS], event_ids=[event_id()]))
        response = decode(payments.Root().refund(id=payment_id))
        assert cherrypy.response.status == 403
        assert response['error'] == 'You do not have access to this event.'


class TestRecordManual:
    @pytest.fixture
    def payment_id(self, gateway):
        attendees = [{'name': 'Anita Desai', 'email': 'anita@example.com', 'ticket_type_id': ticket_id('Delegate')}]
        with Session() as session:
            response = checkout.start_group_checkout(
                session, event_id(), {'name': 'Buyer', 'email': 'buyer@example.com'}, attendees,
                payment_method='bank_transfer', gateway=gateway)
        return response['payment_id']

    def test_requires_login(self, POST, csrf_token, payment_id):
        response = decode(payments.Root().record_manual(id=payment_id))
        assert cherrypy.response.status == 401
        assert not response['success']

    def test_recorded(self, POST, csrf_token, admin_login, payment_id, queued_tasks):
        response = decode(payments.Root().record_manual(id=payment_id, reference='UTR 4471'))
        assert response['payment']['status'] == c.PAYMENT_COMPLETED
        assert response['registrations'][0]['status'] == c.REG_CONFIRMED
        assert queued_tasks['run_auto_actions'].called

    def test_without_event_access(self, POST, csrf_token, payment_id):
        with Session() as session:
            session.add(TeamMember(email='registrar@example.com', name='Reg', role=[c.COORDINATOR_ROLE],
                                   permissions=[c.REGISTRATIONS], event_ids=[event_id('hidden-summit')]))
        cherrypy.session['team_email'] = 'registrar@example.com'
        response = decode(payments.Root().record_manual(id=payment_id))
        assert cherrypy.response.status == 403
        with Session() as session:
            assert session.payment(payment_id).status == c.PAYMENT_PENDING
