import json
import os
import shutil
from datetime import date, timedelta
from unittest.mock import Mock

import cherrypy
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from eventdesk import checkout, payments
from eventdesk.config import c
from eventdesk.errors import PaymentError
from eventdesk.models import Addon, DiscountCode, Event, Session, TeamMember, TicketType, initialize_db
from eventdesk.utils import utcnow


TEST_DB_FILE = c.TEST_DB_FILE

EVENT_SLUG = 'medicon-2026'


def event_id(slug=EVENT_SLUG):
    with Session() as session:
        return session.query(Event).filter_by(slug=slug).one().id


def ticket_id(name):
    with Session() as session:
        return session.query(TicketType).filter_by(name=name).one().id


def addon_id(name):
    with Session() as session:
        return session.query(Addon).filter_by(name=name).one().id


def decode(response):
    return json.loads(response.decode('utf-8') if isinstance(response, bytes) else response)


class FakeGateway:
    """Stands in for PaymentGateway, keeping intents in memory instead of at Stripe."""
    def __init__(self):
        self.intents = {}
        self.refunds = []

    def create_intent(self, amount, currency=None, description='', receipt_email='', metadata=None,
                      idempotency_key=None):
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise PaymentError('Payment amount must be a positive whole number, not {!r}', amount)
        intent_id = 'pi_test_{}'.format(len(self.intents) + 1)
        self.intents[intent_id] = {
            'id': intent_id,
            'client_secret': intent_id + '_secret',
            'amount': amount,
            'currency': (currency or c.CURRENCY).lower(),
            'status': 'requires_payment_method',
            'receipt_email': receipt_email,
            'metadata': {k: str(v) for k, v in (metadata or {}).items()},
            'idempotency_key': idempotency_key,
            'latest_charge': None,
        }
        return self.intents[intent_id]

    def retrieve_intent(self, intent_id):
        if intent_id not in self.intents:
            raise PaymentError('The payment gateway could not look up the payment', status=502)
        return self.intents[intent_id]

    def succeed(self, intent_id):
        self.intents[intent_id].update(status='succeeded', latest_charge='ch_' + intent_id)

    def refund(self, intent_id, amount=None, reason=''):
        refund = {'id': 're_test_{}'.format(len(self.refunds) + 1), 'payment_intent': intent_id, 'amount': amount}
        self.refunds.append(refund)
        return refund

    def construct_webhook_event(self, payload, sig_header):
        if sig_header != 'valid-signature':
            raise PaymentError('Invalid webhook signature', status=400)
        return json.loads(payload)


@pytest.fixture()
def GET(monkeypatch):
    monkeypatch.setattr(cherrypy.request, 'method', 'GET')


@pytest.fixture()
def POST(monkeypatch):
    monkeypatch.setattr(cherrypy.request, 'method', 'POST')


@pytest.fixture()
def csrf_token(monkeypatch):
    token = '4a2cc6f4-bf9f-49d2-a925-00ff4e22ae4a'
    monkeypatch.setitem(cherrypy.session, 'csrf_token', token)
    monkeypatch.setitem(cherrypy.request.headers, 'CSRF-Token', token)
    yield token


@pytest.fixture()
def admin_login():
    cherrypy.session['team_email'] = 'admin@example.com'
    yield 'admin@example.com'
    cherrypy.session.pop('team_email', None)


@pytest.fixture()
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(checkout, 'PaymentGateway', lambda: fake)
    monkeypatch.setattr(payments, 'PaymentGateway', lambda: fake)
    return fake


@pytest.fixture(autouse=True)
def queued_tasks(monkeypatch):
    """Celery tasks queued by the code under test are recorded rather than sent to a broker."""
    from eventdesk.tasks import email as email_tasks
    from eventdesk.tasks import registration as registration_tasks
    queued = {
        'run_auto_actions': Mock(),
        'send_receipt': Mock(),
        'send_badge_email': Mock(),
        'send_magic_link': Mock(),
    }
    monkeypatch.setattr(registration_tasks.run_auto_actions, 'delay', queued['run_auto_actions'])
    monkeypatch.setattr(email_tasks.send_receipt, 'delay', queued['send_receipt'])
    monkeypatch.setattr(email_tasks.send_badge_email, 'delay', queued['send_badge_email'])
    monkeypatch.setattr(email_tasks.send_magic_link, 'delay', queued['send_magic_link'])
    return queued


@pytest.fixture(scope='session', autouse=True)
def init_db(request):
    if os.path.exists(TEST_DB_FILE):
        os.remove(TEST_DB_FILE)
    Session.bind(create_engine('sqlite:///' + TEST_DB_FILE, poolclass=NullPool))
    initialize_db(modify_tables=True, drop=True)

    with Session() as session:
        event = Event(
            name='Medicon 2026',
            short_name='MEDI',
            slug=EVENT_SLUG,
            venue='Convention Centre',
            city='Kochi',
            start_date=date(2026, 12, 3),
            end_date=date(2026, 12, 5),
            status=c.EVENT_PUBLISHED,
            is_public=True,
            registration_open=True,
            contact_email='desk@medicon.example.com')
        session.add(event)
        session.add_all([
            TicketType(event=event, name='Delegate', price=500000, tax_percentage=18,
                       status=c.TICKET_ACTIVE, quantity_total=100, sort_order=1),
            TicketType(event=event, name='Student', price=200000, tax_percentage=18,
                       status=c.TICKET_ACTIVE, quantity_total=2, sort_order=2),
            TicketType(event=event, name='Faculty', price=0, tax_percentage=0,
                       status=c.TICKET_ACTIVE, sort_order=3),
            TicketType(event=event, name='Invited Speaker', price=0, tax_percentage=0,
                       status=c.TICKET_ACTIVE, requires_approval=True, sort_order=4),
            TicketType(event=event, name='Early Bird', price=300000, tax_percentage=18,
                       status=c.TICKET_PAUSED, sort_order=5),
            TicketType(event=event, name='Backstage', price=100000, tax_percentage=18,
                       status=c.TICKET_ACTIVE, is_hidden=True, sort_order=6),
            Addon(event=event, name='Ultrasound Workshop', price=150000, max_quantity=10),
            Addon(event=event, name='Gala Dinner', price=100000),
            Addon(event=event, name='Retired Tour', price=50000, is_active=False),
            DiscountCode(event=event, code='welcome10', discount_type=c.PERCENTAGE_DISCOUNT, discount_value=10),
            DiscountCode(event=event, code='FLAT1000', discount_type=c.FIXED_DISCOUNT, discount_value=100000),
            DiscountCode(event=event, code='FULLRIDE', discount_type=c.PERCENTAGE_DISCOUNT, discount_value=100,
                         max_uses=1),
            DiscountCode(event=event, code='LAPSED', discount_type=c.PERCENTAGE_DISCOUNT, discount_value=50,
                         valid_until=utcnow() - timedelta(days=1)),
        ])
        session.add(Event(name='Hidden Summit', status=c.EVENT_DRAFT, start_date=date(2027, 1, 10)))
        session.flush()

        session.add_all([
            TeamMember(email='admin@example.com', name='Asha Admin', role=[c.ADMIN_ROLE]),
            TeamMember(email='travel@example.com', name='Tara Travel', role=[c.TRAVEL_ROLE],
                       permissions=[c.FLIGHTS], event_ids=[event.id]),
            TeamMember(email='door@example.com', name='Dev Door', role=[c.COORDINATOR_ROLE],
                       permissions=[c.CHECKIN, c.BADGES]),
            TeamMember(email='gone@example.com', name='Gita Gone', role=[c.ADMIN_ROLE], is_active=False),
        ])


@pytest.fixture(autouse=True)
def db(request, init_db):
    shutil.copy(TEST_DB_FILE, TEST_DB_FILE + '.backup')
    request.addfinalizer(lambda: shutil.move(TEST_DB_FILE + '.backup', TEST_DB_FILE))


@pytest.fixture(autouse=True)
def cp_session():
    cherrypy.session = {}
