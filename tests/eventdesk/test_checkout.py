import pytest

from eventdesk import checkout
from eventdesk.config import c
from eventdesk.errors import Forbidden, ValidationError
from eventdesk.models import Addon, Event, Order, Payment, Registration, Session, TicketType
from tests.eventdesk.conftest import addon_id, event_id, ticket_id


PAYER = {'name': 'Meera Nair', 'email': 'Meera@Example.com', 'phone': '9876543210', 'institution': 'AIMS'}


class TestComputeTotals:
    def _lines(self, session, *names):
        return [(session.query(TicketType).filter_by(name=name).one(), quantity) for name, quantity in names]

    def test_tax_per_line(self):
        with Session() as session:
            totals = checkout.compute_totals(self._lines(session, ('Delegate', 2), ('Faculty', 1)))
            assert totals['subtotal'] == 1000000
            assert totals['tax'] == 180000
            assert totals['discount'] == 0
            assert totals['total'] == 1180000
            assert [t['quantity'] for t in totals['tickets']] == [2, 1]

    def test_addons_taxed_at_first_ticket_rate(self):
        with Session() as session:
            workshop = session.query(Addon).filter_by(name='Ultrasound Workshop').one()
            totals = checkout.compute_totals(self._lines(session, ('Delegate', 1)), [(workshop, 1)])
            assert totals['subtotal'] == 650000
            assert totals['tax'] == 90000 + 27000
            assert totals['addons'][0]['name'] == 'Ultrasound Workshop'

    def test_discount_comes_off_subtotal(self):
        with Session() as session:
            code = session.discount_code(event_id(), 'WELCOME10')
            totals = checkout.compute_totals(self._lines(session, ('Delegate', 1)), (), code)
            assert totals['discount'] == 50000
            assert totals['total'] == 500000 + 90000 - 50000

    def test_total_never_negative(self):
        with Session() as session:
            code = session.discount_code(event_id(), 'FLAT1000')
            totals = checkout.compute_totals(self._lines(session, ('Faculty', 1)), (), code)
            assert totals['total'] == 0

    def test_idempotency_key_is_stable(self):
        a = checkout.idempotency_key('Meera@Example.com ', 590000, ['b', 'a'])
        b = checkout.idempotency_key('meera@example.com', 590000, ['a', 'b'])
        assert a == b
        assert a != checkout.idempotency_key('meera@example.com', 590001, ['a', 'b'])


class TestIndividualCheckout:
    def start(self, session, gateway, tickets=None, **kwargs):
        tickets = tickets if tickets is not None else [{'ticket_type_id': ticket_id('Delegate'), 'quantity': 1}]
        return checkout.start_individual_checkout(
            session, event_id(), PAYER, tickets=tickets, gateway=gateway, **kwargs)

    def test_creates_intent_and_pending_payment(self, gateway):
        with Session() as session:
            response = self.start(session, gateway)
            assert response['amount'] == 590000
            assert response['currency'] == 'INR'
            assert response['client_secret'] == response['intent_id'] + '_secret'
            assert not response['is_duplicate']

            payment = session.payment(response['payment_id'])
            assert payment.status == c.PAYMENT_PENDING
            assert payment.payer_email == 'meera@example.com'
            assert payment.payment_number.startswith('PAY-')
            assert payment.meta['validated_amount'] == 590000
            assert payment.meta['validated_tickets'][0]['ticket_type_id'] == ticket_id('Delegate')
            assert payment.meta['attendee']['institution'] == 'AIMS'
            assert gateway.intents[payment.stripe_intent_id]['idempotency_key'] == payment.idempotency_key

    def test_no_registration_until_paid(self, gateway):
        with Session() as session:
            self.start(session, gateway)
            assert session.query(Registration).count() == 0

    def test_duplicate_checkout_reuses_payment(self, gateway):
        with Session() as session:
            first = self.start(session, gateway)
        with Session() as session:
            second = self.start(session, gateway)
            assert second['is_duplicate']
            assert second['payment_id'] == first['payment_id']
            assert session.query(Payment).count() == 1
        assert len(gateway.intents) == 1

    def test_server_computes_prices(self, gateway):
        with Session() as session:
            response = self.start(session, gateway, tickets=[
                {'ticket_type_id': ticket_id('Delegate'), 'quantity': 1, 'unit_price': 1}])
            assert response['amount'] == 590000

    def test_repeated_ticket_types_are_merged(self, gateway):
        delegate = ticket_id('Delegate')
        with Session() as session:
            response = self.start(session, gateway, tickets=[
                {'ticket_type_id': delegate, 'quantity': 1}, {'ticket_type_id': delegate, 'quantity': 2}])
            assert response['totals']['tickets'][0]['quantity'] == 3

    def test_discount_and_addons(self, gateway):
        with Session() as session:
            response = self.start(session, gateway, discount_code='welcome10',
                                  addons=[{'addon_id': addon_id('Gala Dinner'), 'quantity': 1}])
            assert response['totals']['subtotal'] == 600000
            assert response['totals']['discount'] == 60000
            payment = session.payment(response['payment_id'])
            assert payment.meta['addons_selection'] == [{'addon_id': addon_id('Gala Dinner'), 'quantity': 1}]
            assert payment.meta['discount_code_id'] == session.discount_code(event_id(), 'WELCOME10').id

    @pytest.mark.parametrize('tickets,addons,code,message', [
        ([], [], '', 'Please select at least one ticket'),
        ([('Early Bird', 1)], [], '', 'Early Bird is not currently on sale'),
        ([('Student', 3)], [], '', 'Only 2 Student tickets are left'),
        ([('Delegate', 1)], ['Retired Tour'], '', 'That addon is not available for Medicon 2026'),
        ([('Delegate', 1)], [], 'NOPE', "'NOPE' is not a valid discount code"),
        ([('Delegate', 1)], [], 'lapsed', 'This discount code has expired'),
        ([('Faculty', 1)], [], '', 'This order is free; please use free registration instead'),
        ([('Delegate', 'lots')], [], '', "'lots' is not a valid quantity"),
    ])
    def test_rejected(self, gateway, tickets, addons, code, message):
        with Session() as session, pytest.raises(ValidationError) as e:
            self.start(session, gateway,
                       tickets=[{'ticket_type_id': ticket_id(name), 'quantity': q} for name, q in tickets],
                       addons=[{'addon_id': addon_id(name)} for name in addons],
                       discount_code=code)
        assert e.value.message == message
        assert not gateway.intents

    def test_ticket_from_another_event(self, gateway):
        with Session() as session:
            other = Event(name='Other Meet', status=c.EVENT_PUBLISHED, registration_open=True)
            session.add(other)
            session.flush()
            with pytest.raises(ValidationError):
                checkout.start_individual_checkout(
                    session, other.id, PAYER, tickets=[{'ticket_type_id': ticket_id('Delegate'), 'quantity': 1}],
                    gateway=gateway)

    @pytest.mark.parametrize('payer,message', [
        ({'name': '', 'email': 'a@example.com'}, 'Please enter your name'),
        ({'name': 'Meera', 'email': ''}, 'Please enter an email address.'),
    ])
    def test_payer_validated(self, gateway, payer, message):
        with Session() as session, pytest.raises(ValidationError) as e:
            checkout.start_individual_checkout(session, event_id(), payer, tickets=[
                {'ticket_type_id': ticket_id('Delegate'), 'quantity': 1}], gateway=gateway)
        assert e.value.message == message

    def test_closed_event(self, gateway):
        with Session() as session:
            session.event(event_id()).registration_open = False
            with pytest.raises(Forbidden):
                self.start(session, gateway)

    def test_addon_purchase_needs_confirmed_registration(self, gateway):
        with Session() as session:
            registration = checkout.register_free(session, event_id(), PAYER, ticket_id('Faculty'))
            response = checkout.start_individual_checkout(
                session, event_id(), PAYER, addons=[{'addon_id': addon_id('Ultrasound Workshop')}],
                payment_type='addon_purchase', registration_id=registration.id, gateway=gateway)
            payment = session.payment(response['payment_id'])
            assert payment.payment_type == c.ADDON_PURCHASE
            assert payment.meta['registration_id'] == registration.id
            assert response['amount'] == 150000 + 27000

            with pytest.raises(ValidationError):
                checkout.start_individual_checkout(
                    session, event_id(), PAYER, addons=[{'addon_id': addon_id('Ultrasound Workshop')}],
                    payment_type='addon_purchase', gateway=gateway)


class TestGroupCheckout:
    BUYER = {'name': 'Dr. Kurian', 'email': 'kurian@example.com', 'institution': 'AIMS'}

    def attendees(self, *tickets):
        return [{'name': 'Attendee {}'.format(i), 'email': 'attendee{}@example.com'.format(i),
                 'ticket_type_id': ticket_id(name)} for i, name in enumerate(tickets, start=1)]

    def test_paid_group(self, gateway):
        with Session() as session:
            response = checkout.start_group_checkout(
                session, event_id(), self.BUYER, self.attendees('Delegate', 'Delegate', 'Student'),
                coupon_code='FLAT1000', gateway=gateway)
            assert response['requires_payment']
            assert response['totals']['subtotal'] == 1200000
            assert response['totals']['discount'] == 100000

            order = session.order(response['order_id'])
            assert order.status == c.ORDER_PENDING
            assert order.total == 1200000 + 216000 - 100000
            assert order.buyer.email == 'kurian@example.com'
            assert [r.quantity for r in order.registrations] == [1, 1, 1]
            assert sum(r.discount_amount for r in order.registrations) == 100000
            assert all(r.status == c.REG_PENDING for r in order.registrations)

            payment = session.payment(response['payment_id'])
            assert payment.meta['order_id'] == order.id
            assert payment.meta['attendee_count'] == 3
            assert sorted(payment.meta['registration_ids']) == sorted(r.id for r in order.registrations)
            assert session.query(TicketType).filter_by(name='Delegate').one().quantity_sold == 0

    def test_bank_transfer_opens_no_intent(self, gateway):
        with Session() as session:
            response = checkout.start_group_checkout(
                session, event_id(), self.BUYER, self.attendees('Delegate', 'Delegate'),
                payment_method='bank_transfer', gateway=gateway)
            assert response['requires_payment']
            assert response['payment_method'] == 'bank_transfer'
            assert response['amount'] == 1180000
            assert 'client_secret' not in response

            payment = session.payment(response['payment_id'])
            assert payment.payment_method == c.BANK_TRANSFER
            assert payment.status == c.PAYMENT_PENDING
            assert payment.stripe_intent_id is None
            assert payment.meta['order_id'] == response['order_id']

            order = session.order(response['order_id'])
            assert order.status == c.ORDER_PENDING
            assert order.payment_method == c.BANK_TRANSFER
            assert all(r.status == c.REG_PENDING for r in order.registrations)
        assert not gateway.intents

    def test_cash_opens_no_intent(self, gateway):
        with Session() as session:
            response = checkout.start_group_checkout(
                session, event_id(), self.BUYER, self.attendees('Delegate'), payment_method='cash', gateway=gateway)
            assert response['requires_payment']
            assert session.payment(response['payment_id']).payment_method == c.CASH_METHOD
        assert not gateway.intents

    def test_emails_normalized(self, gateway):
        buyer = dict(self.BUYER, email='  Kurian@Example.COM ')
        attendees = self.attendees('Delegate', 'Student')
        attendees[0]['email'] = 'Attendee1@EXAMPLE.com '
        with Session() as session:
            response = checkout.start_group_checkout(session, event_id(), buyer, attendees, gateway=gateway)
            order = session.order(response['order_id'])
            assert order.buyer.email == 'kurian@example.com'
            assert sorted(r.attendee_email for r in order.registrations) == [
                'attendee1@example.com', 'attendee2@example.com']
            payment = session.payment(response['payment_id'])
            assert payment.payer_email == 'kurian@example.com'
            assert payment.idempotency_key == checkout.idempotency_key(
                'kurian@example.com', order.total, [ticket_id('Delegate'), ticket_id('Student')])
        assert gateway.intents[response['intent_id']]['receipt_email'] == 'kurian@example.com'
        assert attendees[0]['email'] == 'Attendee1@EXAMPLE.com '

    def test_free_group_is_confirmed(self, gateway):
        with Session() as session:
            response = checkout.start_group_checkout(
                session, event_id(), self.BUYER, self.attendees('Faculty', 'Faculty'), payment_method='free',
                gateway=gateway)
            assert not response['requires_payment']
            assert response['order']['status'] == c.ORDER_COMPLETED
            assert all(r['status'] == c.REG_CONFIRMED for r in response['order']['registrations'])
            assert session.query(TicketType).filter_by(name='Faculty').one().quantity_sold == 2
        assert not gateway.intents

    def test_full_discount_still_charges_tax(self, gateway):
        with Session() as session:
            response = checkout.start_group_checkout(
                session, event_id(), self.BUYER, self.attendees('Delegate', 'Student'), coupon_code='FULLRIDE',
                gateway=gateway)
            assert response['requires_payment']
            assert response['amount'] == 90000 + 36000
            assert session.discount_code(event_id(), 'FULLRIDE').current_uses == 0

    def test_approval_holds_free_order(self, gateway):
        with Session() as session:
            response = checkout.start_group_checkout(
                session, event_id(), self.BUYER, self.attendees('Faculty', 'Invited Speaker'), gateway=gateway)
            assert response['requires_approval']
            assert not response['requires_payment']
            order = session.order(response['order']['id'])
            assert order.status == c.ORDER_PENDING
            assert all(r.custom_fields['requires_approval'] for r in order.registrations)

    def test_availability_counts_the_whole_group(self, gateway):
        with Session() as session, pytest.raises(ValidationError) as e:
            checkout.start_group_checkout(
                session, event_id(), self.BUYER, self.attendees('Student', 'Student', 'Student'), gateway=gateway)
        assert e.value.message == 'Only 2 Student tickets are left'

    def test_paid_order_cannot_claim_to_be_free(self, gateway):
        with Session() as session, pytest.raises(ValidationError):
            checkout.start_group_checkout(
                session, event_id(), self.BUYER, self.attendees('Delegate'), payment_method='free', gateway=gateway)

    def test_failure_leaves_nothing_behind(self, gateway):
        attendees = self.attendees('Delegate', 'Delegate')
        attendees[1]['email'] = 'not-an-email'
        with pytest.raises(ValidationError):
            with Session() as session:
                checkout.start_group_checkout(session, event_id(), self.BUYER, attendees, gateway=gateway)
        with Session() as session:
            assert session.query(Order).count() == 0
            assert session.query(Registration).count() == 0

    def test_needs_attendees(self, gateway):
        with Session() as session, pytest.raises(ValidationError):
            checkout.start_group_checkout(session, event_id(), self.BUYER, [], gateway=gateway)

    def test_buyer_orders(self, gateway):
        with Session() as session:
            response = checkout.start_group_checkout(
                session, event_id(), self.BUYER, self.attendees('Faculty'), gateway=gateway)
            buyer_id = response['order']['buyer_id']
            orders = checkout.get_buyer_orders(session, buyer_id)
            assert [o['id'] for o in orders] == [response['order']['id']]
            assert checkout.get_order(session, response['order']['id'])['buyer']['name'] == 'Dr. Kurian'


class TestFreeRegistration:
    def test_confirmed_immediately(self):
        with Session() as session:
            registration = checkout.register_free(session, event_id(), PAYER, ticket_id('Faculty'))
            assert registration.status == c.REG_CONFIRMED
            assert registration.payment_status == c.REG_PAYMENT_COMPLETED
            assert registration.total_amount == 0
            assert registration.ticket_type.quantity_sold == 1

    def test_requires_approval(self):
        with Session() as session:
            registration = checkout.register_free(session, event_id(), PAYER, ticket_id('Invited Speaker'))
            assert registration.status == c.REG_PENDING
            assert registration.custom_fields['requires_approval']
            assert registration.ticket_type.quantity_sold == 0

    def test_discount_leaving_tax_is_not_free(self):
        with Session() as session, pytest.raises(ValidationError) as e:
            checkout.register_free(session, event_id(), PAYER, ticket_id('Delegate'), discount_code='FULLRIDE')
        assert e.value.message == 'Delegate is not free; please check out to pay for it'

    def test_paid_ticket_rejected(self):
        with Session() as session, pytest.raises(ValidationError):
            checkout.register_free(session, event_id(), PAYER, ticket_id('Delegate'))

    def test_no_double_registration(self):
        with Session() as session:
            checkout.register_free(session, event_id(), PAYER, ticket_id('Faculty'))
        with Session() as session, pytest.raises(ValidationError) as e:
            checkout.register_free(session, event_id(), PAYER, ticket_id('Faculty'))
        assert 'already registered' in e.value.message


class TestPreviewDiscount:
    def test_preview(self):
        with Session() as session:
            preview = checkout.preview_discount(
                session, event_id(), 'welcome10', [{'ticket_type_id': ticket_id('Delegate'), 'quantity': 2}])
            assert preview['code'] == 'WELCOME10'
            assert preview['description'] == '10% off'
            assert preview['totals']['discount'] == 100000
            assert session.discount_code(event_id(), 'WELCOME10').current_uses == 0

    def test_blank_code(self):
        with Session() as session, pytest.raises(ValidationError):
            checkout.preview_discount(session, event_id(), '  ')


class TestEventCapacity:
    @pytest.fixture
    def one_place_left(self):
        with Session() as session:
            session.event(event_id()).max_attendees = 2
            checkout.register_free(session, event_id(), {'name': 'First In', 'email': 'first@example.com'},
                                   ticket_id('Faculty'))

    def test_last_place_can_be_taken(self, one_place_left):
        with Session() as session:
            checkout.register_free(session, event_id(), PAYER, ticket_id('Faculty'))
            assert session.event(event_id()).is_full

    def test_full_event_turns_away_free_registrations(self, one_place_left):
        with Session() as session:
            checkout.register_free(session, event_id(), PAYER, ticket_id('Faculty'))
        with Session() as session, pytest.raises(ValidationError) as e:
            checkout.register_free(session, event_id(), {'name': 'Late', 'email': 'late@example.com'},
                                   ticket_id('Faculty'))
        assert e.value.message == 'Medicon 2026 is full'

    def test_individual_checkout_counts_quantity(self, one_place_left, gateway):
        with Session() as session, pytest.raises(ValidationError) as e:
            checkout.start_individual_checkout(
                session, event_id(), PAYER, tickets=[{'ticket_type_id': ticket_id('Delegate'), 'quantity': 2}],
                gateway=gateway)
        assert e.value.message == 'Only 1 places are left for Medicon 2026'
        assert not gateway.intents

    def test_group_checkout_counts_attendees(self, one_place_left, gateway):
        attendees = [{'name': 'Attendee {}'.format(i), 'email': 'a{}@example.com'.format(i),
                      'ticket_type_id': ticket_id('Delegate')} for i in range(2)]
        with Session() as session, pytest.raises(ValidationError) as e:
            checkout.start_group_checkout(
                session, event_id(), {'name': 'Buyer', 'email': 'buyer@example.com'}, attendees, gateway=gateway)
        assert e.value.message == 'Only 1 places are left for Medicon 2026'
        assert not gateway.intents

    def test_no_limit(self, gateway):
        with Session() as session:
            assert not session.event(event_id()).max_attendees
            response = checkout.start_individual_checkout(
                session, event_id(), PAYER, tickets=[{'ticket_type_id': ticket_id('Delegate'), 'quantity': 3}],
                gateway=gateway)
            assert response['intent_id'] in gateway.intents
