"""
Talking to Stripe and reconciling what it tells us with our own records.

A payment completes in one of two ways: the payer's browser calls
verify_payment() after Stripe.js confirms the card, or Stripe calls our
webhook with payment_intent.succeeded.  Either may arrive first, or both
may arrive at once, so fulfilment is written to be safe to run twice:
registrations only count towards ticket sales when their status actually
changes to confirmed, and addons are never attached twice.

Bank transfer and cash payments never touch Stripe; a team member records
them with record_manual_payment() once the money arrives.
"""
import stripe
from pockets.autolog import log

from eventdesk.config import c
from eventdesk.errors import NotFound, PaymentError, ValidationError
from eventdesk.models import Payment, Registration, is_valid_id
from eventdesk.utils import normalize_email


SUCCESSFUL_INTENT_STATUSES = ('succeeded', 'requires_capture')


class PaymentGateway:
    """
    Thin wrapper around the Stripe calls we make, so that Stripe errors all
    come out as PaymentError and tests can swap in a fake gateway.
    """
    def __init__(self, secret_key=None, webhook_secret=None):
        self.secret_key = c.STRIPE_SECRET_KEY if secret_key is None else secret_key
        self.webhook_secret = c.STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret

    def _gateway_error(self, action, error):
        log.error('Stripe error while trying to {}: {}', action, error, exc_info=True)
        return PaymentError(
            'The payment gateway could not {}: {}', action, getattr(error, 'user_message', None) or str(error),
            status=502)

    def create_intent(self, amount, currency=None, description='', receipt_email='', metadata=None,
                      idempotency_key=None):
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise PaymentError('Payment amount must be a positive whole number, not {!r}', amount)

        log.debug('Creating Stripe intent to charge {} {} for {}', amount, currency or c.CURRENCY, description)
        try:
            return stripe.PaymentIntent.create(
                amount=amount,
                currency=(currency or c.CURRENCY).lower(),
                description=description,
                receipt_email=receipt_email or None,
                metadata={k: str(v) for k, v in (metadata or {}).items() if v is not None},
                automatic_payment_methods={'enabled': True},
                idempotency_key=idempotency_key,
                api_key=self.secret_key)
        except stripe.StripeError as e:
            raise self._gateway_error('start the payment', e)

    def retrieve_intent(self, intent_id):
        try:
            return stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise self._gateway_error('look up the payment', e)

    def refund(self, intent_id, amount=None, reason=''):
        log.debug('Refunding {} of Stripe intent {}', amount or 'all', intent_id)
        try:
            return stripe.Refund.create(
                payment_intent=intent_id,
                amount=amount,
                reason='requested_by_customer',
                metadata={'reason': reason[:500]} if reason else None,
                api_key=self.secret_key)
        except stripe.StripeError as e:
            raise self._gateway_error('refund the payment', e)

    def construct_webhook_event(self, payload, sig_header):
        try:
            return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            log.warning('Rejecting Stripe webhook with bad payload or signature: {}', e)
            raise PaymentError('Invalid webhook signature', status=400)


def queue_auto_actions(session, registrations):
    """Sends receipts and badges for newly paid registrations once this transaction commits."""
    from eventdesk.tasks.registration import run_auto_actions
    for registration in registrations:
        session.after_commit(run_auto_actions.delay, registration.id)


def _attach_addons(session, registration, selection):
    for item in selection or []:
        addon = session.addon(item['addon_id'])
        if registration.add_addon(addon, int(item.get('quantity') or 1)) is None:
            log.debug('Registration {} already has addon {}', registration.registration_number, addon.name)


def _registrations_from_meta(session, payment):
    """Creates registrations for a paid individual checkout which has none yet."""
    meta = payment.meta or {}
    attendee = meta.get('attendee') or {}
    discount_code_id = meta.get('discount_code_id')
    registrations = []
    for index, line in enumerate(meta.get('validated_tickets') or []):
        ticket = session.ticket_type(line['ticket_type_id'])
        quantity = int(line.get('quantity') or 1)
        registration = Registration(
            event=ticket.event,
            ticket_type=ticket,
            attendee_name=attendee.get('name') or payment.payer_name,
            attendee_email=attendee.get('email') or payment.payer_email,
            attendee_phone=attendee.get('phone') or payment.payer_phone,
            attendee_institution=attendee.get('institution', ''),
            attendee_designation=attendee.get('designation', ''),
            quantity=quantity,
            unit_price=int(line.get('unit_price') or 0),
            tax_amount=int(line.get('tax_amount') or 0),
            discount_amount=payment.discount_amount if index == 0 else 0,
            custom_fields={'auto_created_from_payment': True})
        registration.total_amount = max(
            0, registration.unit_price * quantity + registration.tax_amount - registration.discount_amount)
        if index == 0 and discount_code_id and is_valid_id(discount_code_id):
            registration.discount_code = session.discount_code_by_id(discount_code_id)
        session.add(registration)
        registrations.append(registration)

    if not registrations:
        raise PaymentError('Payment {} has no tickets to register', payment.payment_number)
    return registrations


def fulfil(session, payment, registration_id=None):
    """
    Does whatever a completed payment paid for, and returns the registrations
    it affected:

        * group orders confirm every registration in the order
        * addon purchases attach the addons to the registration
        * individual checkouts confirm the registration linked to the
          payment, or the one we were told about, or create one from what
          was validated at checkout
    """
    meta = payment.meta or {}

    if meta.get('order_id'):
        order = session.order(meta['order_id'])
        for registration in order.registrations:
            registration.payment = payment
            if registration.status != c.REG_CONFIRMED:
                registration.confirm()
        order.status = c.ORDER_COMPLETED
        order.payment_status = c.REG_PAYMENT_COMPLETED
        return list(order.registrations)

    if payment.payment_type == c.ADDON_PURCHASE:
        registration = session.registration(registration_id or meta.get('registration_id'))
        _attach_addons(session, registration, meta.get('addons_selection'))
        return [registration]

    if payment.registrations:
        registrations = list(payment.registrations)
    elif registration_id or meta.get('registration_id'):
        registrations = [session.registration(registration_id or meta['registration_id'])]
    else:
        registrations = _registrations_from_meta(session, payment)

    for registration in registrations:
        registration.payment = payment
        if registration.status != c.REG_CONFIRMED:
            registration.confirm()
        registration.payment_status = c.REG_PAYMENT_COMPLETED
    _attach_addons(session, registrations[0], meta.get('addons_selection'))
    return registrations


def _fulfilment_response(payment, registrations, is_duplicate=False):
    return {
        'success': True,
        'is_duplicate': is_duplicate,
        'payment': payment.to_dict(),
        'registrations': [r.to_dict() for r in registrations],
    }


def verify_payment(session, intent_id, registration_id=None, gateway=None):
    """
    Called by the payer's browser once Stripe.js reports success.  We don't
    take the browser's word for it: the intent is retrieved from Stripe and
    must have succeeded (or be authorized and awaiting capture).  If Stripe
    can't be reached we leave the payment processing and let the webhook
    finish the job.
    """
    gateway = gateway or PaymentGateway()
    payment = session.payment_by_intent(intent_id) if intent_id else None
    if not payment:
        raise NotFound('No payment found for {!r}', intent_id)

    if payment.is_completed:
        return _fulfilment_response(payment, payment.registrations, is_duplicate=True)

    try:
        intent = gateway.retrieve_intent(intent_id)
    except PaymentError as e:
        log.error('Could not confirm {} with Stripe, waiting for the webhook: {}', payment.payment_number, e.message)
        payment.status = c.PAYMENT_PROCESSING
        return {'success': True, 'is_duplicate': False, 'processing': True, 'payment': payment.to_dict(),
                'registrations': []}

    if intent['status'] not in SUCCESSFUL_INTENT_STATUSES:
        raise PaymentError('This payment has not gone through yet (status: {})', intent['status'])

    payment.mark_completed(intent.get('latest_charge'))
    registrations = fulfil(session, payment, registration_id)
    session.flush()
    queue_auto_actions(session, registrations)
    log.info('Verified payment {} covering {} registrations', payment.payment_number, len(registrations))
    return _fulfilment_response(payment, registrations)


def _record_orphan_payment(session, intent):
    """Keeps a record of money Stripe says we received for an intent we never created."""
    metadata = dict(intent.get('metadata') or {})
    event_id = metadata.get('event_id')
    payment = Payment(
        event_id=event_id if is_valid_id(event_id) else None,
        payment_type=c.OTHER_PAYMENT,
        payer_email=normalize_email(intent.get('receipt_email')),
        amount=int(intent.get('amount_received') or intent.get('amount') or 0),
        currency=(intent.get('currency') or c.CURRENCY).upper(),
        payment_method=c.STRIPE_METHOD,
        stripe_intent_id=intent['id'],
        meta={'orphan': True, 'stripe_metadata': metadata})
    payment.mark_completed(intent.get('latest_charge'))
    session.add(payment)
    session.flush()
    log.warning('Recorded orphan Stripe payment {} for intent {}', payment.payment_number, intent['id'])
    return payment


def _mark_registrations_refunded(session, payment):
    for registration in payment.registrations:
        registration.cancel(refunded=True)
    order_id = (payment.meta or {}).get('order_id')
    if order_id:
        order = session.order(order_id)
        order.status = c.ORDER_CANCELLED
        order.payment_status = c.REG_PAYMENT_REFUNDED


def handle_webhook(session, payload, sig_header, gateway=None):
    gateway = gateway or PaymentGateway()
    event = gateway.construct_webhook_event(payload, sig_header)
    event_type = event['type']
    obj = event['data']['object']
    log.info('Received Stripe webhook {} for {}', event_type, obj.get('id'))

    if event_type == 'payment_intent.succeeded':
        payment = session.payment_by_intent(obj['id'])
        if not payment:
            payment = _record_orphan_payment(session, obj)
            return {'received': True, 'orphan': True, 'payment_id': payment.id}
        if not payment.is_completed:
            payment.mark_completed(obj.get('latest_charge'))
            registrations = fulfil(session, payment)
            session.flush()
            queue_auto_actions(session, registrations)
        return {'received': True, 'payment_id': payment.id}

    elif event_type == 'payment_intent.payment_failed':
        payment = session.payment_by_intent(obj['id'])
        if payment and payment.status in (c.PAYMENT_PENDING, c.PAYMENT_PROCESSING):
            payment.mark_failed((obj.get('last_payment_error') or {}).get('message'))
            for registration in payment.registrations:
                if registration.status == c.REG_PENDING:
                    registration.payment_status = c.REG_PAYMENT_FAILED
        return {'received': True, 'payment_id': payment.id if payment else None}

    elif event_type == 'charge.refunded':
        payment = session.payment_by_intent(obj.get('payment_intent'))
        if not payment:
            log.warning('Stripe refunded charge {} which we have no payment for', obj.get('id'))
            return {'received': True, 'payment_id': None}

        # amount_refunded is cumulative, so refunds we issued ourselves are already counted
        new_refund = int(obj.get('amount_refunded') or 0) - (payment.refund_amount or 0)
        if new_refund > 0:
            refunds = (obj.get('refunds') or {}).get('data') or []
            payment.record_refund(new_refund, 'Refunded in Stripe', refunds[0]['id'] if refunds else None)
            if payment.status == c.PAYMENT_REFUNDED:
                _mark_registrations_refunded(session, payment)
        return {'received': True, 'payment_id': payment.id}

    log.debug('Ignoring Stripe webhook {}', event_type)
    return {'received': True}


def refund_payment(session, payment_id, amount=None, reason='', gateway=None):
    """
    Refunds all or part of a completed payment.  Stripe payments are refunded
    through Stripe; anything else (bank transfer, cash) is just recorded.
    Fully refunding a payment also refunds the registrations it paid for.
    """
    payment = session.payment(payment_id)
    if payment.status not in (c.PAYMENT_COMPLETED, c.PAYMENT_PARTIALLY_REFUNDED):
        raise PaymentError('Only completed payments can be refunded; this one is {}', payment.status_label.lower())

    if amount in (None, ''):
        amount = payment.refundable_amount
    else:
        try:
            amount = int(amount)
        except (TypeError, ValueError):
            raise ValidationError('{!r} is not a valid refund amount', amount)
    if amount <= 0 or amount > payment.refundable_amount:
        raise PaymentError('You can refund at most {} of this payment', payment.refundable_amount)

    refund_id = None
    if payment.payment_method == c.STRIPE_METHOD and payment.stripe_intent_id:
        gateway = gateway or PaymentGateway()
        refund_id = gateway.refund(payment.stripe_intent_id, amount, reason)['id']

    payment.record_refund(amount, reason, refund_id)
    if payment.status == c.PAYMENT_REFUNDED:
        _mark_registrations_refunded(session, payment)
    log.info('Refunded {} of payment {}', amount, payment.payment_number)
    return payment


def record_manual_payment(session, payment_id, reference=''):
    """
    Records that a bank transfer or cash payment has been received, then
    fulfils it the same way a confirmed Stripe payment is fulfilled.
    """
    payment = session.payment(payment_id)
    if payment.payment_method == c.STRIPE_METHOD:
        raise PaymentError('Card payments are confirmed by Stripe and cannot be recorded by hand')
    if payment.status != c.PAYMENT_PENDING:
        raise PaymentError('Only pending payments can be recorded; this one is {}', payment.status_label.lower())

    payment.mark_completed()
    payment.bank_reference = (reference or '').strip()
    registrations = fulfil(session, payment)
    session.flush()
    queue_auto_actions(session, registrations)
    log.info('Recorded {} payment {}', payment.payment_method_label, payment.payment_number)
    return _fulfilment_response(payment, registrations)
