"""
Checkout: turning a ticket selection into a pending payment (or, for free
orders, straight into confirmed registrations).

Prices are never taken from the browser.  Everything here looks up ticket
types, addons and discount codes itself and computes totals on the server;
the validated breakdown is stored in the Payment's meta so that fulfilment
after the gateway confirms payment works from the same numbers.
"""
import hashlib
from collections import OrderedDict

from pockets.autolog import log

from eventdesk.config import c
from eventdesk.errors import Forbidden, NotFound, ValidationError
from eventdesk.models import Addon, Buyer, Order, Payment, Registration, TicketType
from eventdesk.models import is_valid_id
from eventdesk.payments import PaymentGateway
from eventdesk.utils import normalize_email, percent_of, valid_email


def compute_totals(lines, addon_lines=(), discount_code=None, now=None):
    """
    Works out what an order costs.

    Args:
        lines: [(TicketType, quantity)]
        addon_lines: [(Addon, quantity)]
        discount_code: a DiscountCode or None.

    Returns:
        dict: subtotal, tax, discount and total in minor units, along with
            "tickets" (the per-line breakdown we store with the payment) and
            "ticket_ids".  Tax is charged per ticket line at that ticket's
            rate; addons are taxed at the first ticket's rate.  The discount
            comes off the pre-tax subtotal and the total is never negative.
    """
    subtotal = tax = 0
    tickets = []
    for ticket, quantity in lines:
        line_amount = ticket.price * quantity
        line_tax = percent_of(line_amount, ticket.tax_percentage)
        subtotal += line_amount
        tax += line_tax
        tickets.append({
            'ticket_type_id': ticket.id,
            'name': ticket.name,
            'quantity': quantity,
            'unit_price': ticket.price,
            'tax_percentage': ticket.tax_percentage,
            'tax_amount': line_tax,
        })

    addon_tax_rate = lines[0][0].tax_percentage if lines else c.DEFAULT_TAX_PERCENTAGE
    addons = []
    for addon, quantity in addon_lines:
        line_amount = addon.price * quantity
        subtotal += line_amount
        tax += percent_of(line_amount, addon_tax_rate)
        addons.append({'addon_id': addon.id, 'name': addon.name, 'quantity': quantity, 'unit_price': addon.price})

    ticket_ids = [ticket.id for ticket, _ in lines]
    discount = discount_code.compute_discount(subtotal, ticket_ids, now) if discount_code else 0

    return {
        'subtotal': subtotal,
        'tax': tax,
        'discount': discount,
        'total': max(0, subtotal + tax - discount),
        'tickets': tickets,
        'addons': addons,
        'ticket_ids': ticket_ids,
    }


def idempotency_key(email, amount, ticket_ids):
    """
    The same payer buying the same tickets for the same amount always gets
    the same key, so Stripe folds a resubmitted checkout into one intent.
    """
    raw = '{}-{}-{}'.format(normalize_email(email), amount, ','.join(sorted(str(i) for i in ticket_ids)))
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()[:32]


def _open_event(session, event_id):
    event = session.event(event_id)
    if not event.is_accepting_registrations:
        raise Forbidden('Registration is not open for {}', event.name)
    return event


def _check_capacity(event, count=1):
    if event.is_full:
        raise ValidationError('{} is full', event.name)
    if event.max_attendees and event.confirmed_count + count > event.max_attendees:
        places = event.max_attendees - event.confirmed_count
        raise ValidationError('Only {} places are left for {}', places, event.name)


def _check_person(name, email, who='your'):
    if not (name or '').strip():
        raise ValidationError('Please enter {} name', who)
    message = valid_email(normalize_email(email))
    if message:
        raise ValidationError(message)


def _quantity(value, default):
    try:
        return int(value or default)
    except (TypeError, ValueError):
        raise ValidationError('{!r} is not a valid quantity', value)


def _resolve_discount(session, event, code, now=None):
    if not (code or '').strip():
        return None
    discount_code = session.discount_code(event.id, code)
    if not discount_code:
        raise ValidationError('{!r} is not a valid discount code', code.strip())
    reason = discount_code.invalid_reason(now)
    if reason:
        raise ValidationError(reason)
    return discount_code


def _ticket_for_event(session, event, ticket_type_id):
    ticket = is_valid_id(ticket_type_id) and session.query(TicketType).filter_by(
        id=ticket_type_id, event_id=event.id).first()
    if not ticket:
        raise ValidationError('That ticket type is not available for {}', event.name)
    return ticket


def _resolve_tickets(session, event, tickets, now=None):
    """Merges repeated ticket types and checks each can be bought in the requested quantity."""
    quantities = OrderedDict()
    for selection in tickets or []:
        quantity = _quantity(selection.get('quantity'), 0)
        if quantity > 0:
            ticket_type_id = selection.get('ticket_type_id')
            quantities[ticket_type_id] = quantities.get(ticket_type_id, 0) + quantity

    lines = []
    for ticket_type_id, quantity in quantities.items():
        ticket = _ticket_for_event(session, event, ticket_type_id)
        error = ticket.purchase_error(quantity, now)
        if error:
            raise ValidationError(error)
        lines.append((ticket, quantity))
    return lines


def _resolve_addons(session, event, addons):
    lines = []
    for selection in addons or []:
        quantity = _quantity(selection.get('quantity'), 1)
        addon_id = selection.get('addon_id')
        addon = is_valid_id(addon_id) and session.query(Addon).filter_by(id=addon_id, event_id=event.id).first()
        if not addon or not addon.is_active:
            raise ValidationError('That addon is not available for {}', event.name)
        if not addon.has_available(quantity):
            raise ValidationError('{} is sold out', addon.name)
        lines.append((addon, quantity))
    return lines


def _intent_response(payment, intent, is_duplicate=False):
    return {
        'success': True,
        'intent_id': payment.stripe_intent_id,
        'client_secret': intent['client_secret'] if intent else None,
        'publishable_key': c.STRIPE_PUBLIC_KEY,
        'amount': payment.amount,
        'currency': payment.currency,
        'payment_id': payment.id,
        'payment_number': payment.payment_number,
        'is_duplicate': is_duplicate,
    }


def start_individual_checkout(session, event_id, payer, tickets=(), addons=(), discount_code=None,
                              payment_type=None, registration_id=None, gateway=None, now=None):
    """
    Validates a single attendee's order, then opens a Stripe PaymentIntent
    and records a pending Payment for it.  The registration itself is created
    or updated when the payment is verified.

    Args:
        payer (dict): name, email, phone, institution, designation.
        tickets: [{ticket_type_id, quantity}]
        addons: [{addon_id, quantity}]
        payment_type: c.REGISTRATION_PAYMENT (default) or c.ADDON_PURCHASE,
            in which case `registration_id` names the confirmed registration
            the addons are for and no tickets are needed.
    """
    gateway = gateway or PaymentGateway()
    event = _open_event(session, event_id)
    payer = dict(payer or {})
    _check_person(payer.get('name'), payer.get('email'))
    email = normalize_email(payer['email'])

    payment_type = c.enum_value('payment_type', payment_type) or c.REGISTRATION_PAYMENT
    registration = None
    if payment_type == c.ADDON_PURCHASE:
        if not registration_id:
            raise ValidationError('Addon purchases must be for an existing registration')
        registration = session.registration(registration_id)
        if registration.event_id != event.id or not registration.is_confirmed:
            raise ValidationError('Addons can only be added to a confirmed registration for this event')
    elif not tickets:
        raise ValidationError('Please select at least one ticket')

    lines = _resolve_tickets(session, event, tickets, now)
    if payment_type != c.ADDON_PURCHASE and not lines:
        raise ValidationError('Please select at least one ticket')
    if payment_type != c.ADDON_PURCHASE:
        _check_capacity(event, sum(quantity for _, quantity in lines))
    addon_lines = _resolve_addons(session, event, addons)
    if registration:
        for addon, _ in addon_lines:
            if registration.has_addon(addon.id):
                raise ValidationError('You already have {}', addon.name)

    code = _resolve_discount(session, event, discount_code, now)
    totals = compute_totals(lines, addon_lines, code, now)
    if totals['total'] <= 0:
        raise ValidationError('This order is free; please use free registration instead')

    duplicate = Payment.find_recent_duplicate(session, email, totals['total'], payment_type=payment_type)
    if duplicate and duplicate.event_id == event.id:
        log.info('Reusing pending payment {} for a repeated checkout by {}', duplicate.payment_number, email)
        intent = gateway.retrieve_intent(duplicate.stripe_intent_id) if duplicate.stripe_intent_id else None
        return dict(_intent_response(duplicate, intent, is_duplicate=True), totals=totals)

    key = idempotency_key(email, totals['total'], totals['ticket_ids'])
    intent = gateway.create_intent(
        amount=totals['total'],
        currency=c.CURRENCY,
        description='{} registration for {}'.format(event.name, payer['name']),
        receipt_email=email,
        metadata={'event_id': event.id, 'payment_type': c.enum_name('payment_type', payment_type)},
        idempotency_key=key)

    payment = Payment(
        event=event,
        payment_type=payment_type,
        payer_name=payer['name'].strip(),
        payer_email=email,
        payer_phone=(payer.get('phone') or '').strip(),
        amount=totals['total'],
        currency=c.CURRENCY,
        tax_amount=totals['tax'],
        discount_amount=totals['discount'],
        payment_method=c.STRIPE_METHOD,
        stripe_intent_id=intent['id'],
        idempotency_key=key)
    payment.set_meta(
        validated_tickets=totals['tickets'],
        validated_amount=totals['total'],
        idempotency_key=key,
        addons_selection=[{'addon_id': a['addon_id'], 'quantity': a['quantity']} for a in totals['addons']],
        registration_id=registration.id if registration else None,
        discount_code_id=code.id if code else None,
        attendee={k: (payer.get(k) or '').strip() for k in (
            'name', 'email', 'phone', 'institution', 'designation')})
    session.add(payment)
    session.flush()

    log.info('Started checkout {} for {} ({})', payment.payment_number, email, payment.amount)
    return dict(_intent_response(payment, intent), totals=totals)


def _split_evenly(amount, parts):
    share, remainder = divmod(amount, parts)
    return [share + (1 if i < remainder else 0) for i in range(parts)]


def start_group_checkout(session, event_id, buyer, attendees, payment_method=None, coupon_code='',
                         gateway=None, now=None):
    """
    Registers several attendees in one order paid for by one buyer.

    Each attendee gets their own Registration (quantity 1) priced at their
    ticket's price plus tax; the discount applies once, to the order
    subtotal, and is spread across the registrations.  Free orders which
    don't need approval are confirmed immediately.  Paid orders come back
    with requires_payment and a pending Payment; only card payments open a
    Stripe PaymentIntent.  Bank transfer and cash orders stay pending until
    someone records the money with payments.record_manual_payment().
    """
    event = _open_event(session, event_id)
    buyer = dict(buyer or {})
    _check_person(buyer.get('name'), buyer.get('email'), who="the buyer's")
    buyer['email'] = normalize_email(buyer['email'])
    if not attendees:
        raise ValidationError('Please add at least one attendee')

    attendees = [dict(attendee or {}) for attendee in attendees]
    tickets = []
    for index, attendee in enumerate(attendees, start=1):
        _check_person(attendee.get('name'), attendee.get('email'), who='attendee #{}\'s'.format(index))
        attendee['email'] = normalize_email(attendee['email'])
        ticket = _ticket_for_event(session, event, attendee.get('ticket_type_id'))
        if not ticket.is_on_sale(now):
            raise ValidationError('{} is not currently on sale', ticket.name)
        tickets.append(ticket)

    counts = OrderedDict()
    for ticket in tickets:
        counts[ticket] = counts.get(ticket, 0) + 1
    for ticket, count in counts.items():
        if not ticket.has_available(count):
            raise ValidationError('Only {} {} tickets are left', ticket.quantity_available, ticket.name)
    _check_capacity(event, len(tickets))

    code = _resolve_discount(session, event, coupon_code, now)
    totals = compute_totals(list(counts.items()), (), code, now)

    method = c.enum_value('payment_method', payment_method) or c.STRIPE_METHOD
    if totals['total'] > 0 and method == c.FREE_METHOD:
        raise ValidationError('This order is not free')
    is_free = totals['total'] <= 0
    needs_approval = any(ticket.requires_approval for ticket in tickets)

    buyer_row = Buyer(
        event_id=event.id,
        name=buyer['name'].strip(),
        email=buyer['email'],
        phone=(buyer.get('phone') or '').strip(),
        institution=(buyer.get('institution') or '').strip())
    order = Order(
        event_id=event.id,
        buyer=buyer_row,
        subtotal=totals['subtotal'],
        discount_amount=totals['discount'],
        tax_amount=totals['tax'],
        total=totals['total'],
        coupon_code=code.code if code else '',
        discount_code=code,
        payment_method=c.FREE_METHOD if is_free else method)
    session.add(order)

    shares = _split_evenly(totals['discount'], len(tickets))
    for attendee, ticket, share in zip(attendees, tickets, shares):
        tax = percent_of(ticket.price, ticket.tax_percentage)
        registration = Registration(
            event=event,
            ticket_type=ticket,
            order=order,
            attendee_name=attendee['name'].strip(),
            attendee_email=attendee['email'],
            attendee_phone=(attendee.get('phone') or '').strip(),
            attendee_institution=(attendee.get('institution') or '').strip(),
            attendee_designation=(attendee.get('designation') or '').strip(),
            quantity=1,
            unit_price=ticket.price,
            tax_amount=tax,
            discount_amount=share,
            total_amount=max(0, ticket.price + tax - share))
        if needs_approval:
            registration.set_custom_field('requires_approval', True)
        session.add(registration)

    if is_free and not needs_approval:
        for registration in order.registrations:
            registration.confirm()
        order.status = c.ORDER_COMPLETED
        order.payment_status = c.REG_PAYMENT_COMPLETED
        session.flush()
        log.info('Confirmed free group order {} with {} attendees', order.order_number, len(tickets))
        return {'success': True, 'requires_payment': False, 'requires_approval': False, 'order': order.to_dict()}

    if is_free:
        session.flush()
        return {'success': True, 'requires_payment': False, 'requires_approval': True, 'order': order.to_dict()}

    email = buyer['email']
    key = idempotency_key(email, totals['total'], [t.id for t in tickets])
    session.flush()
    intent = None
    if method == c.STRIPE_METHOD:
        gateway = gateway or PaymentGateway()
        intent = gateway.create_intent(
            amount=totals['total'],
            currency=c.CURRENCY,
            description='{} group registration ({} attendees)'.format(event.name, len(tickets)),
            receipt_email=email,
            metadata={'event_id': event.id, 'order_id': order.id},
            idempotency_key=key)

    payment = Payment(
        event=event,
        payment_type=c.REGISTRATION_PAYMENT,
        payer_name=buyer_row.name,
        payer_email=email,
        payer_phone=buyer_row.phone,
        amount=totals['total'],
        currency=c.CURRENCY,
        tax_amount=totals['tax'],
        discount_amount=totals['discount'],
        payment_method=method,
        stripe_intent_id=intent['id'] if intent else None,
        idempotency_key=key)
    payment.set_meta(
        validated_tickets=totals['tickets'],
        validated_amount=totals['total'],
        idempotency_key=key,
        order_id=order.id,
        buyer_id=buyer_row.id,
        registration_ids=[r.id for r in order.registrations],
        attendee_count=len(tickets))
    session.add(payment)
    for registration in order.registrations:
        registration.payment = payment
    session.flush()

    if not intent:
        log.info('Group order {} is waiting for a {} payment', order.order_number, payment.payment_method_label)
        return {
            'success': True,
            'requires_payment': True,
            'requires_approval': needs_approval,
            'payment_id': payment.id,
            'payment_number': payment.payment_number,
            'payment_method': c.enum_name('payment_method', method),
            'amount': payment.amount,
            'currency': payment.currency,
            'order': order.to_dict(),
            'order_id': order.id,
            'order_number': order.order_number,
            'totals': totals,
        }

    log.info('Started group checkout {} for order {}', payment.payment_number, order.order_number)
    return dict(_intent_response(payment, intent), requires_payment=True, requires_approval=needs_approval,
                order_id=order.id, order_number=order.order_number, totals=totals)


def preview_discount(session, event_id, code, tickets=(), now=None):
    """What a discount code would take off a ticket selection, without using it up."""
    event = session.event(event_id)
    discount_code = _resolve_discount(session, event, code, now)
    if not discount_code:
        raise ValidationError('Please enter a discount code')
    totals = compute_totals(_resolve_tickets(session, event, tickets, now), (), discount_code, now)
    return {'success': True, 'code': discount_code.code, 'description': discount_code.discount_str,
            'totals': totals}


def get_order(session, order_id):
    return session.order(order_id).to_dict()


def get_buyer_orders(session, buyer_id):
    buyer = session.buyer(buyer_id)
    return [order.to_dict() for order in sorted(buyer.orders, key=lambda o: o.order_number)]


def register_free(session, event_id, attendee, ticket_type_id, discount_code=None, now=None):
    """
    Registers one attendee for a ticket which costs nothing, either because
    it's free or because the discount code covers it.  Tickets which require
    approval are left pending instead of confirmed.
    """
    event = _open_event(session, event_id)
    attendee = dict(attendee or {})
    _check_person(attendee.get('name'), attendee.get('email'))
    email = normalize_email(attendee['email'])

    ticket = _ticket_for_event(session, event, ticket_type_id)
    error = ticket.purchase_error(1, now)
    if error:
        raise ValidationError(error)
    _check_capacity(event)

    code = _resolve_discount(session, event, discount_code, now)
    totals = compute_totals([(ticket, 1)], (), code, now)
    if totals['total'] > 0:
        raise ValidationError('{} is not free; please check out to pay for it', ticket.name)

    existing = session.query(Registration).filter(
        Registration.event_id == event.id,
        Registration.attendee_email == email,
        Registration.ticket_type_id == ticket.id,
        Registration.status == c.REG_CONFIRMED).first()
    if existing:
        raise ValidationError('{} is already registered ({})', email, existing.registration_number)

    registration = Registration(
        event=event,
        ticket_type=ticket,
        discount_code=code,
        attendee_name=attendee['name'].strip(),
        attendee_email=email,
        attendee_phone=(attendee.get('phone') or '').strip(),
        attendee_institution=(attendee.get('institution') or '').strip(),
        attendee_designation=(attendee.get('designation') or '').strip(),
        quantity=1,
        unit_price=ticket.price,
        tax_amount=totals['tax'],
        discount_amount=totals['discount'],
        total_amount=0,
        payment_status=c.REG_PAYMENT_COMPLETED)
    if ticket.requires_approval:
        registration.set_custom_field('requires_approval', True)
    else:
        registration.confirm()
    session.add(registration)
    session.flush()
    return registration


def find_registration(session, registration_id=None, email=None, event_id=None):
    """Looks up a registration by id, or the latest one for an email address at an event."""
    if registration_id:
        return session.registration(registration_id)
    if email and event_id:
        registration = session.query(Registration).filter(
            Registration.event_id == event_id,
            Registration.attendee_email == normalize_email(email)).order_by(Registration.created.desc()).first()
        if registration:
            return registration
    raise NotFound('No matching registration')
