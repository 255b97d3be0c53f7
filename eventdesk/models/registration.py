import re
import time

from sqlalchemy import func
from sqlalchemy.schema import ForeignKey, Index, UniqueConstraint
from sqlalchemy.types import Boolean, Integer

from eventdesk.config import c
from eventdesk.decorators import presave_adjustment
from eventdesk.models import MagModel
from eventdesk.models.types import default_relationship as relationship, utcnow, Choice, \
    DefaultColumn as Column, JSON, UnicodeText, UTCDateTime, UUID
from eventdesk.utils import base36, generate_token, localized_now, normalize_email, random_code, \
    utcnow as now_utc


__all__ = ['Buyer', 'Order', 'Registration', 'RegistrationAddon']


_PLAIN_CASCADE = 'save-update,merge,refresh-expire,expunge'


class Buyer(MagModel):
    """The person paying for a group order; they may or may not attend themselves."""
    event_id = Column(UUID(), ForeignKey('event.id', ondelete='cascade'))
    name = Column(UnicodeText)
    email = Column(UnicodeText)
    phone = Column(UnicodeText)
    institution = Column(UnicodeText)
    created = Column(UTCDateTime(), server_default=utcnow())

    orders = relationship('Order', backref='buyer', cascade='all')

    @presave_adjustment
    def _normalize_email(self):
        self.email = normalize_email(self.email)


class Order(MagModel):
    """
    A group purchase: one buyer, one payment, one registration per attendee.
    The discount is applied once to the whole order rather than per attendee,
    so the discount code's use count moves with the order's status.
    """
    order_number = Column(UnicodeText, admin_only=True)
    event_id = Column(UUID(), ForeignKey('event.id', ondelete='cascade'))
    buyer_id = Column(UUID(), ForeignKey('buyer.id', ondelete='cascade'))

    subtotal = Column(Integer, default=0)
    discount_amount = Column(Integer, default=0)
    tax_amount = Column(Integer, default=0)
    total = Column(Integer, default=0)
    currency = Column(UnicodeText, default=c.CURRENCY)

    coupon_code = Column(UnicodeText)
    discount_code_id = Column(UUID(), ForeignKey('discount_code.id', ondelete='SET NULL'), nullable=True)
    payment_method = Column(Choice(c.PAYMENT_METHOD_OPTS), default=c.STRIPE_METHOD)
    status = Column(Choice(c.ORDER_STATUS_OPTS), default=c.ORDER_PENDING)
    payment_status = Column(Choice(c.REG_PAYMENT_STATUS_OPTS), default=c.REG_PAYMENT_PENDING)
    created = Column(UTCDateTime(), server_default=utcnow())

    registrations = relationship('Registration', backref='order', cascade=_PLAIN_CASCADE)
    discount_code = relationship('DiscountCode', cascade=_PLAIN_CASCADE)

    __table_args__ = (UniqueConstraint('order_number'),)

    @classmethod
    def generate_order_number(cls):
        return 'ORD-{}-{}-{}'.format(
            localized_now().year, base36(int(time.time() * 1000)).upper(), random_code(4))

    @presave_adjustment
    def _attribute_adjustments(self):
        if not self.order_number:
            self.order_number = self.generate_order_number()

    @presave_adjustment
    def _track_discount_use(self):
        was = None if self.is_new else self.orig_value_of('status')
        if was == self.status or not self.discount_code:
            return
        if self.status == c.ORDER_COMPLETED:
            self.discount_code.adjust_uses(1)
        elif was == c.ORDER_COMPLETED:
            self.discount_code.adjust_uses(-1)

    def to_dict(self, fields=None):
        data = super().to_dict(fields)
        if not fields:
            data['buyer'] = self.buyer.to_dict() if self.buyer else None
            data['registrations'] = [r.to_dict() for r in self.registrations]
        return data


class Registration(MagModel):
    """
    One attendee's place at an event.

    The ticket type's quantity_sold and the discount code's current_uses
    count confirmed registrations only.  Rather than remembering to adjust
    them everywhere a status changes, _track_confirmation() compares the
    status we loaded with the one we're about to save and adjusts both, so a
    registration which is confirmed twice (say by both the payment webhook
    and the browser's verify call) is only counted once.

    Attributes:
        checkin_token (str): Random token printed in the badge QR code and
            used for the public badge verification page.
        custom_fields (dict): Answers to event-specific registration
            questions, plus bookkeeping flags like auto_created_from_payment.
    """
    registration_number = Column(UnicodeText, admin_only=True)
    event_id = Column(UUID(), ForeignKey('event.id', ondelete='cascade'))
    ticket_type_id = Column(UUID(), ForeignKey('ticket_type.id', ondelete='SET NULL'), nullable=True)
    order_id = Column(UUID(), ForeignKey('order.id', ondelete='SET NULL'), nullable=True, admin_only=True)
    discount_code_id = Column(UUID(), ForeignKey('discount_code.id', ondelete='SET NULL'), nullable=True)
    payment_id = Column(UUID(), ForeignKey('payment.id', ondelete='SET NULL'), nullable=True, admin_only=True)

    attendee_name = Column(UnicodeText)
    attendee_email = Column(UnicodeText)
    attendee_phone = Column(UnicodeText)
    attendee_institution = Column(UnicodeText)
    attendee_designation = Column(UnicodeText)

    quantity = Column(Integer, default=1)
    unit_price = Column(Integer, default=0, admin_only=True)
    tax_amount = Column(Integer, default=0, admin_only=True)
    discount_amount = Column(Integer, default=0, admin_only=True)
    total_amount = Column(Integer, default=0, admin_only=True)

    status = Column(Choice(c.REGISTRATION_STATUS_OPTS), default=c.REG_PENDING, admin_only=True)
    payment_status = Column(Choice(c.REG_PAYMENT_STATUS_OPTS), default=c.REG_PAYMENT_PENDING, admin_only=True)
    confirmed_at = Column(UTCDateTime(), nullable=True)

    checkin_token = Column(UnicodeText, default=generate_token, admin_only=True)
    checked_in = Column(Boolean, default=False, admin_only=True)
    checked_in_at = Column(UTCDateTime(), nullable=True)
    checked_in_by = Column(UnicodeText, admin_only=True)
    badge_generated_at = Column(UTCDateTime(), nullable=True)

    custom_fields = Column(JSON, default=lambda: {}, server_default='{}')
    notes = Column(UnicodeText, admin_only=True)
    created = Column(UTCDateTime(), default=lambda: now_utc(), server_default=utcnow())

    ticket_type = relationship('TicketType', backref='registrations', cascade=_PLAIN_CASCADE)
    discount_code = relationship('DiscountCode', backref='registrations', cascade=_PLAIN_CASCADE)
    payment = relationship('Payment', backref='registrations', cascade=_PLAIN_CASCADE)
    addons = relationship('RegistrationAddon', backref='registration')

    __table_args__ = (
        UniqueConstraint('checkin_token'),
        Index('ix_registration_event_id_registration_number', 'event_id', 'registration_number'),
        Index('ix_registration_attendee_email', func.lower(attendee_email)),
    )

    @presave_adjustment
    def _attribute_adjustments(self):
        self.attendee_email = normalize_email(self.attendee_email)
        if not self.checkin_token:
            self.checkin_token = generate_token()

    @presave_adjustment
    def _assign_registration_number(self):
        if not self.registration_number and self.session and self.event:
            self.registration_number = self.next_number(self.session, self.event)

    @presave_adjustment
    def _track_confirmation(self):
        was = None if self.is_new else self.orig_value_of('status')
        if was == self.status:
            return

        if self.status == c.REG_CONFIRMED:
            delta = 1
            self.confirmed_at = self.confirmed_at or now_utc()
        elif was == c.REG_CONFIRMED:
            delta = -1
        else:
            return

        if self.ticket_type:
            self.ticket_type.adjust_sold(delta * (self.quantity or 1))
        if self.discount_code:
            self.discount_code.adjust_uses(delta)
        for registration_addon in self.addons:
            if registration_addon.addon:
                registration_addon.addon.quantity_sold = max(
                    0, (registration_addon.addon.quantity_sold or 0) + delta * registration_addon.quantity)

    @classmethod
    def next_number(cls, session, event):
        """
        Returns the next registration number for `event`.  Events may set a
        registration_prefix, registration_start and registration_suffix in
        their settings, e.g. "CONF-" / 1001 / "" gives CONF-1001, CONF-1002...
        Otherwise numbers look like AMAS-2610-0001, using the event's short
        code and the current year and month.
        """
        settings = event.settings or {}
        prefix = settings.get('registration_prefix') or ''
        suffix = settings.get('registration_suffix') or ''
        start = settings.get('registration_start')
        custom = bool(prefix or start)
        if not custom:
            prefix = '{}-{}-'.format(event.short_code, localized_now().strftime('%y%m'))
            suffix = ''

        existing = [number for (number,) in session.query(cls.registration_number).filter(
            cls.event_id == event.id, cls.registration_number.startswith(prefix))]
        existing += [r.registration_number for r in session.new
                     if isinstance(r, cls) and r.event_id in (event.id, None) and r.registration_number]

        pattern = re.compile(r'^{}(\d+){}$'.format(re.escape(prefix), re.escape(suffix)))
        current = max([int(m.group(1)) for m in map(pattern.match, existing) if m] or [0])

        if custom:
            return '{}{}{}'.format(prefix, max(int(start or 1), current + 1), suffix)
        return '{}{:04d}'.format(prefix, current + 1)

    @property
    def is_confirmed(self):
        return self.status == c.REG_CONFIRMED

    @property
    def addon_names(self):
        return [ra.addon.name for ra in self.addons if ra.addon]

    @property
    def verify_url(self):
        return c.CHECKIN_LINK_BASE + self.checkin_token

    def confirm(self, paid=True):
        self.status = c.REG_CONFIRMED
        if paid:
            self.payment_status = c.REG_PAYMENT_COMPLETED

    def cancel(self, refunded=False):
        self.status = c.REG_REFUNDED if refunded else c.REG_CANCELLED
        if refunded:
            self.payment_status = c.REG_PAYMENT_REFUNDED

    def has_addon(self, addon_id):
        return any((ra.addon.id if ra.addon else ra.addon_id) == addon_id for ra in self.addons)

    def add_addon(self, addon, quantity=1):
        """Attaches an addon unless this registration already has it."""
        if self.has_addon(addon.id):
            return None
        registration_addon = RegistrationAddon(
            addon=addon, quantity=quantity, unit_price=addon.price, total_price=addon.price * quantity)
        self.addons.append(registration_addon)
        return registration_addon

    def set_custom_field(self, name, value):
        self.custom_fields = dict(self.custom_fields or {}, **{name: value})

    def to_dict(self, fields=None):
        data = super().to_dict(fields)
        if not fields:
            data['ticket_type_name'] = self.ticket_type.name if self.ticket_type else ''
            data['addons'] = [ra.to_dict() for ra in self.addons]
        return data


class RegistrationAddon(MagModel):
    registration_id = Column(UUID(), ForeignKey('registration.id', ondelete='cascade'))
    addon_id = Column(UUID(), ForeignKey('addon.id', ondelete='cascade'))
    quantity = Column(Integer, default=1)
    unit_price = Column(Integer, default=0)
    total_price = Column(Integer, default=0)

    addon = relationship('Addon', backref='registration_addons', cascade=_PLAIN_CASCADE)

    __table_args__ = (UniqueConstraint('registration_id', 'addon_id'),)

    @presave_adjustment
    def _track_addon_sold(self):
        # Addons bought along with a registration are counted when the
        # registration is confirmed; this covers addons bought afterwards.
        registration = self.registration
        if self.is_new and self.addon and registration and not registration.is_new \
                and registration.orig_value_of('status') == c.REG_CONFIRMED \
                and registration.status == c.REG_CONFIRMED:
            self.addon.quantity_sold = (self.addon.quantity_sold or 0) + self.quantity

    def to_dict(self, fields=None):
        data = super().to_dict(fields)
        data['name'] = self.addon.name if self.addon else ''
        return data
