from datetime import timedelta

from sqlalchemy import func
from sqlalchemy.schema import ForeignKey, Index
from sqlalchemy.types import Integer

from eventdesk.config import c
from eventdesk.decorators import presave_adjustment
from eventdesk.errors import PaymentError
from eventdesk.models import MagModel
from eventdesk.models.types import default_relationship as relationship, utcnow, Choice, \
    DefaultColumn as Column, JSON, UnicodeText, UTCDateTime, UUID
from eventdesk.utils import localized_now, utcnow as now_utc


__all__ = ['Payment']


class Payment(MagModel):
    """
    One attempt to collect money, whether through Stripe or recorded by hand
    (bank transfer, cash).  A payment is created as pending when checkout
    starts and is completed once the gateway confirms it, either through
    verify_payment() or the Stripe webhook, whichever arrives first.

    Attributes:
        payment_number (str): Human readable reference, PAY-YYYYMMDD-NNNNN.
        amount (int): What the payer is charged, in minor units.
        net_amount (int): amount - refund_amount.
        meta (dict): What we need to fulfil the payment once it completes:

            * validated_tickets: [{ticket_type_id, quantity, unit_price,
              tax_percentage}] as computed on the server at checkout
            * validated_amount, idempotency_key
            * addons_selection: [{addon_id, quantity}]
            * registration_id: for addon purchases and individual checkouts
            * order_id, buyer_id, registration_ids, attendee_count: for
              group checkouts
            * attendee: {name, email, phone, institution, designation}
    """
    payment_number = Column(UnicodeText, admin_only=True)
    payment_type = Column(Choice(c.PAYMENT_TYPE_OPTS), default=c.REGISTRATION_PAYMENT)
    event_id = Column(UUID(), ForeignKey('event.id', ondelete='SET NULL'), nullable=True)

    payer_name = Column(UnicodeText)
    payer_email = Column(UnicodeText)
    payer_phone = Column(UnicodeText)

    amount = Column(Integer, default=0)
    currency = Column(UnicodeText, default=c.CURRENCY)
    tax_amount = Column(Integer, default=0)
    discount_amount = Column(Integer, default=0)
    net_amount = Column(Integer, default=0)

    payment_method = Column(Choice(c.PAYMENT_METHOD_OPTS), default=c.STRIPE_METHOD)
    status = Column(Choice(c.PAYMENT_STATUS_OPTS), default=c.PAYMENT_PENDING)

    stripe_intent_id = Column(UnicodeText, nullable=True)
    stripe_charge_id = Column(UnicodeText, nullable=True)
    bank_reference = Column(UnicodeText)
    failure_reason = Column(UnicodeText)

    refund_amount = Column(Integer, default=0)
    refund_reason = Column(UnicodeText)
    stripe_refund_id = Column(UnicodeText, nullable=True)
    refunded_at = Column(UTCDateTime(), nullable=True)

    idempotency_key = Column(UnicodeText)
    meta = Column(JSON, default=lambda: {}, server_default='{}')
    created = Column(UTCDateTime(), default=lambda: now_utc(), server_default=utcnow())
    completed_at = Column(UTCDateTime(), nullable=True)

    event = relationship('Event', backref='payments', cascade='save-update,merge,refresh-expire,expunge')

    __table_args__ = (
        Index('ix_payment_stripe_intent_id', stripe_intent_id),
        Index('ix_payment_payer_email', func.lower(payer_email)),
    )

    @presave_adjustment
    def _attribute_adjustments(self):
        self.payer_email = (self.payer_email or '').strip().lower()
        self.net_amount = (self.amount or 0) - (self.refund_amount or 0)
        if not self.payment_number and self.session:
            self.payment_number = self.next_number(self.session)

    @classmethod
    def next_number(cls, session):
        today = localized_now()
        prefix = 'PAY-{}-'.format(today.strftime('%Y%m%d'))
        count = session.query(func.count(cls.id)).filter(cls.payment_number.startswith(prefix)).scalar()
        pending = [p for p in session.new if isinstance(p, cls) and (p.payment_number or '').startswith(prefix)]
        return '{}{:05d}'.format(prefix, count + len(pending) + 1)

    @classmethod
    def find_recent_duplicate(cls, session, email, amount, window=None, payment_type=None):
        """
        Returns a pending payment by the same payer for the same amount which
        was started within `window` (defaults to c.DUPLICATE_PAYMENT_DELTA),
        so a double-clicked checkout button doesn't open two charges.
        """
        since = now_utc() - (window or c.DUPLICATE_PAYMENT_DELTA)
        query = session.query(cls).filter(
            func.lower(cls.payer_email) == (email or '').strip().lower(),
            cls.amount == amount,
            cls.status == c.PAYMENT_PENDING,
            cls.created >= since)
        if payment_type is not None:
            query = query.filter(cls.payment_type == payment_type)
        return query.order_by(cls.created.desc()).first()

    @property
    def is_completed(self):
        return self.status == c.PAYMENT_COMPLETED

    @property
    def refundable_amount(self):
        if self.status not in (c.PAYMENT_COMPLETED, c.PAYMENT_PARTIALLY_REFUNDED):
            return 0
        return max(0, (self.amount or 0) - (self.refund_amount or 0))

    def set_meta(self, **values):
        # JSON columns don't track in-place mutation, so always assign a new dict
        self.meta = dict(self.meta or {}, **values)

    def mark_completed(self, charge_id=None):
        self.status = c.PAYMENT_COMPLETED
        self.completed_at = now_utc()
        if charge_id:
            self.stripe_charge_id = charge_id

    def mark_failed(self, reason=''):
        self.status = c.PAYMENT_FAILED
        self.failure_reason = reason or 'Payment failed'

    def record_refund(self, amount, reason='', refund_id=None):
        if amount <= 0:
            raise PaymentError('Refund amount must be positive')
        if amount > self.refundable_amount:
            raise PaymentError('Cannot refund {} of a payment with {} left to refund', amount, self.refundable_amount)
        self.refund_amount = (self.refund_amount or 0) + amount
        self.refund_reason = reason or self.refund_reason
        self.refunded_at = now_utc()
        if refund_id:
            self.stripe_refund_id = refund_id
        self.status = c.PAYMENT_REFUNDED if self.refund_amount >= self.amount else c.PAYMENT_PARTIALLY_REFUNDED
        self.net_amount = self.amount - self.refund_amount

    @property
    def is_stale(self):
        return self.status == c.PAYMENT_PENDING and self.created and \
            self.created < now_utc() - c.ABANDONED_PAYMENT_DELTA

    def to_dict(self, fields=None):
        data = super().to_dict(fields)
        if not fields:
            data.pop('meta', None)
            data.pop('idempotency_key', None)
        return data
