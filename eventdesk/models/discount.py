import re

from sqlalchemy import CheckConstraint, func
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.schema import ForeignKey, Index
from sqlalchemy.types import Boolean, Float, Integer

from eventdesk.config import c
from eventdesk.decorators import presave_adjustment
from eventdesk.models import MagModel
from eventdesk.models.types import Choice, DefaultColumn as Column, JSON, UnicodeText, UTCDateTime, UUID
from eventdesk.utils import format_currency, percent_of, utcnow


__all__ = ['DiscountCode']


class DiscountCode(MagModel):
    """
    A code which takes money off an order.

    Attributes:
        code (str): The text people type in.  Stored upper-cased with runs
            of whitespace collapsed, and unique per event.
        discount_type (int): Either c.PERCENTAGE_DISCOUNT, in which case
            `discount_value` is a percentage of the order subtotal, or
            c.FIXED_DISCOUNT, in which case it is an amount in minor units.
        max_uses (int): How many confirmed registrations may use this code,
            or None for unlimited.
        current_uses (int): How many confirmed registrations have used it.
            Registration keeps this up to date as statuses change.
        min_order_amount (int): The subtotal must be at least this much for
            the code to apply.
        max_discount_amount (int): Upper bound on the discount this code
            can give; zero or None means no cap.
        applies_to_ticket_ids (list): If non-empty, the code only applies to
            orders containing at least one of these ticket types.
    """
    event_id = Column(UUID(), ForeignKey('event.id', ondelete='cascade'))
    code = Column(UnicodeText)
    description = Column(UnicodeText)
    discount_type = Column(Choice(c.DISCOUNT_TYPE_OPTS), default=c.PERCENTAGE_DISCOUNT)
    discount_value = Column(Float, default=0)

    max_uses = Column(Integer, nullable=True)
    current_uses = Column(Integer, default=0, admin_only=True)
    min_order_amount = Column(Integer, default=0)
    max_discount_amount = Column(Integer, nullable=True)

    valid_from = Column(UTCDateTime(), nullable=True)
    valid_until = Column(UTCDateTime(), nullable=True)
    is_active = Column(Boolean, default=True)
    applies_to_ticket_ids = Column(JSON, default=lambda: [], server_default='[]')

    __table_args__ = (
        Index('uq_discount_code_event_id_code', 'event_id', func.upper(code), unique=True),
        CheckConstraint(func.trim(code) != '', name='ck_discount_code_non_empty_code'),
    )

    @classmethod
    def normalize_code(cls, code):
        return re.sub(r'\s+', ' ', (code or '').strip()).upper()

    @hybrid_property
    def normalized_code(self):
        return self.normalize_code(self.code)

    @normalized_code.expression
    def normalized_code(cls):
        return func.upper(cls.code)

    @presave_adjustment
    def _attribute_adjustments(self):
        self.code = self.normalize_code(self.code)
        if not self.max_uses:
            self.max_uses = None
        self.current_uses = max(0, self.current_uses or 0)

    @property
    def is_unlimited(self):
        return not self.max_uses

    @property
    def uses_remaining(self):
        return None if self.is_unlimited else max(0, self.max_uses - (self.current_uses or 0))

    def is_valid(self, now=None):
        now = now or utcnow()
        if not self.is_active:
            return False
        if self.valid_from and now < self.valid_from:
            return False
        if self.valid_until and now > self.valid_until:
            return False
        return self.is_unlimited or self.uses_remaining > 0

    def invalid_reason(self, now=None):
        now = now or utcnow()
        if not self.is_active:
            return 'This discount code is no longer active'
        if self.valid_from and now < self.valid_from:
            return 'This discount code is not valid yet'
        if self.valid_until and now > self.valid_until:
            return 'This discount code has expired'
        if not self.is_unlimited and self.uses_remaining <= 0:
            return 'This discount code has been fully redeemed'

    def applies_to(self, ticket_ids):
        allowed = set(self.applies_to_ticket_ids or [])
        return not allowed or bool(allowed.intersection(ticket_ids))

    def compute_discount(self, subtotal, ticket_ids=(), now=None):
        """
        Returns the amount (in minor units) this code takes off an order.

        Args:
            subtotal (int): Order subtotal before tax, in minor units.
            ticket_ids (iterable): Ticket type ids in the order.

        Returns:
            int: Never negative and never more than `subtotal`.  Zero if the
                code isn't currently valid, doesn't apply to these tickets, or
                the order is below `min_order_amount`.
        """
        if not subtotal or subtotal < 0 or not self.is_valid(now) or not self.applies_to(ticket_ids):
            return 0
        if subtotal < (self.min_order_amount or 0):
            return 0

        if self.discount_type == c.PERCENTAGE_DISCOUNT:
            discount = percent_of(subtotal, self.discount_value)
        else:
            discount = int(self.discount_value or 0)
        if self.max_discount_amount:
            discount = min(discount, self.max_discount_amount)

        return max(0, min(discount, subtotal))

    @property
    def discount_str(self):
        if self.discount_type == c.PERCENTAGE_DISCOUNT:
            return '{:g}% off'.format(self.discount_value or 0)
        return '{} off'.format(format_currency(self.discount_value))

    def adjust_uses(self, delta):
        self.current_uses = max(0, (self.current_uses or 0) + delta)
