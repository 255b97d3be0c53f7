from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.schema import ForeignKey
from sqlalchemy.types import Boolean, Float, Integer

from eventdesk.config import c
from eventdesk.decorators import presave_adjustment
from eventdesk.models import MagModel
from eventdesk.models.types import Choice, DefaultColumn as Column, UnicodeText, UTCDateTime, UUID
from eventdesk.utils import utcnow


__all__ = ['Addon', 'TicketType']


class TicketType(MagModel):
    """
    Something people can buy to register for an event, e.g. "Delegate" or
    "Student".

    Attributes:
        price (int): Price per ticket in minor units of `currency`, before tax.
        quantity_total (int): How many may be sold in total, or None for no
            limit.
        quantity_sold (int): How many confirmed registrations hold this
            ticket.  This is kept up to date by Registration whenever a
            registration moves into or out of the confirmed status, so never
            set it by hand.
        tax_percentage (float): Tax charged on top of `price`.
    """
    event_id = Column(UUID(), ForeignKey('event.id', ondelete='cascade'))
    name = Column(UnicodeText)
    description = Column(UnicodeText)
    price = Column(Integer, default=0)
    currency = Column(UnicodeText, default=c.CURRENCY)

    quantity_total = Column(Integer, nullable=True)
    quantity_sold = Column(Integer, default=0, admin_only=True)
    min_per_order = Column(Integer, default=1)
    max_per_order = Column(Integer, default=10)

    sale_start = Column(UTCDateTime(), nullable=True)
    sale_end = Column(UTCDateTime(), nullable=True)

    status = Column(Choice(c.TICKET_STATUS_OPTS), default=c.TICKET_DRAFT)
    is_hidden = Column(Boolean, default=False)
    requires_approval = Column(Boolean, default=False)
    tax_percentage = Column(Float, default=c.DEFAULT_TAX_PERCENTAGE)
    sort_order = Column(Integer, default=0)

    @presave_adjustment
    def _attribute_adjustments(self):
        self.quantity_sold = max(0, self.quantity_sold or 0)
        if self.quantity_total is not None and self.quantity_total < 0:
            self.quantity_total = None

    @hybrid_property
    def is_unlimited(self):
        return self.quantity_total == None  # noqa: E711

    @property
    def quantity_available(self):
        if self.quantity_total is None:
            return None
        return max(0, self.quantity_total - (self.quantity_sold or 0))

    @property
    def is_sold_out(self):
        return self.quantity_available == 0

    def has_available(self, quantity):
        return self.quantity_total is None or (self.quantity_sold or 0) + quantity <= self.quantity_total

    def is_on_sale(self, now=None):
        now = now or utcnow()
        if self.status != c.TICKET_ACTIVE:
            return False
        if self.sale_start and now < self.sale_start:
            return False
        if self.sale_end and now > self.sale_end:
            return False
        return True

    def purchase_error(self, quantity, now=None):
        """
        Returns a message explaining why `quantity` of this ticket can't be
        bought right now, or None if they can.
        """
        if not self.is_on_sale(now):
            return '{} is not currently on sale'.format(self.name)
        if quantity < (self.min_per_order or 1):
            return 'You must buy at least {} {} tickets'.format(self.min_per_order, self.name)
        if self.max_per_order and quantity > self.max_per_order:
            return 'You may buy at most {} {} tickets'.format(self.max_per_order, self.name)
        if not self.has_available(quantity):
            return 'Only {} {} tickets are left'.format(self.quantity_available, self.name)

    def can_purchase(self, quantity, now=None):
        return self.purchase_error(quantity, now) is None

    def adjust_sold(self, delta):
        self.quantity_sold = max(0, (self.quantity_sold or 0) + delta)

    def to_public_dict(self):
        data = self.to_dict(fields=[
            'id', 'name', 'description', 'price', 'currency', 'min_per_order', 'max_per_order',
            'sale_start', 'sale_end', 'requires_approval', 'tax_percentage'])
        data['quantity_available'] = self.quantity_available
        data['is_sold_out'] = self.is_sold_out
        return data


class Addon(MagModel):
    """Optional extras bought alongside a ticket, e.g. a workshop or a dinner."""
    event_id = Column(UUID(), ForeignKey('event.id', ondelete='cascade'))
    name = Column(UnicodeText)
    description = Column(UnicodeText)
    price = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    max_quantity = Column(Integer, nullable=True)
    quantity_sold = Column(Integer, default=0, admin_only=True)

    @property
    def quantity_available(self):
        if self.max_quantity is None:
            return None
        return max(0, self.max_quantity - (self.quantity_sold or 0))

    def has_available(self, quantity):
        return self.max_quantity is None or (self.quantity_sold or 0) + quantity <= self.max_quantity

    def to_public_dict(self):
        data = self.to_dict(fields=['id', 'name', 'description', 'price'])
        data['quantity_available'] = self.quantity_available
        return data
