from collections import OrderedDict

from sqlalchemy import func
from sqlalchemy.schema import UniqueConstraint
from sqlalchemy.types import Boolean, Date, Integer

from eventdesk.config import c
from eventdesk.decorators import presave_adjustment
from eventdesk.models import MagModel
from eventdesk.models.types import default_relationship as relationship, utcnow, Choice, \
    DefaultColumn as Column, JSON, UnicodeText, UTCDateTime
from eventdesk.utils import localized_now, slugify


__all__ = ['Event']


class Event(MagModel):
    """
    A conference, workshop, or other gathering that people register for.

    Attributes:
        slug (str): URL-friendly unique identifier, generated from the name
            when one isn't given.
        settings (dict): Per-event knobs which don't deserve their own column:

            * registration_prefix, registration_start, registration_suffix:
              custom registration number format, e.g. "CONF26-" + 101 + "-A"
            * auto_send_receipt, auto_send_badge: what to email once a
              registration is paid for
            * badge_template: see eventdesk.badges.render_badges
    """
    name = Column(UnicodeText)
    short_name = Column(UnicodeText)
    slug = Column(UnicodeText, admin_only=True)
    description = Column(UnicodeText)
    venue = Column(UnicodeText)
    city = Column(UnicodeText)
    country = Column(UnicodeText, default='India')
    timezone = Column(UnicodeText, default='Asia/Kolkata')
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)

    status = Column(Choice(c.EVENT_STATUS_OPTS), default=c.EVENT_DRAFT, admin_only=True)
    is_public = Column(Boolean, default=False, admin_only=True)
    registration_open = Column(Boolean, default=False, admin_only=True)
    max_attendees = Column(Integer, nullable=True, admin_only=True)

    contact_email = Column(UnicodeText)
    website_url = Column(UnicodeText)
    banner_url = Column(UnicodeText)
    logo_url = Column(UnicodeText)
    primary_color = Column(UnicodeText, default='#1f2937')

    settings = Column(JSON, default=lambda: {}, server_default='{}', admin_only=True)
    created = Column(UTCDateTime(), server_default=utcnow())

    ticket_types = relationship('TicketType', backref='event', order_by='TicketType.sort_order')
    addons = relationship('Addon', backref='event', order_by='Addon.name')
    discount_codes = relationship('DiscountCode', backref='event')
    registrations = relationship('Registration', backref='event')
    checkin_lists = relationship('CheckinList', backref='event')

    __table_args__ = (UniqueConstraint('slug'),)

    @presave_adjustment
    def _slug_from_name(self):
        if not self.slug:
            base = slugify(self.name) or 'event'
            slug, suffix = base, 2
            while self.session and self.session.query(Event).filter(Event.slug == slug, Event.id != self.id).first():
                slug = '{}-{}'.format(base, suffix)
                suffix += 1
            self.slug = slug

    @classmethod
    def public_query(cls, session):
        return session.query(cls).filter(
            cls.is_public == True,  # noqa: E712
            cls.status == c.EVENT_PUBLISHED).order_by(cls.start_date)

    def setting(self, name, default=None):
        return (self.settings or {}).get(name, default)

    @property
    def is_upcoming(self):
        return bool(self.start_date) and self.start_date > localized_now().date()

    @property
    def is_ongoing(self):
        today = localized_now().date()
        return bool(self.start_date) and self.start_date <= today <= (self.end_date or self.start_date)

    @property
    def is_accepting_registrations(self):
        return self.registration_open and self.status == c.EVENT_PUBLISHED

    @property
    def short_code(self):
        """The prefix used in default registration numbers, e.g. "AMAS" for "AMASICON 2026"."""
        letters = ''.join(ch for ch in (self.short_name or self.name or '') if ch.isalnum()).upper()
        return letters[:4] or 'EVT'

    @property
    def confirmed_count(self):
        from eventdesk.models.registration import Registration
        return self.session.query(func.coalesce(func.sum(Registration.quantity), 0)).filter(
            Registration.event_id == self.id, Registration.status == c.REG_CONFIRMED).scalar()

    @property
    def is_full(self):
        return bool(self.max_attendees) and self.confirmed_count >= self.max_attendees

    def registration_summary(self):
        """
        Counts of this event's registrations by status, along with how many
        confirmed attendees have checked in and the revenue they represent.
        """
        from eventdesk.models.registration import Registration
        counts = OrderedDict((c.enum_name('registration_status', val), 0) for val, _ in c.REGISTRATION_STATUS_OPTS)
        rows = self.session.query(Registration.status, func.count(Registration.id)).filter(
            Registration.event_id == self.id).group_by(Registration.status).all()
        for status, count in rows:
            counts[c.enum_name('registration_status', status)] = count

        checked_in, revenue = self.session.query(
            func.count(Registration.id).filter(Registration.checked_in == True),  # noqa: E712
            func.coalesce(func.sum(Registration.total_amount), 0)
        ).filter(Registration.event_id == self.id, Registration.status == c.REG_CONFIRMED).one()

        return {
            'total': sum(counts.values()),
            'by_status': counts,
            'checked_in': checked_in,
            'revenue': revenue,
            'currency': c.CURRENCY,
        }

    def ticket_sales_summary(self):
        from eventdesk.models.registration import Registration
        revenue = dict(self.session.query(
            Registration.ticket_type_id, func.coalesce(func.sum(Registration.total_amount), 0)
        ).filter(Registration.event_id == self.id, Registration.status == c.REG_CONFIRMED).group_by(
            Registration.ticket_type_id).all())
        return [{
            'id': ticket.id,
            'name': ticket.name,
            'price': ticket.price,
            'status': ticket.status_label,
            'quantity_sold': ticket.quantity_sold,
            'quantity_total': ticket.quantity_total,
            'quantity_available': ticket.quantity_available,
            'revenue': revenue.get(ticket.id, 0),
        } for ticket in self.ticket_types]

    def to_public_dict(self):
        data = self.to_dict(fields=[
            'id', 'name', 'short_name', 'slug', 'description', 'venue', 'city', 'country', 'timezone',
            'start_date', 'end_date', 'contact_email', 'website_url', 'banner_url', 'logo_url', 'primary_color'])
        data['registration_open'] = self.is_accepting_registrations
        data['is_upcoming'] = self.is_upcoming
        data['is_ongoing'] = self.is_ongoing
        return data
