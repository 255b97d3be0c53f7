from sqlalchemy.schema import ForeignKey, UniqueConstraint
from sqlalchemy.types import Boolean, Date, Integer

from eventdesk.config import c
from eventdesk.decorators import presave_adjustment
from eventdesk.errors import ValidationError
from eventdesk.models import MagModel
from eventdesk.models.types import default_relationship as relationship, utcnow, Choice, \
    DefaultColumn as Column, JSON, UnicodeText, UTCDateTime, UUID
from eventdesk.utils import normalize_email


__all__ = ['TravelItinerary']


class TravelItinerary(MagModel):
    """
    A speaker's travel for one event: the flights they asked for, and the
    flights the travel desk (or the speaker, if self_booked) actually booked.

    Each booked leg moves through its own status:

        pending -> booked -> confirmed
        any of those -> cancelled
        cancelled -> pending

    Once a leg is booked or confirmed, or has a ticket attached, the speaker
    can no longer edit it; only the travel desk can.
    """
    LEGS = ('onward', 'return')
    BOOKING_FIELDS = (
        'pnr', 'flight_number', 'airline', 'departure_time', 'arrival_time', 'seat', 'cost', 'ticket_url')

    event_id = Column(UUID(), ForeignKey('event.id', ondelete='cascade'))
    speaker_name = Column(UnicodeText)
    speaker_email = Column(UnicodeText)
    speaker_phone = Column(UnicodeText)
    trip_type = Column(Choice(c.TRIP_TYPE_OPTS), default=c.ROUND_TRIP)

    onward_from_city = Column(UnicodeText)
    onward_to_city = Column(UnicodeText)
    onward_date = Column(Date, nullable=True)
    onward_preferred_time = Column(UnicodeText)

    return_from_city = Column(UnicodeText)
    return_to_city = Column(UnicodeText)
    return_date = Column(Date, nullable=True)
    return_preferred_time = Column(UnicodeText)

    extra_legs = Column(JSON, default=lambda: [], server_default='[]')

    onward_status = Column(Choice(c.TRAVEL_STATUS_OPTS), default=c.TRAVEL_PENDING, admin_only=True)
    onward_pnr = Column(UnicodeText)
    onward_flight_number = Column(UnicodeText)
    onward_airline = Column(UnicodeText)
    onward_departure_time = Column(UnicodeText)
    onward_arrival_time = Column(UnicodeText)
    onward_seat = Column(UnicodeText)
    onward_cost = Column(Integer, default=0, admin_only=True)
    onward_ticket_url = Column(UnicodeText)

    return_status = Column(Choice(c.TRAVEL_STATUS_OPTS), default=c.TRAVEL_PENDING, admin_only=True)
    return_pnr = Column(UnicodeText)
    return_flight_number = Column(UnicodeText)
    return_airline = Column(UnicodeText)
    return_departure_time = Column(UnicodeText)
    return_arrival_time = Column(UnicodeText)
    return_seat = Column(UnicodeText)
    return_cost = Column(Integer, default=0, admin_only=True)
    return_ticket_url = Column(UnicodeText)

    self_booked = Column(Boolean, default=False)
    notes = Column(UnicodeText)
    extraction = Column(JSON, default=lambda: {}, server_default='{}', admin_only=True)
    created = Column(UTCDateTime(), server_default=utcnow())

    event = relationship('Event', backref='travel_itineraries', cascade='save-update,merge,refresh-expire,expunge')

    __table_args__ = (UniqueConstraint('event_id', 'speaker_email'),)

    @presave_adjustment
    def _normalize_email(self):
        self.speaker_email = normalize_email(self.speaker_email)

    _transitions = {
        c.TRAVEL_PENDING: {c.TRAVEL_BOOKED, c.TRAVEL_CANCELLED},
        c.TRAVEL_BOOKED: {c.TRAVEL_CONFIRMED, c.TRAVEL_CANCELLED},
        c.TRAVEL_CONFIRMED: {c.TRAVEL_CANCELLED},
        c.TRAVEL_CANCELLED: {c.TRAVEL_PENDING},
    }

    def _check_leg(self, leg):
        if leg not in self.LEGS:
            raise ValidationError('{!r} is not a leg of this trip', leg)

    def leg_status(self, leg):
        self._check_leg(leg)
        return getattr(self, leg + '_status')

    def can_transition(self, leg, new_status):
        current = self.leg_status(leg)
        return new_status == current or new_status in self._transitions.get(current, set())

    def transition(self, leg, new_status):
        """
        Moves one leg to `new_status`, which may be an enum value or a name
        like "booked".  Raises ValidationError for anything the state machine
        doesn't allow, e.g. taking a confirmed flight back to booked.
        """
        status = c.enum_value('travel_status', new_status)
        if status is None:
            status = c.enum_value('travel_status', 'travel_' + str(new_status))
        if status is None:
            raise ValidationError('{!r} is not a travel status', new_status)

        if not self.can_transition(leg, status):
            raise ValidationError(
                'The {} flight cannot go from {} to {}', leg,
                c.TRAVEL_STATUS[self.leg_status(leg)].lower(), c.TRAVEL_STATUS[status].lower())
        setattr(self, leg + '_status', status)
        return status

    def is_leg_locked(self, leg):
        return self.leg_status(leg) in (c.TRAVEL_BOOKED, c.TRAVEL_CONFIRMED) \
            or bool(getattr(self, leg + '_ticket_url'))

    def apply_booking(self, leg, details, admin=False):
        """Copies booking fields for one leg out of `details`, e.g. a form submission or a matched journey."""
        self._check_leg(leg)
        if self.is_leg_locked(leg) and not admin:
            raise ValidationError('The {} flight has already been booked and can no longer be changed', leg)

        for field in self.BOOKING_FIELDS:
            if field in details and details[field] is not None:
                value = details[field]
                if field == 'cost':
                    value = int(value or 0)
                else:
                    value = str(value).strip()
                setattr(self, leg + '_' + field, value)

    @property
    def has_return(self):
        return self.trip_type in (c.ROUND_TRIP, c.MULTI_CITY)

    def requested_leg(self, leg):
        self._check_leg(leg)
        date = getattr(self, leg + '_date')
        return {
            'leg': leg,
            'from_city': getattr(self, leg + '_from_city'),
            'to_city': getattr(self, leg + '_to_city'),
            'date': date.strftime('%Y-%m-%d') if date else '',
            'preferred_time': getattr(self, leg + '_preferred_time'),
        }

    def requested_legs(self):
        legs = [self.requested_leg('onward')]
        if self.has_return and (self.return_from_city or self.return_to_city):
            legs.append(self.requested_leg('return'))
        if self.trip_type == c.MULTI_CITY:
            for index, extra in enumerate(self.extra_legs or [], start=1):
                legs.append({
                    'leg': 'extra_{}'.format(index),
                    'from_city': extra.get('from_city', ''),
                    'to_city': extra.get('to_city', ''),
                    'date': extra.get('date', ''),
                    'preferred_time': extra.get('preferred_time', ''),
                })
        return legs

    def booked_leg(self, leg):
        data = {field: getattr(self, leg + '_' + field) for field in self.BOOKING_FIELDS}
        data['status'] = c.enum_name('travel_status', self.leg_status(leg)).replace('travel_', '')
        data['locked'] = self.is_leg_locked(leg)
        return data

    def to_dict(self, fields=None):
        data = super().to_dict(fields)
        if not fields:
            data['onward'] = self.booked_leg('onward')
            data['return'] = self.booked_leg('return') if self.has_return else None
        return data
