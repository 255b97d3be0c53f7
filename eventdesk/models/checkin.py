from sqlalchemy.schema import ForeignKey, UniqueConstraint
from sqlalchemy.types import Boolean

from eventdesk.config import c
from eventdesk.models import MagModel
from eventdesk.models.types import default_relationship as relationship, utcnow, \
    DefaultColumn as Column, JSON, UnicodeText, UTCDateTime, UUID


__all__ = ['CheckinList', 'CheckinRecord']


class CheckinList(MagModel):
    """
    A door that people are checked in at, e.g. "Main Hall" or "Workshop B".
    Lists may be limited to certain ticket types, and may require attendees
    to hold one of a set of addons (e.g. the workshop itself).  The event's
    main list is the one which also sets Registration.checked_in.
    """
    event_id = Column(UUID(), ForeignKey('event.id', ondelete='cascade'))
    name = Column(UnicodeText)
    ticket_type_ids = Column(JSON, default=lambda: [], server_default='[]')
    addon_ids = Column(JSON, default=lambda: [], server_default='[]')
    is_main = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created = Column(UTCDateTime(), server_default=utcnow())

    records = relationship('CheckinRecord', backref='checkin_list')

    def eligibility_error(self, registration):
        """Returns why `registration` can't be checked in at this list, or None if it can."""
        if not self.is_active:
            return 'The {} check-in list is closed'.format(self.name)
        if registration.event_id != self.event_id:
            return 'This registration is for a different event'
        if registration.status != c.REG_CONFIRMED:
            return 'Only confirmed registrations can be checked in (this one is {})'.format(
                registration.status_label.lower())
        if self.ticket_type_ids and registration.ticket_type_id not in self.ticket_type_ids:
            return '{} tickets are not valid for {}'.format(
                registration.ticket_type.name if registration.ticket_type else 'These', self.name)
        if self.addon_ids and not any(registration.has_addon(addon_id) for addon_id in self.addon_ids):
            return '{} requires an addon this attendee has not bought'.format(self.name)

    def record_for(self, registration):
        for record in self.records:
            if record.registration_id == registration.id:
                return record

    def to_dict(self, fields=None):
        data = super().to_dict(fields)
        if not fields:
            data['checked_in_count'] = len([r for r in self.records if r.is_checked_in])
        return data


class CheckinRecord(MagModel):
    checkin_list_id = Column(UUID(), ForeignKey('checkin_list.id', ondelete='cascade'))
    registration_id = Column(UUID(), ForeignKey('registration.id', ondelete='cascade'))
    is_checked_in = Column(Boolean, default=True)
    checked_in_at = Column(UTCDateTime(), nullable=True)
    checked_out_at = Column(UTCDateTime(), nullable=True)
    checked_in_by = Column(UnicodeText)

    registration = relationship('Registration', backref='checkin_records',
                                cascade='save-update,merge,refresh-expire,expunge')

    __table_args__ = (UniqueConstraint('checkin_list_id', 'registration_id'),)
