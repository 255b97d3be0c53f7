from datetime import datetime

from pockets.autolog import log

from eventdesk.config import c
from eventdesk.decorators import ajax, ajax_gettable, all_renderable, requires_permission
from eventdesk.errors import ValidationError
from eventdesk.models import TravelItinerary
from eventdesk.ticket_extraction import extract_and_match
from eventdesk.travel_matching import Journey
from eventdesk.utils import bool_param, json_param, normalize_email


REQUEST_FIELDS = ['speaker_name', 'speaker_email', 'speaker_phone', 'notes'] + [
    '{}_{}'.format(leg, field) for leg in TravelItinerary.LEGS for field in ('from_city', 'to_city', 'preferred_time')]


def _parse_day(value):
    if not value:
        return None
    try:
        return datetime.strptime(value, c.DATE_FORMAT).date()
    except ValueError:
        raise ValidationError('{!r} is not a date; use YYYY-MM-DD', value)


@all_renderable()
class Root:
    @ajax_gettable
    @requires_permission('flights')
    def index(self, session, event_id):
        itineraries = session.query(TravelItinerary).filter_by(event_id=event_id).order(['speaker_name']).all()
        return {'success': True, 'itineraries': [i.to_dict() for i in itineraries]}

    @ajax
    @requires_permission('flights')
    def save(self, session, event_id, id='', trip_type='', self_booked='', extra_legs='', **params):
        """Creates or updates the requested side of a speaker's travel."""
        if id:
            itinerary = session.travel_itinerary(id)
            if itinerary.event_id != event_id:
                raise ValidationError('That itinerary is for a different event')
        else:
            itinerary = TravelItinerary(event_id=session.event(event_id).id)
            session.add(itinerary)

        for field in REQUEST_FIELDS:
            if field in params:
                setattr(itinerary, field, (params[field] or '').strip())
        for leg in TravelItinerary.LEGS:
            if leg + '_date' in params:
                setattr(itinerary, leg + '_date', _parse_day(params[leg + '_date']))
        if trip_type:
            value = c.enum_value('trip_type', trip_type)
            if value is None:
                raise ValidationError('{!r} is not a trip type', trip_type)
            itinerary.trip_type = value
        if self_booked != '':
            itinerary.self_booked = bool_param(self_booked)
        if extra_legs != '':
            itinerary.extra_legs = json_param(extra_legs, [])

        if not itinerary.speaker_name or not normalize_email(itinerary.speaker_email):
            raise ValidationError('Please enter the speaker\'s name and email')
        session.flush()
        return {'success': True, 'itinerary': itinerary.to_dict()}

    @ajax
    @requires_permission('flights')
    def book(self, session, event_id, id, leg, details='', status=''):
        """Records flight details for one leg and optionally moves it along, e.g. to "booked"."""
        itinerary = session.travel_itinerary(id)
        if itinerary.event_id != event_id:
            raise ValidationError('That itinerary is for a different event')
        itinerary.apply_booking(leg, json_param(details, {}), admin=True)
        if status:
            itinerary.transition(leg, status)
        return {'success': True, 'itinerary': itinerary.to_dict()}

    @ajax
    @requires_permission('flights')
    def set_status(self, session, event_id, id, leg, status):
        itinerary = session.travel_itinerary(id)
        if itinerary.event_id != event_id:
            raise ValidationError('That itinerary is for a different event')
        itinerary.transition(leg, status)
        return {'success': True, 'itinerary': itinerary.to_dict()}

    @ajax
    @requires_permission('flights')
    def upload_ticket(self, session, event_id, id, ticket):
        """Reads an uploaded e-ticket and reports how well it matches what the speaker asked for."""
        itinerary = session.travel_itinerary(id)
        if itinerary.event_id != event_id:
            raise ValidationError('That itinerary is for a different event')
        if not getattr(ticket, 'file', None):
            raise ValidationError('Please upload a ticket')
        content = ticket.file.read()
        log.debug('Received ticket {} ({} bytes) for {}', ticket.filename, len(content), itinerary.speaker_email)
        return {'success': True, 'extraction': extract_and_match(session, itinerary, ticket.filename, content)}

    @ajax
    @requires_permission('flights')
    def apply_extraction(self, session, event_id, id, leg):
        """Copies the journey matched to `leg` by the last upload into the booking for that leg."""
        itinerary = session.travel_itinerary(id)
        if itinerary.event_id != event_id:
            raise ValidationError('That itinerary is for a different event')
        matched = ((itinerary.extraction or {}).get('match') or {}).get(leg) or {}
        if not matched.get('journey'):
            raise ValidationError('No {} flight was found on the uploaded ticket', leg)
        itinerary.apply_booking(leg, Journey(**matched['journey']).booking_details(), admin=True)
        return {'success': True, 'itinerary': itinerary.to_dict()}
