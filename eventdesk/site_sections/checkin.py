import cherrypy

from eventdesk import checkin
from eventdesk.decorators import ajax, ajax_gettable, all_renderable, requires_permission
from eventdesk.errors import ValidationError
from eventdesk.models import CheckinList
from eventdesk.utils import bool_param, list_param


def _list_for_event(session, event_id, list_id=''):
    """The named check-in list, or the event's main list, creating it on first use."""
    if list_id:
        checkin_list = session.checkin_list(list_id)
        if checkin_list.event_id != event_id:
            raise ValidationError('That check-in list is for a different event')
        return checkin_list

    checkin_list = session.query(CheckinList).filter_by(event_id=event_id, is_main=True).first()
    if not checkin_list:
        checkin_list = CheckinList(event=session.event(event_id), name='Main Entrance', is_main=True)
        session.add(checkin_list)
        session.flush()
    return checkin_list


@all_renderable()
class Root:
    @ajax_gettable
    @requires_permission('checkin')
    def lists(self, session, event_id):
        _list_for_event(session, event_id)
        lists = session.query(CheckinList).filter_by(event_id=event_id).order(['-is_main', 'name']).all()
        return {'success': True, 'lists': [checkin_list.to_dict() for checkin_list in lists]}

    @ajax
    @requires_permission('checkin')
    def save_list(self, session, event_id, name, id='', ticket_type_ids='', addon_ids='', is_active='true'):
        checkin_list = session.checkin_list(id) if id else CheckinList(event=session.event(event_id))
        if checkin_list.event_id and checkin_list.event_id != event_id:
            raise ValidationError('That check-in list is for a different event')
        checkin_list.name = name.strip()
        checkin_list.ticket_type_ids = list_param(ticket_type_ids)
        checkin_list.addon_ids = list_param(addon_ids)
        checkin_list.is_active = bool_param(is_active)
        session.add(checkin_list)
        session.flush()
        return {'success': True, 'list': checkin_list.to_dict()}

    @ajax
    @requires_permission('checkin')
    def scan(self, session, event_id, token='', id='', list_id='', action=checkin.CHECK_IN):
        """Checks someone in from a scanned badge token or a registration id."""
        registration = session.registration_by_token(token) if token else session.registration(id)
        if registration.event_id != event_id:
            raise ValidationError('This badge is for a different event')
        return dict(checkin.check_in(
            session, _list_for_event(session, event_id, list_id), registration, action,
            cherrypy.session.get('team_email')), success=True)

    @ajax
    @requires_permission('checkin')
    def bulk(self, session, event_id, ids, list_id='', action=checkin.CHECK_IN):
        return dict(checkin.bulk_check_in(
            session, _list_for_event(session, event_id, list_id), list_param(ids), action,
            cherrypy.session.get('team_email')), success=True)

    @ajax_gettable
    @requires_permission('checkin')
    def search(self, session, event_id, q='', list_id='', checked_in=''):
        checkin_list = _list_for_event(session, event_id, list_id) if list_id else None
        results = checkin.search(
            session, event_id, q, checkin_list, None if checked_in == '' else bool_param(checked_in))
        return {'success': True, 'registrations': results}
