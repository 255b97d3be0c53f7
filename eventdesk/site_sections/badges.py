import cherrypy

from eventdesk import badges
from eventdesk.config import c
from eventdesk.decorators import ajax, ajax_gettable, all_renderable, public, requires_permission
from eventdesk.errors import Forbidden, ValidationError
from eventdesk.models import Registration
from eventdesk.tasks.email import send_badge_email
from eventdesk.utils import bool_param, json_param, list_param


def _pdf_response(pdf, filename):
    cherrypy.response.headers['Content-Type'] = 'application/pdf'
    cherrypy.response.headers['Content-Disposition'] = 'inline; filename="{}"'.format(filename)
    return pdf


@all_renderable()
class Root:
    @public
    def download(self, session, token):
        """The link in the badge email: the attendee's own badge, as a PDF."""
        registration = session.registration_by_token(token)
        if registration.status != c.REG_CONFIRMED:
            raise cherrypy.HTTPError(403, 'This registration is not confirmed')
        pdf = badges.render_badges([registration], registration.event)
        return _pdf_response(pdf, '{}.pdf'.format(registration.registration_number))

    @public
    @ajax_gettable
    def verify(self, session, token):
        return dict(badges.verify_badge(session, token), success=True)

    @requires_permission('badges')
    def generate(self, session, event_id, ids='', template='', sheet=''):
        """
        Badges for the given registrations, or for every confirmed
        registration at the event, as a single PDF.  `template` overrides the
        event's saved badge template for previews, and `sheet` tiles the
        badges onto A4 pages.
        """
        event = session.event(event_id)
        query = session.query(Registration).filter(
            Registration.event_id == event.id, Registration.status == c.REG_CONFIRMED)
        ids = list_param(ids)
        if ids:
            query = query.filter(Registration.id.in_(ids))
        registrations = query.order(['registration_number']).all()
        pdf = badges.render_badges(registrations, event, json_param(template, None), sheet=bool_param(sheet))
        return _pdf_response(pdf, '{}-badges.pdf'.format(event.slug))

    @ajax
    @requires_permission('badges')
    def save_template(self, session, event_id, template):
        event = session.event(event_id)
        template = json_param(template, {})
        badges.badge_size(template)
        if not isinstance(template.get('elements'), list):
            raise ValidationError('A badge template needs a list of elements')
        event.settings = dict(event.settings or {}, badge_template=template)
        return {'success': True, 'template': template}

    @ajax
    @requires_permission('badges')
    def email(self, session, event_id, ids):
        sent = []
        for registration_id in list_param(ids):
            registration = session.registration(registration_id)
            if registration.event_id != event_id:
                raise Forbidden('That registration is for a different event')
            if registration.status == c.REG_CONFIRMED:
                session.after_commit(send_badge_email.delay, registration.id)
                sent.append(registration.id)
        return {'success': True, 'queued': sent}
