import cherrypy

from eventdesk import payments
from eventdesk.decorators import ajax, ajax_gettable, all_renderable, public, requires_permission
from eventdesk.errors import Forbidden


@all_renderable()
class Root:
    @public
    @ajax
    def verify(self, session, intent_id, registration_id=''):
        return payments.verify_payment(session, intent_id, registration_id=registration_id or None)

    @public
    @ajax_gettable
    def webhook(self, session):
        """Stripe calls this directly; it's authenticated by the Stripe-Signature header instead of a CSRF token."""
        payload = cherrypy.request.body.read()
        sig_header = cherrypy.request.headers.get('Stripe-Signature', '')
        return payments.handle_webhook(session, payload, sig_header)

    @ajax
    @requires_permission('registrations')
    def refund(self, session, id, amount='', reason=''):
        payment = session.payment(id)
        profile = session.access_profile(cherrypy.session.get('team_email'))
        if payment.event_id and not profile.has_event_access(payment.event_id):
            raise Forbidden('You do not have access to this event.')
        payment = payments.refund_payment(session, payment.id, amount=amount or None, reason=reason)
        return {'success': True, 'payment': payment.to_dict()}

    @ajax
    @requires_permission('registrations')
    def record_manual(self, session, id, reference=''):
        payment = session.payment(id)
        profile = session.access_profile(cherrypy.session.get('team_email'))
        if payment.event_id and not profile.has_event_access(payment.event_id):
            raise Forbidden('You do not have access to this event.')
        return payments.record_manual_payment(session, payment.id, reference=reference)
