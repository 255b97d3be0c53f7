import cherrypy
from pockets import listify

from eventdesk import checkout
from eventdesk.config import c
from eventdesk.decorators import ajax, ajax_gettable, all_renderable, public, requires_permission
from eventdesk.errors import Forbidden, ValidationError
from eventdesk.models import Registration
from eventdesk.utils import json_param


@all_renderable()
class Root:
    @public
    @ajax
    def checkout(self, session, event_id, payer, tickets='', addons='', discount_code='', payment_type='',
                 registration_id=''):
        return checkout.start_individual_checkout(
            session, event_id,
            payer=json_param(payer, {}),
            tickets=json_param(tickets, []),
            addons=json_param(addons, []),
            discount_code=discount_code,
            payment_type=payment_type or None,
            registration_id=registration_id or None)

    @public
    @ajax
    def group_checkout(self, session, event_id, buyer, attendees, payment_method='', coupon_code=''):
        return checkout.start_group_checkout(
            session, event_id,
            buyer=json_param(buyer, {}),
            attendees=json_param(attendees, []),
            payment_method=payment_method or None,
            coupon_code=coupon_code)

    @public
    @ajax
    def free(self, session, event_id, attendee, ticket_type_id, discount_code=''):
        registration = checkout.register_free(
            session, event_id, json_param(attendee, {}), ticket_type_id, discount_code=discount_code)
        return {'success': True, 'registration': registration.to_dict()}

    @public
    @ajax
    def check_discount(self, session, event_id, code, tickets=''):
        return checkout.preview_discount(session, event_id, code, json_param(tickets, []))

    @public
    @ajax_gettable
    def order(self, session, order_id):
        return {'success': True, 'order': checkout.get_order(session, order_id)}

    @public
    @ajax_gettable
    def buyer_orders(self, session, buyer_id):
        return {'success': True, 'orders': checkout.get_buyer_orders(session, buyer_id)}

    @ajax_gettable
    @requires_permission('registrations')
    def index(self, session, event_id, status='', q=''):
        query = session.query(Registration).filter(Registration.event_id == event_id)
        statuses = [c.enum_value('registration_status', s) for s in listify(status) if s]
        if statuses:
            query = query.filter(Registration.status.in_(statuses))
        if q:
            query = query.icontains(attendee_name=q)
        registrations = query.order(['-created']).all()
        return {'success': True, 'registrations': [r.to_dict() for r in registrations]}

    @ajax_gettable
    @requires_permission('registrations', event_arg='')
    def lookup(self, session, id='', email='', event_id=''):
        registration = checkout.find_registration(session, registration_id=id, email=email, event_id=event_id)
        if not session.access_profile(cherrypy.session.get('team_email')).has_event_access(registration.event_id):
            raise Forbidden('You do not have access to this event.')
        return {'success': True, 'registration': registration.to_dict()}

    @ajax
    @requires_permission('registrations')
    def cancel(self, session, event_id, id):
        registration = session.registration(id)
        if registration.event_id != event_id:
            raise ValidationError('That registration is for a different event')
        registration.cancel()
        return {'success': True, 'registration': registration.to_dict()}

    @ajax
    @requires_permission('registrations')
    def approve(self, session, event_id, id):
        """Confirms a registration held for approval; paid tickets still have to be paid for."""
        registration = session.registration(id)
        if registration.event_id != event_id:
            raise ValidationError('That registration is for a different event')
        if registration.status != c.REG_PENDING:
            raise ValidationError('Only pending registrations can be approved')
        registration.set_custom_field('requires_approval', False)
        if registration.total_amount == 0 or registration.payment_status == c.REG_PAYMENT_COMPLETED:
            registration.confirm()
        return {'success': True, 'registration': registration.to_dict()}
