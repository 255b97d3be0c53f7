from eventdesk.config import c
from eventdesk.decorators import ajax_gettable, all_renderable, public, requires_permission
from eventdesk.errors import NotFound
from eventdesk.models import Event


@all_renderable()
class Root:
    @public
    @ajax_gettable
    def index(self, session):
        return {
            'success': True,
            'events': [event.to_public_dict() for event in Event.public_query(session)],
        }

    @public
    @ajax_gettable
    def event(self, session, slug):
        """One public event with the tickets and addons people can buy right now."""
        event = session.query(Event).filter_by(slug=slug).first()
        if not event or not event.is_public or event.status != c.EVENT_PUBLISHED:
            raise NotFound('No event found at {!r}', slug)

        tickets = [ticket.to_public_dict() for ticket in event.ticket_types
                   if not ticket.is_hidden and ticket.is_on_sale()]
        return {
            'success': True,
            'event': event.to_public_dict(),
            'tickets': tickets,
            'addons': [addon.to_public_dict() for addon in event.addons if addon.is_active],
        }

    @ajax_gettable
    @requires_permission()
    def summary(self, session, event_id):
        event = session.event(event_id)
        return {
            'success': True,
            'event': event.to_public_dict(),
            'registrations': event.registration_summary(),
            'tickets': event.ticket_sales_summary(),
        }
