import logging
from datetime import timedelta

from eventdesk.config import c
from eventdesk.models import Order, Payment, Registration, Session
from eventdesk.tasks import celery
from eventdesk.tasks.email import send_badge_email, send_receipt
from eventdesk.utils import utcnow

log = logging.getLogger(__name__)

__all__ = ['run_auto_actions', 'expire_abandoned_payments']


@celery.task
def run_auto_actions(registration_id):
    """
    Whatever the event wants to happen once a registration is paid for:
    a receipt by default, and the badge if auto_send_badge is turned on.
    """
    with Session() as session:
        registration = session.registration(registration_id)
        if not registration.is_confirmed:
            log.info('Skipping auto actions for %s, which is no longer confirmed',
                     registration.registration_number)
            return []

        event = registration.event
        actions = []
        if event.setting('auto_send_receipt', True):
            send_receipt.delay(registration.id)
            actions.append('receipt')
        if event.setting('auto_send_badge', False):
            send_badge_email.delay(registration.id)
            actions.append('badge')
        return actions


@celery.schedule(timedelta(hours=1))
def expire_abandoned_payments():
    """
    Card payments which were started but never finished tie up nothing but
    clutter the reports, so after c.ABANDONED_PAYMENT_HOURS we mark them
    failed along with the registrations still waiting on them.  Bank transfer
    and cash payments stay pending until someone records them.
    """
    cutoff = utcnow() - c.ABANDONED_PAYMENT_DELTA
    with Session() as session:
        payments = session.query(Payment).filter(
            Payment.status == c.PAYMENT_PENDING,
            Payment.payment_method == c.STRIPE_METHOD,
            Payment.created < cutoff).all()
        for payment in payments:
            payment.mark_failed('Abandoned: not completed within {} hours'.format(c.ABANDONED_PAYMENT_HOURS))
            for registration in session.query(Registration).filter(
                    Registration.payment_id == payment.id, Registration.status == c.REG_PENDING):
                registration.status = c.REG_CANCELLED
                registration.payment_status = c.REG_PAYMENT_FAILED
            order_id = (payment.meta or {}).get('order_id')
            if order_id:
                order = session.query(Order).filter_by(id=order_id).first()
                if order and order.status == c.ORDER_PENDING:
                    order.status = c.ORDER_CANCELLED
                    order.payment_status = c.REG_PAYMENT_FAILED
        if payments:
            log.info('Expired %s abandoned payments', len(payments))
        return len(payments)
