import logging

import phonenumbers
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioRestClient

from eventdesk.config import c
from eventdesk.tasks import celery
from eventdesk.utils import normalize_phone

log = logging.getLogger(__name__)

__all__ = ['get_twilio_client', 'send_sms']


def get_twilio_client():
    if c.SEND_SMS:
        if c.TWILIO_SID and c.TWILIO_TOKEN:
            return TwilioRestClient(c.TWILIO_SID, c.TWILIO_TOKEN)
        log.info('Twilio: could not create twilio client. Missing SID or token.')
    return None


@celery.task
def send_sms(to, body):
    """Returns the Twilio message sid, or None if nothing was sent."""
    client = get_twilio_client()
    try:
        to = normalize_phone(to)
        if not client:
            log.info('SMS sending turned off, so not sending %r to %r', body, to)
        elif c.DEV_BOX:
            log.info('We are in DEV BOX mode, so we are not sending %r to %r', body, to)
        else:
            message = client.messages.create(to=to, body=body, from_=normalize_phone(c.TWILIO_NUMBER))
            return message.sid
    except phonenumbers.NumberParseException:
        log.error('Not sending SMS to unparseable number %r', to)
    except TwilioRestException as e:
        if e.code == 21211:  # https://www.twilio.com/docs/api/errors/21211
            log.error('Invalid cellphone number', exc_info=True)
        else:
            log.error('Unable to send SMS notification', exc_info=True)
            raise
