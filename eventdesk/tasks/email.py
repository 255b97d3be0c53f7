import logging
import os
from time import sleep

import boto3
from botocore.exceptions import ClientError
from pockets import listify

from eventdesk.config import c
from eventdesk.jinja import render
from eventdesk.models import Session
from eventdesk.tasks import celery

log = logging.getLogger(__name__)

__all__ = ['send_email', 'send_receipt', 'send_badge_email', 'send_magic_link']


class AmazonSES:
    def __init__(self, region='us-east-1'):
        os.environ['AWS_ACCESS_KEY_ID'] = c.AWS_ACCESS_KEY
        os.environ['AWS_SECRET_ACCESS_KEY'] = c.AWS_SECRET_KEY
        self._client = None
        self.region = region

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client('ses', region_name=self.region)
        return self._client

    def send(self, source, to, subject, body_html, body_text=''):
        """Returns None on success, otherwise the error message from SES."""
        body = {'Html': {'Charset': 'UTF-8', 'Data': body_html}}
        if body_text:
            body['Text'] = {'Charset': 'UTF-8', 'Data': body_text}
        try:
            response = self.client.send_email(
                Source=source,
                Destination={'ToAddresses': to},
                Message={
                    'Body': body,
                    'Subject': {'Charset': 'UTF-8', 'Data': subject},
                },
                ReturnPath=source,
            )
            log.info('Sent email. Response: %s', response)
        except ClientError as e:
            return e.response['Error']['Message']


email_sender = AmazonSES(c.AWS_REGION)


@celery.task
def send_email(to, subject, body_html, body_text=''):
    """
    Sends an email through SES, or just logs it when sending is turned off or
    we're on a dev box.  Returns True if the email went out.
    """
    to = [address for address in listify(to) if address]
    if not to:
        log.error('Not sending %r because it has no recipients', subject)
        return False

    if not c.SEND_EMAILS or c.DEV_BOX:
        log.info('Email sending turned off, so not sending %r to %s:\n%s', subject, to, body_text or body_html)
        return False

    error = email_sender.send(c.EMAIL_SENDER, to, subject, body_html, body_text)
    sleep(0.1)  # Avoid hitting rate limit
    if error:
        log.error('Error while sending %r to %s: %s', subject, to, error)
        return False
    return True


@celery.task
def send_receipt(registration_id):
    with Session() as session:
        registration = session.registration(registration_id)
        event = registration.event
        body = render('emails/receipt.html', {
            'registration': registration,
            'event': event,
            'payment': registration.payment,
        })
        subject = '{} registration {}'.format(event.name, registration.registration_number)
        return send_email(registration.attendee_email, subject, body)


@celery.task
def send_badge_email(registration_id):
    with Session() as session:
        registration = session.registration(registration_id)
        event = registration.event
        download_url = '{}/badges/download?token={}'.format(c.APP_URL, registration.checkin_token)
        body = render('emails/badge.html', {
            'registration': registration,
            'event': event,
            'download_url': download_url,
        })
        return send_email(registration.attendee_email, 'Your badge for {}'.format(event.name), body)


@celery.task
def send_magic_link(email, token, redirect_to='/'):
    login_url = '{}/team/login?token={}'.format(c.APP_URL, token)
    body = render('emails/magic_link.html', {
        'login_url': login_url,
        'redirect_to': redirect_to,
        'hours': c.MAGIC_LINK_HOURS,
    })
    return send_email(email, 'Your EventDesk sign-in link', body)
