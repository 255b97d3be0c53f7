import importlib
import json
import os
import re
import secrets
import string
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from glob import glob
from os.path import basename
from uuid import uuid4

import cherrypy
import phonenumbers
from phonenumbers import PhoneNumberFormat
from pockets import listify
from pockets.autolog import log
from pytz import UTC

from eventdesk.config import c
from eventdesk.errors import CSRFException, ValidationError


# ======================================================================
# String manipulation
# ======================================================================

def normalize_email(email):
    return (email or '').strip().lower()


def normalize_phone(phone_number, country='IN'):
    return phonenumbers.format_number(
        phonenumbers.parse(phone_number, country),
        PhoneNumberFormat.E164)


def slugify(s):
    return re.sub(r'[^a-z0-9]+', '-', (s or '').lower()).strip('-')


def base36(number):
    digits = string.digits + string.ascii_lowercase
    if number == 0:
        return '0'
    out = ''
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out


def random_code(length, alphabet=string.ascii_uppercase + string.digits):
    return ''.join(secrets.choice(alphabet) for i in range(length))


def generate_token():
    return secrets.token_urlsafe(24)


def valid_email(email):
    """Returns an error message if the email address is not usable, otherwise None."""
    from email_validator import validate_email, EmailNotValidError
    if not email:
        return 'Please enter an email address.'
    elif len(email) > 255:
        return 'Email addresses cannot be longer than 255 characters.'

    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        return 'Enter a valid email address. ' + str(e)


# ======================================================================
# Money
# ======================================================================

def round_money(value):
    """Rounds a Decimal (or anything Decimal accepts) half-up to whole minor units."""
    return int(Decimal(value).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def percent_of(amount, percentage):
    return round_money(Decimal(amount) * Decimal(str(percentage or 0)) / Decimal(100))


def format_currency(amount, currency=None):
    currency = currency or c.CURRENCY
    symbol = {'INR': '₹', 'USD': '$', 'EUR': '€', 'GBP': '£'}.get(currency, currency + ' ')
    return '{}{:,.2f}'.format(symbol, Decimal(amount or 0) / 100)


# ======================================================================
# Datetime functions
# ======================================================================

def utcnow():
    return datetime.now(UTC)


def localized_now():
    """
    Returns datetime.now() but localized to the event's timezone.
    """
    return localize_datetime(datetime.utcnow())


def localize_datetime(dt):
    """
    Converts `dt` to the event's timezone.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(c.EVENT_TIMEZONE)


# ======================================================================
# Request helpers
# ======================================================================

def check_csrf(csrf_token=None):
    """
    Accepts a csrf token (and checks the request headers if None is provided)
    and compares it to the token stored in the session.  An exception is raised
    if the values do not match or if no token is found.
    """
    if csrf_token is None:
        csrf_token = cherrypy.request.headers.get('CSRF-Token')

    if not csrf_token:
        raise CSRFException("CSRF token missing")

    session_csrf_token = cherrypy.session.get('csrf_token', None)
    if csrf_token != session_csrf_token:
        raise CSRFException(
            "CSRF check failed: csrf tokens don't match: {!r} != {!r}".format(
                csrf_token, session_csrf_token))
    else:
        cherrypy.request.headers['CSRF-Token'] = csrf_token


def ensure_csrf_token_exists():
    """
    Generate a new CSRF token if none exists in our session already.
    """
    if not cherrypy.session.get('csrf_token'):
        cherrypy.session['csrf_token'] = uuid4().hex


def mount_site_sections(module_root):
    from eventdesk.server import Root

    python_files = glob(os.path.join(module_root, 'site_sections', '*.py'))
    site_sections = [path.split('/')[-1][:-3] for path in python_files if not path.endswith('__init__.py')]
    for site_section in site_sections:
        module = importlib.import_module(basename(module_root) + '.site_sections.' + site_section)
        setattr(Root, site_section, module.Root())
        log.debug('Mounted site section {}', site_section)


def json_param(value, default=None):
    """
    Page handlers receive nested data (ticket selections, attendee lists) as
    JSON-encoded form fields; this decodes one, passing through values which
    have already been decoded.
    """
    if value in (None, ''):
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(value)
    except ValueError:
        raise ValidationError('Could not read the submitted data')


def bool_param(value):
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def list_param(value):
    """
    A list of ids or names from a form field, which may be JSON, a comma
    separated string, or a value CherryPy has already made into a list.
    """
    if value in (None, ''):
        return []
    if isinstance(value, str):
        value = value.strip()
        if value.startswith('['):
            value = json_param(value, [])
        else:
            value = value.split(',')
    return [str(item).strip() for item in listify(value) if str(item).strip()]
