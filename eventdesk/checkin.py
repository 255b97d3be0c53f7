"""
Door check-in.  Each CheckinList keeps one CheckinRecord per attendee it has
seen; the event's main list also drives Registration.checked_in, which is
what the registration summary and the badge verification page report.
"""
from pockets import listify
from pockets.autolog import log
from sqlalchemy import or_

from eventdesk.config import c
from eventdesk.errors import NotFound, ValidationError
from eventdesk.models import CheckinRecord, Registration
from eventdesk.utils import utcnow


CHECK_IN = 'check_in'
CHECK_OUT = 'check_out'
TOGGLE = 'toggle'
ACTIONS = (CHECK_IN, CHECK_OUT, TOGGLE)


def _set_main_flag(registration, checked_in, when, user):
    registration.checked_in = checked_in
    if checked_in:
        registration.checked_in_at = when
        registration.checked_in_by = user or ''
    else:
        registration.checked_in_at = None
        registration.checked_in_by = ''


def check_in(session, checkin_list, registration, action=CHECK_IN, user=''):
    """
    Checks an attendee in or out of `checkin_list` and returns a dict with
    the registration and one of these results:

        checked_in, already_checked_in, checked_out, already_checked_out

    Raises ValidationError if the attendee may not use this list at all,
    e.g. because their registration isn't confirmed.
    """
    if action not in ACTIONS:
        raise ValidationError('Unknown check-in action {!r}', action)

    error = checkin_list.eligibility_error(registration)
    if error:
        raise ValidationError(error)

    record = checkin_list.record_for(registration)
    currently_in = bool(record and record.is_checked_in)
    if action == TOGGLE:
        action = CHECK_OUT if currently_in else CHECK_IN

    now = utcnow()
    if action == CHECK_IN:
        if currently_in:
            result = 'already_checked_in'
        else:
            if not record:
                record = CheckinRecord(checkin_list=checkin_list, registration=registration)
                session.add(record)
            record.is_checked_in = True
            record.checked_in_at = now
            record.checked_out_at = None
            record.checked_in_by = user or ''
            result = 'checked_in'
    else:
        if not currently_in:
            result = 'already_checked_out'
        else:
            record.is_checked_in = False
            record.checked_out_at = now
            result = 'checked_out'

    if checkin_list.is_main and result in ('checked_in', 'checked_out'):
        _set_main_flag(registration, result == 'checked_in', now, user)

    log.info('{} {} at {}: {}', user or 'Someone', registration.registration_number, checkin_list.name, result)
    return {
        'result': result,
        'registration': registration.to_dict(),
        'checked_in_at': record.checked_in_at if record else None,
    }


def bulk_check_in(session, checkin_list, registration_ids, action=CHECK_IN, user=''):
    """
    Runs check_in() for each registration id, collecting failures instead
    of stopping at the first one.
    """
    results, errors = [], []
    for registration_id in listify(registration_ids):
        try:
            registration = session.registration(registration_id)
            results.append(check_in(session, checkin_list, registration, action, user))
        except (NotFound, ValidationError) as e:
            errors.append({'id': registration_id, 'error': e.message})
    return {
        'processed': len(results),
        'results': results,
        'errors': errors,
    }


def search(session, event_id, query='', checkin_list=None, checked_in=None, limit=50):
    """
    Finds confirmed registrations by name, email, phone, registration number
    or check-in token.  With `checked_in` set to True or False, only returns
    attendees who are (or aren't) checked in, either at `checkin_list` or,
    without a list, at the main door.
    """
    q = session.query(Registration).filter(
        Registration.event_id == event_id,
        Registration.status == c.REG_CONFIRMED)

    query = (query or '').strip()
    if query:
        like = '%{}%'.format(query)
        q = q.filter(or_(
            Registration.attendee_name.ilike(like),
            Registration.attendee_email.ilike(like),
            Registration.attendee_phone.ilike(like),
            Registration.registration_number.ilike(like),
            Registration.checkin_token == query))

    if checked_in is not None:
        if checkin_list is not None:
            here = session.query(CheckinRecord.registration_id).filter(
                CheckinRecord.checkin_list_id == checkin_list.id,
                CheckinRecord.is_checked_in == True)  # noqa: E712
            condition = Registration.id.in_(here)
            q = q.filter(condition if checked_in else ~condition)
        else:
            q = q.filter(Registration.checked_in == bool(checked_in))

    registrations = q.order(['attendee_name']).limit(limit).all()
    results = []
    for registration in registrations:
        data = registration.to_dict()
        if checkin_list is not None:
            record = checkin_list.record_for(registration)
            data['list_checked_in'] = bool(record and record.is_checked_in)
            data['eligible'] = checkin_list.eligibility_error(registration) is None
        results.append(data)
    return results
