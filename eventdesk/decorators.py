import inspect
import json
from functools import wraps
from itertools import count

import cherrypy
from pockets import unwrap
from pockets.autolog import log

import eventdesk
from eventdesk.errors import CSRFException, EventDeskError, Forbidden
from eventdesk.serializer import serializer
from eventdesk.utils import check_csrf


def suffix_property(func):
    func._is_suffix_property = True
    return func


def _suffix_property_check(inst, name):
    if not name.startswith('_'):
        suffix = '_' + name.rsplit('_', 1)[-1]
        prop_func = getattr(inst, suffix, None)
        if getattr(prop_func, '_is_suffix_property', False):
            field_name = name[:-len(suffix)]
            field_val = getattr(inst, field_name)
            return prop_func(field_name, field_val)


suffix_property.check = _suffix_property_check


adjustment_counter = count().__next__


def presave_adjustment(func):
    """
    Decorate methods on a model class with this decorator to ensure that the
    method is called immediately before the model is saved so that you can
    make any adjustments, e.g. generating a registration number.
    """
    func.presave_adjustment = adjustment_counter()
    return func


def _encode(data):
    return json.dumps(data, cls=serializer).encode('utf-8')


def _error_response(error, session=None):
    if session is not None:
        session.rollback()
    cherrypy.response.status = error.status
    cherrypy.response.headers['Content-Type'] = 'application/json'
    return _encode({'success': False, 'error': error.message})


def _returns_json(func, args, kwargs):
    cherrypy.response.headers['Content-Type'] = 'application/json'
    try:
        return _encode(func(*args, **kwargs))
    except EventDeskError as e:
        log.debug('{} returned an error: {}', func.__name__, e.message)
        return _error_response(e, kwargs.get('session'))


def ajax(func):
    """decorator for Ajax POST requests which require a CSRF token and return JSON"""
    @wraps(func)
    def returns_json(*args, **kwargs):
        try:
            assert cherrypy.request.method == 'POST', 'POST required, got {}'.format(cherrypy.request.method)
            check_csrf(kwargs.pop('csrf_token', None))
        except (AssertionError, CSRFException) as e:
            log.debug('Rejecting {}: {}', func.__name__, e)
            return _error_response(EventDeskError(
                'There was an issue submitting the form. Please refresh and try again.', status=403))
        return _returns_json(func, args, kwargs)
    returns_json.ajax = True
    return returns_json


def ajax_gettable(func):
    """
    Decorator for page handlers which return JSON.  Unlike the above @ajax decorator,
    this allows either GET or POST and does not check for a CSRF token, so this can
    be used for public listings and for callbacks from third parties (which
    authenticate themselves some other way, e.g. with a signature header).
    """
    @wraps(func)
    def returns_json(*args, **kwargs):
        return _returns_json(func, args, kwargs)
    return returns_json


def public(func):
    func.public = True
    return func


def requires_permission(*permissions, event_arg='event_id'):
    """
    Restricts a page handler to team members holding at least one of the given
    permissions (any team member if none are given) who also have access to
    the event named by the `event_arg` parameter, when that parameter is passed.
    """
    def decorator(func):
        @wraps(func)
        def with_check(*args, session, **kwargs):
            profile = session.access_profile(cherrypy.session.get('team_email'))
            if permissions and not profile.has_any_permission(*permissions):
                raise Forbidden('You do not have permission to do that.')
            event_id = kwargs.get(event_arg)
            if event_id and not profile.has_event_access(event_id):
                raise Forbidden('You do not have access to this event.')
            return func(*args, session=session, **kwargs)
        return with_check
    return decorator


def sessionized(func):
    innermost = unwrap(func)
    if 'session' not in inspect.getfullargspec(innermost).args + inspect.getfullargspec(innermost).kwonlyargs:
        return func

    @wraps(func)
    def with_session(*args, **kwargs):
        with eventdesk.models.Session() as session:
            return func(*args, session=session, **kwargs)
    return with_session


def restricted(func):
    @wraps(func)
    def with_restrictions(*args, **kwargs):
        if not getattr(func, 'public', False) and not cherrypy.session.get('team_email'):
            return _error_response(Forbidden('You must log in to see this page.', status=401))
        return func(*args, **kwargs)
    return with_restrictions


def errors_as_http(func):
    """Pages which don't return JSON report our errors as plain HTTP errors."""
    @wraps(func)
    def with_http_errors(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except EventDeskError as e:
            raise cherrypy.HTTPError(e.status, e.message)
    return with_http_errors


def set_renderable(func, public):
    """
    Return a function that is flagged correctly and is ready to be called by cherrypy as a request
    """
    func.public = getattr(func, 'public', public)
    new_func = restricted(sessionized(errors_as_http(func)))
    new_func.exposed = True
    return new_func


class all_renderable:
    def __init__(self, public=False):
        self.public = public

    def __call__(self, klass):
        for name, func in list(klass.__dict__.items()):
            if hasattr(func, '__call__') and not name.startswith('_'):
                setattr(klass, name, set_renderable(func, self.public))
        return klass
