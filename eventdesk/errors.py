from urllib.parse import quote

import cherrypy

from eventdesk.config import c


class CSRFException(Exception):
    """
    Custom exception to specifically catch CSRF Token errors.
    """


class EventDeskError(Exception):
    """
    Base class for errors we report back to the caller rather than letting
    CherryPy turn them into a 500.  The @ajax and @ajax_gettable decorators
    catch these and return {"success": false, "error": message} with the
    HTTP status set to `status`.
    """
    status = 400

    def __init__(self, message, *args, status=None, **kwargs):
        if args or kwargs:
            message = message.format(*args, **kwargs)
        self.message = message
        if status is not None:
            self.status = status
        Exception.__init__(self, message)


class ValidationError(EventDeskError):
    status = 400


class NotFound(EventDeskError):
    status = 404


class Forbidden(EventDeskError):
    status = 403


class PaymentError(EventDeskError):
    """
    Raised for anything that goes wrong talking to Stripe or reconciling a
    payment.  Gateway outages use status 502, bad input from the payer 400.
    """
    status = 400


class ExtractionError(EventDeskError):
    status = 422


class HTTPRedirect(cherrypy.HTTPRedirect):
    """
    CherryPy uses exceptions to indicate things like HTTP 303 redirects.
    This subclasses the standard CherryPy exception to add string formatting
    and automatic quoting.  So instead of saying::

        raise HTTPRedirect('foo?message={}'.format(quote(bar)))

    we can say::

        raise HTTPRedirect('foo?message={}', bar)

    Only create this class as part of a 'raise' statement during a pageload,
    since relative URLs are resolved against the current request.
    """
    def __init__(self, page, *args, **kwargs):
        args = [self.quote(s) for s in args]
        kwargs = {k: self.quote(v) for k, v in kwargs.items()}
        query = page.format(*args, **kwargs)

        if c.URL_BASE.startswith("https"):
            cherrypy.request.base = cherrypy.request.base.replace("http://", "https://")
        cherrypy.HTTPRedirect.__init__(self, query)

    def quote(self, s):
        return quote(s) if isinstance(s, str) else str(s)
