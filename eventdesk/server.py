import os
from pprint import pformat

import cherrypy
from pockets.autolog import log

from eventdesk.badges import verify_badge
from eventdesk.config import c
from eventdesk.decorators import ajax_gettable, all_renderable
from eventdesk.utils import ensure_csrf_token_exists, mount_site_sections


def get_verbose_request_context():
    """
    Return a string with the request line, params, session and headers of the
    current request, for logging alongside unexpected errors.
    """
    page_location = 'Request: ' + cherrypy.request.request_line

    max_reporting_length = 1000   # truncate to reasonably large size in case they uploaded attachments

    p = ["  %s: %s" % (k, str(v)[:max_reporting_length]) for k, v in cherrypy.request.params.items()]
    post_txt = 'Request Params:\n' + '\n'.join(p)

    session_txt = ''
    if hasattr(cherrypy, 'session'):
        session_txt = 'Session Params:\n' + pformat(cherrypy.session.items(), width=40)

    h = ["  %s: %s" % (k, v) for k, v in cherrypy.request.header_list if k.lower() != 'stripe-signature']
    headers_txt = 'Request Headers:\n' + '\n'.join(h)

    return '\n'.join([page_location, post_txt, session_txt, headers_txt])


def log_exception_with_verbose_context(debug=False, msg=''):
    log.error('\n'.join([msg, 'Exception encountered', get_verbose_request_context()]), exc_info=True)


cherrypy.tools.custom_verbose_logger = cherrypy.Tool('before_error_response', log_exception_with_verbose_context)
cherrypy.tools.csrf_token = cherrypy.Tool('before_handler', ensure_csrf_token_exists)


@all_renderable(public=True)
class Root:
    @ajax_gettable
    def index(self):
        return {'name': 'EventDesk', 'currency': c.CURRENCY, 'stripe_public_key': c.STRIPE_PUBLIC_KEY}

    @ajax_gettable
    def csrf_token(self):
        return {'csrf_token': cherrypy.session['csrf_token']}

    @ajax_gettable
    def v(self, token='', session=None):
        """The page a badge QR code points at."""
        return dict(verify_badge(session, token), success=True)


mount_site_sections(c.MODULE_ROOT)


def error_page_404(status, message, traceback, version):
    return "Sorry, page not found!<br/><br/>{}<br/>{}".format(status, message)


c.APPCONF = {
    '/': {
        'error_page.404': error_page_404,
        'tools.custom_verbose_logger.on': True,
        'tools.csrf_token.on': True,
    },
}


def mount():
    cherrypy.config.update(c.CHERRYPY)
    return cherrypy.tree.mount(Root(), c.CHERRYPY_MOUNT_PATH, c.APPCONF)
