import cherrypy
from pockets.autolog import log

from eventdesk.config import c
from eventdesk.decorators import ajax, ajax_gettable, all_renderable, public, requires_permission
from eventdesk.errors import Forbidden, HTTPRedirect, ValidationError
from eventdesk.models import LoginToken, TeamMember
from eventdesk.tasks.email import send_magic_link
from eventdesk.utils import bool_param, list_param, normalize_email, utcnow, valid_email


def _current_member(session):
    return session.team_member_by_email(cherrypy.session.get('team_email'))


def _require_admin(session):
    if not session.access_profile(cherrypy.session.get('team_email')).is_admin:
        raise Forbidden('Only team admins can manage the team.')


def _enum_values(enum_name, names):
    values = []
    for name in list_param(names):
        value = c.enum_value(enum_name, name)
        if value is None:
            raise ValidationError('{!r} is not a {}', name, enum_name.replace('_', ' '))
        values.append(value)
    return values


@all_renderable()
class Root:
    @public
    @ajax
    def request_link(self, session, email, redirect_to=''):
        """
        Emails a magic sign-in link.  We answer the same way whether or not
        the address belongs to the team, so this can't be used to find out
        who is on it.
        """
        email = normalize_email(email)
        error = valid_email(email)
        if error:
            raise ValidationError(error)

        member = session.team_member_by_email(email)
        if email in c.SUPER_ADMINS or (member and member.is_active):
            token = LoginToken.issue(session, email, redirect_to)
            session.after_commit(send_magic_link.delay, email, token, LoginToken.safe_redirect(redirect_to) or '/')
        else:
            log.info('Not sending a login link to {}, who is not an active team member', email)
        return {'success': True, 'message': 'If that address is on the team, a sign-in link is on its way.'}

    @public
    def login(self, session, token=''):
        """Where the emailed link lands: logs the member in and sends them on to the page they asked for."""
        login_token = LoginToken.redeem(session, token)
        if not session.access_profile(login_token.email).is_active:
            raise Forbidden('This team account has been deactivated')

        cherrypy.session['team_email'] = login_token.email
        log.info('{} logged in', login_token.email)
        session.commit()
        raise HTTPRedirect(login_token.redirect_to or c.CHERRYPY_MOUNT_PATH.rstrip('/') + '/')

    @ajax
    def logout(self, session):
        member = _current_member(session)
        if member:
            member.record_logout()
        cherrypy.session.pop('team_email', None)
        return {'success': True}

    @ajax_gettable
    def me(self, session):
        profile = session.access_profile(cherrypy.session.get('team_email'))
        member = _current_member(session)
        return {'success': True, 'profile': profile.to_dict(), 'member': member.to_dict() if member else None}

    @ajax
    def heartbeat(self, session):
        """Called periodically by open admin pages to keep the presence indicator current."""
        member = _current_member(session)
        if member:
            member.record_activity()
        return {'success': True, 'status': member.login_status() if member else None}

    @ajax_gettable
    @requires_permission()
    def members(self, session):
        _require_admin(session)
        now = utcnow()
        members = session.query(TeamMember).order(['name']).all()
        return {
            'success': True,
            'members': [dict(member.to_dict(), login_status=member.login_status(now)) for member in members],
        }

    @ajax
    @requires_permission()
    def save_member(self, session, email, id='', name='', phone='', notes='', roles='', permissions='',
                    event_ids='', is_active='true'):
        _require_admin(session)
        email = normalize_email(email)
        error = valid_email(email)
        if error:
            raise ValidationError(error)

        member = session.team_member(id) if id else session.team_member_by_email(email)
        if not member:
            member = TeamMember()
            session.add(member)
        elif not id:
            raise ValidationError('{} is already on the team', email)

        member.email = email
        member.name = name.strip()
        member.phone = phone.strip()
        member.notes = notes
        member.role = _enum_values('team_role', roles)
        member.permissions = _enum_values('permission', permissions)
        member.event_ids = list_param(event_ids)
        member.is_active = bool_param(is_active)
        session.flush()
        return {'success': True, 'member': member.to_dict()}

    @ajax
    @requires_permission()
    def deactivate(self, session, id):
        _require_admin(session)
        member = session.team_member(id)
        if member.email == normalize_email(cherrypy.session.get('team_email')):
            raise ValidationError('You cannot deactivate yourself')
        member.is_active = False
        return {'success': True, 'member': member.to_dict()}
