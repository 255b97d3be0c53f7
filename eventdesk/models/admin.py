import hashlib

from pockets import listify
from sqlalchemy import func
from sqlalchemy.schema import Index
from sqlalchemy.types import Boolean, Integer

from eventdesk.config import c
from eventdesk.decorators import presave_adjustment
from eventdesk.errors import EventDeskError, Forbidden
from eventdesk.models import MagModel
from eventdesk.models.types import DefaultColumn as Column, JSON, MultiChoice, UnicodeText, UTCDateTime
from eventdesk.utils import generate_token, normalize_email, utcnow


__all__ = ['AccessProfile', 'LoginToken', 'TeamMember']


class TeamMember(MagModel):
    """
    Someone who helps run events.  Members with no event_ids work across all
    events; members with event_ids only see those events.  Members with no
    explicit permissions get full access within whatever events they see.
    """
    email = Column(UnicodeText)
    name = Column(UnicodeText)
    phone = Column(UnicodeText)
    notes = Column(UnicodeText)
    role = Column(MultiChoice(c.TEAM_ROLE_OPTS))
    event_ids = Column(JSON, default=lambda: [], server_default='[]')
    permissions = Column(MultiChoice(c.PERMISSION_OPTS))
    is_active = Column(Boolean, default=True)

    last_login_at = Column(UTCDateTime(), nullable=True)
    last_active_at = Column(UTCDateTime(), nullable=True)
    logged_out_at = Column(UTCDateTime(), nullable=True)
    login_count = Column(Integer, default=0)

    __table_args__ = (Index('uq_team_member_email', func.lower(email), unique=True),)

    @presave_adjustment
    def _normalize_email(self):
        self.email = normalize_email(self.email)

    @property
    def role_names(self):
        return [c.enum_name('team_role', role) for role in self.role_ints]

    @property
    def permission_names(self):
        return [c.PERMISSION_NAMES[p] for p in self.permissions_ints]

    def login_status(self, now=None):
        """
        Returns one of "deactivated", "pending" (never logged in), "online",
        "away", "logged_out", or "offline".  Recent activity is checked before
        a recorded logout.
        """
        now = now or utcnow()
        if not self.is_active:
            return 'deactivated'
        if not self.last_login_at:
            return 'pending'

        if self.last_active_at:
            idle = now - self.last_active_at
            if idle < c.PRESENCE_ONLINE_DELTA:
                return 'online'
            if idle < c.PRESENCE_AWAY_DELTA:
                return 'away'
        if self.logged_out_at:
            return 'logged_out'
        return 'offline'

    def record_login(self, now=None):
        now = now or utcnow()
        self.last_login_at = self.last_active_at = now
        self.login_count = (self.login_count or 0) + 1

    def record_activity(self, now=None):
        self.last_active_at = now or utcnow()

    def record_logout(self, now=None):
        self.logged_out_at = now or utcnow()

    def to_dict(self, fields=None):
        data = super().to_dict(fields)
        if not fields:
            data['login_status'] = self.login_status()
            data['permission_names'] = self.permission_names
        return data


class AccessProfile:
    """
    What a logged-in email address may do.  This isn't a table; it's built
    from the TeamMember row (if any) each time we check permissions.

    Super admins, and account owners who were never added to the team, get
    full admin access.  Deactivated members get nothing.
    """
    def __init__(self, email, roles=(), permissions=(), event_ids=(), is_active=True, is_owner=False):
        self.email = email
        self.roles = set(roles)
        self.permissions = set(permissions)
        self.event_ids = set(event_ids)
        self.is_active = is_active
        self.is_owner = is_owner

    @classmethod
    def for_email(cls, session, email):
        email = normalize_email(email)
        if not email:
            return cls(email, is_active=False)
        if email in c.SUPER_ADMINS:
            return cls(email, is_owner=True)

        member = session.team_member_by_email(email)
        if not member:
            return cls(email, is_owner=True)

        return cls(
            email,
            roles=member.role_ints,
            permissions=member.permissions_ints,
            event_ids=member.event_ids or [],
            is_active=member.is_active)

    @property
    def is_event_scoped(self):
        return bool(self.event_ids)

    @property
    def is_admin(self):
        if not self.is_active:
            return False
        return self.is_owner or (not self.is_event_scoped and c.ADMIN_ROLE in self.roles)

    @property
    def has_full_access(self):
        if not self.is_active:
            return False
        return self.is_owner or (not self.is_event_scoped and not self.permissions)

    def _permission_value(self, permission):
        value = c.enum_value('permission', permission)
        if value is None:
            raise ValueError('{!r} is not a permission'.format(permission))
        return value

    def has_permission(self, permission):
        if self.is_admin or self.has_full_access:
            return True
        return self.is_active and self._permission_value(permission) in self.permissions

    def has_any_permission(self, *permissions):
        return any(self.has_permission(p) for p in listify(permissions))

    def has_all_permissions(self, *permissions):
        return all(self.has_permission(p) for p in listify(permissions))

    def has_event_access(self, event_id):
        if not self.is_active:
            return False
        if self.is_admin or self.has_full_access or not self.is_event_scoped:
            return True
        return str(event_id) in {str(i) for i in self.event_ids}

    def to_dict(self):
        return {
            'email': self.email,
            'is_admin': self.is_admin,
            'has_full_access': self.has_full_access,
            'permissions': sorted(c.PERMISSION_NAMES[p] for p in self.permissions if p in c.PERMISSION_NAMES),
            'event_ids': sorted(self.event_ids),
        }


class LoginToken(MagModel):
    """
    A single-use magic login link.  We only store a hash of the token so a
    leaked database doesn't let anyone log in.
    """
    email = Column(UnicodeText)
    token_hash = Column(UnicodeText, admin_only=True)
    redirect_to = Column(UnicodeText)
    expires_at = Column(UTCDateTime())
    used_at = Column(UTCDateTime(), nullable=True)
    created = Column(UTCDateTime(), default=lambda: utcnow())

    __table_args__ = (Index('uq_login_token_token_hash', token_hash, unique=True),)

    @staticmethod
    def hash_token(raw_token):
        return hashlib.sha256((raw_token or '').encode('utf-8')).hexdigest()

    @classmethod
    def issue(cls, session, email, redirect_to=''):
        """
        Creates a login token for `email` and returns the raw token to be put
        in the emailed link.  At most c.MAGIC_LINK_RATE_LIMIT links may be
        requested per address per hour.
        """
        email = normalize_email(email)
        now = utcnow()
        recent = session.query(func.count(cls.id)).filter(
            cls.email == email, cls.created >= now - c.MAGIC_LINK_RATE_WINDOW).scalar()
        if recent >= c.MAGIC_LINK_RATE_LIMIT:
            raise EventDeskError('Too many login links requested; please try again later', status=429)

        raw_token = generate_token()
        session.add(cls(
            email=email,
            token_hash=cls.hash_token(raw_token),
            redirect_to=cls.safe_redirect(redirect_to),
            expires_at=now + c.MAGIC_LINK_DELTA,
            created=now))
        return raw_token

    @classmethod
    def redeem(cls, session, raw_token):
        token = session.query(cls).filter_by(token_hash=cls.hash_token(raw_token)).first() if raw_token else None
        if not token:
            raise Forbidden('That login link is not valid')
        if token.used_at:
            raise Forbidden('That login link has already been used')

        now = utcnow()
        if token.expires_at < now:
            raise Forbidden('That login link has expired')

        token.used_at = now
        member = session.team_member_by_email(token.email)
        if member:
            member.record_login(now)
        return token

    @staticmethod
    def safe_redirect(redirect_to):
        # only same-site paths
        redirect_to = (redirect_to or '').strip()
        if redirect_to.startswith('/') and not redirect_to.startswith('//'):
            return redirect_to
        return ''
