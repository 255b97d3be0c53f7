import json
import uuid
from datetime import datetime
from itertools import chain
from uuid import uuid4

import sqlalchemy
from dateutil import parser as dateparser
from pockets import cached_classproperty, classproperty, listify, uncamel
from pockets.autolog import log
from sqlalchemy import and_, func
from sqlalchemy.event import listen
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Query, declarative_base, declared_attr, object_session, sessionmaker
from sqlalchemy.orm.attributes import get_history, instance_state
from sqlalchemy.schema import MetaData
from sqlalchemy.types import Boolean, Date, Float, Integer

from eventdesk.config import c
from eventdesk.decorators import suffix_property
from eventdesk.errors import NotFound
from eventdesk.models.types import Choice, DefaultColumn as Column, JSON, MultiChoice, UTCDateTime, UUID


def _make_getter(model):
    def getter(self, params=None, *, restricted=False, **query):
        if query:
            try:
                return self.query(model).filter_by(**query).one()
            except NoResultFound:
                raise NotFound('No {} matches {!r}', model.__name__, query)
        elif isinstance(params, str):
            if not is_valid_id(params):
                raise NotFound('No {} with id {!r}', model.__name__, params)
            try:
                return self.query(model).filter_by(id=params).one()
            except NoResultFound:
                raise NotFound('No {} with id {!r}', model.__name__, params)
        else:
            params = dict(params or {})
            id = params.pop('id', 'None')
            if id in ('None', None, ''):
                inst = model()
            else:
                inst = getter(self, id)
            inst.apply(params, restricted=restricted)
            return inst
    return getter


def is_valid_id(s):
    try:
        uuid.UUID(str(s))
    except ValueError:
        return False
    return True


# Consistent naming conventions are necessary for alembic to be able to
# reliably upgrade and downgrade versions. For more details, see:
# http://alembic.zzzcomputing.com/en/latest/naming.html
naming_convention = {
    'ix': 'ix_%(column_0_label)s',
    'uq': 'uq_%(table_name)s_%(column_0_name)s',
    'fk': 'fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s',
    'pk': 'pk_%(table_name)s'}

metadata = MetaData(naming_convention=naming_convention)


class MagModel:
    @declared_attr
    def __tablename__(cls):
        return uncamel(cls.__name__)

    id = Column(UUID(), primary_key=True, default=lambda: str(uuid4()))

    @cached_classproperty
    def _class_attr_names(cls):
        return [
            s for s in dir(cls)
            if s not in ('_class_attrs', '_class_attr_names') and
            not s.startswith('_cached_')]

    @cached_classproperty
    def _class_attrs(cls):
        return {s: getattr(cls, s) for s in cls._class_attr_names}

    def _invoke_adjustment_callbacks(self, label):
        callbacks = []
        for name, attr in self._class_attrs.items():
            if hasattr(attr, '__call__') and hasattr(attr, label):
                callbacks.append(getattr(self, name))
        callbacks.sort(key=lambda f: getattr(f, label))
        for function in callbacks:
            function()

    def presave_adjustments(self):
        self._invoke_adjustment_callbacks('presave_adjustment')

    @cached_classproperty
    def unrestricted(cls):
        """
        Returns a set of column names which are allowed to be set by the
        public (attendees, speakers) rather than only by team members.
        """
        return {col.name for col in cls.__table__.columns if not getattr(col, 'admin_only', True)}

    @classproperty
    def _extra_apply_attrs(cls):
        """
        Returns a set of extra attrs used by apply(). These are settable
        attributes or properties that are not in cls.__table__.columns.
        """
        return set()

    @property
    def session(self):
        """
        Returns the session object which this model instance is attached to,
        or None if this instance is not attached to a session.
        """
        return object_session(self)

    @classmethod
    def get_field(cls, name):
        """Returns the column object with the provided name for this model."""
        return cls.__table__.columns[name]

    def __eq__(self, m):
        return self.id is not None and isinstance(m, MagModel) and self.id == m.id

    def __ne__(self, m):
        return not (self == m)

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return '<{} {}>'.format(self.__class__.__name__, self.id)

    @property
    def is_new(self):
        """
        Boolean property indicating whether or not this instance has already
        been saved to the database or if it's a new instance which has never
        been saved and thus has no corresponding row in its database table.
        """
        return not instance_state(self).persistent

    def orig_value_of(self, name):
        """
        Returns the value of a column as of the last time we loaded or saved
        this instance, i.e. before any changes made in the current unit of
        work.  If the value has not changed, this just returns the current value.
        """
        hist = get_history(self, name)
        return (hist.deleted or hist.unchanged or [getattr(self, name)])[0]

    @suffix_property
    def _label(self, name, val):
        if val is None or val == '' or not name:
            return ''

        try:
            val = int(val)
        except ValueError:
            log.debug('{} is not an int. Did we forget to migrate data for {}?', val, name)
            return ''

        label = self.get_field(name).type.choices.get(val)
        if not label:
            log.debug('{} does not have a label for {}, check your enum generating code', name, val)
        return label

    @suffix_property
    def _ints(self, name, val):
        if not val or not name:
            return []
        choices = self.get_field(name).type.choices_dict
        # a list until the row is reloaded, a comma separated string after
        values = val if isinstance(val, (list, tuple, set)) else str(val).split(',')
        return [int(i) for i in values if str(i).strip() and int(i) in choices]

    @suffix_property
    def _local(self, name, val):
        return val.astimezone(c.EVENT_TIMEZONE) if val else None

    def __getattr__(self, name):
        suffixed = suffix_property.check(self, name)
        if suffixed is not None:
            return suffixed

        raise AttributeError(self.__class__.__name__ + '.' + name)

    def to_dict(self, fields=None):
        """
        Returns the column values of this instance as a dict suitable for
        returning from a JSON page handler.  Choice columns additionally get a
        "<name>_label" entry and MultiChoice columns a "<name>_labels" entry.
        """
        data = {}
        for column in self.__table__.columns:
            if fields and column.name not in fields:
                continue
            value = getattr(self, column.name)
            data[column.name] = value
            if isinstance(column.type, Choice):
                data[column.name + '_label'] = getattr(self, column.name + '_label')
            elif isinstance(column.type, MultiChoice):
                choices = column.type.choices_dict
                data[column.name + '_labels'] = [choices[i] for i in getattr(self, column.name + '_ints')]
        return data

    def apply(self, params, *, restricted=True):
        """
        Sets columns from a dict of request parameters, coercing strings to the
        column's type along the way.

        Args:
            restricted (bool): If True, restrict any changes only to fields
                which the public may set on their own. If False, allow
                changes to any fields.
        """
        for column in self.__table__.columns:
            if (not restricted or column.name in self.unrestricted) and column.name in params and column.name != 'id':
                value = params[column.name]
                if isinstance(value, str):
                    value = value.strip()

                try:
                    if value is None:
                        pass  # Totally fine for value to be None

                    elif isinstance(column.type, Boolean):
                        if isinstance(value, str):
                            value = value.lower() in ('1', 'true', 'yes', 'on')
                        else:
                            value = bool(value)

                    elif isinstance(column.type, Float):
                        value = None if value == '' else float(value)

                    elif isinstance(column.type, MultiChoice):
                        if isinstance(value, (list, tuple, set)):
                            value = ','.join(map(lambda x: str(x).strip(), value))
                        else:
                            value = str(value).strip()

                    elif isinstance(column.type, Choice):
                        if value == '':
                            value = None
                        else:
                            try:
                                value = int(float(value))
                            except ValueError:
                                value = column.type.convert_if_label(value)

                    elif isinstance(column.type, Integer):
                        value = None if value == '' else int(float(value))

                    elif isinstance(column.type, UTCDateTime):
                        if value == '':
                            value = None
                        elif isinstance(value, str):
                            try:
                                value = datetime.strptime(value, c.TIMESTAMP_FORMAT)
                            except ValueError:
                                value = dateparser.parse(value)
                        if value is not None and not value.tzinfo:
                            value = c.EVENT_TIMEZONE.localize(value)

                    elif isinstance(column.type, Date):
                        if value == '':
                            value = None
                        elif isinstance(value, str):
                            try:
                                value = datetime.strptime(value, c.DATE_FORMAT)
                            except ValueError:
                                value = dateparser.parse(value)
                            value = value.date()

                    elif isinstance(column.type, JSON):
                        if isinstance(value, str):
                            value = json.loads(value) if value else None

                except Exception as error:
                    log.debug(
                        'Ignoring error coercing value for column {}.{}: {}', self.__tablename__, column.name, error)

                if value is None and not column.nullable:
                    continue
                setattr(self, column.name, value)

        for attr in self._extra_apply_attrs:
            if attr in params:
                setattr(self, attr, params[attr])

        return self


MagModel = declarative_base(cls=MagModel, name='MagModel', metadata=metadata)


# Make all of our model classes available from eventdesk.models
from eventdesk.models.event import *  # noqa: F401,E402,F403
from eventdesk.models.ticket import *  # noqa: F401,E402,F403
from eventdesk.models.discount import *  # noqa: F401,E402,F403
from eventdesk.models.commerce import *  # noqa: F401,E402,F403
from eventdesk.models.registration import *  # noqa: F401,E402,F403
from eventdesk.models.checkin import *  # noqa: F401,E402,F403
from eventdesk.models.admin import *  # noqa: F401,E402,F403
from eventdesk.models.travel import *  # noqa: F401,E402,F403
from eventdesk.models.types import *  # noqa: F401,E402,F403

# Explicitly import models used by the Session class to quiet flake8
from eventdesk.models.admin import AccessProfile, LoginToken, TeamMember  # noqa: E402
from eventdesk.models.commerce import Payment  # noqa: E402
from eventdesk.models.discount import DiscountCode  # noqa: E402
from eventdesk.models.event import Event  # noqa: E402
from eventdesk.models.registration import Registration  # noqa: E402


class Session:
    """
    Use this as a context manager to get a database session::

        with Session() as session:
            event = session.event(event_id)

    The session is committed when the block exits normally, rolled back if it
    raises, and closed either way.
    """

    # `sqlalchemy.create_engine` will throw an error if it's passed arguments
    # that aren't supported by the given DB engine.  SQLite doesn't support
    # either `pool_size` or `max_overflow`, so when those are set to -1 they
    # are not added to the keyword args.
    _engine_kwargs = dict((k, v) for (k, v) in [
        ('pool_size', c.SQLALCHEMY_POOL_SIZE),
        ('max_overflow', c.SQLALCHEMY_MAX_OVERFLOW)] if v > -1)
    engine = sqlalchemy.create_engine(c.SQLALCHEMY_URL, **_engine_kwargs)

    def __init__(self):
        self.session = self.session_factory()

    def __enter__(self):
        return self.session

    def __exit__(self, exc_type, exc_value, traceback):
        try:
            if exc_type is None:
                self.session.commit()
            else:
                self.session.rollback()
        finally:
            self.session.close()

    @classmethod
    def all_models(cls):
        return [mapper.class_ for mapper in MagModel.registry.mappers]

    @classmethod
    def bind(cls, engine):
        """Points the session factory at a different engine, e.g. a throwaway test database."""
        cls.engine = engine
        cls.session_factory.configure(bind=engine)

    @classmethod
    def initialize_db(cls, modify_tables=False, drop=False):
        """
        Attaches a getter to SessionMixin for every model, e.g. session.event(id),
        and optionally creates or drops the tables registered in our metadata.

        Keyword Arguments:
            modify_tables: If True, create any tables which do not exist yet.
            drop: USE WITH CAUTION: If True, drop all of our tables first.
        """
        for model in cls.all_models():
            if not hasattr(cls.SessionMixin, model.__tablename__):
                setattr(cls.SessionMixin, model.__tablename__, _make_getter(model))

        if drop:
            metadata.drop_all(cls.engine)
        if modify_tables:
            metadata.create_all(cls.engine)

    class QuerySubclass(Query):
        @property
        def is_single_table_query(self):
            return len(self.column_descriptions) == 1

        @property
        def model(self):
            assert self.is_single_table_query, \
                'actions such as .order() and .icontains() and .iexact() are only valid for single-table queries'

            return self.column_descriptions[0]['type']

        def order(self, attrs):
            order = []
            for attr in listify(attrs):
                col = getattr(self.model, attr.lstrip('-'))
                order.append(col.desc() if attr.startswith('-') else col)
            return self.order_by(*order)

        def icontains_condition(self, attr=None, val=None, **filters):
            """
            Take column names and values, and build a condition/expression
            that is true when all named columns contain the corresponding
            values, case-insensitive.
            """
            conditions = []
            if len(self.column_descriptions) == 1 and filters:
                for colname, val in filters.items():
                    conditions.append(getattr(self.model, colname).ilike('%{}%'.format(val)))
            if attr and val:
                conditions.append(attr.ilike('%{}%'.format(val)))
            return and_(*conditions)

        def icontains(self, attr=None, val=None, **filters):
            condition = self.icontains_condition(attr=attr, val=val, **filters)
            return self.filter(condition)

        def iexact(self, **filters):
            filters = [func.lower(getattr(self.model, attr)) == func.lower(val) for attr, val in filters.items()]
            return self.filter(*filters)

    class SessionMixin:
        def access_profile(self, email):
            return AccessProfile.for_email(self, email)

        def team_member_by_email(self, email):
            return self.query(TeamMember).iexact(email=(email or '').strip()).first()

        def discount_code(self, event_id, code):
            """
            Looks up a discount code for an event, ignoring case and extra
            whitespace.  Returns None if there's no such code.
            """
            normalized = DiscountCode.normalize_code(code)
            if not normalized or not is_valid_id(event_id):
                return None
            return self.query(DiscountCode).filter(
                DiscountCode.event_id == event_id,
                DiscountCode.normalized_code == normalized).first()

        def discount_code_by_id(self, discount_code_id):
            return self.query(DiscountCode).filter_by(id=discount_code_id).one()

        def after_commit(self, func, *args, **kwargs):
            """
            Calls func(*args, **kwargs) once this session commits, e.g. to
            queue a Celery task which needs to see the rows we just wrote.
            Nothing is called if the session rolls back instead.
            """
            self.info.setdefault('after_commit', []).append((func, args, kwargs))

        def registration_by_token(self, token):
            if not token:
                raise NotFound('No badge found for that link')
            try:
                return self.query(Registration).filter_by(checkin_token=token).one()
            except NoResultFound:
                raise NotFound('No badge found for that link')

        def registration_by_number(self, event_id, number):
            try:
                return self.query(Registration).filter(
                    Registration.event_id == event_id,
                    func.upper(Registration.registration_number) == (number or '').strip().upper()).one()
            except NoResultFound:
                raise NotFound('No registration {!r} for this event', number)

        def payment_by_intent(self, intent_id):
            return self.query(Payment).filter_by(stripe_intent_id=intent_id).first()

        def next_registration_number(self, event):
            return Registration.next_number(self, event)

        def next_payment_number(self):
            return Payment.next_number(self)


class _EventDeskSession(Session.SessionMixin, sqlalchemy.orm.Session):
    pass


Session.session_factory = sessionmaker(
    bind=Session.engine,
    class_=_EventDeskSession,
    query_cls=Session.QuerySubclass,
    expire_on_commit=False)


def _presave_adjustments(session, context, instances='deprecated'):
    """
    precalculate/adjust some fields before save
    """
    for model in chain(list(session.dirty), list(session.new)):
        if isinstance(model, MagModel):
            model.presave_adjustments()


def _run_after_commit(session):
    for func, args, kwargs in session.info.pop('after_commit', []):
        try:
            func(*args, **kwargs)
        except Exception:
            log.error('Unable to run {} after commit', getattr(func, '__name__', func), exc_info=True)


def _discard_after_commit(session):
    session.info.pop('after_commit', None)


def register_session_listeners():
    """
    The order in which we register these listeners matters.
    """
    if not sqlalchemy.event.contains(Session.session_factory, 'before_flush', _presave_adjustments):
        listen(Session.session_factory, 'before_flush', _presave_adjustments)
    if not sqlalchemy.event.contains(Session.session_factory, 'after_commit', _run_after_commit):
        listen(Session.session_factory, 'after_commit', _run_after_commit)
        listen(Session.session_factory, 'after_rollback', _discard_after_commit)


def initialize_db(modify_tables=False, drop=False):
    Session.initialize_db(modify_tables=modify_tables, drop=drop)
    register_session_listeners()
