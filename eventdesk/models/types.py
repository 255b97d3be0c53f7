import re

import pytz
from pockets import listify
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import relationship
from sqlalchemy.schema import Column
from sqlalchemy.sql.expression import FunctionElement
from sqlalchemy.types import DateTime, Integer, JSON, TypeDecorator, UnicodeText, Uuid


__all__ = [
    'default_relationship', 'relationship', 'utcnow', 'Choice',
    'Column', 'DefaultColumn', 'JSON', 'MultiChoice', 'UnicodeText', 'UTCDateTime', 'UUID']


class UUID(TypeDecorator):
    """
    Stores UUIDs natively on PostgreSQL and as 32 character hex strings
    elsewhere, but always hands them to Python code as strings.
    """
    impl = Uuid
    cache_ok = True

    def __init__(self):
        TypeDecorator.__init__(self, as_uuid=False)


class UTCDateTime(TypeDecorator):
    """
    A timezone-aware datetime column.  Values are converted to UTC on the way
    in and always come back out with tzinfo=UTC, even on SQLite which has no
    notion of timezones.
    """
    impl = DateTime
    cache_ok = True

    def __init__(self):
        TypeDecorator.__init__(self, timezone=True)

    def process_bind_param(self, value, dialect):
        if value is not None:
            if value.tzinfo is None:
                raise ValueError('{!r} is a naive datetime; UTCDateTime columns require an aware datetime'.format(value))
            return value.astimezone(pytz.UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is not None:
            return value.replace(tzinfo=pytz.UTC) if value.tzinfo is None else value.astimezone(pytz.UTC)


def DefaultColumn(*args, admin_only=False, **kwargs):
    """
    Returns a SQLAlchemy Column with the given parameters, except that instead
    of the regular defaults, we've overridden the following defaults if no
    value is provided for the following parameters:

        Field           Old Default     New Default
        -----           ------------    -----------
        nullable        True            False
        default         None            ''  (only for UnicodeText fields)
        server_default  None            <same value as 'default'>

    We also have an "admin_only" parameter, which is set as an attribute on
    the column instance, indicating whether the column should be settable by
    attendees and speakers through the public forms, or only by a logged-in
    team member.
    """
    kwargs.setdefault('nullable', False)
    type_ = args[0]
    if type_ is UnicodeText or isinstance(type_, (UnicodeText, MultiChoice)):
        kwargs.setdefault('default', '')
    default = kwargs.get('default')
    if isinstance(default, bool):
        kwargs.setdefault('server_default', '1' if default else '0')
    elif isinstance(default, (int, str)):
        kwargs.setdefault('server_default', str(default))
    col = SQLAlchemy_Column(*args, **kwargs)
    col.admin_only = admin_only or type_ in (UUID, UTCDateTime) or isinstance(type_, (UUID, UTCDateTime))
    return col


def default_relationship(*args, **kwargs):
    """
    Returns a SQLAlchemy relationship with the given parameters, except that
    instead of the regular defaults, we've overridden the following defaults
    if no value is provided for the following parameters:
        load_on_pending now defaults to True
        cascade now defaults to 'all,delete-orphan'
    """
    kwargs.setdefault('load_on_pending', True)
    kwargs.setdefault('cascade', 'all,delete-orphan')
    return SQLAlchemy_relationship(*args, **kwargs)


SQLAlchemy_Column, Column = Column, DefaultColumn
SQLAlchemy_relationship, relationship = relationship, default_relationship


class utcnow(FunctionElement):
    """
    Some rows are instantiated well before they're saved, e.g. a registration
    created while the payer is still on the payment page.  We want creation
    timestamps to reflect when the row was inserted rather than when the model
    was instantiated, so we use this as a server default::

        created = Column(UTCDateTime, server_default=utcnow())
    """
    inherit_cache = True
    type = UTCDateTime()


@compiles(utcnow, 'postgresql')
def pg_utcnow(element, compiler, **kw):
    return "timezone('utc', current_timestamp)"


@compiles(utcnow, 'sqlite')
def sqlite_utcnow(element, compiler, **kw):
    return "(datetime('now'))"


class Choice(TypeDecorator):
    """
    Utility class for storing the results of a dropdown as a database column.
    """
    impl = Integer
    cache_ok = False

    def __init__(self, choices, *, allow_unspecified=False, **kwargs):
        """
        Args:
            choices: an array of tuples, where the first element of each tuple
                is the integer being stored and the second element is a string
                description of the value.
            allow_unspecified: by default, an exception is raised if you try
                to save a row with a value which is not in the choices list
                passed to this class; set this to True if you want to allow
                non-default values.
        """
        self.choices = dict(choices)
        self.allow_unspecified = allow_unspecified
        TypeDecorator.__init__(self, **kwargs)

    def process_bind_param(self, value, dialect):
        if value is not None:
            value = self.convert_if_label(value)
            try:
                assert self.allow_unspecified or int(value) in self.choices
            except Exception:
                raise ValueError('{!r} not a valid option out of {}'.format(
                    value, self.choices))
            else:
                return int(value)

    def process_result_value(self, value, dialect):
        if value is not None:
            value = self.convert_if_label(value)
        return value

    def convert_if_label(self, value):
        try:
            int(value)
        except ValueError:
            label_lookup = {val: key for key, val in self.choices.items()}
            return label_lookup[value]
        return int(value)


class MultiChoice(TypeDecorator):
    """
    Utility class for storing the results of a group of checkboxes.  Each value
    is represented by an integer, so we store them as a comma-separated string.
    Like the Choice class, this takes an array of tuples of integers and strings.
    """
    impl = UnicodeText
    cache_ok = False

    def __init__(self, choices, **kwargs):
        self.choices = choices
        self.choices_dict = dict(choices)
        TypeDecorator.__init__(self, **kwargs)

    def process_bind_param(self, value, dialect):
        """
        Our MultiChoice options may be a single string, a single integer, or a
        list of either.  We listify() the value, de-duplicate it, and join the
        string forms with commas.
        """
        return ','.join(sorted(map(str, set(listify(value))))) if value else ''

    def process_result_value(self, value, dialect):
        if value is not None:
            value = self.convert_if_labels(value)
        return value

    def convert_if_labels(self, value):
        try:
            int(listify(value)[0])
        except ValueError:
            label_lookup = {val: key for key, val in self.choices}
            try:
                vals = [label_lookup[label] for label in re.split(r'; |, |\*|\n| / ', value)]
            except KeyError:
                return value
            value = ','.join(map(str, vals))
        except IndexError:
            return value
        return value
