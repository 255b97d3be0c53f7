import os
from types import FunctionType

import jinja2

from eventdesk.utils import format_currency, localize_datetime


class JinjaEnv:
    """
    The one Jinja environment we render email templates with.  Filters
    can be registered before or after the environment is first used.
    """
    _env = None
    _filter_functions = {}
    _template_dirs = []

    @classmethod
    def insert_template_dir(cls, dirname):
        """Templates in `dirname` take priority over ones we already know about."""
        if cls._env and cls._env.loader:
            cls._env.loader.searchpath.insert(0, dirname)
        else:
            cls._template_dirs.insert(0, dirname)

    @classmethod
    def env(cls):
        if cls._env is None:
            cls._env = cls._init_env()
        return cls._env

    @classmethod
    def _init_env(cls):
        env = jinja2.Environment(
            autoescape=jinja2.select_autoescape(['html']),
            loader=jinja2.FileSystemLoader(cls._template_dirs),
            lstrip_blocks=True,
            trim_blocks=True,
        )

        for name, func in cls._filter_functions.items():
            env.filters[name] = func

        return env

    @classmethod
    def jinja_filter(cls, name=None):
        def _register(func, _name=None):
            if cls._env:
                cls._env.filters[_name if _name else func.__name__] = func
            else:
                cls._filter_functions[_name if _name else func.__name__] = func

        if isinstance(name, FunctionType):
            _register(name)
            return name
        else:
            def registrar(func):
                _register(func, name)
                return func
            registrar.__name__ = name
            return registrar


def render(template_name, data=None):
    return JinjaEnv.env().get_template(template_name).render(**(data or {}))


@JinjaEnv.jinja_filter(name='money')
def money(amount, currency=None):
    return format_currency(amount, currency)


@JinjaEnv.jinja_filter
def datetime_local(dt, fmt='%d %b %Y, %I:%M %p'):
    return localize_datetime(dt).strftime(fmt) if dt else ''


JinjaEnv.insert_template_dir(os.path.join(os.path.dirname(__file__), 'templates'))
