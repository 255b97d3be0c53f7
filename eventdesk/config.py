import json
import os
import pathlib
from collections import OrderedDict
from datetime import timedelta
from hashlib import sha512
from tempfile import NamedTemporaryFile

import configobj
import pytz
import validate
import yaml
from pockets.autolog import log


class _Overridable:
    "Base class we extend below to allow deployments to add/override config options."
    @classmethod
    def mixin(cls, klass):
        for attr in dir(klass):
            if not attr.startswith('_'):
                setattr(cls, attr, getattr(klass, attr))
        return cls

    def make_enums(self, config_section):
        for name, subsection in config_section.items():
            self.make_enum(name, subsection)

    def make_enum(self, enum_name, section):
        """
        Creates a set of attributes on the global c object for the given enum.
        See the [enums] section in configspec.ini, which explains what fields
        are added for each enum.
        """
        opts, lookup, varnames = [], {}, []
        for name, desc in section.items():
            if isinstance(desc, int):
                val, desc = desc, name
            else:
                varnames.append(name.upper())
                val = self.create_enum_val(name)

            if desc:
                opts.append((val, desc))
                lookup[val] = desc

        enum_name = enum_name.upper()
        setattr(self, enum_name + '_OPTS', opts)
        setattr(self, enum_name + '_VARS', varnames)
        setattr(self, enum_name + ('' if enum_name.endswith('S') else 'S'), lookup)

    def create_enum_val(self, name):
        val = int(sha512(name.upper().encode()).hexdigest()[:7], 16)
        setattr(self, name.upper(), val)
        return val

    def enum_value(self, enum_name, value):
        """
        Accepts an enum value as an int, a numeric string, an option name
        (e.g. "round_trip"), or a label (e.g. "Round Trip") and returns the
        integer value, or None if it doesn't belong to the named enum.
        """
        opts = dict(getattr(self, enum_name.upper() + '_OPTS'))
        if value is None or value == '':
            return None
        try:
            value = int(value)
        except (TypeError, ValueError):
            name = str(value).strip()
            by_name = getattr(self, name.upper().replace(' ', '_').replace('-', '_'), None)
            if isinstance(by_name, int) and by_name in opts:
                return by_name
            squashed = ''.join(ch for ch in name.lower() if ch.isalnum())
            for val, label in opts.items():
                if ''.join(ch for ch in label.lower() if ch.isalnum()) == squashed:
                    return val
            return None
        return value if value in opts else None

    def enum_name(self, enum_name, value):
        """The lowercased option name for an enum value, e.g. c.ROUND_TRIP => "round_trip"."""
        for name in getattr(self, enum_name.upper() + '_VARS'):
            if getattr(self, name) == value:
                return name.lower()
        return ''


class Config(_Overridable):
    """
    Values which come directly from our config file are set as upper-case
    attributes on the single global instance of this class, called "c".
    Values which are computed from other config are defined as properties
    here.  See the comments in configspec.ini for explanations of the
    particular options.
    """

    @property
    def PERMISSION_NAMES(self):
        return {getattr(self, name): name.lower() for name in self.PERMISSION_VARS}

    @property
    def ALL_PERMISSIONS(self):
        return set(self.PERMISSIONS.keys())

    @property
    def DUPLICATE_PAYMENT_DELTA(self):
        return timedelta(minutes=self.DUPLICATE_PAYMENT_WINDOW)

    @property
    def ABANDONED_PAYMENT_DELTA(self):
        return timedelta(hours=self.ABANDONED_PAYMENT_HOURS)

    @property
    def MAGIC_LINK_DELTA(self):
        return timedelta(hours=self.MAGIC_LINK_HOURS)

    @property
    def MAGIC_LINK_RATE_WINDOW(self):
        return timedelta(hours=1)

    @property
    def PRESENCE_ONLINE_DELTA(self):
        return timedelta(minutes=self.PRESENCE_ONLINE_MINUTES)

    @property
    def PRESENCE_AWAY_DELTA(self):
        return timedelta(minutes=self.PRESENCE_AWAY_MINUTES)

    @property
    def SUPER_ADMINS(self):
        return {email.strip().lower() for email in self.SUPER_ADMIN_EMAILS if email.strip()}

    @property
    def APP_URL(self):
        return self.URL_BASE.rstrip('/') + self.CHERRYPY_MOUNT_PATH.rstrip('/')

    @property
    def CHECKIN_LINK_BASE(self):
        return self.APP_URL + '/v/'


def get_config_files(plugin_name, module_dir):
    config_files_str = os.environ.get(f"{plugin_name.upper()}_CONFIG_FILES", "")
    absolute_config_files = [module_dir.parents[0] / 'development.ini']
    if config_files_str:
        config_files = [pathlib.Path(x) for x in config_files_str.split(";")]
        for path in config_files:
            if not path.is_absolute():
                path = module_dir.parents[0] / path
            if not path.exists():
                raise ValueError(f"Config file {path} specified in {plugin_name.upper()}_CONFIG_FILES does not exist!")
            absolute_config_files.append(path)
    return absolute_config_files


def normalize_name(name):
    return name.replace(".", "_")


def load_section_from_environment(path, section):
    """
    Looks for configuration in environment variables.

    Args:
        path (str): The prefix of the current config section. For example,
            development.ini:
                [cherrypy]
                server.thread_pool: 10
            would translate to eventdesk_cherrypy_server_thread_pool
        section (configobj.ConfigObj): The section of the configspec to search
            for the current path in.
    """
    config = {}
    for setting in section:
        if setting == "__many__":
            prefix = f"{path}_"
            for envvar in os.environ:
                if envvar.startswith(prefix) and not envvar.split(prefix, 1)[1] in [normalize_name(x) for x in section]:
                    config[envvar.split(prefix, 1)[1]] = os.environ[envvar]
        else:
            if isinstance(section[setting], configobj.Section):
                child_path = f"{path}_{setting}"
                child = load_section_from_environment(child_path, section[setting])
                if child:
                    config[setting] = child
            else:
                name = normalize_name(f"{path}_{setting}")
                if name in os.environ:
                    config[setting] = yaml.safe_load(os.environ.get(name))
    return config


def parse_config(plugin_name, module_dir):
    specfile = module_dir / 'configspec.ini'
    spec = configobj.ConfigObj(str(specfile), interpolation=False, list_values=False, encoding='utf-8', _inspec=True)

    # to allow more/better interpolations
    root_conf = ['root = "{}"\n'.format(module_dir.parents[0]), 'module_root = "{}"\n'.format(module_dir)]
    temp_config = configobj.ConfigObj(root_conf, interpolation=False, encoding='utf-8')

    for config_path in get_config_files(plugin_name, module_dir):
        # this gracefully handles nonexistent files
        file_config = configobj.ConfigObj(str(config_path), encoding='utf-8', interpolation=False)
        if os.environ.get("LOG_CONFIG", "false").lower() == "true":
            print(f"File config for {plugin_name} from {config_path}")
            print(json.dumps(file_config, indent=2, sort_keys=True))
        temp_config.merge(file_config)

    environment_config = load_section_from_environment(plugin_name, spec)
    temp_config.merge(configobj.ConfigObj(environment_config, encoding='utf-8', interpolation=False))

    # combining the merge files to one file helps configspecs with interpolation
    with NamedTemporaryFile(delete=False) as config_outfile:
        temp_config.write(config_outfile)
        temp_name = config_outfile.name

    config = configobj.ConfigObj(temp_name, encoding='utf-8', configspec=spec)

    validation = config.validate(validate.Validator(), preserve_errors=True)
    os.unlink(temp_name)

    if validation is not True:
        raise RuntimeError('configuration validation error(s) (): {!r}'.format(
            configobj.flatten_errors(config, validation))
        )

    return config


c = Config()
_config = parse_config("eventdesk", pathlib.Path(__file__).parent)  # outside this module, use the c global instead

for conf, val in _config['secret'].items():
    conf_env = os.environ.get(conf.upper())
    setattr(c, conf.upper(), conf_env if conf_env is not None else val)

for _opt, _val in _config.items():
    if not isinstance(_val, dict) and not hasattr(c, _opt.upper()):
        setattr(c, _opt.upper(), _val)

c.CHERRYPY = _config['cherrypy'].dict()
c.CELERY = _config['celery'].dict()
c.BADGE_SIZES = OrderedDict((name, tuple(size)) for name, size in _config['badge_sizes'].items())
c.PAGE_SIZE_A4 = (595, 842)

c.TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'
c.DATE_FORMAT = '%Y-%m-%d'
c.EVENT_TIMEZONE = pytz.timezone(c.EVENT_TIMEZONE)

if "sqlite" in c.SQLALCHEMY_URL:
    # SQLite does not suport pool_size and max_overflow,
    # so disable them if sqlite is used.
    c.SQLALCHEMY_POOL_SIZE = -1
    c.SQLALCHEMY_MAX_OVERFLOW = -1

c.make_enums(_config['enums'])

if c.DEV_BOX:
    log.debug('Running with dev_box enabled; emails and texts will only be logged')
