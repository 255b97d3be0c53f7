from eventdesk._version import __version__  # noqa: F401
from eventdesk import config  # noqa: F401
from eventdesk import jinja  # noqa: F401
from eventdesk import models  # noqa: F401
from eventdesk import tasks  # noqa: F401
from eventdesk import server  # noqa: F401
