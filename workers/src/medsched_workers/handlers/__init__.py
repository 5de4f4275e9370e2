# Import all handlers so they register themselves.
from . import missed_sweep  # noqa: F401
from . import rolling_window  # noqa: F401
from . import daily_archive  # noqa: F401
