# Import all handlers so they register themselves.
from . import adherence_calendar  # noqa: F401
from . import router  # noqa: F401
