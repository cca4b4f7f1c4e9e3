"""Infrastructure modules for hivemind-trader"""

from .alerting import EventBroadcaster, EventSeverity  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .scheduler import Scheduler  # noqa: F401
from .state_store import JsonStateStore  # noqa: F401
from .ttl_store import TTLStore  # noqa: F401

__all__ = [
	"EventBroadcaster",
	"EventSeverity",
	"HealthServer",
	"MetricsRecorder",
	"Scheduler",
	"JsonStateStore",
	"TTLStore",
]
