"""Infrastructure modules for copytrade-automation"""

from .account_store import AccountStore, JsonFileAccountStore  # noqa: F401
from .healthcheck import ControlServer  # noqa: F401
from .metrics import MetricsRecorder, RunStats  # noqa: F401
from .notifications import NotificationSink, WebhookNotificationSink  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401

__all__ = [
	"AccountStore",
	"JsonFileAccountStore",
	"ControlServer",
	"MetricsRecorder",
	"RunStats",
	"NotificationSink",
	"WebhookNotificationSink",
	"RateLimiter",
]
