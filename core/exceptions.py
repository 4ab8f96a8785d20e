"""Shared exception types for the copy-trading automation core."""

from typing import Optional


class AutomationError(RuntimeError):
    """Base class for errors raised by the automation core."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class TelemetryError(AutomationError):
    """Account telemetry could not be fetched."""


class TelemetryUnavailable(TelemetryError):
    """Timeout, network error, 5xx or 429. Retryable on the next cycle."""


class TelemetryRejected(TelemetryError):
    """4xx / auth error. Not retryable until configuration is fixed."""

    def __init__(self, source: str, original: Optional[Exception] = None, status_code: Optional[int] = None):
        super().__init__(source, original)
        self.status_code = status_code


class StoreError(AutomationError):
    """Base class for Account Store failures."""


class StoreReadFailed(StoreError):
    """The Account Store could not be read (missing file is not an error)."""


class StoreWriteFailed(StoreError):
    """An Account Store write did not complete."""


class AccountNotFound(StoreError):
    """No document exists for the requested account id."""


class StreamingError(AutomationError):
    """Base class for streaming connection failures."""


class StreamingFatal(StreamingError):
    """Auth/permission failure. Auto-reconnect stops; manual intervention required."""


class StreamingTransient(StreamingError):
    """Network-level failure. Retried with backoff."""


class ConfigurationError(AutomationError):
    """Account or application configuration is inconsistent."""


class CopierError(AutomationError):
    """The copy-trading venue rejected or failed a subscription change."""


class CopierUnavailable(CopierError):
    """Timeout, network error, 5xx or 429 from the copy-trading venue. Retryable."""
