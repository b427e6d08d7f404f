"""Calendar sync error taxonomy

Retry decisions still look at the lower-cased message, so provider errors
that are not raised through these classes classify the same way.
"""
from typing import Optional


class CalendarSyncError(Exception):
    """Base class for calendar sync failures"""


class TerminalSyncError(CalendarSyncError):
    """Failure that no retry can fix"""


class BookingValidationError(TerminalSyncError):
    pass


class WebhookSignatureError(TerminalSyncError):
    pass


class ReauthorizationRequired(TerminalSyncError):
    pass


class ProviderError(CalendarSyncError):
    """Error returned by a calendar provider API"""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class RateLimitExceeded(ProviderError):
    def __init__(self, message: str = "rate limit exceeded", provider=None, status_code=429, retry_after=None):
        super().__init__(message, provider=provider, status_code=status_code)
        self.retry_after = retry_after


class EventNotFound(ProviderError):
    def __init__(self, message: str = "event not found", provider=None, status_code=404):
        super().__init__(message, provider=provider, status_code=status_code)


class TokenRefreshError(ProviderError):
    pass


class ConflictDetected(CalendarSyncError):
    def __init__(self, conflicts):
        self.conflicts = list(conflicts)
        super().__init__(f"Calendar conflict detected with {len(self.conflicts)} booking(s)")


class JobTimeout(CalendarSyncError):
    pass


class SkipJob(Exception):
    """The job is moot; finish silently"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ReleaseJob(Exception):
    """Put the job back on the queue after ``delay`` seconds"""

    def __init__(self, delay: int, reason: str = "", consume_attempt: bool = True):
        super().__init__(reason or f"released for {delay}s")
        self.delay = delay
        self.reason = reason
        self.consume_attempt = consume_attempt
