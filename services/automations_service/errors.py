"""Error taxonomy for the automations service.

Settings operations surface these to the API caller; the batch evaluator
catches them per client and records ``kind`` in its run summary.
"""

from typing import Optional


class AutomationError(Exception):
    """Base class for all automations errors."""

    kind = "automation_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.kind)
        self.message = message or str(self.args[0])


class NotAuthenticated(AutomationError):
    """No coach context could be resolved for the caller."""

    kind = "not_authenticated"


class ConfigValidationError(AutomationError):
    """Automation config rejected at write time."""

    kind = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PersistenceError(AutomationError):
    """The settings store could not be read or written."""

    kind = "persistence_error"


class ExternalServiceError(AutomationError):
    """A collaborating service failed or timed out."""

    kind = "external_service_error"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotificationError(ExternalServiceError):
    """An alert or message could not be delivered."""

    kind = "notification_error"


class RateLimited(ExternalServiceError):
    """The AI gateway answered 429; back off before retrying."""

    kind = "rate_limited"


class QuotaExhausted(ExternalServiceError):
    """The AI gateway answered 402; credits are exhausted."""

    kind = "quota_exhausted"
