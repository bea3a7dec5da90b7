"""
Domain exceptions.

Routers translate these into HTTPException responses; services raise them
only for operator mistakes (configuration) and for conditions the caller must
act on.
"""
from typing import Optional


class FenamError(Exception):
    """Base class for all application errors."""


class ConfigurationError(FenamError):
    """A required setting is missing or unusable."""


class MissingSecretError(ConfigurationError):
    """A signing secret was not configured."""


class AffiliationNotFoundError(FenamError):
    def __init__(self, affiliation_id: str):
        self.affiliation_id = affiliation_id
        super().__init__(f"Affiliation {affiliation_id} not found")


class MemberNumberExhaustedError(FenamError):
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Could not generate a unique member number after {attempts} attempts")


class CompletionPersistenceError(FenamError):
    """
    The completion write failed after the payment was confirmed.

    kind is one of RECORD_VANISHED, UNIQUE_VIOLATION, OTHER.
    """
    RECORD_VANISHED = "record_vanished"
    UNIQUE_VIOLATION = "unique_violation"
    OTHER = "other"

    def __init__(self, affiliation_id: str, kind: str, cause: Optional[BaseException] = None):
        self.affiliation_id = affiliation_id
        self.kind = kind
        self.cause = cause
        super().__init__(f"Completion write failed for affiliation {affiliation_id} ({kind})")


class PaymentProviderError(FenamError):
    def __init__(self, message: str, status_code: Optional[int] = None, debug_id: Optional[str] = None):
        self.status_code = status_code
        self.debug_id = debug_id
        super().__init__(message)


class OrderAlreadyCapturedError(PaymentProviderError):
    """Capture was refused because the order was captured before."""


class NotActiveMemberError(FenamError):
    """No completed, unexpired affiliation matches the email."""


class LoginRateLimitedError(FenamError):
    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"Too many login links requested, retry after {retry_after}s")


class ReturnUrlError(FenamError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Return URL rejected: {reason}")


class EmailDeliveryError(FenamError):
    """The email provider could not deliver a mandatory message."""
