"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Insufficient balance is deliberately absent: a deduction that cannot be
covered is a normal outcome (see DeductionResult), not an error.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class UserNotFoundError(BillingError):
    """Raised when a user row doesn't exist."""

    def __init__(self, lookup: str) -> None:
        self.lookup = lookup
        super().__init__(f"User not found: {lookup}")


class InvalidInputError(BillingError):
    """Raised for malformed tier, action or amount values."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid input: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class TransientError(BillingError):
    """Raised when a datastore or processor call failed or timed out.

    Safe to retry the whole operation: every mutation is atomic.
    """

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Transient failure in {operation}: {message}")


class PaymentProviderError(BillingError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class ConfigurationError(BillingError):
    """Raised when a required secret or allow-list entry is missing at request time."""

    def __init__(self, setting: str) -> None:
        self.setting = setting
        super().__init__(f"Required configuration missing: {setting}")


class AuthorizationError(BillingError):
    """Raised when an authenticated caller is not entitled to the operation."""

    def __init__(self, required_permission: str) -> None:
        self.required_permission = required_permission
        super().__init__(f"Authorization failed: missing permission {required_permission}")


class SelfProtectionError(AuthorizationError):
    """Raised when an administrator targets another administrator's account."""

    def __init__(self, actor_id: UUID, target_id: UUID) -> None:
        self.actor_id = actor_id
        self.target_id = target_id
        BillingError.__init__(
            self,
            f"Authorization failed: administrator {actor_id} "
            f"cannot modify administrator {target_id}",
        )
        self.required_permission = "admin:modify_administrator"


class RateLimitedError(BillingError):
    """Raised when a rate-limit window is exhausted."""

    def __init__(self, identifier: str, retry_after_seconds: int) -> None:
        self.identifier = identifier
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Rate limit exceeded for {identifier}, retry in {retry_after_seconds}s")
