"""
Exception Classes - Strongly typed exception hierarchy.

Every error carries typed attributes; routes map families to HTTP statuses.
"""


class ReconciliationError(Exception):
    """Base exception for all access reconciliation errors."""

    pass


class EventValidationError(ReconciliationError):
    """Raised when an inbound event is rejected before any mutation."""

    label = "Event rejected"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"{self.label}: {message}")


class WebhookVerificationError(EventValidationError):
    """Raised when webhook signature verification fails."""

    label = "Webhook verification error"


class MalformedPayloadError(EventValidationError):
    """Raised when a provider payload cannot be parsed into an event."""

    label = "Malformed payload"


class PaymentProviderError(ReconciliationError):
    """Raised when payment provider operation fails."""

    label = "Payment provider error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"{self.label}: {message}")


class TransientProviderError(PaymentProviderError):
    """Raised for network or rate limit failures that may succeed on retry."""

    label = "Transient payment provider error"


class PersistenceError(ReconciliationError):
    """Raised when a write to the purchase store fails."""

    label = "Persistence error"

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        scope_key: str | None = None,
        user_id: int | None = None,
    ) -> None:
        self.message = message
        self.session_id = session_id
        self.scope_key = scope_key
        self.user_id = user_id
        super().__init__(f"{self.label}: {message}")


class WriteVerificationError(PersistenceError):
    """Raised when database write verification fails."""

    label = "Write verification failed"


class DataIntegrityError(ReconciliationError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class ResourceNotFoundError(ReconciliationError):
    """Raised when a requested resource does not exist."""

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class AuthenticationError(ReconciliationError):
    """Raised when authentication fails (missing or invalid admin key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
