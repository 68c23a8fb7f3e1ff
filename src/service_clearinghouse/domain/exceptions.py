"""Domain exceptions for the Service Clearinghouse.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware:

    UnauthorizedError     401   no or unknown identity
    ForbiddenError        403   wrong role, or not a participant of the entity
    NotFoundError         404
    ConflictError         409   duplicate quote, dispute already resolved
    UnprocessableError    422   entity is in the wrong state for the operation
    ValidationError       400   malformed input
    PaymentGatewayError   503   gateway unreachable or failing; safe to retry
"""


class ClearinghouseError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "CLEARINGHOUSE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Caller errors ---


class UnauthorizedError(ClearinghouseError):
    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message=message, code="UNAUTHORIZED")


class ForbiddenError(ClearinghouseError):
    def __init__(self, message: str = "You are not allowed to perform this action") -> None:
        super().__init__(message=message, code="FORBIDDEN")


class NotFoundError(ClearinghouseError):
    """Raised when a job, quote, dispute, payout or payment does not exist."""

    def __init__(self, resource: str, identifier: object | None = None) -> None:
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} {identifier} not found"
        super().__init__(message=message, code="NOT_FOUND")
        self.resource = resource


class ConflictError(ClearinghouseError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="CONFLICT")


class ValidationError(ClearinghouseError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")


# --- State errors ---


class UnprocessableError(ClearinghouseError):
    def __init__(self, message: str, code: str = "UNPROCESSABLE") -> None:
        super().__init__(message=message, code=code)


class InvalidStateTransitionError(UnprocessableError):
    """Raised when a guard table rejects a transition.

    The guard's reason is the message, returned verbatim to the caller.
    """

    def __init__(self, current_state: str, attempted_state: str, reason: str) -> None:
        super().__init__(message=reason, code="INVALID_STATE_TRANSITION")
        self.current_state = current_state
        self.attempted_state = attempted_state


# --- Collaborator errors ---


class PaymentGatewayError(ClearinghouseError):
    """The payment gateway timed out or failed. No state was changed."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message=message, code="PAYMENT_GATEWAY_ERROR")
        self.retryable = retryable


class WebhookProcessingError(ClearinghouseError):
    """A gateway webhook could not be processed; the gateway should redeliver it."""

    def __init__(self, message: str = "Webhook processing failed") -> None:
        super().__init__(message=message, code="WEBHOOK_PROCESSING_ERROR")
