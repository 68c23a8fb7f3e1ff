"""Domain layer — pure business logic with zero framework dependencies."""

from service_clearinghouse.domain.actor import Actor
from service_clearinghouse.domain.commission import CommissionBreakdown, calculate_commission
from service_clearinghouse.domain.enums import (
    EscrowAction,
    EscrowStatus,
    JobStatus,
    PayoutStatus,
    QuoteStatus,
    Role,
    TransactionStatus,
)
from service_clearinghouse.domain.exceptions import (
    ClearinghouseError,
    ConflictError,
    ForbiddenError,
    InvalidStateTransitionError,
    NotFoundError,
    PaymentGatewayError,
    UnauthorizedError,
    UnprocessableError,
    ValidationError,
)
from service_clearinghouse.domain.state_machine import (
    TransitionCheck,
    can_transition,
    can_transition_escrow,
)

__all__ = [
    "Actor",
    "CommissionBreakdown",
    "calculate_commission",
    "EscrowAction",
    "EscrowStatus",
    "JobStatus",
    "PayoutStatus",
    "QuoteStatus",
    "Role",
    "TransactionStatus",
    "ClearinghouseError",
    "ConflictError",
    "ForbiddenError",
    "InvalidStateTransitionError",
    "NotFoundError",
    "PaymentGatewayError",
    "UnauthorizedError",
    "UnprocessableError",
    "ValidationError",
    "TransitionCheck",
    "can_transition",
    "can_transition_escrow",
]
