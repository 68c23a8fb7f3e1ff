"""Database infrastructure — engine, ORM models, and repositories."""

from service_clearinghouse.infrastructure.database.engine import (
    close_db,
    create_tables,
    get_session_factory,
    init_db,
)
from service_clearinghouse.infrastructure.database.orm_models import (
    ActivityEvent,
    Base,
    Dispute,
    EscrowPayment,
    FulfillerProfile,
    Job,
    PayoutRequest,
    Quote,
    Review,
    SettlementTransaction,
)

__all__ = [
    "ActivityEvent",
    "Base",
    "Dispute",
    "EscrowPayment",
    "FulfillerProfile",
    "Job",
    "PayoutRequest",
    "Quote",
    "Review",
    "SettlementTransaction",
    "close_db",
    "create_tables",
    "get_session_factory",
    "init_db",
]
