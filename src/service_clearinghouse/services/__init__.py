"""Application services — use case orchestration."""

from service_clearinghouse.services.dispute_service import DisputeService
from service_clearinghouse.services.escrow_service import EscrowService, FundingResult
from service_clearinghouse.services.job_service import JobService
from service_clearinghouse.services.payout_service import PayoutService
from service_clearinghouse.services.quote_service import QuoteService
from service_clearinghouse.services.settlement_service import EarningsSummary, SettlementLedger
from service_clearinghouse.services.sweep_service import SweepReport, SweepService
from service_clearinghouse.services.unit_of_work import UnitOfWork, new_unit_of_work

__all__ = [
    "DisputeService",
    "EarningsSummary",
    "EscrowService",
    "FundingResult",
    "JobService",
    "PayoutService",
    "QuoteService",
    "SettlementLedger",
    "SweepReport",
    "SweepService",
    "UnitOfWork",
    "new_unit_of_work",
]
