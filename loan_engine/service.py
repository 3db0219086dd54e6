"""
Loan Engine Service

Wires storage, audit trail, ledger, lifecycle manager and liquidation engine
together and exposes the caller-facing operations.
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .config import LoanEngineConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .ledger import LoanLedger
from .locks import KeyedLockRegistry
from .loans import Loan, LoanManager, LoanStatus
from .liquidation import LiquidationCalculation, LiquidationEngine, LiquidationResult
from .admin import LoanAdministration
from .calculator import EarlyRepaymentQuote, ScheduleItem
from .schemas import (
    AuthorizeCardRequest, CalculateLiquidationRequest, CreateLoanRequest,
    LiquidateLoanRequest, RecordPaymentRequest,
)
from .exceptions import LoanEngineError
from .logging_config import get_logger, setup_logging


class LoanEngine:
    """
    Caller-facing loan lifecycle and liquidation operations
    """

    def __init__(self, storage: StorageInterface, config: Optional[LoanEngineConfig] = None):
        self.config = config or get_config()
        self.storage = storage
        self.locks = KeyedLockRegistry()
        self.audit_trail = AuditTrail(storage, enabled=self.config.enable_audit_logging)
        self.ledger = LoanLedger(storage, self.audit_trail)
        self.loans = LoanManager(storage, self.audit_trail, self.ledger, self.locks, self.config)
        self.liquidation = LiquidationEngine(self.loans, self.ledger, self.audit_trail, self.config)
        self.admin = LoanAdministration(self.loans, self.audit_trail)
        self.logger = get_logger("loan_engine.service")

    @contextmanager
    def _logged_failure(self, operation: str, loan_id: Optional[str] = None):
        try:
            yield
        except LoanEngineError as e:
            self.logger.error(
                "%s failed for loan %s: %s", operation, loan_id or "-", e,
                extra={"action": operation, "resource": f"loan:{loan_id}" if loan_id else None}
            )
            raise

    def create_loan(self, request: CreateLoanRequest, interest_rate: Decimal,
                    penalty_rate: Optional[Decimal] = None, now: Optional[datetime] = None) -> Loan:
        with self._logged_failure("create_loan"):
            return self.loans.create_loan(request, interest_rate, penalty_rate, now=now)

    def authorize_card(self, loan_id: str, card: AuthorizeCardRequest,
                       now: Optional[datetime] = None) -> Loan:
        with self._logged_failure("authorize_card", loan_id):
            return self.loans.authorize_card(loan_id, card, now=now)

    def record_payment(self, request: RecordPaymentRequest, now: Optional[datetime] = None) -> Loan:
        with self._logged_failure("record_payment", request.loan_id):
            return self.loans.record_payment(request, now=now)

    def cancel_loan(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        with self._logged_failure("cancel_loan", loan_id):
            return self.loans.cancel_loan(loan_id, now=now)

    def mark_defaulted(self, loan_id: str, reason: Optional[str] = None,
                       now: Optional[datetime] = None) -> Loan:
        with self._logged_failure("mark_defaulted", loan_id):
            return self.loans.mark_defaulted(loan_id, reason, now=now)

    def calculate_liquidation(self, request: CalculateLiquidationRequest,
                              now: Optional[datetime] = None) -> LiquidationCalculation:
        with self._logged_failure("calculate_liquidation", request.loan_id):
            return self.liquidation.calculate_liquidation(request.loan_id, request.amount, now=now)

    def execute_liquidation(self, merchant_id: str, request: LiquidateLoanRequest,
                            now: Optional[datetime] = None) -> LiquidationResult:
        """
        Settle a payoff for a merchant's loan.

        Without an explicit amount the current full payoff is settled.
        """
        with self._logged_failure("execute_liquidation", request.loan_id):
            amount = request.amount
            if amount is None:
                amount = self.liquidation.calculate_liquidation(request.loan_id, now=now).total_due
            return self.liquidation.execute_liquidation(
                merchant_id, request.loan_id, amount, request.reference,
                method=request.method, now=now
            )

    # Queries
    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.require_loan(loan_id)

    def get_schedule(self, loan_id: str) -> List[ScheduleItem]:
        return self.loans.get_schedule(loan_id)

    def find_loans(self, merchant_id: Optional[str] = None, customer_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None, limit: Optional[int] = None) -> List[Loan]:
        return self.loans.find_loans(merchant_id, customer_id, status, limit)

    def get_merchant_stats(self, merchant_id: str) -> Dict[str, Any]:
        return self.loans.get_merchant_stats(merchant_id)

    def quote_early_repayment(self, loan_id: str) -> EarlyRepaymentQuote:
        return self.loans.quote_early_repayment(loan_id)

    def close(self) -> None:
        self.storage.close()


def create_loan_engine(config: Optional[LoanEngineConfig] = None,
                       storage: Optional[StorageInterface] = None) -> LoanEngine:
    """Build an engine from configuration, creating storage from ``database_url`` when not given"""
    config = config or get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    if storage is None:
        storage = create_storage(config.database_url)
    return LoanEngine(storage, config)
