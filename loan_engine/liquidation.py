"""
Liquidation Module

Computes what it costs to pay a loan off (fully or partially) at a given
moment and settles that payoff atomically. Interest on installments not yet
due is prorated by elapsed time; overdue installments carry full interest
plus a late fee. Partial amounts are allocated by waterfall: overdue
installments first, then upcoming ones, each in due-date order.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
import uuid

from .currency import Money, Numeric, round_up, to_decimal
from .calculator import ScheduleItem, ScheduleItemStatus, calculate_late_fee
from .audit import AuditTrail, AuditEventType
from .ledger import LoanLedger, LedgerEntryType, LedgerProvider, liquidation_idempotency_key
from .loans import Loan, LoanEvent, LoanManager, LoanStatus
from .config import LoanEngineConfig, get_config
from .exceptions import (
    AlreadyCompletedError, AmountMismatchError, DuplicateLiquidationError,
    ForbiddenError, InvalidAmountError, LoanCancelledError,
)
from .logging_config import get_logger, log_action


ONE_DAY = timedelta(days=1)
ZERO = Decimal('0')


@dataclass(frozen=True)
class ScheduleLiquidation:
    """One unpaid installment as priced for payoff"""
    installment_number: int
    due_date: datetime
    status: ScheduleItemStatus
    principal_amount: Decimal
    interest_amount: Decimal        # Scheduled interest
    prorated_interest: Decimal      # Interest actually charged
    late_fee: Decimal
    past_due: bool

    @property
    def total(self) -> Decimal:
        return self.principal_amount + self.prorated_interest + self.late_fee

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'status': self.status.value,
            'principal_amount': str(self.principal_amount),
            'interest_amount': str(self.interest_amount),
            'prorated_interest': str(self.prorated_interest),
            'late_fee': str(self.late_fee),
        }


@dataclass(frozen=True)
class LiquidationBreakdown:
    unpaid_principal: Decimal
    accrued_interest: Decimal
    late_fees: Decimal
    schedules_included: List[ScheduleLiquidation] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return self.unpaid_principal + self.accrued_interest + self.late_fees

    @classmethod
    def from_schedules(cls, schedules: List[ScheduleLiquidation]) -> 'LiquidationBreakdown':
        return cls(
            unpaid_principal=sum((s.principal_amount for s in schedules), ZERO),
            accrued_interest=sum((s.prorated_interest for s in schedules), ZERO),
            late_fees=sum((s.late_fee for s in schedules), ZERO),
            schedules_included=list(schedules),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'unpaid_principal': str(self.unpaid_principal),
            'accrued_interest': str(self.accrued_interest),
            'late_fees': str(self.late_fees),
            'schedules_included': [s.to_dict() for s in self.schedules_included],
        }


@dataclass(frozen=True)
class LiquidationCalculation:
    """Payoff quote; never persisted"""
    loan_id: str
    total_due: Decimal
    breakdown: LiquidationBreakdown
    is_full_liquidation: bool
    remaining_balance: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'total_due': str(self.total_due),
            'breakdown': self.breakdown.to_dict(),
            'is_full_liquidation': self.is_full_liquidation,
            'remaining_balance': str(self.remaining_balance) if self.remaining_balance is not None else None,
        }


@dataclass(frozen=True)
class LiquidationResult:
    liquidation_id: str
    ledger_entry_id: str
    calculation: LiquidationCalculation


def whole_days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, floored (negative when end is earlier)"""
    return (end - start) // ONE_DAY


def prorated_interest(item: ScheduleItem, loan_start: datetime, now: datetime) -> Decimal:
    """
    Interest charged on an installment paid off at ``now``.

    Past due installments carry their full interest. Otherwise interest is
    scaled by the share of the start-to-due window already elapsed, capped
    at the full amount.
    """
    if item.is_past_due(now):
        return item.interest_amount

    days_since_start = whole_days_between(loan_start, now)
    days_to_due = whole_days_between(loan_start, item.due_date)
    if days_since_start <= 0 or days_to_due <= 0:
        return ZERO

    ratio = min(Decimal(days_since_start) / Decimal(days_to_due), Decimal('1'))
    return round_up(item.interest_amount * ratio)


def allocate_waterfall(schedules: List[ScheduleLiquidation], amount: Decimal) -> List[ScheduleLiquidation]:
    """
    Spread a partial amount over priced installments.

    Whole installments are covered while funds last. The first one that
    cannot be covered takes what is left (principal, then interest, then
    late fee) and allocation stops there.
    """
    ordered = sorted(schedules, key=lambda s: (not s.past_due, s.due_date))
    remaining = amount
    allocated = []

    for schedule in ordered:
        if remaining <= 0:
            break
        if remaining >= schedule.total:
            allocated.append(schedule)
            remaining -= schedule.total
            continue

        principal = min(remaining, schedule.principal_amount)
        remaining -= principal
        interest = min(remaining, schedule.prorated_interest)
        remaining -= interest
        late_fee = min(remaining, schedule.late_fee)

        allocated.append(replace(
            schedule, principal_amount=principal, prorated_interest=interest, late_fee=late_fee
        ))
        break

    return allocated


class LiquidationEngine:
    """
    Calculates and executes loan payoffs
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        ledger: LoanLedger,
        audit_trail: AuditTrail,
        config: Optional[LoanEngineConfig] = None
    ):
        self.loan_manager = loan_manager
        self.storage = loan_manager.storage
        self.locks = loan_manager.locks
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.tolerance = Decimal(self.config.liquidation_amount_tolerance)
        self.logger = get_logger("loan_engine.liquidation")

    def calculate_liquidation(
        self,
        loan_id: str,
        partial_amount: Optional[Numeric] = None,
        now: Optional[datetime] = None
    ) -> LiquidationCalculation:
        """
        Price a full or partial payoff without changing anything

        Args:
            loan_id: Loan to price
            partial_amount: Amount the customer wants to pay; a full payoff
                is quoted when omitted or not below the total due
            now: Valuation time (defaults to current UTC time)

        Returns:
            LiquidationCalculation

        Raises:
            LoanNotFoundError: If the loan does not exist
            AlreadyCompletedError: If nothing is left to pay
            LoanCancelledError: If the loan was cancelled
            InvalidAmountError: If partial_amount is not positive
        """
        now = now or datetime.now(timezone.utc)
        loan = self.loan_manager.require_loan(loan_id)
        return self._calculate(loan, partial_amount, now)

    def execute_liquidation(
        self,
        merchant_id: str,
        loan_id: str,
        amount: Numeric,
        reference: str,
        method: str = "manual",
        now: Optional[datetime] = None
    ) -> LiquidationResult:
        """
        Settle a payoff as one atomic unit

        The payoff is recalculated under the loan's lock, then every included
        installment, the loan totals, the ledger entry and the audit event
        are written together.

        Raises:
            AmountMismatchError: If the amount does not match the recalculated payoff
            ForbiddenError: If the loan belongs to another merchant
            DuplicateLiquidationError: If the reference was already settled for this loan
        """
        now = now or datetime.now(timezone.utc)
        amount = to_decimal(amount)
        if amount <= 0:
            raise InvalidAmountError("Liquidation amount must be greater than zero")

        idempotency_key = liquidation_idempotency_key(loan_id, reference)
        with self.locks.hold(loan_id):
            existing = self.ledger.find_by_idempotency_key(idempotency_key)
            if existing:
                raise DuplicateLiquidationError(idempotency_key, existing.id)

            calculation = self.calculate_liquidation(loan_id, amount, now=now)
            self._check_amount(calculation, amount)

            with self.storage.atomic():
                loan = self.loan_manager.require_loan(loan_id)
                if loan.merchant_id != merchant_id:
                    raise ForbiddenError(f"Loan {loan_id} does not belong to merchant {merchant_id}")

                liquidation_id = str(uuid.uuid4())
                updated_items = self._settle_schedules(loan, calculation, liquidation_id, reference, now)

                loan.amount_paid += calculation.total_due
                loan.amount_remaining = max(ZERO, loan.configuration.total_amount - loan.amount_paid)
                loan.last_payment_date = now
                loan.updated_at = now
                if calculation.is_full_liquidation or not loan.unpaid_installments:
                    # Settling the last installment closes the loan from any open status
                    loan.status = LoanStatus.COMPLETED
                    loan.completed_at = now
                self.loan_manager.save_loan(loan, updated_items)

                entry = self.ledger.record_entry(
                    entry_type=LedgerEntryType.REPAYMENT_SUCCESS,
                    idempotency_key=idempotency_key,
                    merchant_id=merchant_id,
                    loan_id=loan_id,
                    reference=reference,
                    amount=Money(calculation.total_due, loan.currency),
                    provider=LedgerProvider.MANUAL,
                    financier_id=loan.financier_id,
                    metadata={
                        "liquidation": True,
                        "liquidation_id": liquidation_id,
                        "is_full_liquidation": calculation.is_full_liquidation,
                        "breakdown": calculation.breakdown.to_dict(),
                        "method": method,
                    }
                )

                self.audit_trail.log_event(
                    event_type=AuditEventType.LIQUIDATION_EXECUTED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={
                        "liquidation_id": liquidation_id,
                        "ledger_entry_id": entry.id,
                        "total_due": str(calculation.total_due),
                        "is_full_liquidation": calculation.is_full_liquidation,
                        "reference": reference,
                        "method": method,
                    }
                )

        log_action(
            self.logger, "info",
            f"Liquidation executed: {'full' if calculation.is_full_liquidation else 'partial'}",
            action="execute_liquidation", resource=f"loan:{loan_id}",
            extra={
                "liquidation_id": liquidation_id,
                "total_due": str(calculation.total_due),
                "installments": len(calculation.breakdown.schedules_included),
                "event": LoanEvent.LIQUIDATED.value,
            }
        )
        return LiquidationResult(
            liquidation_id=liquidation_id,
            ledger_entry_id=entry.id,
            calculation=calculation,
        )

    def _calculate(self, loan: Loan, partial_amount: Optional[Numeric], now: datetime) -> LiquidationCalculation:
        if loan.status == LoanStatus.COMPLETED:
            raise AlreadyCompletedError(f"Loan {loan.id} is already completed")
        if loan.status == LoanStatus.CANCELLED:
            raise LoanCancelledError(f"Loan {loan.id} is cancelled")

        unpaid = loan.unpaid_installments
        if not unpaid:
            raise AlreadyCompletedError(f"Loan {loan.id} has no unpaid installments")

        schedules = [self._price_installment(loan, item, now) for item in unpaid]
        breakdown = LiquidationBreakdown.from_schedules(schedules)
        total_due = breakdown.total

        if partial_amount is not None:
            partial = to_decimal(partial_amount)
            if partial <= 0:
                raise InvalidAmountError("Partial amount must be greater than zero")
            if partial < total_due:
                allocated = allocate_waterfall(schedules, partial)
                calculation = LiquidationCalculation(
                    loan_id=loan.id,
                    total_due=partial,
                    breakdown=LiquidationBreakdown.from_schedules(allocated),
                    is_full_liquidation=False,
                    remaining_balance=total_due - partial,
                )
                self._log_calculation(calculation)
                return calculation

        calculation = LiquidationCalculation(
            loan_id=loan.id,
            total_due=total_due,
            breakdown=breakdown,
            is_full_liquidation=True,
        )
        self._log_calculation(calculation)
        return calculation

    def _price_installment(self, loan: Loan, item: ScheduleItem, now: datetime) -> ScheduleLiquidation:
        past_due = item.is_past_due(now)
        if past_due and item.late_fee == 0:
            # Any part of a day past due counts as overdue
            days_overdue = max(whole_days_between(item.due_date, now), 1)
            late_fee = calculate_late_fee(item.amount, days_overdue, loan.configuration.penalty_rate)
        else:
            late_fee = item.late_fee

        return ScheduleLiquidation(
            installment_number=item.installment_number,
            due_date=item.due_date,
            status=item.status,
            principal_amount=item.principal_amount,
            interest_amount=item.interest_amount,
            prorated_interest=prorated_interest(item, loan.start_date, now),
            late_fee=late_fee,
            past_due=past_due,
        )

    def _check_amount(self, calculation: LiquidationCalculation, amount: Decimal) -> None:
        if calculation.is_full_liquidation:
            if amount > calculation.total_due + self.tolerance:
                raise AmountMismatchError(
                    f"Amount {amount} exceeds the payoff of {calculation.total_due}"
                )
            return

        allocated = calculation.breakdown.total
        if abs(allocated - amount) > self.tolerance:
            raise AmountMismatchError(
                f"Amount mismatch. Expected {allocated} for partial liquidation"
            )

    def _settle_schedules(
        self,
        loan: Loan,
        calculation: LiquidationCalculation,
        liquidation_id: str,
        reference: str,
        now: datetime
    ) -> List[ScheduleItem]:
        """Stamp every included installment as paid by this liquidation"""
        updated = []
        for included in calculation.breakdown.schedules_included:
            item = loan.get_installment(included.installment_number)
            item.status = ScheduleItemStatus.PAID
            item.paid_amount = included.total
            item.paid_at = now
            item.late_fee = included.late_fee
            item.payment_id = reference
            item.liquidation_id = liquidation_id
            item.prorated_interest = included.prorated_interest
            updated.append(item)
        return updated

    def _log_calculation(self, calculation: LiquidationCalculation) -> None:
        self.logger.debug(
            "Liquidation calculated: %s - Total: %s",
            'Full' if calculation.is_full_liquidation else 'Partial',
            calculation.total_due
        )
