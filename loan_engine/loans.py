"""
Loan Module

Handles loan origination, card authorization (activation), installment
payment recording, cancellation and the loan status state machine. Every
write runs as one atomic storage unit under the loan's lock.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import secrets
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .ledger import LoanLedger, LedgerEntryType, LedgerProvider, payment_idempotency_key
from .locks import KeyedLockRegistry
from .config import LoanEngineConfig, get_config
from .calculator import (
    LoanConfiguration, ScheduleItem, ScheduleItemStatus, EarlyRepaymentQuote,
    calculate_loan_configuration, calculate_early_repayment,
    generate_payment_schedule, validate_tenor_frequency,
)
from .schemas import CreateLoanRequest, AuthorizeCardRequest, RecordPaymentRequest
from .exceptions import (
    AlreadyPaidError, InstallmentNotFoundError, InvalidConfigurationError,
    InvalidStateError, LoanAccountNumberError, LoanNotFoundError,
)
from .logging_config import get_logger, log_action


LOAN_ACCOUNT_NUMBER_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # No 0, O, 1, I
LOAN_ACCOUNT_NUMBER_LENGTH = 10


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"          # Created, waiting for card authorization
    ACTIVE = "active"            # Card bound, installments being collected
    COMPLETED = "completed"      # Fully repaid
    DEFAULTED = "defaulted"      # Declared in default by collections
    CANCELLED = "cancelled"      # Abandoned before activation

    def can_transition_to(self, target: 'LoanStatus') -> bool:
        return target in LOAN_STATUS_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not LOAN_STATUS_TRANSITIONS[self]


LOAN_STATUS_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.ACTIVE, LoanStatus.CANCELLED},
    LoanStatus.ACTIVE: {LoanStatus.COMPLETED, LoanStatus.DEFAULTED},
    LoanStatus.COMPLETED: set(),
    LoanStatus.DEFAULTED: set(),
    LoanStatus.CANCELLED: set(),
}


class LoanEvent(Enum):
    """Event points observed by the external notifier"""
    CREATED = "loan.created"
    ACTIVATED = "loan.activated"
    PAYMENT_SUCCESS = "payment.success"
    COMPLETED = "loan.completed"
    CANCELLED = "loan.cancelled"
    LIQUIDATED = "loan.liquidated"


@dataclass
class CardAuthorization:
    """Reusable card authorization used for recurring collection"""
    authorization_code: str
    card_type: str
    last4: str
    expiry_month: str
    expiry_year: str
    bank: str
    customer_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'authorization_code': self.authorization_code,
            'card_type': self.card_type,
            'last4': self.last4,
            'expiry_month': self.expiry_month,
            'expiry_year': self.expiry_year,
            'bank': self.bank,
            'customer_code': self.customer_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CardAuthorization':
        return cls(**data)


@dataclass
class Loan(StorageRecord):
    """Installment loan financing one merchant sale"""
    merchant_id: str
    customer_id: str
    loan_account_number: str
    principal_amount: Decimal
    configuration: LoanConfiguration
    currency: Currency = Currency.NGN
    status: LoanStatus = LoanStatus.PENDING
    payment_schedule: List[ScheduleItem] = field(default_factory=list)

    # Repayment progress
    current_installment: int = 0
    amount_paid: Decimal = Decimal('0')
    amount_remaining: Decimal = Decimal('0')

    # Sale details
    order_id: Optional[str] = None
    product_description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    notes: Optional[str] = None
    card_authorization: Optional[CardAuthorization] = None

    # Dates
    activated_at: Optional[datetime] = None
    first_payment_date: Optional[datetime] = None
    last_payment_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None

    @property
    def start_date(self) -> datetime:
        """Date interest starts accruing from"""
        return self.activated_at or self.created_at

    @property
    def financier_id(self) -> str:
        return self.metadata.get('financier_id', '')

    @property
    def unpaid_installments(self) -> List[ScheduleItem]:
        return [item for item in self.payment_schedule if not item.is_paid]

    def get_installment(self, installment_number: int) -> ScheduleItem:
        for item in self.payment_schedule:
            if item.installment_number == installment_number:
                return item
        raise InstallmentNotFoundError(self.id, installment_number)

    def to_dict(self) -> Dict[str, Any]:
        """Loan row; the schedule is persisted separately"""
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'merchant_id': self.merchant_id,
            'customer_id': self.customer_id,
            'loan_account_number': self.loan_account_number,
            'principal_amount': str(self.principal_amount),
            'configuration': self.configuration.to_dict(),
            'currency': self.currency.code,
            'status': self.status.value,
            'current_installment': self.current_installment,
            'amount_paid': str(self.amount_paid),
            'amount_remaining': str(self.amount_remaining),
            'order_id': self.order_id,
            'product_description': self.product_description,
            'metadata': self.metadata,
            'notes': self.notes,
            'card_authorization': self.card_authorization.to_dict() if self.card_authorization else None,
            'activated_at': iso(self.activated_at),
            'first_payment_date': iso(self.first_payment_date),
            'last_payment_date': iso(self.last_payment_date),
            'completed_at': iso(self.completed_at),
            'defaulted_at': iso(self.defaulted_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], schedule: Optional[List[ScheduleItem]] = None) -> 'Loan':
        def get_datetime(key: str) -> Optional[datetime]:
            if data.get(key):
                return datetime.fromisoformat(data[key])
            return None

        card = data.get('card_authorization')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            merchant_id=data['merchant_id'],
            customer_id=data['customer_id'],
            loan_account_number=data['loan_account_number'],
            principal_amount=Decimal(data['principal_amount']),
            configuration=LoanConfiguration.from_dict(data['configuration']),
            currency=Currency[data.get('currency', 'NGN')],
            status=LoanStatus(data['status']),
            payment_schedule=schedule or [],
            current_installment=data.get('current_installment', 0),
            amount_paid=Decimal(data['amount_paid']),
            amount_remaining=Decimal(data['amount_remaining']),
            order_id=data.get('order_id'),
            product_description=data.get('product_description'),
            metadata=data.get('metadata') or {},
            notes=data.get('notes'),
            card_authorization=CardAuthorization.from_dict(card) if card else None,
            activated_at=get_datetime('activated_at'),
            first_payment_date=get_datetime('first_payment_date'),
            last_payment_date=get_datetime('last_payment_date'),
            completed_at=get_datetime('completed_at'),
            defaulted_at=get_datetime('defaulted_at'),
        )


class LoanManager:
    """
    Manages the loan lifecycle
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        ledger: LoanLedger,
        locks: KeyedLockRegistry,
        config: Optional[LoanEngineConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.ledger = ledger
        self.locks = locks
        self.config = config or get_config()
        self.loans_table = "loans"
        self.schedules_table = "repayment_schedules"
        self.logger = get_logger("loan_engine.loans")

    def create_loan(
        self,
        request: CreateLoanRequest,
        interest_rate: Decimal,
        penalty_rate: Optional[Decimal] = None,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Create a pending loan with a provisional schedule

        Args:
            request: Sale and repayment terms
            interest_rate: Merchant's annual interest rate in percent
            penalty_rate: Merchant's late payment penalty in percent
            now: Creation time (defaults to current UTC time)

        Returns:
            Created Loan in pending status

        Raises:
            InvalidConfigurationError: If the tenor/frequency combination is rejected
        """
        now = now or datetime.now(timezone.utc)
        tenor = request.tenor.to_tenor()
        if penalty_rate is None:
            penalty_rate = Decimal(self.config.default_penalty_rate)

        validation = validate_tenor_frequency(
            tenor, request.frequency,
            min_installments=self.config.min_installments,
            max_installments=self.config.max_installments
        )
        if not validation.valid:
            raise InvalidConfigurationError(validation.message)

        configuration = calculate_loan_configuration(
            principal_amount=request.principal_amount,
            frequency=request.frequency,
            tenor=tenor,
            interest_rate=interest_rate,
            penalty_rate=penalty_rate
        )

        with self.storage.atomic():
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                merchant_id=request.merchant_id,
                customer_id=request.customer_id,
                loan_account_number=self._generate_loan_account_number(),
                principal_amount=request.principal_amount,
                configuration=configuration,
                currency=Currency[self.config.currency],
                payment_schedule=generate_payment_schedule(configuration, now),
                amount_remaining=configuration.total_amount,
                order_id=request.order_id,
                product_description=request.product_description,
                metadata=dict(request.metadata or {}),
            )
            self.save_loan(loan, loan.payment_schedule)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "merchant_id": loan.merchant_id,
                    "customer_id": loan.customer_id,
                    "loan_account_number": loan.loan_account_number,
                    "principal_amount": str(loan.principal_amount),
                    "total_amount": str(configuration.total_amount),
                    "number_of_installments": configuration.number_of_installments,
                }
            )

        log_action(
            self.logger, "info", f"Loan created: {loan.loan_account_number}",
            action="create_loan", resource=f"loan:{loan.id}",
            extra={
                "merchant_id": loan.merchant_id,
                "principal_amount": str(loan.principal_amount),
                "installments": configuration.number_of_installments,
                "event": LoanEvent.CREATED.value,
            }
        )
        return loan

    def authorize_card(
        self,
        loan_id: str,
        card: AuthorizeCardRequest,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Bind a card authorization and activate the loan.

        The schedule is regenerated so due dates count from activation, with
        the first installment anchored ``activation_grace_days`` after now.
        """
        now = now or datetime.now(timezone.utc)

        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self.require_loan(loan_id)
            self._transition(loan, LoanStatus.ACTIVE)

            anchor = now + timedelta(days=self.config.activation_grace_days)
            loan.card_authorization = CardAuthorization(
                authorization_code=card.authorization_code,
                card_type=card.card_type,
                last4=card.last4,
                expiry_month=card.expiry_month,
                expiry_year=card.expiry_year,
                bank=card.bank,
                customer_code=card.customer_code,
            )
            loan.payment_schedule = generate_payment_schedule(loan.configuration, anchor)
            loan.first_payment_date = anchor
            loan.activated_at = now
            loan.updated_at = now
            self.save_loan(loan, loan.payment_schedule)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_ACTIVATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "card_last4": card.last4,
                    "first_payment_date": anchor.isoformat(),
                }
            )

        log_action(
            self.logger, "info", f"Loan activated: {loan.loan_account_number}",
            action="authorize_card", resource=f"loan:{loan.id}",
            extra={"first_payment_date": anchor.isoformat(), "event": LoanEvent.ACTIVATED.value}
        )
        return loan

    def record_payment(self, request: RecordPaymentRequest, now: Optional[datetime] = None) -> Loan:
        """
        Record a successful installment payment

        Args:
            request: Installment number, amount and provider payment reference
            now: Payment time (defaults to current UTC time)

        Returns:
            Updated Loan

        Raises:
            LoanNotFoundError: If the loan does not exist
            InvalidStateError: If the loan is not active
            InstallmentNotFoundError: If the installment does not exist
            AlreadyPaidError: If the installment was already paid
            DuplicateLedgerEntryError: If the payment reference was already recorded
        """
        now = now or datetime.now(timezone.utc)

        with self.locks.hold(request.loan_id), self.storage.atomic():
            loan = self.require_loan(request.loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidStateError(
                    f"Loan {loan.id} is {loan.status.value}; payments require an active loan"
                )

            item = loan.get_installment(request.installment_number)
            if item.is_paid:
                raise AlreadyPaidError(
                    f"Installment {item.installment_number} of loan {loan.id} is already paid"
                )

            item.status = ScheduleItemStatus.PAID
            item.paid_at = now
            item.paid_amount = request.amount
            item.payment_id = request.payment_id

            loan.amount_paid += request.amount
            loan.amount_remaining = max(Decimal('0'), loan.configuration.total_amount - loan.amount_paid)
            loan.current_installment = item.installment_number
            loan.last_payment_date = now
            loan.updated_at = now

            is_last = item.installment_number == loan.configuration.number_of_installments
            completed = loan.amount_remaining <= 0 or is_last
            if completed:
                self._transition(loan, LoanStatus.COMPLETED)
                loan.completed_at = now

            self.save_loan(loan, [item])

            self.ledger.record_entry(
                entry_type=LedgerEntryType.REPAYMENT_SUCCESS,
                idempotency_key=payment_idempotency_key(loan.id, request.payment_id),
                merchant_id=loan.merchant_id,
                loan_id=loan.id,
                reference=request.payment_id,
                amount=Money(request.amount, loan.currency),
                provider=LedgerProvider.CARD,
                financier_id=loan.financier_id,
                metadata={"installment_number": item.installment_number}
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAYMENT_RECORDED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "installment_number": item.installment_number,
                    "amount": str(request.amount),
                    "payment_id": request.payment_id,
                    "amount_remaining": str(loan.amount_remaining),
                }
            )
            if completed:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_COMPLETED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"amount_paid": str(loan.amount_paid)}
                )

        log_action(
            self.logger, "info", f"Payment recorded for installment {item.installment_number}",
            action="record_payment", resource=f"loan:{loan.id}",
            extra={
                "amount": str(request.amount),
                "payment_id": request.payment_id,
                "amount_remaining": str(loan.amount_remaining),
                "event": (LoanEvent.COMPLETED if completed else LoanEvent.PAYMENT_SUCCESS).value,
            }
        )
        return loan

    def cancel_loan(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        """Cancel a loan that was never activated"""
        now = now or datetime.now(timezone.utc)

        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self.require_loan(loan_id)
            self._transition(loan, LoanStatus.CANCELLED)
            loan.updated_at = now
            self.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CANCELLED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"merchant_id": loan.merchant_id}
            )

        log_action(
            self.logger, "info", f"Loan cancelled: {loan.loan_account_number}",
            action="cancel_loan", resource=f"loan:{loan.id}",
            extra={"event": LoanEvent.CANCELLED.value}
        )
        return loan

    def mark_defaulted(self, loan_id: str, reason: Optional[str] = None,
                       now: Optional[datetime] = None) -> Loan:
        """Declare an active loan in default (called by the collections job)"""
        now = now or datetime.now(timezone.utc)

        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self.require_loan(loan_id)
            self._transition(loan, LoanStatus.DEFAULTED)
            loan.defaulted_at = now
            loan.updated_at = now
            self.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DEFAULTED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"reason": reason, "amount_remaining": str(loan.amount_remaining)}
            )

        log_action(
            self.logger, "warning", f"Loan defaulted: {loan.loan_account_number}",
            action="mark_defaulted", resource=f"loan:{loan.id}",
            extra={"reason": reason, "amount_remaining": str(loan.amount_remaining)}
        )
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan with its schedule, or None"""
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            return None
        return Loan.from_dict(data, self.get_schedule(loan_id))

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def get_schedule(self, loan_id: str) -> List[ScheduleItem]:
        """Schedule items ordered by installment number"""
        records = self.storage.find(
            self.schedules_table, {"loan_id": loan_id}, order_by="installment_number"
        )
        return [ScheduleItem.from_dict(record) for record in records]

    def find_loans(
        self,
        merchant_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        limit: Optional[int] = None
    ) -> List[Loan]:
        """Loans matching every given filter, newest first"""
        filters: Dict[str, Any] = {}
        if merchant_id:
            filters["merchant_id"] = merchant_id
        if customer_id:
            filters["customer_id"] = customer_id
        if status:
            filters["status"] = status.value

        records = self.storage.find(
            self.loans_table, filters, order_by="created_at", descending=True, limit=limit
        )
        return [Loan.from_dict(data, self.get_schedule(data['id'])) for data in records]

    def get_merchant_stats(self, merchant_id: str) -> Dict[str, Any]:
        """Portfolio counts and totals for one merchant"""
        loans = self.find_loans(merchant_id=merchant_id)

        def count(status: LoanStatus) -> int:
            return sum(1 for loan in loans if loan.status == status)

        return {
            'total_loans': len(loans),
            'active_loans': count(LoanStatus.ACTIVE),
            'completed_loans': count(LoanStatus.COMPLETED),
            'defaulted_loans': count(LoanStatus.DEFAULTED),
            'total_disbursed': sum((loan.principal_amount for loan in loans), Decimal('0')),
            'total_collected': sum((loan.amount_paid for loan in loans), Decimal('0')),
            'total_outstanding': sum((loan.amount_remaining for loan in loans), Decimal('0')),
        }

    def quote_early_repayment(self, loan_id: str) -> EarlyRepaymentQuote:
        """What paying the loan off now would cost, by installments elapsed"""
        loan = self.require_loan(loan_id)
        return calculate_early_repayment(
            principal_amount=loan.principal_amount,
            amount_paid=loan.amount_paid,
            total_interest=loan.configuration.total_interest,
            current_installment=loan.current_installment,
            total_installments=loan.configuration.number_of_installments
        )

    def save_loan(self, loan: Loan, schedule_items: Optional[List[ScheduleItem]] = None) -> None:
        """Persist the loan row and the given schedule items"""
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
        for item in schedule_items or []:
            record = item.to_dict()
            record['id'] = f"{loan.id}_{item.installment_number}"
            record['loan_id'] = loan.id
            record['created_at'] = loan.created_at.isoformat()
            record['updated_at'] = loan.updated_at.isoformat()
            self.storage.save(self.schedules_table, record['id'], record)

    def _transition(self, loan: Loan, target: LoanStatus) -> None:
        if not loan.status.can_transition_to(target):
            raise InvalidStateError(
                f"Loan {loan.id} cannot move from {loan.status.value} to {target.value}"
            )
        loan.status = target

    def _generate_loan_account_number(self) -> str:
        """Random human-readable account number, unique across loans"""
        for _ in range(self.config.loan_account_number_attempts):
            candidate = ''.join(
                secrets.choice(LOAN_ACCOUNT_NUMBER_ALPHABET)
                for _ in range(LOAN_ACCOUNT_NUMBER_LENGTH)
            )
            if not self.storage.find(self.loans_table, {"loan_account_number": candidate}, limit=1):
                return candidate
        raise LoanAccountNumberError(
            f"Could not generate a unique loan account number after "
            f"{self.config.loan_account_number_attempts} attempts"
        )
