"""
Test suite for loans module

Tests loan creation, card authorization, payment recording, cancellation,
default marking, queries and per-loan serialization of concurrent writers.
"""

import pytest
import threading
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from loan_engine.config import LoanEngineConfig
from loan_engine.storage import InMemoryStorage
from loan_engine.audit import AuditTrail, AuditEventType
from loan_engine.ledger import LoanLedger, LedgerEntryType, LedgerProvider
from loan_engine.locks import KeyedLockRegistry
from loan_engine.calculator import RepaymentFrequency, TenorPeriod, ScheduleItemStatus
from loan_engine.loans import (
    LoanManager, Loan, LoanStatus, LOAN_ACCOUNT_NUMBER_ALPHABET,
)
from loan_engine.schemas import (
    CreateLoanRequest, TenorModel, AuthorizeCardRequest, RecordPaymentRequest,
)
from loan_engine.exceptions import (
    AlreadyPaidError, DuplicateLedgerEntryError, InstallmentNotFoundError,
    InvalidConfigurationError, InvalidStateError, LoanAccountNumberError,
    LoanNotFoundError,
)


T0 = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def loan_request(merchant_id="MERCH001", customer_id="CUST001", principal="50000",
                 frequency=RepaymentFrequency.MONTHLY, tenor_value=6, period=TenorPeriod.MONTHS,
                 metadata=None):
    return CreateLoanRequest(
        merchant_id=merchant_id,
        customer_id=customer_id,
        principal_amount=Decimal(principal),
        frequency=frequency,
        tenor=TenorModel(value=tenor_value, period=period),
        order_id="ORDER001",
        product_description="Refrigerator",
        metadata=metadata or {"financier_id": "FIN001"},
    )


def card_request():
    return AuthorizeCardRequest(
        authorization_code="AUTH_abc123",
        card_type="visa",
        last4="4081",
        expiry_month="12",
        expiry_year="2030",
        bank="Test Bank",
        customer_code="CUS_xyz",
    )


class LoanTestCase:
    """Shared wiring for loan manager tests"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.config = LoanEngineConfig()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = LoanLedger(self.storage, self.audit_trail)
        self.locks = KeyedLockRegistry()
        self.manager = LoanManager(self.storage, self.audit_trail, self.ledger, self.locks, self.config)

    def create_active_loan(self, **kwargs) -> Loan:
        loan = self.manager.create_loan(loan_request(**kwargs), Decimal('15'), Decimal('5'), now=T0)
        return self.manager.authorize_card(loan.id, card_request(), now=T0)

    def pay(self, loan_id, installment_number, amount="8950", payment_id=None, now=None):
        return self.manager.record_payment(RecordPaymentRequest(
            loan_id=loan_id,
            installment_number=installment_number,
            amount=Decimal(amount),
            payment_id=payment_id or f"PAY{installment_number}",
        ), now=now or T0 + timedelta(days=40))


class TestLoanStatus:
    """Test the transition table"""

    def test_allowed_transitions(self):
        assert LoanStatus.PENDING.can_transition_to(LoanStatus.ACTIVE)
        assert LoanStatus.PENDING.can_transition_to(LoanStatus.CANCELLED)
        assert LoanStatus.ACTIVE.can_transition_to(LoanStatus.COMPLETED)
        assert LoanStatus.ACTIVE.can_transition_to(LoanStatus.DEFAULTED)

    def test_forbidden_transitions(self):
        assert not LoanStatus.ACTIVE.can_transition_to(LoanStatus.CANCELLED)
        assert not LoanStatus.PENDING.can_transition_to(LoanStatus.COMPLETED)
        for terminal in [LoanStatus.COMPLETED, LoanStatus.DEFAULTED, LoanStatus.CANCELLED]:
            assert terminal.is_terminal
            assert not any(terminal.can_transition_to(target) for target in LoanStatus)


class TestCreateLoan(LoanTestCase):
    """Test loan creation"""

    def test_create_loan(self):
        loan = self.manager.create_loan(loan_request(), Decimal('15'), Decimal('5'), now=T0)

        assert loan.status == LoanStatus.PENDING
        assert loan.configuration.total_amount == Decimal('53700')
        assert loan.amount_remaining == Decimal('53700')
        assert loan.amount_paid == Decimal('0')
        assert loan.current_installment == 0
        assert len(loan.payment_schedule) == 6
        assert loan.payment_schedule[0].due_date == T0 + timedelta(days=30)
        assert loan.financier_id == "FIN001"

    def test_loan_account_number(self):
        loan = self.manager.create_loan(loan_request(), Decimal('15'), now=T0)

        assert len(loan.loan_account_number) == 10
        assert all(c in LOAN_ACCOUNT_NUMBER_ALPHABET for c in loan.loan_account_number)

    def test_default_penalty_rate_from_config(self):
        loan = self.manager.create_loan(loan_request(), Decimal('15'), now=T0)
        assert loan.configuration.penalty_rate == Decimal('5')

    def test_persisted_with_schedule(self):
        loan = self.manager.create_loan(loan_request(), Decimal('15'), Decimal('5'), now=T0)

        stored = self.manager.get_loan(loan.id)
        assert stored.to_dict() == loan.to_dict()
        assert stored.payment_schedule == loan.payment_schedule
        assert self.storage.count("repayment_schedules") == 6
        assert self.storage.exists("repayment_schedules", f"{loan.id}_1")

    def test_invalid_combination_rejected(self):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            self.manager.create_loan(
                loan_request(frequency=RepaymentFrequency.WEEKLY, tenor_value=1, period=TenorPeriod.WEEKS),
                Decimal('15'), now=T0
            )

        assert "less than 2 installments" in str(exc_info.value)
        assert self.storage.count("loans") == 0

    def test_creation_is_audited(self):
        loan = self.manager.create_loan(loan_request(), Decimal('15'), now=T0)

        events = self.audit_trail.get_events_for_entity("loan", loan.id)
        assert events[0].event_type == AuditEventType.LOAN_CREATED
        assert events[0].metadata["total_amount"] == "53700"

    def test_account_number_exhaustion(self):
        manager = LoanManager(self.storage, self.audit_trail, self.ledger, self.locks,
                              LoanEngineConfig(loan_account_number_attempts=0))
        with pytest.raises(LoanAccountNumberError):
            manager.create_loan(loan_request(), Decimal('15'), now=T0)
        assert self.storage.count("loans") == 0


class TestAuthorizeCard(LoanTestCase):
    """Test activation"""

    def test_activation_regenerates_schedule(self):
        loan = self.manager.create_loan(loan_request(), Decimal('15'), now=T0)
        activated_at = T0 + timedelta(days=3)

        loan = self.manager.authorize_card(loan.id, card_request(), now=activated_at)

        anchor = activated_at + timedelta(days=7)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.activated_at == activated_at
        assert loan.first_payment_date == anchor
        assert loan.card_authorization.last4 == "4081"
        assert [item.due_date for item in loan.payment_schedule] == [
            anchor + timedelta(days=30 * i) for i in range(1, 7)
        ]
        assert self.manager.get_schedule(loan.id) == loan.payment_schedule

    def test_only_pending_loans(self):
        loan = self.create_active_loan()
        with pytest.raises(InvalidStateError):
            self.manager.authorize_card(loan.id, card_request(), now=T0)

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFoundError):
            self.manager.authorize_card("missing", card_request())


class TestRecordPayment(LoanTestCase):
    """Test installment payments"""

    def test_record_payment(self):
        loan = self.create_active_loan()
        paid_at = T0 + timedelta(days=37)

        loan = self.pay(loan.id, 1, now=paid_at)

        item = loan.get_installment(1)
        assert item.status == ScheduleItemStatus.PAID
        assert item.paid_at == paid_at
        assert item.paid_amount == Decimal('8950')
        assert item.payment_id == "PAY1"
        assert loan.amount_paid == Decimal('8950')
        assert loan.amount_remaining == Decimal('44750')
        assert loan.current_installment == 1
        assert loan.last_payment_date == paid_at
        assert loan.status == LoanStatus.ACTIVE

    def test_payment_writes_ledger_entry(self):
        loan = self.create_active_loan()
        self.pay(loan.id, 1)

        entry = self.ledger.find_by_idempotency_key(f"PAYMENT:{loan.id}:PAY1")
        assert entry.amount.amount == Decimal('8950')
        assert entry.entry_type == LedgerEntryType.REPAYMENT_SUCCESS
        assert entry.provider == LedgerProvider.CARD
        assert entry.financier_id == "FIN001"

    def test_all_installments_complete_loan(self):
        loan = self.create_active_loan()
        for n in range(1, 7):
            loan = self.pay(loan.id, n)

        assert loan.status == LoanStatus.COMPLETED
        assert loan.completed_at is not None
        assert loan.amount_paid == Decimal('53700')
        assert loan.amount_remaining == Decimal('0')

    def test_last_installment_completes_loan(self):
        loan = self.create_active_loan()
        loan = self.pay(loan.id, 6)

        assert loan.status == LoanStatus.COMPLETED
        assert loan.amount_remaining == Decimal('44750')

    def test_overpayment_clamps_remaining(self):
        loan = self.create_active_loan()
        loan = self.pay(loan.id, 1, amount="60000")

        assert loan.amount_remaining == Decimal('0')
        assert loan.status == LoanStatus.COMPLETED

    def test_already_paid(self):
        loan = self.create_active_loan()
        self.pay(loan.id, 1)

        with pytest.raises(AlreadyPaidError):
            self.pay(loan.id, 1, payment_id="PAY1-RETRY")

    def test_unknown_installment(self):
        loan = self.create_active_loan()
        with pytest.raises(InstallmentNotFoundError):
            self.pay(loan.id, 7)

    def test_pending_loan_rejected(self):
        loan = self.manager.create_loan(loan_request(), Decimal('15'), now=T0)
        with pytest.raises(InvalidStateError):
            self.pay(loan.id, 1)

    def test_duplicate_payment_reference_rolls_back(self):
        loan = self.create_active_loan()
        self.pay(loan.id, 1, payment_id="PAY-SAME")

        with pytest.raises(DuplicateLedgerEntryError):
            self.pay(loan.id, 2, payment_id="PAY-SAME")

        stored = self.manager.get_loan(loan.id)
        assert stored.amount_paid == Decimal('8950')
        assert stored.get_installment(2).status == ScheduleItemStatus.PENDING

    def test_concurrent_payments_are_not_lost(self):
        loan = self.create_active_loan()
        errors = []

        def worker(n):
            try:
                self.pay(loan.id, n)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(1, 6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stored = self.manager.get_loan(loan.id)
        assert errors == []
        assert stored.amount_paid == Decimal('44750')
        assert stored.amount_remaining == Decimal('8950')
        assert all(item.is_paid for item in stored.payment_schedule[:5])


class TestCancelAndDefault(LoanTestCase):
    """Test cancellation and default marking"""

    def test_cancel_pending_loan(self):
        loan = self.manager.create_loan(loan_request(), Decimal('15'), now=T0)
        loan = self.manager.cancel_loan(loan.id)

        assert loan.status == LoanStatus.CANCELLED
        assert self.manager.get_loan(loan.id).status == LoanStatus.CANCELLED

    def test_cannot_cancel_active_loan(self):
        loan = self.create_active_loan()
        with pytest.raises(InvalidStateError):
            self.manager.cancel_loan(loan.id)

    def test_mark_defaulted(self):
        loan = self.create_active_loan()
        defaulted_at = T0 + timedelta(days=120)

        loan = self.manager.mark_defaulted(loan.id, reason="90 days past due", now=defaulted_at)

        assert loan.status == LoanStatus.DEFAULTED
        assert loan.defaulted_at == defaulted_at
        events = self.audit_trail.get_events_by_type(AuditEventType.LOAN_DEFAULTED)
        assert events[0].metadata["reason"] == "90 days past due"

    def test_only_active_loans_default(self):
        loan = self.manager.create_loan(loan_request(), Decimal('15'), now=T0)
        with pytest.raises(InvalidStateError):
            self.manager.mark_defaulted(loan.id)


class TestQueries(LoanTestCase):
    """Test lookups and merchant statistics"""

    def test_get_loan_missing(self):
        assert self.manager.get_loan("missing") is None
        with pytest.raises(LoanNotFoundError):
            self.manager.require_loan("missing")

    def test_find_loans_newest_first(self):
        first = self.manager.create_loan(loan_request(), Decimal('15'), now=T0)
        second = self.manager.create_loan(loan_request(), Decimal('15'), now=T0 + timedelta(hours=1))
        self.manager.create_loan(loan_request(merchant_id="MERCH002"), Decimal('15'), now=T0)

        loans = self.manager.find_loans(merchant_id="MERCH001")
        assert [loan.id for loan in loans] == [second.id, first.id]
        assert [loan.id for loan in self.manager.find_loans(merchant_id="MERCH001", limit=1)] == [second.id]

    def test_find_loans_by_status_and_customer(self):
        active = self.create_active_loan()
        self.manager.create_loan(loan_request(customer_id="CUST002"), Decimal('15'), now=T0)

        assert [loan.id for loan in self.manager.find_loans(status=LoanStatus.ACTIVE)] == [active.id]
        assert len(self.manager.find_loans(customer_id="CUST002")) == 1

    def test_merchant_stats(self):
        active = self.create_active_loan()
        self.pay(active.id, 1)
        completed = self.create_active_loan()
        self.pay(completed.id, 6)
        self.manager.create_loan(loan_request(), Decimal('15'), now=T0)
        self.manager.create_loan(loan_request(merchant_id="MERCH002"), Decimal('15'), now=T0)

        stats = self.manager.get_merchant_stats("MERCH001")

        assert stats['total_loans'] == 3
        assert stats['active_loans'] == 1
        assert stats['completed_loans'] == 1
        assert stats['defaulted_loans'] == 0
        assert stats['total_disbursed'] == Decimal('150000')
        assert stats['total_collected'] == Decimal('17900')
        assert stats['total_outstanding'] == Decimal('44750') * 2 + Decimal('53700')

    def test_quote_early_repayment(self):
        loan = self.create_active_loan()
        quote = self.manager.quote_early_repayment(loan.id)

        assert quote.remaining_principal == Decimal('50000')
        assert quote.adjusted_interest == Decimal('3699')
        assert quote.total_early_repayment == Decimal('53699')
        assert quote.savings == Decimal('0')
