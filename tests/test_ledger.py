"""
Test suite for the loan ledger

Tests append-only entries, idempotency key enforcement and audit linkage.
"""

import pytest
from decimal import Decimal

from loan_engine.currency import Money, Currency
from loan_engine.storage import InMemoryStorage
from loan_engine.audit import AuditTrail, AuditEventType
from loan_engine.ledger import (
    LoanLedger, LedgerEntry, LedgerEntryType, LedgerEntryStatus, LedgerProvider,
    liquidation_idempotency_key, payment_idempotency_key,
)
from loan_engine.exceptions import DuplicateLedgerEntryError


class TestIdempotencyKeys:

    def test_key_formats(self):
        assert liquidation_idempotency_key("L1", "REF9") == "LIQUIDATION:L1:REF9"
        assert payment_idempotency_key("L1", "PAY7") == "PAYMENT:L1:PAY7"


class TestLoanLedger:
    """Test ledger entry recording"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = LoanLedger(self.storage, self.audit_trail)

    def record(self, key="PAYMENT:L1:P1", amount="8950", loan_id="L1"):
        return self.ledger.record_entry(
            entry_type=LedgerEntryType.REPAYMENT_SUCCESS,
            idempotency_key=key,
            merchant_id="MERCH001",
            loan_id=loan_id,
            reference="P1",
            amount=Money(Decimal(amount), Currency.NGN),
            provider=LedgerProvider.CARD,
            financier_id="FIN001",
            metadata={"installment_number": 1},
        )

    def test_record_entry(self):
        entry = self.record()

        stored = self.ledger.get_entry(entry.id)
        assert stored.entry_type == LedgerEntryType.REPAYMENT_SUCCESS
        assert stored.status == LedgerEntryStatus.SUCCESS
        assert stored.amount == Money(Decimal('8950'), Currency.NGN)
        assert stored.provider == LedgerProvider.CARD
        assert stored.financier_id == "FIN001"
        assert stored.metadata == {"installment_number": 1}

    def test_duplicate_key_rejected(self):
        first = self.record()

        with pytest.raises(DuplicateLedgerEntryError) as exc_info:
            self.record(amount="100")

        assert exc_info.value.existing_entry_id == first.id
        assert len(self.ledger.get_entries_for_loan("L1")) == 1

    def test_find_by_idempotency_key(self):
        entry = self.record(key="LIQUIDATION:L1:REF1")

        assert self.ledger.find_by_idempotency_key("LIQUIDATION:L1:REF1").id == entry.id
        assert self.ledger.find_by_idempotency_key("LIQUIDATION:L1:OTHER") is None

    def test_entries_for_loan(self):
        self.record(key="PAYMENT:L1:P1")
        self.record(key="PAYMENT:L1:P2")
        self.record(key="PAYMENT:L2:P1", loan_id="L2")

        assert len(self.ledger.get_entries_for_loan("L1")) == 2
        assert len(self.ledger.get_entries_for_loan("L2")) == 1

    def test_entry_is_audited(self):
        entry = self.record()

        events = self.audit_trail.get_events_for_entity("ledger_entry", entry.id)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.LEDGER_ENTRY_RECORDED
        assert events[0].metadata["idempotency_key"] == "PAYMENT:L1:P1"

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValueError):
            self.record(amount="0")

    def test_dict_round_trip(self):
        entry = self.record()
        assert LedgerEntry.from_dict(entry.to_dict()) == entry
