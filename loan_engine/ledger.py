"""
Money Movement Ledger

Append-only record of every repayment and liquidation. Each entry carries
an idempotency key that is unique across the ledger; recording the same key
twice is rejected instead of double-counting the money.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .exceptions import DuplicateLedgerEntryError
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger, log_action


class LedgerEntryType(Enum):
    """Kinds of money movement"""
    REPAYMENT_SUCCESS = "REPAYMENT_SUCCESS"


class LedgerEntryStatus(Enum):
    SUCCESS = "success"


class LedgerProvider(Enum):
    """Where the money movement was settled"""
    MANUAL = "manual"
    CARD = "card"


def liquidation_idempotency_key(loan_id: str, reference: str) -> str:
    return f"LIQUIDATION:{loan_id}:{reference}"


def payment_idempotency_key(loan_id: str, payment_id: str) -> str:
    return f"PAYMENT:{loan_id}:{payment_id}"


@dataclass
class LedgerEntry(StorageRecord):
    """Immutable ledger entry for a single money movement"""
    entry_type: LedgerEntryType
    status: LedgerEntryStatus
    idempotency_key: str
    merchant_id: str
    reference: str
    loan_id: str
    amount: Money
    provider: LedgerProvider = LedgerProvider.MANUAL
    financier_id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Ledger entry amount must be positive")
        if not self.idempotency_key:
            raise ValueError("Ledger entry requires an idempotency key")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'entry_type': self.entry_type.value,
            'status': self.status.value,
            'idempotency_key': self.idempotency_key,
            'merchant_id': self.merchant_id,
            'reference': self.reference,
            'loan_id': self.loan_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'provider': self.provider.value,
            'financier_id': self.financier_id,
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            entry_type=LedgerEntryType(data['entry_type']),
            status=LedgerEntryStatus(data['status']),
            idempotency_key=data['idempotency_key'],
            merchant_id=data['merchant_id'],
            reference=data['reference'],
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            provider=LedgerProvider(data['provider']),
            financier_id=data.get('financier_id', ''),
            metadata=data.get('metadata') or {},
        )


class LoanLedger:
    """
    Append-only ledger of loan money movements
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "ledger_entries"
        self.logger = get_logger("loan_engine.ledger")

    def record_entry(
        self,
        entry_type: LedgerEntryType,
        idempotency_key: str,
        merchant_id: str,
        loan_id: str,
        reference: str,
        amount: Money,
        provider: LedgerProvider = LedgerProvider.MANUAL,
        financier_id: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        status: LedgerEntryStatus = LedgerEntryStatus.SUCCESS,
    ) -> LedgerEntry:
        """
        Append a ledger entry

        Args:
            entry_type: Kind of money movement
            idempotency_key: Unique key for this movement
            merchant_id: Merchant that owns the loan
            loan_id: Loan the money moved against
            reference: External payment reference
            amount: Amount moved
            provider: Settlement provider
            financier_id: Financier funding the loan, if any
            metadata: Breakdown and other details
            status: Settlement status

        Returns:
            The recorded LedgerEntry

        Raises:
            DuplicateLedgerEntryError: If the idempotency key was already recorded
        """
        with self.storage.atomic():
            existing = self.find_by_idempotency_key(idempotency_key)
            if existing:
                raise DuplicateLedgerEntryError(idempotency_key, existing.id)

            now = datetime.now(timezone.utc)
            entry = LedgerEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                entry_type=entry_type,
                status=status,
                idempotency_key=idempotency_key,
                merchant_id=merchant_id,
                reference=reference,
                loan_id=loan_id,
                amount=amount,
                provider=provider,
                financier_id=financier_id,
                metadata=metadata or {},
            )
            self.storage.save(self.table_name, entry.id, entry.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.LEDGER_ENTRY_RECORDED,
                entity_type="ledger_entry",
                entity_id=entry.id,
                metadata={
                    "loan_id": loan_id,
                    "entry_type": entry_type.value,
                    "amount": amount.to_string(),
                    "idempotency_key": idempotency_key,
                }
            )

        log_action(
            self.logger, "info", f"Ledger entry recorded: {entry_type.value}",
            action="record_ledger_entry", resource=f"loan:{loan_id}",
            extra={
                "entry_id": entry.id,
                "amount": amount.to_string(),
                "reference": reference,
                "idempotency_key": idempotency_key,
            }
        )
        return entry

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        """Find ledger entry by idempotency key"""
        found = self.storage.find(self.table_name, {"idempotency_key": idempotency_key}, limit=1)
        if found:
            return LedgerEntry.from_dict(found[0])
        return None

    def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        data = self.storage.load(self.table_name, entry_id)
        if data:
            return LedgerEntry.from_dict(data)
        return None

    def get_entries_for_loan(self, loan_id: str) -> List[LedgerEntry]:
        """All ledger entries for a loan, oldest first"""
        found = self.storage.find(self.table_name, {"loan_id": loan_id}, order_by="created_at")
        return [LedgerEntry.from_dict(data) for data in found]
