"""
Loan Engine Exceptions

Typed failures surfaced to callers. The root derives from ValueError so
business-rule violations keep the same contract as plain validation errors.
"""

from typing import Optional


class LoanEngineError(ValueError):
    """Base exception for all loan engine failures"""


class InvalidConfigurationError(LoanEngineError):
    """Tenor, frequency, principal or rates violate calculator constraints"""


class NotFoundError(LoanEngineError):
    """A referenced record does not exist"""


class LoanNotFoundError(NotFoundError):
    """Loan does not exist"""

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found")


class InstallmentNotFoundError(NotFoundError):
    """Installment number does not exist on the loan"""

    def __init__(self, loan_id: str, installment_number: int):
        self.loan_id = loan_id
        self.installment_number = installment_number
        super().__init__(f"Installment {installment_number} not found on loan {loan_id}")


class InvalidStateError(LoanEngineError):
    """Loan status does not allow the requested transition"""


class AlreadyPaidError(LoanEngineError):
    """Installment has already been paid"""


class AlreadyCompletedError(LoanEngineError):
    """Liquidation requested on a loan with nothing left to pay"""


class LoanCancelledError(LoanEngineError):
    """Liquidation requested on a cancelled loan"""


class InvalidAmountError(LoanEngineError):
    """Amount is zero, negative or otherwise unusable"""


class AmountMismatchError(LoanEngineError):
    """Amount does not match the recalculated liquidation total"""


class ForbiddenError(LoanEngineError):
    """Caller does not own the loan or lacks the required capability"""


class DuplicateLedgerEntryError(LoanEngineError):
    """A ledger entry with the same idempotency key already exists"""

    def __init__(self, idempotency_key: str, existing_entry_id: Optional[str] = None):
        self.idempotency_key = idempotency_key
        self.existing_entry_id = existing_entry_id
        super().__init__(f"Ledger entry already recorded for {idempotency_key}")


class DuplicateLiquidationError(DuplicateLedgerEntryError):
    """The liquidation reference was already settled for this loan"""


class LoanAccountNumberError(LoanEngineError):
    """A unique loan account number could not be generated"""
