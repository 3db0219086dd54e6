"""
Pydantic schemas for loan engine requests
"""

from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from .calculator import RepaymentFrequency, Tenor, TenorPeriod


class TenorModel(BaseModel):
    value: int = Field(..., ge=1, description="Number of tenor periods")
    period: TenorPeriod = Field(..., description="Tenor unit (DAYS, WEEKS, MONTHS, YEARS)")

    def to_tenor(self) -> Tenor:
        return Tenor(value=self.value, period=self.period)


# Loan schemas
class CreateLoanRequest(BaseModel):
    merchant_id: str
    customer_id: str
    principal_amount: Decimal = Field(..., ge=1, description="Amount financed in whole units")
    frequency: RepaymentFrequency = Field(..., description="Repayment frequency")
    tenor: TenorModel
    order_id: Optional[str] = None
    product_description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class AuthorizeCardRequest(BaseModel):
    authorization_code: str
    card_type: str
    last4: str = Field(..., min_length=4, max_length=4)
    expiry_month: str
    expiry_year: str
    bank: str
    customer_code: Optional[str] = Field(None, description="Card provider customer code")


class RecordPaymentRequest(BaseModel):
    loan_id: str
    installment_number: int = Field(..., ge=1)
    amount: Decimal = Field(..., gt=0)
    payment_id: str = Field(..., min_length=1, description="Provider payment reference")


class UpdateLoanRequest(BaseModel):
    """Administrative patch; only these fields may change"""
    status: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


# Liquidation schemas
class CalculateLiquidationRequest(BaseModel):
    loan_id: str
    amount: Optional[Decimal] = Field(None, gt=0, description="Partial amount; omit for full payoff")


class LiquidateLoanRequest(BaseModel):
    loan_id: str
    amount: Optional[Decimal] = Field(None, gt=0, description="Amount paid; omit to pay the full balance")
    reference: str = Field(..., min_length=1, description="External payment reference")
    method: str = "manual"
