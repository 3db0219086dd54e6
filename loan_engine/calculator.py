"""
Schedule Calculator Module

Pure, deterministic functions converting (principal, frequency, tenor, rate)
into an installment count, a simple-interest total and a dated installment
schedule. Day counting is deliberately approximate: a month is 30 days and a
year is 365 days. All amounts are whole currency units.
"""

from decimal import Decimal
from datetime import datetime, timedelta
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum

from .currency import Numeric, round_down, round_up, to_decimal
from .exceptions import InvalidConfigurationError


DAYS_IN_YEAR = Decimal('365')
HUNDRED = Decimal('100')


class RepaymentFrequency(Enum):
    """How often installments fall due"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    BI_ANNUALLY = "bi-annually"
    ANNUALLY = "annually"


class TenorPeriod(Enum):
    """Unit of a loan tenor"""
    DAYS = "DAYS"
    WEEKS = "WEEKS"
    MONTHS = "MONTHS"
    YEARS = "YEARS"


TENOR_PERIOD_DAYS = {
    TenorPeriod.DAYS: 1,
    TenorPeriod.WEEKS: 7,
    TenorPeriod.MONTHS: 30,
    TenorPeriod.YEARS: 365,
}

FREQUENCY_INTERVAL_DAYS = {
    RepaymentFrequency.DAILY: 1,
    RepaymentFrequency.WEEKLY: 7,
    RepaymentFrequency.BI_WEEKLY: 14,
    RepaymentFrequency.MONTHLY: 30,
    RepaymentFrequency.QUARTERLY: 90,
    RepaymentFrequency.BI_ANNUALLY: 182,
    RepaymentFrequency.ANNUALLY: 365,
}


class ScheduleItemStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    FAILED = "failed"


@dataclass(frozen=True)
class Tenor:
    """Total loan duration, e.g. 6 MONTHS"""
    value: int
    period: TenorPeriod

    def to_dict(self) -> Dict[str, Any]:
        return {'value': self.value, 'period': self.period.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Tenor':
        return cls(value=int(data['value']), period=TenorPeriod(data['period']))


@dataclass(frozen=True)
class LoanConfiguration:
    """Repayment terms computed once per loan"""
    frequency: RepaymentFrequency
    tenor: Tenor
    number_of_installments: int
    interest_rate: Decimal        # Annual percentage, e.g. 15 for 15%
    penalty_rate: Decimal         # Late payment percentage
    installment_amount: Decimal
    total_interest: Decimal
    total_amount: Decimal         # installment_amount * number_of_installments

    @property
    def principal_share(self) -> Decimal:
        """Principal portion of the (rounding-inflated) total"""
        return self.total_amount - self.total_interest

    def to_dict(self) -> Dict[str, Any]:
        return {
            'frequency': self.frequency.value,
            'tenor': self.tenor.to_dict(),
            'number_of_installments': self.number_of_installments,
            'interest_rate': str(self.interest_rate),
            'penalty_rate': str(self.penalty_rate),
            'installment_amount': str(self.installment_amount),
            'total_interest': str(self.total_interest),
            'total_amount': str(self.total_amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanConfiguration':
        return cls(
            frequency=RepaymentFrequency(data['frequency']),
            tenor=Tenor.from_dict(data['tenor']),
            number_of_installments=int(data['number_of_installments']),
            interest_rate=Decimal(data['interest_rate']),
            penalty_rate=Decimal(data['penalty_rate']),
            installment_amount=Decimal(data['installment_amount']),
            total_interest=Decimal(data['total_interest']),
            total_amount=Decimal(data['total_amount']),
        )


@dataclass
class ScheduleItem:
    """One installment of a loan's repayment schedule"""
    installment_number: int
    due_date: datetime
    amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    status: ScheduleItemStatus = ScheduleItemStatus.PENDING
    paid_at: Optional[datetime] = None
    paid_amount: Optional[Decimal] = None
    payment_id: Optional[str] = None
    late_fee: Decimal = Decimal('0')
    prorated_interest: Optional[Decimal] = None
    liquidation_id: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == ScheduleItemStatus.PAID

    def is_past_due(self, now: datetime) -> bool:
        return now > self.due_date

    def to_dict(self) -> Dict[str, Any]:
        def optional_str(value):
            return str(value) if value is not None else None

        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount),
            'principal_amount': str(self.principal_amount),
            'interest_amount': str(self.interest_amount),
            'status': self.status.value,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'paid_amount': optional_str(self.paid_amount),
            'payment_id': self.payment_id,
            'late_fee': str(self.late_fee),
            'prorated_interest': optional_str(self.prorated_interest),
            'liquidation_id': self.liquidation_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleItem':
        def optional_decimal(key):
            value = data.get(key)
            return Decimal(value) if value is not None else None

        return cls(
            installment_number=int(data['installment_number']),
            due_date=datetime.fromisoformat(data['due_date']),
            amount=Decimal(data['amount']),
            principal_amount=Decimal(data['principal_amount']),
            interest_amount=Decimal(data['interest_amount']),
            status=ScheduleItemStatus(data.get('status', 'pending')),
            paid_at=datetime.fromisoformat(data['paid_at']) if data.get('paid_at') else None,
            paid_amount=optional_decimal('paid_amount'),
            payment_id=data.get('payment_id'),
            late_fee=Decimal(data.get('late_fee') or '0'),
            prorated_interest=optional_decimal('prorated_interest'),
            liquidation_id=data.get('liquidation_id'),
        )


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class EarlyRepaymentQuote:
    """What paying off early would cost, by installments elapsed"""
    remaining_principal: Decimal
    adjusted_interest: Decimal
    total_early_repayment: Decimal
    savings: Decimal


def tenor_to_days(tenor: Tenor) -> int:
    """Convert a tenor to total days (months are 30 days, years 365)"""
    return tenor.value * TENOR_PERIOD_DAYS[tenor.period]


def interval_days(frequency: RepaymentFrequency) -> int:
    """Days between installments for a frequency"""
    return FREQUENCY_INTERVAL_DAYS[frequency]


def _installment_count(tenor: Tenor, frequency: RepaymentFrequency) -> int:
    # Integer ceiling division
    return -(-tenor_to_days(tenor) // interval_days(frequency))


def calculate_number_of_installments(tenor: Tenor, frequency: RepaymentFrequency) -> int:
    """
    Number of installments = ceil(tenor days / interval days)

    Raises:
        InvalidConfigurationError: If the combination yields no installment
    """
    number_of_installments = _installment_count(tenor, frequency)
    if number_of_installments < 1:
        raise InvalidConfigurationError("Invalid tenor and frequency combination")
    return number_of_installments


def validate_tenor_frequency(
    tenor: Tenor,
    frequency: RepaymentFrequency,
    min_installments: int = 2,
    max_installments: int = 365
) -> ValidationResult:
    """
    Check a tenor/frequency combination before committing to it.

    Never raises; the message is meant to be shown to the user.
    """
    number_of_installments = _installment_count(tenor, frequency)

    if number_of_installments < min_installments:
        return ValidationResult(
            valid=False,
            message=(
                f"Tenor of {tenor.value} {tenor.period.value} with {frequency.value} frequency "
                f"would result in less than {min_installments} installments"
            )
        )

    if number_of_installments > max_installments:
        return ValidationResult(
            valid=False,
            message=(
                f"Combination would result in {number_of_installments} installments, "
                f"which exceeds the maximum of {max_installments}"
            )
        )

    return ValidationResult(valid=True)


def calculate_loan_configuration(
    principal_amount: Numeric,
    frequency: RepaymentFrequency,
    tenor: Tenor,
    interest_rate: Numeric,
    penalty_rate: Numeric
) -> LoanConfiguration:
    """
    Compute interest, installment size and totals for a loan.

    Simple interest over the tenor, rounded up. Every installment has the
    same size, so the stored total is installment * count and may exceed
    principal + interest by the rounding residue.

    Args:
        principal_amount: Amount financed, must be positive
        frequency: Repayment frequency
        tenor: Loan duration
        interest_rate: Annual interest rate in percent
        penalty_rate: Late payment penalty in percent

    Returns:
        LoanConfiguration
    """
    principal = to_decimal(principal_amount)
    annual_rate = to_decimal(interest_rate)
    penalty = to_decimal(penalty_rate)

    if principal <= 0:
        raise InvalidConfigurationError("Principal amount must be greater than zero")
    if annual_rate < 0:
        raise InvalidConfigurationError("Interest rate cannot be negative")
    if penalty < 0:
        raise InvalidConfigurationError("Penalty rate cannot be negative")

    number_of_installments = calculate_number_of_installments(tenor, frequency)
    days = Decimal(tenor_to_days(tenor))

    total_interest = round_up(principal * annual_rate * days / DAYS_IN_YEAR / HUNDRED)
    total_amount = principal + total_interest
    installment_amount = round_up(total_amount / number_of_installments)

    return LoanConfiguration(
        frequency=frequency,
        tenor=tenor,
        number_of_installments=number_of_installments,
        interest_rate=annual_rate,
        penalty_rate=penalty,
        installment_amount=installment_amount,
        total_interest=total_interest,
        total_amount=installment_amount * number_of_installments,
    )


def generate_payment_schedule(configuration: LoanConfiguration, start_date: datetime) -> List[ScheduleItem]:
    """
    Generate the dated installment schedule.

    Installment i falls due ``i * interval`` days after ``start_date``.
    Principal and interest are floored per installment and the last one
    absorbs the residual, so both columns sum to the configuration totals.
    """
    n = configuration.number_of_installments
    step = interval_days(configuration.frequency)

    principal_per_installment = round_down(configuration.principal_share / n)
    interest_per_installment = round_down(configuration.total_interest / n)

    schedule = []
    for i in range(1, n + 1):
        if i == n:
            principal = configuration.principal_share - principal_per_installment * (n - 1)
            interest = configuration.total_interest - interest_per_installment * (n - 1)
        else:
            principal = principal_per_installment
            interest = interest_per_installment

        schedule.append(ScheduleItem(
            installment_number=i,
            due_date=start_date + timedelta(days=i * step),
            amount=configuration.installment_amount,
            principal_amount=principal,
            interest_amount=interest,
        ))

    return schedule


def calculate_early_repayment(
    principal_amount: Numeric,
    amount_paid: Numeric,
    total_interest: Numeric,
    current_installment: int,
    total_installments: int
) -> EarlyRepaymentQuote:
    """
    Quote an early payoff by installments elapsed.

    Display only: answers "what if I had paid off early", independently of
    the elapsed-time proration used by liquidation.
    """
    if total_installments < 1:
        raise InvalidConfigurationError("Total installments must be at least 1")

    principal = to_decimal(principal_amount)
    interest = to_decimal(total_interest)
    remaining_fraction = Decimal(total_installments - current_installment) / Decimal(total_installments)

    remaining_principal = principal * remaining_fraction
    adjusted_interest = interest * remaining_fraction
    total_early_repayment = remaining_principal + adjusted_interest
    original_remaining = principal + interest - to_decimal(amount_paid)

    return EarlyRepaymentQuote(
        remaining_principal=round_up(remaining_principal),
        adjusted_interest=round_up(adjusted_interest),
        total_early_repayment=round_up(total_early_repayment),
        savings=round_up(original_remaining - total_early_repayment),
    )


def calculate_late_fee(overdue_amount: Numeric, days_overdue: int, penalty_rate: Numeric) -> Decimal:
    """Penalty on an overdue amount, rounded up; zero when nothing is overdue"""
    if days_overdue <= 0:
        return Decimal('0')
    return round_up(to_decimal(overdue_amount) * to_decimal(penalty_rate) / HUNDRED)
