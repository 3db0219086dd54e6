"""
Loan Lifecycle & Liquidation Engine

Turns a merchant's sale into an amortized installment loan, tracks its
repayment state and computes exact payoff amounts, using Decimal money,
atomic storage units and a hash-chained audit trail.
"""

__version__ = "1.0.0"
