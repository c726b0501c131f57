"""
Home Loan Core

Loan lifecycle state machine with an EMI amortization engine, exactly-once
installment payments and best-effort notifications. All money uses Decimal.
"""

__version__ = "1.0.0"
