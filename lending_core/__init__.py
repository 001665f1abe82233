"""
Lending Core

Loan lifecycle and amortization ledger: schedule generation, penalty accrual,
waterfall repayment allocation and the loan state machine, using exact Decimal
money throughout.
"""

__version__ = "1.0.0"
