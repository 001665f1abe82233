"""
Error Taxonomy

Every rejected operation in the lending core raises one of these. They all derive
from ValueError so callers that only know about ValueError keep working.
"""


class LendingError(ValueError):
    """Base class for all lending core errors"""


# Configuration errors
class InvalidTermError(LendingError):
    """Loan terms cannot produce a schedule (term < 1, negative rate, bad fee...)"""


# Input errors
class InvalidAmountError(LendingError):
    """Repayment amount is zero, negative, in the wrong currency or over-precise"""


class LoanNotFoundError(LendingError):
    """No loan with the given identifier"""


class InvalidExtensionError(LendingError):
    """Custom field values failed schema validation"""


# Conflict errors
class DuplicateRepaymentError(LendingError):
    """A repayment with the same idempotency key was already applied"""

    def __init__(self, loan_id: str, idempotency_key: str):
        self.loan_id = loan_id
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Repayment with key '{idempotency_key}' already applied to loan {loan_id}"
        )


class InvalidTransitionError(LendingError):
    """Requested status change is not in the transition table or its guard failed"""

    def __init__(self, from_status: str, to_status: str, reason: str = ""):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Cannot transition loan from {from_status} to {to_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


# State errors
class LoanNotPayableError(LendingError):
    """Loan status does not accept repayments"""

    def __init__(self, loan_id: str, status: str):
        self.loan_id = loan_id
        self.status = status
        super().__init__(f"Loan {loan_id} is {status} and cannot accept repayments")
