"""
Penalty Calculator Module

Computes late and maturity penalties owed on a loan as of a date. Pure: the
loan is only read, so a snapshot can be computed speculatively (for example
to preview the amount due today) without side effects.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Tuple

from .currency import Money, Currency, sum_money
from .loans import Loan, PAYABLE_STATUSES
from .schedule import Installment, add_months
from .terms import AccrualFrequency, PenaltySpec, PenaltyType


@dataclass(frozen=True)
class PenaltySnapshot:
    """Penalties owed as of a date, net of penalties already paid"""
    loan_id: str
    as_of: date
    currency: Currency
    late_penalties: Dict[int, Money] = field(default_factory=dict)  # installment sequence -> owed
    maturity_penalty: Money = None
    penalty_eligible: Tuple[int, ...] = ()  # past due beyond grace and unpaid

    def __post_init__(self):
        if self.maturity_penalty is None:
            object.__setattr__(self, 'maturity_penalty', Money.zero(self.currency))

    @property
    def total_late(self) -> Money:
        return sum_money(self.late_penalties.values(), self.currency)

    @property
    def total(self) -> Money:
        return self.total_late + self.maturity_penalty

    def owed_for(self, sequence: int) -> Money:
        return self.late_penalties.get(sequence, Money.zero(self.currency))


def elapsed_periods(start: date, as_of: date, frequency: AccrualFrequency) -> int:
    """
    Number of accrual periods started between start (exclusive) and as_of.

    A period counts as soon as it begins, so one day past grace is one period.
    Monthly periods follow calendar months from start.
    """
    days = (as_of - start).days
    if days <= 0:
        return 0
    if frequency == AccrualFrequency.DAILY:
        return days
    if frequency == AccrualFrequency.WEEKLY:
        return -(-days // 7)

    months = 0
    while add_months(start, months) < as_of:
        months += 1
    return months


def late_penalty_accrued(installment: Installment, spec: PenaltySpec,
                         grace_period_days: int, as_of: date) -> Money:
    """Late penalty accrued on one installment, before subtracting what was paid"""
    zero = Money.zero(installment.principal_due.currency)
    if not spec.is_active or installment.is_paid or installment.due_date >= as_of:
        return zero

    days_late = (as_of - installment.due_date).days
    if days_late <= grace_period_days:
        return zero

    grace_end = installment.due_date + timedelta(days=grace_period_days)
    periods = elapsed_periods(grace_end, as_of, spec.frequency)

    if spec.penalty_type == PenaltyType.FIXED:
        per_period = Money(spec.rate, zero.currency)
    else:
        per_period = installment.remaining * spec.rate
    # Simple accrual, never compounded on earlier penalties
    return (per_period * periods).quantize()


def maturity_penalty_accrued(loan: Loan, as_of: date) -> Money:
    """One-time penalty once a loan that is still running passes its maturity date"""
    zero = Money.zero(loan.currency)
    spec = loan.terms.maturity_penalty
    if (not spec.is_active or loan.maturity_date is None or as_of <= loan.maturity_date
            or loan.status not in PAYABLE_STATUSES or not loan.outstanding_balance.is_positive()):
        return zero

    if spec.penalty_type == PenaltyType.FIXED:
        return Money(spec.rate, loan.currency).quantize()
    return (loan.outstanding_balance * spec.rate).quantize()


def compute_penalties(loan: Loan, as_of: date) -> PenaltySnapshot:
    """
    Compute the penalty snapshot for a loan

    Args:
        loan: Loan to inspect (not modified)
        as_of: Date the penalties are evaluated at

    Returns:
        PenaltySnapshot with per-installment late penalties owed, the maturity
        penalty owed and the installments that are penalty-eligible
    """
    terms = loan.terms
    zero = Money.zero(loan.currency)
    late: Dict[int, Money] = {}
    eligible: List[int] = []

    for row in loan.unpaid_installments():
        if (as_of - row.due_date).days <= terms.grace_period_days:
            continue
        eligible.append(row.sequence)
        accrued = late_penalty_accrued(row, terms.late_penalty, terms.grace_period_days, as_of)
        owed = accrued - row.penalty_paid
        if owed.is_positive():
            late[row.sequence] = owed

    maturity_owed = maturity_penalty_accrued(loan, as_of) - loan.maturity_penalty_paid
    if maturity_owed.is_negative():
        maturity_owed = zero

    return PenaltySnapshot(
        loan_id=loan.id,
        as_of=as_of,
        currency=loan.currency,
        late_penalties=late,
        maturity_penalty=maturity_owed,
        penalty_eligible=tuple(eligible),
    )


def days_past_due(loan: Loan, as_of: date) -> int:
    """Days the oldest unpaid installment is past its due date (0 when current)"""
    unpaid = loan.unpaid_installments()
    if not unpaid:
        return 0
    return max(0, (as_of - unpaid[0].due_date).days)
