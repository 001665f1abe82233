"""
Schedule Generator Module

Turns LoanTerms into an ordered amortization schedule. Each interest method
produces rounded (principal, interest) rows; the last row absorbs the residual
rounding drift so the schedule sums exactly to principal + total interest.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import calendar

from .currency import Money, Currency, round_half_up, sum_money
from .errors import InvalidTermError
from .terms import LoanTerms, InterestMethod, RepaymentCycle


class InstallmentStatus(Enum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass
class Installment:
    """One schedule row, owned by its loan"""
    sequence: int
    due_date: date
    principal_due: Money
    interest_due: Money
    principal_paid: Money = None
    interest_paid: Money = None
    penalty_paid: Money = None
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None

    def __post_init__(self):
        zero = Money.zero(self.principal_due.currency)
        if self.principal_paid is None:
            self.principal_paid = zero
        if self.interest_paid is None:
            self.interest_paid = zero
        if self.penalty_paid is None:
            self.penalty_paid = zero

    @property
    def total_due(self) -> Money:
        return self.principal_due + self.interest_due

    @property
    def amount_paid(self) -> Money:
        return self.principal_paid + self.interest_paid

    @property
    def remaining(self) -> Money:
        return self.total_due - self.amount_paid

    @property
    def principal_remaining(self) -> Money:
        return self.principal_due - self.principal_paid

    @property
    def interest_remaining(self) -> Money:
        return self.interest_due - self.interest_paid

    @property
    def is_paid(self) -> bool:
        return self.remaining.is_zero()

    def refresh_status(self, as_of: Optional[date] = None) -> None:
        """Derive status from amounts paid and, when as_of is given, the due date"""
        if self.is_paid:
            self.status = InstallmentStatus.PAID
        elif as_of is not None and self.due_date < as_of:
            self.status = InstallmentStatus.OVERDUE
        elif self.amount_paid.is_positive():
            self.status = InstallmentStatus.PARTIALLY_PAID
        elif self.status != InstallmentStatus.OVERDUE:
            self.status = InstallmentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'due_date': self.due_date.isoformat(),
            'principal_due': str(self.principal_due.amount),
            'interest_due': str(self.interest_due.amount),
            'principal_paid': str(self.principal_paid.amount),
            'interest_paid': str(self.interest_paid.amount),
            'penalty_paid': str(self.penalty_paid.amount),
            'status': self.status.value,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], currency: Currency) -> 'Installment':
        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return cls(
            sequence=data['sequence'],
            due_date=date.fromisoformat(data['due_date']),
            principal_due=money('principal_due'),
            interest_due=money('interest_due'),
            principal_paid=money('principal_paid'),
            interest_paid=money('interest_paid'),
            penalty_paid=money('penalty_paid'),
            status=InstallmentStatus(data['status']),
            paid_date=date.fromisoformat(data['paid_date']) if data.get('paid_date') else None,
        )


# --- Calendar stepping ---

def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


_DAY_STEPS = {
    RepaymentCycle.DAILY: 1,
    RepaymentCycle.WEEKLY: 7,
    RepaymentCycle.BIWEEKLY: 14,
}

_MONTH_STEPS = {
    RepaymentCycle.MONTHLY: 1,
    RepaymentCycle.QUARTERLY: 3,
    RepaymentCycle.ANNUALLY: 12,
}


def add_cycles(anchor: date, cycle: RepaymentCycle, count: int) -> date:
    """
    Date `count` repayment cycles after `anchor`.

    Month-based cycles are always measured from the anchor, so a schedule
    anchored on the 31st returns to the 31st after passing through February.
    """
    if cycle in _DAY_STEPS:
        return anchor + timedelta(days=_DAY_STEPS[cycle] * count)
    return add_months(anchor, _MONTH_STEPS[cycle] * count)


# --- Row builders: (principal, interest) pairs, already rounded ---

Row = Tuple[Decimal, Decimal]


def _equal_principal_rows(principal: Decimal, rate: Decimal, n: int, precision: int) -> List[Row]:
    each = round_half_up(principal / n, precision)
    balance = principal
    rows = []
    for number in range(1, n + 1):
        interest = round_half_up(balance * rate, precision)
        part = balance if number == n else min(each, balance)
        rows.append((part, interest))
        balance -= part
    return rows


def _equal_installment_rows(principal: Decimal, rate: Decimal, n: int, precision: int) -> List[Row]:
    if rate == 0:
        return _equal_principal_rows(principal, rate, n, precision)

    # Standard annuity formula: P * [r(1+r)^n] / [(1+r)^n - 1], rounded once
    factor = (Decimal('1') + rate) ** n
    payment = round_half_up(principal * rate * factor / (factor - Decimal('1')), precision)

    balance = principal
    rows = []
    for number in range(1, n + 1):
        interest = round_half_up(balance * rate, precision)
        if number == n:
            part = balance  # final row pays off whatever rounding left behind
        else:
            part = min(payment - interest, balance)
        rows.append((part, interest))
        balance -= part
    return rows


def _spread(total: Decimal, n: int, precision: int) -> List[Decimal]:
    """Split total into n rounded equal parts, the last absorbing the residual"""
    each = round_half_up(total / n, precision)
    return [each] * (n - 1) + [total - each * (n - 1)]


def _flat_rows(principal: Decimal, rate: Decimal, n: int, precision: int) -> List[Row]:
    total_interest = round_half_up(principal * rate * n, precision)
    return list(zip(_spread(principal, n, precision), _spread(total_interest, n, precision)))


def _interest_only_rows(principal: Decimal, rate: Decimal, n: int, precision: int) -> List[Row]:
    interest = round_half_up(principal * rate, precision)
    return [(Decimal('0'), interest)] * (n - 1) + [(principal, interest)]


def _compound_rows(principal: Decimal, rate: Decimal, n: int, precision: int) -> List[Row]:
    """
    Interest compounds on the original principal for the whole term, even though
    each row repays its share of principal and collects the interest it accrued.
    Total interest is P((1 + r)^n - 1), spread across rows in accrual order.
    """
    total_interest = round_half_up(principal * (((Decimal('1') + rate) ** n) - Decimal('1')), precision)

    # Each cycle accrues on principal plus all interest accrued before it
    accrued = Decimal('0')
    interest_rows = []
    for _ in range(n - 1):
        cycle_interest = (principal + accrued) * rate
        accrued += cycle_interest
        interest_rows.append(round_half_up(cycle_interest, precision))
    interest_rows.append(total_interest - sum(interest_rows, Decimal('0')))

    return list(zip(_spread(principal, n, precision), interest_rows))


ROW_BUILDERS: Dict[InterestMethod, Callable[[Decimal, Decimal, int, int], List[Row]]] = {
    InterestMethod.FLAT: _flat_rows,
    InterestMethod.REDUCING_BALANCE_EQUAL_INSTALLMENTS: _equal_installment_rows,
    InterestMethod.REDUCING_BALANCE_EQUAL_PRINCIPAL: _equal_principal_rows,
    InterestMethod.INTEREST_ONLY: _interest_only_rows,
    InterestMethod.COMPOUND: _compound_rows,
}

_REDUCING_METHODS = (
    InterestMethod.REDUCING_BALANCE_EQUAL_INSTALLMENTS,
    InterestMethod.REDUCING_BALANCE_EQUAL_PRINCIPAL,
)


def _apply_first_amount_override(terms: LoanTerms, rows: List[Row], precision: int) -> List[Row]:
    """Rebuild rows so the first installment totals the override amount"""
    principal = terms.principal.amount
    n = terms.term_cycles
    first_interest = rows[0][1]
    first_principal = terms.first_repayment_amount.amount - first_interest

    if first_principal < 0:
        raise InvalidTermError("First repayment amount does not cover the first cycle's interest")
    if first_principal > principal:
        raise InvalidTermError("First repayment amount exceeds principal plus first cycle interest")
    if n == 1:
        if first_principal != principal:
            raise InvalidTermError("Single-installment loan must repay the full principal in its first repayment")
        return [(first_principal, first_interest)]

    rest_principal = principal - first_principal
    if terms.interest_method in _REDUCING_METHODS:
        rest = ROW_BUILDERS[terms.interest_method](rest_principal, terms.periodic_rate, n - 1, precision)
    elif terms.interest_method == InterestMethod.INTEREST_ONLY:
        rest = [(Decimal('0'), interest) for _, interest in rows[1:-1]] + [(rest_principal, rows[-1][1])]
    else:
        interests = [interest for _, interest in rows[1:]]
        rest = list(zip(_spread(rest_principal, n - 1, precision), interests))
    return [(first_principal, first_interest)] + rest


def due_date(terms: LoanTerms, disbursement_date: date, number: int) -> date:
    """
    Due date of installment `number` (1-based).

    With a first repayment override the schedule is anchored on the override;
    otherwise every row is measured from the disbursement date itself, so a
    loan disbursed on the 31st falls due on the last day of shorter months and
    returns to the 31st afterwards.
    """
    if terms.first_repayment_date is not None:
        return add_cycles(terms.first_repayment_date, terms.repayment_cycle, number - 1)
    return add_cycles(disbursement_date, terms.repayment_cycle, number)


def first_due_date(terms: LoanTerms, disbursement_date: date) -> date:
    """First due date: the override when given, else one cycle after disbursement"""
    return due_date(terms, disbursement_date, 1)


def generate_schedule(terms: LoanTerms, disbursement_date: date) -> List[Installment]:
    """
    Generate the amortization schedule for a loan

    Args:
        terms: Validated or unvalidated loan terms
        disbursement_date: Date the funds are released

    Returns:
        Exactly terms.term_cycles installments, ordered by strictly increasing due date

    Raises:
        InvalidTermError: If the terms cannot produce a schedule. No partial
            schedule is ever returned.
    """
    terms.validate()
    currency = terms.currency
    precision = currency.precision

    first_due = first_due_date(terms, disbursement_date)
    if first_due <= disbursement_date:
        raise InvalidTermError("First repayment date must fall after the disbursement date")

    rows = ROW_BUILDERS[terms.interest_method](
        terms.principal.amount, terms.periodic_rate, terms.term_cycles, precision
    )
    if terms.first_repayment_amount is not None:
        rows = _apply_first_amount_override(terms, rows, precision)

    if any(part < 0 or interest < 0 for part, interest in rows):
        raise InvalidTermError("Principal is too small to spread across this many installments")

    return [
        Installment(
            sequence=number,
            due_date=due_date(terms, disbursement_date, number),
            principal_due=Money(part, currency),
            interest_due=Money(interest, currency),
        )
        for number, (part, interest) in enumerate(rows, start=1)
    ]


def total_interest(installments: List[Installment], currency: Currency) -> Money:
    return sum_money((row.interest_due for row in installments), currency)


def total_repayable(installments: List[Installment], currency: Currency) -> Money:
    return sum_money((row.total_due for row in installments), currency)
