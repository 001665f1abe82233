"""
Loan State Machine Module

Explicit transition table for the loan lifecycle. Every status change goes
through transition(), which checks the table and the guard for the move and
records it in the loan's status history.
"""

from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Optional, Tuple

from .errors import InvalidTransitionError
from .loans import Loan, LoanStatus, StatusChange
from .penalties import PenaltySnapshot


@dataclass(frozen=True)
class TransitionContext:
    """Who asked for a status change, when, and why"""
    occurred_on: date
    reason: str = ""
    actor: Optional[str] = None


def _has_schedule(loan: Loan) -> Optional[str]:
    if not loan.has_schedule:
        return "loan has no repayment schedule"
    return None


def _is_settled(loan: Loan) -> Optional[str]:
    if loan.outstanding_balance.is_positive():
        return f"outstanding balance is {loan.outstanding_balance.to_string()}"
    if loan.fees_outstanding.is_positive():
        return f"fees of {loan.fees_outstanding.to_string()} are unpaid"
    return None


def _always(loan: Loan) -> Optional[str]:
    return None


# (from, to) -> guard returning a failure reason, or None when the move is allowed
TRANSITIONS: Dict[Tuple[LoanStatus, LoanStatus], Callable[[Loan], Optional[str]]] = {
    (LoanStatus.PROCESSING, LoanStatus.OPEN): _has_schedule,
    (LoanStatus.PROCESSING, LoanStatus.DENIED): _always,
    (LoanStatus.PROCESSING, LoanStatus.NOT_TAKEN_UP): _always,
    (LoanStatus.OPEN, LoanStatus.DEFAULT): _always,
    (LoanStatus.OPEN, LoanStatus.CLOSED): _is_settled,
    (LoanStatus.OPEN, LoanStatus.RESTRUCTURED): _always,
    (LoanStatus.DEFAULT, LoanStatus.CLOSED): _is_settled,
}

TERMINAL_STATUSES = frozenset(
    status for status in LoanStatus
    if not any(source == status for source, _ in TRANSITIONS)
)


def allowed_targets(status: LoanStatus) -> Tuple[LoanStatus, ...]:
    """Statuses reachable from status in one step"""
    return tuple(target for source, target in TRANSITIONS if source == status)


def can_transition(loan: Loan, target: LoanStatus) -> bool:
    guard = TRANSITIONS.get((loan.status, target))
    return guard is not None and guard(loan) is None


def transition(loan: Loan, target: LoanStatus, context: TransitionContext) -> Loan:
    """
    Move a loan to a new status

    Args:
        loan: Loan to transition
        target: Requested status
        context: When and why the change happens

    Returns:
        The same loan, now in the target status

    Raises:
        InvalidTransitionError: the move is not in the table or its guard fails;
            the loan is left unchanged
    """
    guard = TRANSITIONS.get((loan.status, target))
    if guard is None:
        raise InvalidTransitionError(loan.status.value, target.value)

    failure = guard(loan)
    if failure:
        raise InvalidTransitionError(loan.status.value, target.value, failure)

    loan.status_history.append(
        StatusChange(from_status=loan.status, to_status=target,
                     changed_on=context.occurred_on, reason=context.reason)
    )
    loan.status = target
    loan.touch()
    return loan


def consecutive_missed_cycles(snapshot: PenaltySnapshot) -> int:
    """Longest run of consecutive installments that are past due beyond grace"""
    longest = run = 0
    previous = None
    for sequence in sorted(snapshot.penalty_eligible):
        run = run + 1 if previous is not None and sequence == previous + 1 else 1
        longest = max(longest, run)
        previous = sequence
    return longest


def should_default(snapshot: PenaltySnapshot, loan: Loan, threshold: int) -> bool:
    """Default policy: an open loan whose missed run exceeds the threshold"""
    return loan.status == LoanStatus.OPEN and consecutive_missed_cycles(snapshot) > threshold


def should_close(loan: Loan) -> bool:
    """A payable loan with nothing left on its schedule"""
    return (loan.status in (LoanStatus.OPEN, LoanStatus.DEFAULT)
            and loan.has_schedule and _is_settled(loan) is None)
