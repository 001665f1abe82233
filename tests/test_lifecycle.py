"""
Test suite for the loan state machine

Tests the transition table, its guards, terminal statuses and the
missed-cycle default policy.
"""

import pytest
from datetime import date
from decimal import Decimal

from lending_core.currency import Currency
from lending_core.errors import InvalidTransitionError
from lending_core.lifecycle import (
    TRANSITIONS, TERMINAL_STATUSES, TransitionContext, allowed_targets, can_transition,
    consecutive_missed_cycles, should_close, should_default, transition
)
from lending_core.loans import Loan, LoanStatus
from lending_core.penalties import PenaltySnapshot, compute_penalties
from lending_core.terms import FeeSpec


CONTEXT = TransitionContext(occurred_on=date(2024, 2, 1), reason="test")

ILLEGAL_MOVES = [
    (source, target)
    for source in LoanStatus for target in LoanStatus
    if (source, target) not in TRANSITIONS
]


def settle(loan: Loan) -> None:
    for row in loan.installments:
        row.principal_paid = row.principal_due
        row.interest_paid = row.interest_due
    loan.cumulative_paid = loan.total_repayable


def eligible(*sequences: int) -> PenaltySnapshot:
    return PenaltySnapshot(loan_id="loan-1", as_of=date(2024, 6, 1), currency=Currency.USD,
                           penalty_eligible=tuple(sequences))


class TestTransitionTable:
    """Test the shape of the transition table"""

    def test_terminal_statuses(self):
        """Test statuses with no way out"""
        assert TERMINAL_STATUSES == {
            LoanStatus.CLOSED, LoanStatus.RESTRUCTURED, LoanStatus.DENIED, LoanStatus.NOT_TAKEN_UP
        }
        for status in TERMINAL_STATUSES:
            assert allowed_targets(status) == ()

    def test_allowed_targets(self):
        """Test the moves available from each running status"""
        assert set(allowed_targets(LoanStatus.PROCESSING)) == {
            LoanStatus.OPEN, LoanStatus.DENIED, LoanStatus.NOT_TAKEN_UP
        }
        assert set(allowed_targets(LoanStatus.OPEN)) == {
            LoanStatus.DEFAULT, LoanStatus.CLOSED, LoanStatus.RESTRUCTURED
        }
        assert allowed_targets(LoanStatus.DEFAULT) == (LoanStatus.CLOSED,)

    @pytest.mark.parametrize("source,target", ILLEGAL_MOVES)
    def test_illegal_moves_rejected(self, make_loan, source, target):
        """Test every move outside the table raises and leaves the loan alone"""
        loan = make_loan(status=source)
        settle(loan)

        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(loan, target, CONTEXT)

        assert loan.status == source
        assert loan.status_history == []
        assert exc_info.value.from_status == source.value
        assert exc_info.value.to_status == target.value


class TestGuards:
    """Test guarded transitions"""

    def test_open_requires_schedule(self, make_terms):
        """Test a loan without installments cannot be opened"""
        loan = Loan.new("borrower-1", make_terms())
        assert not can_transition(loan, LoanStatus.OPEN)
        with pytest.raises(InvalidTransitionError):
            transition(loan, LoanStatus.OPEN, CONTEXT)
        assert loan.status == LoanStatus.PROCESSING

    def test_open_with_schedule(self, make_loan):
        """Test a scheduled loan opens and the move is recorded"""
        loan = make_loan(status=LoanStatus.PROCESSING)
        transition(loan, LoanStatus.OPEN, TransitionContext(date(2024, 1, 1), "disbursed"))

        assert loan.status == LoanStatus.OPEN
        change = loan.status_history[-1]
        assert (change.from_status, change.to_status) == (LoanStatus.PROCESSING, LoanStatus.OPEN)
        assert change.changed_on == date(2024, 1, 1)
        assert change.reason == "disbursed"

    @pytest.mark.parametrize("source", [LoanStatus.OPEN, LoanStatus.DEFAULT])
    def test_close_requires_zero_balance(self, make_loan, source):
        """Test closing is refused while anything is outstanding"""
        loan = make_loan(status=source)
        with pytest.raises(InvalidTransitionError, match="outstanding balance"):
            transition(loan, LoanStatus.CLOSED, CONTEXT)

        settle(loan)
        transition(loan, LoanStatus.CLOSED, CONTEXT)
        assert loan.status == LoanStatus.CLOSED

    def test_unguarded_moves(self, make_loan):
        """Test default and denial need no precondition"""
        loan = make_loan()
        transition(loan, LoanStatus.DEFAULT, CONTEXT)
        assert loan.status == LoanStatus.DEFAULT

        pending = make_loan(status=LoanStatus.PROCESSING)
        transition(pending, LoanStatus.DENIED, CONTEXT)
        assert pending.status == LoanStatus.DENIED


class TestDefaultPolicy:
    """Test missed-cycle counting and the default decision"""

    @pytest.mark.parametrize("sequences,expected", [
        ((), 0),
        ((1,), 1),
        ((1, 2, 3), 3),
        ((1, 3, 5), 1),
        ((1, 2, 4, 5, 6), 3),
        ((6, 5, 2), 2),
    ])
    def test_consecutive_missed_cycles(self, sequences, expected):
        """Test the longest run of consecutive installments"""
        assert consecutive_missed_cycles(eligible(*sequences)) == expected

    def test_threshold_must_be_exceeded(self, make_loan):
        """Test default triggers only strictly above the threshold"""
        loan = make_loan()
        assert not should_default(eligible(1, 2), loan, threshold=2)
        assert should_default(eligible(1, 2, 3), loan, threshold=2)

    def test_only_open_loans_default(self, make_loan):
        """Test loans already in default are not defaulted again"""
        loan = make_loan(status=LoanStatus.DEFAULT)
        assert not should_default(eligible(1, 2, 3), loan, threshold=0)

    def test_from_real_snapshot(self, make_loan):
        """Test missed cycles computed from the loan's own penalties"""
        loan = make_loan(grace_period_days=5)
        assert consecutive_missed_cycles(compute_penalties(loan, date(2024, 3, 5))) == 1
        assert consecutive_missed_cycles(compute_penalties(loan, date(2024, 4, 10))) == 3

    def test_should_close(self, make_loan):
        """Test closure is due once a running loan is settled"""
        loan = make_loan()
        assert not should_close(loan)
        settle(loan)
        assert should_close(loan)

        loan.status = LoanStatus.RESTRUCTURED
        assert not should_close(loan)

    def test_unpaid_fees_block_closure(self, make_loan):
        """Test a loan with its schedule settled stays running while fees are unpaid"""
        loan = make_loan(fees=(FeeSpec("processing", amount=Decimal('25')),))
        settle(loan)

        assert not should_close(loan)
        with pytest.raises(InvalidTransitionError):
            transition(loan, LoanStatus.CLOSED, CONTEXT)

        charge = loan.fee_charges[0]
        charge.paid = charge.paid + charge.remaining
        assert should_close(loan)
