"""
Test suite for repayment allocation

Tests the fees -> penalties -> interest -> principal waterfall, manual splits,
rejection rules, idempotency, and the conservation of every tendered amount.
"""

import pytest
from dataclasses import replace
from decimal import Decimal
from datetime import date

from lending_core.allocation import (
    AllocationSplit, PaymentMethod, RepaymentEvent, allocate, apply_repayment
)
from lending_core.currency import Money, Currency
from lending_core.errors import (
    InvalidAmountError, DuplicateRepaymentError, LoanNotPayableError, LendingError
)
from lending_core.loans import Loan, LoanStatus, loan_to_dict
from lending_core.penalties import compute_penalties
from lending_core.schedule import Installment, InstallmentStatus
from lending_core.terms import FeeSpec, PenaltySpec, PenaltyType, AccrualFrequency


def usd(value: str) -> Money:
    return Money(Decimal(value), Currency.USD)


def split(fees="0", penalty="0", interest="0", principal="0") -> AllocationSplit:
    return AllocationSplit(fees=usd(fees), penalty=usd(penalty), interest=usd(interest), principal=usd(principal))


MONTHLY_FIVE_PERCENT = PenaltySpec(PenaltyType.PERCENTAGE, Decimal('0.05'), AccrualFrequency.MONTHLY)


@pytest.fixture
def waterfall_loan(make_terms):
    """Open loan with a 50.00 fee and two hand-built installments"""
    terms = make_terms(principal="900.00", fees=(FeeSpec("processing", amount=Decimal('50')),))
    loan = Loan.new("borrower-1", terms)
    loan.install_schedule([
        Installment(1, date(2024, 2, 1), usd("300.00"), usd("150.00")),
        Installment(2, date(2024, 3, 1), usd("600.00"), usd("120.00")),
    ], date(2024, 1, 1))
    loan.charge_fees(date(2024, 1, 1))
    loan.status = LoanStatus.OPEN
    return loan


class TestWaterfall:
    """Test the allocation order"""

    def test_reference_waterfall(self, waterfall_loan):
        """Test 1,000 pays the fee, then installment 1, then installment 2"""
        loan = waterfall_loan
        event = apply_repayment(loan, usd("1000.00"), date(2024, 2, 1), "key-1")

        assert event.allocation.fees == usd("50.00")
        assert event.allocation.penalty.is_zero()
        assert event.allocation.interest == usd("270.00")
        assert event.allocation.principal == usd("680.00")
        assert event.allocation.credit.is_zero()

        first, second = event.lines
        assert (first.sequence, first.interest, first.principal) == (1, usd("150.00"), usd("300.00"))
        # The remaining 500 goes to installment 2, interest first
        assert (second.sequence, second.interest, second.principal) == (2, usd("120.00"), usd("380.00"))

        assert loan.installment(1).status == InstallmentStatus.PAID
        assert loan.installment(1).paid_date == date(2024, 2, 1)
        assert loan.installment(2).status == InstallmentStatus.PARTIALLY_PAID
        assert loan.installment(2).paid_date is None
        assert loan.fees_outstanding.is_zero()
        assert loan.fees_paid == usd("50.00")
        assert loan.cumulative_paid == usd("950.00")
        assert loan.outstanding_balance == usd("220.00")

    def test_partial_interest_payment(self, make_loan):
        """Test a payment smaller than the interest due"""
        loan = make_loan()
        event = apply_repayment(loan, usd("5.00"), date(2024, 1, 20), "key-1")

        assert event.allocation.interest == usd("5.00")
        assert loan.installment(1).interest_paid == usd("5.00")
        assert loan.installment(1).status == InstallmentStatus.PARTIALLY_PAID

    def test_penalties_before_interest(self, make_loan):
        """Test late penalties are paid before interest and principal"""
        loan = make_loan(grace_period_days=5, late_penalty=MONTHLY_FIVE_PERCENT)
        event = apply_repayment(loan, usd("100.00"), date(2024, 2, 7), "key-1")

        line = event.lines[0]
        assert line.penalty == usd("20.60")
        assert line.interest == usd("12.00")
        assert line.principal == usd("67.40")
        assert loan.installment(1).penalty_paid == usd("20.60")
        assert loan.penalties_paid == usd("20.60")
        assert loan.cumulative_paid == usd("79.40")
        assert event.is_late

    def test_maturity_penalty_after_late_penalties(self, make_loan):
        """Test the maturity penalty is collected before interest"""
        loan = make_loan(maturity_penalty=PenaltySpec(PenaltyType.FIXED, Decimal('50')))
        event = apply_repayment(loan, usd("60.00"), date(2024, 4, 5), "key-1")

        assert event.allocation.penalty == usd("50.00")
        assert event.allocation.interest == usd("10.00")
        assert loan.maturity_penalty_paid == usd("50.00")
        assert compute_penalties(loan, date(2024, 4, 5)).maturity_penalty.is_zero()

    def test_overpayment_becomes_credit(self, make_loan):
        """Test money beyond everything owed is held as credit"""
        loan = make_loan()
        event = apply_repayment(loan, usd("1300.00"), date(2024, 1, 15), "key-1")

        assert event.allocation.principal == usd("1200.00")
        assert event.allocation.interest == usd("24.00")
        assert event.allocation.credit == usd("76.00")
        assert loan.credit_balance == usd("76.00")
        assert loan.outstanding_balance.is_zero()
        assert all(row.status == InstallmentStatus.PAID for row in loan.installments)

    @pytest.mark.parametrize("amount", ["0.01", "5.00", "412.00", "500.55", "1224.00", "5000.00"])
    def test_conservation(self, make_loan, amount):
        """Test every tendered cent is accounted for exactly once"""
        loan = make_loan(grace_period_days=2, late_penalty=MONTHLY_FIVE_PERCENT,
                         fees=(FeeSpec("insurance", percentage=Decimal('0.02')),))
        event = apply_repayment(loan, usd(amount), date(2024, 3, 7), "key-1")

        parts = [event.allocation.fees, event.allocation.penalty, event.allocation.interest,
                 event.allocation.principal, event.allocation.credit]
        assert all(not part.is_negative() for part in parts)
        assert event.allocation.total == usd(amount)
        assert event.allocation.fees <= usd("24.00")
        assert sum((line.total.amount for line in event.lines), Decimal('0')) == (
            event.allocation.penalty + event.allocation.interest + event.allocation.principal).amount

    def test_monotonic_balances(self, make_loan):
        """Test cumulative paid never decreases and the balance never goes negative"""
        loan = make_loan()
        previous = loan.cumulative_paid
        for number in range(15):
            apply_repayment(loan, usd("100.00"), date(2024, 1, 10), f"key-{number}")
            assert loan.cumulative_paid >= previous
            assert not loan.outstanding_balance.is_negative()
            previous = loan.cumulative_paid

        assert loan.outstanding_balance.is_zero()
        assert loan.credit_balance == usd("276.00")


class TestRejections:
    """Test repayments that must be refused without touching the loan"""

    @pytest.mark.parametrize("amount", [
        usd("0"), usd("-10.00"), usd("10.001"), Money(Decimal('10.00'), Currency.EUR)
    ])
    def test_invalid_amounts(self, make_loan, amount):
        """Test zero, negative, over-precise and wrong-currency amounts"""
        loan = make_loan()
        before = loan_to_dict(loan)
        with pytest.raises(InvalidAmountError):
            apply_repayment(loan, amount, date(2024, 1, 15), "key-1")
        assert loan_to_dict(loan) == before

    @pytest.mark.parametrize("status", [
        LoanStatus.PROCESSING, LoanStatus.CLOSED, LoanStatus.DENIED,
        LoanStatus.NOT_TAKEN_UP, LoanStatus.RESTRUCTURED
    ])
    def test_loan_not_payable(self, make_loan, status):
        """Test loans outside open/default refuse repayments"""
        loan = make_loan(status=status)
        with pytest.raises(LoanNotPayableError):
            apply_repayment(loan, usd("100.00"), date(2024, 1, 15), "key-1")
        assert loan.cumulative_paid.is_zero()

    def test_defaulted_loan_accepts_repayment(self, make_loan):
        """Test a loan in default can still be repaid"""
        loan = make_loan(status=LoanStatus.DEFAULT)
        apply_repayment(loan, usd("100.00"), date(2024, 6, 1), "key-1")
        assert loan.cumulative_paid == usd("100.00")

    def test_duplicate_key(self, make_loan):
        """Test the same idempotency key is applied only once"""
        loan = make_loan()
        apply_repayment(loan, usd("100.00"), date(2024, 1, 15), "key-1")
        balance = loan.outstanding_balance

        with pytest.raises(DuplicateRepaymentError):
            apply_repayment(loan, usd("100.00"), date(2024, 1, 15), "key-1")
        assert loan.outstanding_balance == balance
        assert loan.repayment_keys == ["key-1"]

    def test_missing_key(self, make_loan):
        """Test an idempotency key is required"""
        with pytest.raises(LendingError):
            apply_repayment(make_loan(), usd("100.00"), date(2024, 1, 15), "")


class TestManualSplit:
    """Test caller-specified allocation"""

    def test_split_applied(self, make_loan):
        """Test a valid split is applied oldest-first within each bucket"""
        loan = make_loan()
        event = apply_repayment(loan, usd("100.00"), date(2024, 1, 15), "key-1",
                                split=split(interest="20.00", principal="80.00"))

        assert event.allocation.interest == usd("20.00")
        assert event.allocation.principal == usd("80.00")
        assert loan.installment(1).interest_paid == usd("12.00")
        assert loan.installment(2).interest_paid == usd("8.00")
        assert loan.installment(1).principal_paid == usd("80.00")

    def test_split_must_sum_to_amount(self, make_loan):
        """Test a split that does not add up is rejected"""
        loan = make_loan()
        with pytest.raises(InvalidAmountError):
            apply_repayment(loan, usd("100.00"), date(2024, 1, 15), "key-1",
                            split=split(interest="10.00", principal="80.00"))

    def test_split_must_be_absorbable(self, make_loan):
        """Test a bucket larger than what is outstanding is rejected and nothing changes"""
        loan = make_loan()
        before = loan_to_dict(loan)
        with pytest.raises(InvalidAmountError):
            apply_repayment(loan, usd("100.00"), date(2024, 1, 15), "key-1",
                            split=split(interest="30.00", principal="70.00"))
        assert loan_to_dict(loan) == before

    def test_split_cannot_settle_row_leaving_penalty(self, make_loan):
        """Test a split that pays off a late installment must also pay its penalty"""
        daily_five = PenaltySpec(PenaltyType.FIXED, Decimal('5'), AccrualFrequency.DAILY)
        loan = make_loan(late_penalty=daily_five)
        before = loan_to_dict(loan)

        # Installment 1 (400 + 12) is two days late on 02-03 and owes 10.00
        with pytest.raises(InvalidAmountError):
            apply_repayment(loan, usd("412.00"), date(2024, 2, 3), "key-1",
                            split=split(interest="12.00", principal="400.00"))
        assert loan_to_dict(loan) == before

        event = apply_repayment(loan, usd("422.00"), date(2024, 2, 3), "key-1",
                                split=split(penalty="10.00", interest="12.00", principal="400.00"))
        assert event.allocation.penalty == usd("10.00")
        assert loan.installment(1).is_paid


class TestAllocationPlan:
    """Test planning without committing"""

    def test_allocate_is_pure(self, waterfall_loan):
        """Test planning leaves the loan untouched"""
        before = loan_to_dict(waterfall_loan)
        snapshot = compute_penalties(waterfall_loan, date(2024, 2, 1))
        plan = allocate(waterfall_loan, usd("1000.00"), snapshot)

        assert plan.breakdown.total == usd("1000.00")
        assert loan_to_dict(waterfall_loan) == before

    def test_snapshot_must_match_loan(self, make_loan):
        """Test a snapshot from another loan is refused"""
        loan, other = make_loan(), make_loan()
        with pytest.raises(ValueError):
            allocate(loan, usd("10.00"), compute_penalties(other, date(2024, 1, 15)))


class TestRepaymentEvent:
    """Test the immutable repayment record"""

    def test_event_details(self, make_loan):
        """Test optional details are carried on the event"""
        event = apply_repayment(
            make_loan(), usd("100.00"), date(2024, 1, 15), "key-1",
            payment_method=PaymentMethod.MOBILE_MONEY, collector="agent-7",
            collection_date=date(2024, 1, 14), notes="market day"
        )
        assert event.payment_method == PaymentMethod.MOBILE_MONEY
        assert event.collector == "agent-7"
        assert event.idempotency_key == "key-1"
        assert event.previous_hash == ""

    def test_hash_and_serialization(self, make_loan):
        """Test the stored form restores an identical, verifiable event"""
        event = apply_repayment(make_loan(), usd("100.00"), date(2024, 1, 15), "key-1",
                                previous_hash="abc123")
        assert event.verify_hash()

        restored = RepaymentEvent.from_dict(event.to_dict())
        assert restored == event
        assert restored.verify_hash()

    def test_tampering_detected(self, make_loan):
        """Test changing a sealed event breaks its hash"""
        event = apply_repayment(make_loan(), usd("100.00"), date(2024, 1, 15), "key-1")
        tampered = replace(event, amount=usd("1.00"))
        assert not tampered.verify_hash()

    def test_event_is_frozen(self, make_loan):
        """Test events cannot be edited in place"""
        event = apply_repayment(make_loan(), usd("100.00"), date(2024, 1, 15), "key-1")
        with pytest.raises(AttributeError):
            event.amount = usd("1.00")
