"""
Allocation Engine Module

Splits a repayment across a loan's obligations in a fixed waterfall:
fees -> penalties -> interest -> principal, oldest obligation first. The
allocation is planned without touching the loan and committed only once the
whole plan exists, so a rejected repayment never leaves a half-applied loan.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import hashlib
import json
import uuid

from .currency import Money, Currency
from .errors import (
    InvalidAmountError, DuplicateRepaymentError, LoanNotPayableError, LendingError
)
from .loans import Loan
from .penalties import PenaltySnapshot, compute_penalties


class PaymentMethod(Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CHECK = "check"


@dataclass(frozen=True)
class AllocationBreakdown:
    """How a tendered amount was split; the parts always sum to the amount"""
    fees: Money
    penalty: Money
    interest: Money
    principal: Money
    credit: Money

    @property
    def total(self) -> Money:
        return self.fees + self.penalty + self.interest + self.principal + self.credit

    def to_dict(self) -> Dict[str, str]:
        return {
            'fees': str(self.fees.amount),
            'penalty': str(self.penalty.amount),
            'interest': str(self.interest.amount),
            'principal': str(self.principal.amount),
            'credit': str(self.credit.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str], currency: Currency) -> 'AllocationBreakdown':
        return cls(**{key: Money(Decimal(data[key]), currency)
                      for key in ('fees', 'penalty', 'interest', 'principal', 'credit')})


@dataclass(frozen=True)
class InstallmentAllocation:
    """Portion of a repayment applied to one installment"""
    sequence: int
    penalty: Money
    interest: Money
    principal: Money

    @property
    def total(self) -> Money:
        return self.penalty + self.interest + self.principal


@dataclass(frozen=True)
class AllocationSplit:
    """Caller-specified split (manual allocation); omitted means auto-allocate"""
    fees: Money
    penalty: Money
    interest: Money
    principal: Money

    @property
    def total(self) -> Money:
        return self.fees + self.penalty + self.interest + self.principal


@dataclass
class AllocationPlan:
    """Result of planning an allocation; nothing here has touched the loan yet"""
    amount: Money
    fee_lines: List[Tuple[int, Money]] = field(default_factory=list)  # (fee charge index, amount)
    maturity_penalty: Money = None
    credit: Money = None
    _lines: Dict[int, Dict[str, Money]] = field(default_factory=dict)

    def __post_init__(self):
        zero = Money.zero(self.amount.currency)
        if self.maturity_penalty is None:
            self.maturity_penalty = zero
        if self.credit is None:
            self.credit = zero

    def add(self, sequence: int, component: str, amount: Money) -> None:
        zero = Money.zero(self.amount.currency)
        line = self._lines.setdefault(sequence, {'penalty': zero, 'interest': zero, 'principal': zero})
        line[component] = line[component] + amount

    @property
    def lines(self) -> Tuple[InstallmentAllocation, ...]:
        return tuple(
            InstallmentAllocation(sequence=sequence, **parts)
            for sequence, parts in sorted(self._lines.items())
        )

    def _component_total(self, component: str) -> Money:
        total = Money.zero(self.amount.currency)
        for parts in self._lines.values():
            total = total + parts[component]
        return total

    @property
    def breakdown(self) -> AllocationBreakdown:
        fees = Money.zero(self.amount.currency)
        for _, paid in self.fee_lines:
            fees = fees + paid
        return AllocationBreakdown(
            fees=fees,
            penalty=self._component_total('penalty') + self.maturity_penalty,
            interest=self._component_total('interest'),
            principal=self._component_total('principal'),
            credit=self.credit,
        )


@dataclass(frozen=True)
class RepaymentEvent:
    """
    Immutable record of one accepted repayment. Events are only ever appended;
    a correction is a new offsetting event.
    """
    id: str
    loan_id: str
    idempotency_key: str
    amount: Money
    received_on: date
    allocation: AllocationBreakdown
    lines: Tuple[InstallmentAllocation, ...]
    created_at: datetime
    payment_method: Optional[PaymentMethod] = None
    collector: Optional[str] = None
    collection_date: Optional[date] = None
    notes: Optional[str] = None
    previous_hash: str = ""
    current_hash: str = ""

    @classmethod
    def create(cls, loan_id: str, idempotency_key: str, amount: Money, received_on: date,
               plan: AllocationPlan, previous_hash: str = "", **details: Any) -> 'RepaymentEvent':
        """Build an event from a plan and seal it with its chain hash"""
        event = cls(
            id=str(uuid.uuid4()),
            loan_id=loan_id,
            idempotency_key=idempotency_key,
            amount=amount,
            received_on=received_on,
            allocation=plan.breakdown,
            lines=plan.lines,
            created_at=datetime.now(timezone.utc),
            previous_hash=previous_hash,
            **details
        )
        object.__setattr__(event, 'current_hash', event.calculate_hash())
        return event

    @property
    def is_late(self) -> bool:
        return self.allocation.penalty.is_positive()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'idempotency_key': self.idempotency_key,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'received_on': self.received_on.isoformat(),
            'allocation': self.allocation.to_dict(),
            'lines': [
                {'sequence': line.sequence, 'penalty': str(line.penalty.amount),
                 'interest': str(line.interest.amount), 'principal': str(line.principal.amount)}
                for line in self.lines
            ],
            'created_at': self.created_at.isoformat(),
            'payment_method': self.payment_method.value if self.payment_method else None,
            'collector': self.collector,
            'collection_date': self.collection_date.isoformat() if self.collection_date else None,
            'notes': self.notes,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentEvent':
        currency = Currency[data['currency']]

        def money(value: str) -> Money:
            return Money(Decimal(value), currency)

        return cls(
            id=data['id'],
            loan_id=data['loan_id'],
            idempotency_key=data['idempotency_key'],
            amount=money(data['amount']),
            received_on=date.fromisoformat(data['received_on']),
            allocation=AllocationBreakdown.from_dict(data['allocation'], currency),
            lines=tuple(
                InstallmentAllocation(sequence=line['sequence'], penalty=money(line['penalty']),
                                      interest=money(line['interest']), principal=money(line['principal']))
                for line in data['lines']
            ),
            created_at=datetime.fromisoformat(data['created_at']),
            payment_method=PaymentMethod(data['payment_method']) if data.get('payment_method') else None,
            collector=data.get('collector'),
            collection_date=date.fromisoformat(data['collection_date']) if data.get('collection_date') else None,
            notes=data.get('notes'),
            previous_hash=data.get('previous_hash', ""),
            current_hash=data.get('current_hash', ""),
        )

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = self.to_dict()
        hash_data.pop('current_hash')
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()


def validate_amount(loan: Loan, amount: Money) -> None:
    """Reject amounts that can never be applied to this loan"""
    if not isinstance(amount, Money):
        raise InvalidAmountError("Repayment amount must be Money")
    if amount.currency != loan.currency:
        raise InvalidAmountError(
            f"Repayment currency {amount.currency.code} does not match loan currency {loan.currency.code}"
        )
    if not amount.is_positive():
        raise InvalidAmountError(f"Repayment amount must be positive, got {amount.amount}")
    if not amount.is_quantized():
        raise InvalidAmountError(f"Repayment amount {amount.amount} is finer than {amount.currency.code} precision")


def allocate(loan: Loan, amount: Money, snapshot: PenaltySnapshot,
             split: Optional[AllocationSplit] = None) -> AllocationPlan:
    """
    Plan the waterfall allocation of a repayment

    Args:
        loan: Loan the money is applied to (not modified)
        amount: Tendered amount
        snapshot: Penalties owed, freshly computed for the receipt date
        split: Optional caller-chosen split; must sum to amount and be fully absorbable

    Returns:
        AllocationPlan whose breakdown sums exactly to amount
    """
    validate_amount(loan, amount)
    if snapshot.loan_id != loan.id:
        raise ValueError(f"Penalty snapshot belongs to loan {snapshot.loan_id}, not {loan.id}")

    if split is not None:
        return _allocate_split(loan, amount, snapshot, split)

    plan = AllocationPlan(amount=amount)
    remaining = amount

    # 1. Fees, oldest charge first
    for index, charge in _fees_oldest_first(loan):
        if remaining.is_zero():
            break
        take = charge.remaining.min(remaining)
        if take.is_positive():
            plan.fee_lines.append((index, take))
            remaining = remaining - take

    # 2. Penalties: late penalties oldest installment first, then maturity
    unpaid = loan.unpaid_installments()
    for row in unpaid:
        if remaining.is_zero():
            break
        take = snapshot.owed_for(row.sequence).min(remaining)
        if take.is_positive():
            plan.add(row.sequence, 'penalty', take)
            remaining = remaining - take
    take = snapshot.maturity_penalty.min(remaining)
    if take.is_positive():
        plan.maturity_penalty = take
        remaining = remaining - take

    # 3./4. Interest then principal, installment by installment
    for row in unpaid:
        if remaining.is_zero():
            break
        for component, due in (('interest', row.interest_remaining), ('principal', row.principal_remaining)):
            take = due.min(remaining)
            if take.is_positive():
                plan.add(row.sequence, component, take)
                remaining = remaining - take

    # 5. Anything left is held as credit
    plan.credit = remaining
    return plan


def _fees_oldest_first(loan: Loan):
    return sorted(enumerate(loan.fee_charges), key=lambda item: (item[1].charged_on, item[0]))


def _allocate_split(loan: Loan, amount: Money, snapshot: PenaltySnapshot,
                    split: AllocationSplit) -> AllocationPlan:
    """Apply each bucket of a manual split oldest-first within its category"""
    for part in (split.fees, split.penalty, split.interest, split.principal):
        if part.currency != amount.currency or part.is_negative() or not part.is_quantized():
            raise InvalidAmountError("Split amounts must be non-negative and in the loan currency")
    if split.total != amount:
        raise InvalidAmountError(
            f"Split totals {split.total.amount} but the repayment is {amount.amount}"
        )

    plan = AllocationPlan(amount=amount)
    unpaid = loan.unpaid_installments()

    budget = split.fees
    for index, charge in _fees_oldest_first(loan):
        take = charge.remaining.min(budget)
        if take.is_positive():
            plan.fee_lines.append((index, take))
            budget = budget - take
    _require_absorbed(budget, "fees")

    budget = split.penalty
    for row in unpaid:
        take = snapshot.owed_for(row.sequence).min(budget)
        if take.is_positive():
            plan.add(row.sequence, 'penalty', take)
            budget = budget - take
    take = snapshot.maturity_penalty.min(budget)
    if take.is_positive():
        plan.maturity_penalty = take
        budget = budget - take
    _require_absorbed(budget, "penalty")

    for component, budget in (('interest', split.interest), ('principal', split.principal)):
        for row in unpaid:
            due = row.interest_remaining if component == 'interest' else row.principal_remaining
            take = due.min(budget)
            if take.is_positive():
                plan.add(row.sequence, component, take)
                budget = budget - take
        _require_absorbed(budget, component)

    # Settling a row stops its late penalty accruing, so the split must also cover what it owes
    for line in plan.lines:
        row = loan.installment(line.sequence)
        if line.interest + line.principal == row.remaining and line.penalty < snapshot.owed_for(row.sequence):
            raise InvalidAmountError(
                f"Split settles installment {row.sequence} but leaves its late penalty unpaid"
            )

    return plan


def _require_absorbed(budget: Money, category: str) -> None:
    if budget.is_positive():
        raise InvalidAmountError(f"Split assigns {budget.amount} more {category} than is outstanding")


def commit_plan(loan: Loan, plan: AllocationPlan, idempotency_key: str, received_on: date) -> None:
    """Write a computed plan into the loan's installments and balances"""
    for index, paid in plan.fee_lines:
        charge = loan.fee_charges[index]
        charge.paid = charge.paid + paid

    for line in plan.lines:
        row = loan.installment(line.sequence)
        row.penalty_paid = row.penalty_paid + line.penalty
        row.interest_paid = row.interest_paid + line.interest
        row.principal_paid = row.principal_paid + line.principal
        if row.is_paid and row.paid_date is None:
            row.paid_date = received_on
        if line.interest.is_positive() or line.principal.is_positive():
            row.refresh_status()

    breakdown = plan.breakdown
    loan.fees_paid = loan.fees_paid + breakdown.fees
    loan.penalties_paid = loan.penalties_paid + breakdown.penalty
    loan.maturity_penalty_paid = loan.maturity_penalty_paid + plan.maturity_penalty
    loan.cumulative_paid = loan.cumulative_paid + breakdown.interest + breakdown.principal
    loan.credit_balance = loan.credit_balance + breakdown.credit
    loan.repayment_keys.append(idempotency_key)


def apply_repayment(loan: Loan, amount: Money, received_on: date, idempotency_key: str,
                    split: Optional[AllocationSplit] = None, previous_hash: str = "",
                    **details: Any) -> RepaymentEvent:
    """
    Apply a repayment to an in-memory loan

    Args:
        loan: Loan to apply the money to; mutated only on success
        amount: Amount tendered
        received_on: Date the money was received; penalties are computed as of this date
        idempotency_key: Caller token; a key can be applied to a loan only once
        split: Optional manual allocation split
        previous_hash: Hash of the loan's previous repayment event, for chaining
        **details: payment_method, collector, collection_date, notes

    Returns:
        The immutable RepaymentEvent

    Raises:
        InvalidAmountError: amount is zero/negative, wrong currency, over-precise, or bad split
        DuplicateRepaymentError: idempotency key already applied to this loan
        LoanNotPayableError: loan status does not accept repayments
    """
    validate_amount(loan, amount)
    if not idempotency_key:
        raise LendingError("An idempotency key is required for every repayment")
    if idempotency_key in loan.repayment_keys:
        raise DuplicateRepaymentError(loan.id, idempotency_key)
    if not loan.is_payable:
        raise LoanNotPayableError(loan.id, loan.status.value)

    snapshot = compute_penalties(loan, received_on)
    plan = allocate(loan, amount, snapshot, split)
    event = RepaymentEvent.create(
        loan_id=loan.id,
        idempotency_key=idempotency_key,
        amount=amount,
        received_on=received_on,
        plan=plan,
        previous_hash=previous_hash,
        **details
    )

    commit_plan(loan, plan, idempotency_key, received_on)
    loan.touch()
    return event
