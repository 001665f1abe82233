"""
Loan Module

The Loan aggregate root (terms, owned installments and fee charges, running
balances, status history), its storage repository, and the sharded lock table
that serializes writers per loan.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import threading
import uuid
import zlib

from .currency import Money, Currency, sum_money
from .errors import LoanNotFoundError
from .schedule import Installment, total_repayable
from .storage import StorageInterface, StorageRecord
from .terms import LoanTerms, terms_to_dict, terms_from_dict


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PROCESSING = "processing"      # application accepted, not yet disbursed
    OPEN = "open"                  # disbursed, schedule active
    DEFAULT = "default"            # missed too many consecutive cycles
    CLOSED = "closed"              # fully repaid
    RESTRUCTURED = "restructured"  # replaced by a new loan
    DENIED = "denied"
    NOT_TAKEN_UP = "not_taken_up"


PAYABLE_STATUSES = (LoanStatus.OPEN, LoanStatus.DEFAULT)


@dataclass
class FeeCharge:
    """A fee from the terms' fee schedule, charged at disbursement"""
    fee_type: str
    amount: Money
    charged_on: date
    paid: Money = None

    def __post_init__(self):
        if self.paid is None:
            self.paid = Money.zero(self.amount.currency)

    @property
    def remaining(self) -> Money:
        return self.amount - self.paid


@dataclass
class StatusChange:
    from_status: LoanStatus
    to_status: LoanStatus
    changed_on: date
    reason: str = ""


@dataclass
class Loan(StorageRecord):
    """Loan aggregate root"""
    loan_number: str
    borrower_id: str
    terms: LoanTerms
    status: LoanStatus = LoanStatus.PROCESSING

    installments: List[Installment] = field(default_factory=list)
    fee_charges: List[FeeCharge] = field(default_factory=list)

    # Running balances
    total_repayable: Money = None       # principal + interest, fixed at generation
    cumulative_paid: Money = None       # interest + principal applied to the schedule
    fees_paid: Money = None
    penalties_paid: Money = None
    maturity_penalty_paid: Money = None
    credit_balance: Money = None        # overpayment held for the borrower

    # Dates
    schedule_basis_date: Optional[date] = None  # disbursement date the schedule was built from
    disbursement_date: Optional[date] = None
    maturity_date: Optional[date] = None

    restructured_from: Optional[str] = None
    repayment_keys: List[str] = field(default_factory=list)
    status_history: List[StatusChange] = field(default_factory=list)
    custom_fields: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        zero = Money.zero(self.currency)
        for name in ('cumulative_paid', 'fees_paid', 'penalties_paid',
                     'maturity_penalty_paid', 'credit_balance'):
            if getattr(self, name) is None:
                setattr(self, name, zero)
        if self.total_repayable is None:
            self.total_repayable = total_repayable(self.installments, self.currency)
        if self.maturity_date is None and self.installments:
            self.maturity_date = self.installments[-1].due_date

    @classmethod
    def new(cls, borrower_id: str, terms: LoanTerms, loan_number: Optional[str] = None,
            custom_fields: Optional[Dict[str, Any]] = None) -> 'Loan':
        """Create a loan in PROCESSING with a fresh id"""
        now = datetime.now(timezone.utc)
        loan_id = str(uuid.uuid4())
        return cls(
            id=loan_id,
            created_at=now,
            updated_at=now,
            loan_number=loan_number or f"LN-{loan_id[:8].upper()}",
            borrower_id=borrower_id,
            terms=terms,
            custom_fields=dict(custom_fields or {}),
        )

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def outstanding_balance(self) -> Money:
        return self.total_repayable - self.cumulative_paid

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_STATUSES

    @property
    def has_schedule(self) -> bool:
        return bool(self.installments)

    @property
    def fees_outstanding(self) -> Money:
        return sum_money((charge.remaining for charge in self.fee_charges), self.currency)

    @property
    def principal_outstanding(self) -> Money:
        return sum_money((row.principal_remaining for row in self.installments), self.currency)

    def interest_due(self, as_of: date) -> Money:
        """Unpaid interest of installments already due on `as_of`"""
        return sum_money((row.interest_remaining for row in self.installments if row.due_date <= as_of),
                         self.currency)

    def unpaid_installments(self) -> List[Installment]:
        """Installments with something left to pay, oldest due date first"""
        return sorted((row for row in self.installments if not row.is_paid),
                      key=lambda row: (row.due_date, row.sequence))

    def installment(self, sequence: int) -> Installment:
        for row in self.installments:
            if row.sequence == sequence:
                return row
        raise KeyError(f"Loan {self.id} has no installment {sequence}")

    def install_schedule(self, installments: List[Installment], basis_date: date) -> None:
        """Attach a freshly generated schedule; only allowed before money is applied"""
        if self.cumulative_paid.is_positive():
            raise ValueError(f"Loan {self.id} already has repayments against its schedule")
        self.installments = list(installments)
        self.total_repayable = total_repayable(self.installments, self.currency)
        self.maturity_date = self.installments[-1].due_date if self.installments else None
        self.schedule_basis_date = basis_date

    def charge_fees(self, on: date) -> None:
        """Materialize the terms' fee schedule as outstanding charges"""
        self.fee_charges = [
            FeeCharge(fee_type=fee.fee_type, amount=fee.charge_for(self.terms.principal), charged_on=on)
            for fee in self.terms.fees
        ]

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


def loan_to_dict(loan: Loan) -> Dict[str, Any]:
    """Convert loan to dictionary"""
    def money(value: Money) -> str:
        return str(value.amount)

    def iso(value: Optional[date]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        'id': loan.id,
        'created_at': loan.created_at.isoformat(),
        'updated_at': loan.updated_at.isoformat(),
        'loan_number': loan.loan_number,
        'borrower_id': loan.borrower_id,
        'terms': terms_to_dict(loan.terms),
        'status': loan.status.value,
        'installments': [row.to_dict() for row in loan.installments],
        'fee_charges': [
            {'fee_type': charge.fee_type, 'amount': money(charge.amount),
             'paid': money(charge.paid), 'charged_on': charge.charged_on.isoformat()}
            for charge in loan.fee_charges
        ],
        'total_repayable': money(loan.total_repayable),
        'cumulative_paid': money(loan.cumulative_paid),
        'fees_paid': money(loan.fees_paid),
        'penalties_paid': money(loan.penalties_paid),
        'maturity_penalty_paid': money(loan.maturity_penalty_paid),
        'credit_balance': money(loan.credit_balance),
        'schedule_basis_date': iso(loan.schedule_basis_date),
        'disbursement_date': iso(loan.disbursement_date),
        'maturity_date': iso(loan.maturity_date),
        'restructured_from': loan.restructured_from,
        'repayment_keys': list(loan.repayment_keys),
        'status_history': [
            {'from': change.from_status.value, 'to': change.to_status.value,
             'on': change.changed_on.isoformat(), 'reason': change.reason}
            for change in loan.status_history
        ],
        'custom_fields': loan.custom_fields,
    }


def loan_from_dict(data: Dict[str, Any]) -> Loan:
    """Convert dictionary to loan"""
    terms = terms_from_dict(data['terms'])
    currency = terms.currency

    def money(value: str) -> Money:
        return Money(Decimal(value), currency)

    def get_date(key: str) -> Optional[date]:
        return date.fromisoformat(data[key]) if data.get(key) else None

    return Loan(
        id=data['id'],
        created_at=datetime.fromisoformat(data['created_at']),
        updated_at=datetime.fromisoformat(data['updated_at']),
        loan_number=data['loan_number'],
        borrower_id=data['borrower_id'],
        terms=terms,
        status=LoanStatus(data['status']),
        installments=[Installment.from_dict(row, currency) for row in data['installments']],
        fee_charges=[
            FeeCharge(fee_type=raw['fee_type'], amount=money(raw['amount']), paid=money(raw['paid']),
                      charged_on=date.fromisoformat(raw['charged_on']))
            for raw in data['fee_charges']
        ],
        total_repayable=money(data['total_repayable']),
        cumulative_paid=money(data['cumulative_paid']),
        fees_paid=money(data['fees_paid']),
        penalties_paid=money(data['penalties_paid']),
        maturity_penalty_paid=money(data['maturity_penalty_paid']),
        credit_balance=money(data['credit_balance']),
        schedule_basis_date=get_date('schedule_basis_date'),
        disbursement_date=get_date('disbursement_date'),
        maturity_date=get_date('maturity_date'),
        restructured_from=data.get('restructured_from'),
        repayment_keys=list(data.get('repayment_keys', [])),
        status_history=[
            StatusChange(LoanStatus(raw['from']), LoanStatus(raw['to']),
                         date.fromisoformat(raw['on']), raw.get('reason', ''))
            for raw in data.get('status_history', [])
        ],
        custom_fields=data.get('custom_fields') or {},
    )


class LoanRepository:
    """Loads and saves Loan aggregates through a StorageInterface"""

    def __init__(self, storage: StorageInterface, table: str = "loans"):
        self.storage = storage
        self.table = table

    def save(self, loan: Loan) -> None:
        loan.touch()
        self.storage.save(self.table, loan.id, loan_to_dict(loan))

    def get(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.table, loan_id)
        return loan_from_dict(data) if data else None

    def require(self, loan_id: str) -> Loan:
        """Get a loan or raise LoanNotFoundError"""
        loan = self.get(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def find(self, **filters: Any) -> List[Loan]:
        """Find loans by top-level stored fields, e.g. find(status="open")"""
        return [loan_from_dict(data) for data in self.storage.find(self.table, filters)]

    def find_by_number(self, loan_number: str) -> Optional[Loan]:
        matches = self.find(loan_number=loan_number)
        return matches[0] if matches else None


class LoanLockTable:
    """
    Sharded table of re-entrant locks keyed by loan id.

    Every read-modify-write of a loan happens under lock_for(loan_id); two
    loans that land on different shards never contend.
    """

    def __init__(self, shards: int = 64):
        if shards < 1:
            raise ValueError("Lock table needs at least one shard")
        self._locks = [threading.RLock() for _ in range(shards)]

    def lock_for(self, loan_id: str) -> threading.RLock:
        return self._locks[zlib.crc32(loan_id.encode('utf-8')) % len(self._locks)]

    @property
    def shard_count(self) -> int:
        return len(self._locks)
