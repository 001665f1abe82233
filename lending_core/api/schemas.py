"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal, InvalidOperation
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..allocation import AllocationSplit, PaymentMethod, RepaymentEvent
from ..config import get_config
from ..currency import Money, Currency
from ..errors import InvalidAmountError, InvalidTermError
from ..loans import Loan
from ..penalties import PenaltySnapshot
from ..schedule import Installment
from ..terms import (
    LoanTerms, InterestMethod, RepaymentCycle, PenaltySpec, PenaltyType, AccrualFrequency, FeeSpec
)


def _decimal(value: str, error: type = InvalidAmountError) -> Decimal:
    try:
        result = Decimal(value)
    except InvalidOperation:
        raise error(f"'{value}' is not a valid decimal")
    if not result.is_finite():
        raise error(f"'{value}' is not a valid decimal")
    return result


def _currency(code: Optional[str]) -> Currency:
    code = (code or get_config().default_currency).upper()
    try:
        return Currency[code]
    except KeyError:
        raise InvalidAmountError(f"Unsupported currency '{code}'")


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: Optional[str] = Field(None, description="Currency code; the configured default when omitted")

    def to_money(self) -> Money:
        return Money(_decimal(self.amount), _currency(self.currency))

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Term schemas
class PenaltySpecModel(BaseModel):
    penalty_type: str = "percentage"
    rate: str = "0"
    frequency: str = "monthly"

    def to_spec(self) -> PenaltySpec:
        return PenaltySpec(
            penalty_type=PenaltyType(self.penalty_type),
            rate=_decimal(self.rate, InvalidTermError),
            frequency=AccrualFrequency(self.frequency),
        )


class FeeSpecModel(BaseModel):
    fee_type: str
    amount: Optional[str] = None
    percentage: Optional[str] = None

    def to_spec(self) -> FeeSpec:
        return FeeSpec(
            fee_type=self.fee_type,
            amount=_decimal(self.amount, InvalidTermError) if self.amount is not None else None,
            percentage=_decimal(self.percentage, InvalidTermError) if self.percentage is not None else None,
        )


class LoanTermsModel(BaseModel):
    principal: MoneyModel
    annual_interest_rate: str  # Decimal fraction as string, "0.24" for 24%
    interest_method: str = "reducing_balance_equal_installments"
    term_cycles: int
    repayment_cycle: str = "monthly"
    grace_period_days: int = 0
    late_penalty: Optional[PenaltySpecModel] = None
    maturity_penalty: Optional[PenaltySpecModel] = None
    fees: List[FeeSpecModel] = Field(default_factory=list)
    first_repayment_date: Optional[date] = None
    first_repayment_amount: Optional[MoneyModel] = None

    def to_loan_terms(self) -> LoanTerms:
        """Build validated LoanTerms; unknown enum values become InvalidTermError"""
        try:
            terms = LoanTerms(
                principal=self.principal.to_money(),
                annual_interest_rate=_decimal(self.annual_interest_rate, InvalidTermError),
                interest_method=InterestMethod(self.interest_method),
                term_cycles=self.term_cycles,
                repayment_cycle=RepaymentCycle(self.repayment_cycle),
                grace_period_days=self.grace_period_days,
                late_penalty=self.late_penalty.to_spec() if self.late_penalty else PenaltySpec(),
                maturity_penalty=self.maturity_penalty.to_spec() if self.maturity_penalty else PenaltySpec(),
                fees=tuple(fee.to_spec() for fee in self.fees),
                first_repayment_date=self.first_repayment_date,
                first_repayment_amount=(self.first_repayment_amount.to_money()
                                        if self.first_repayment_amount else None),
            )
        except InvalidTermError:
            raise
        except ValueError as e:
            raise InvalidTermError(str(e))
        terms.validate()
        return terms


# Loan schemas
class SchedulePreviewRequest(BaseModel):
    terms: LoanTermsModel
    disbursement_date: date


class CreateLoanRequest(BaseModel):
    borrower_id: str
    terms: LoanTermsModel
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    loan_number: Optional[str] = None


class DisburseLoanRequest(BaseModel):
    disbursement_date: date


class EvaluateLoanRequest(BaseModel):
    as_of: date


class TransitionRequest(BaseModel):
    target: str = Field(..., description="Target status (open, default, closed, denied, not_taken_up, restructured)")
    reason: str = ""
    occurred_on: Optional[date] = None
    actor: Optional[str] = None


class RestructureRequest(BaseModel):
    restructure_date: date
    terms: Optional[LoanTermsModel] = None
    term_cycles: Optional[int] = None
    annual_interest_rate: Optional[str] = None
    reason: str = ""
    actor: Optional[str] = None


# Repayment schemas
class AllocationSplitModel(BaseModel):
    fees: str = "0"
    penalty: str = "0"
    interest: str = "0"
    principal: str = "0"

    def to_split(self, currency: Currency) -> AllocationSplit:
        return AllocationSplit(
            fees=Money(_decimal(self.fees), currency),
            penalty=Money(_decimal(self.penalty), currency),
            interest=Money(_decimal(self.interest), currency),
            principal=Money(_decimal(self.principal), currency),
        )


class RepaymentRequest(BaseModel):
    amount: MoneyModel
    received_on: date
    idempotency_key: str = Field(..., min_length=1)
    split: Optional[AllocationSplitModel] = None
    payment_method: Optional[str] = None
    collector: Optional[str] = None
    collection_date: Optional[date] = None
    notes: Optional[str] = None

    def details(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {}
        if self.payment_method:
            try:
                details['payment_method'] = PaymentMethod(self.payment_method)
            except ValueError:
                raise InvalidAmountError(f"Unknown payment method '{self.payment_method}'")
        for name in ('collector', 'collection_date', 'notes'):
            if getattr(self, name) is not None:
                details[name] = getattr(self, name)
        return details


class ImportRepaymentsRequest(BaseModel):
    csv_data: str = Field(..., description="CSV content including the header row")


# Response builders
def installment_response(row: Installment) -> Dict[str, Any]:
    return {
        "sequence": row.sequence,
        "due_date": row.due_date.isoformat(),
        "principal_due": str(row.principal_due.amount),
        "interest_due": str(row.interest_due.amount),
        "total_due": str(row.total_due.amount),
        "amount_paid": str(row.amount_paid.amount),
        "remaining": str(row.remaining.amount),
        "penalty_paid": str(row.penalty_paid.amount),
        "status": row.status.value,
        "paid_date": row.paid_date.isoformat() if row.paid_date else None,
    }


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "loan_number": loan.loan_number,
        "borrower_id": loan.borrower_id,
        "status": loan.status.value,
        "currency": loan.currency.code,
        "principal": MoneyModel.from_money(loan.terms.principal).model_dump(),
        "annual_interest_rate": str(loan.terms.annual_interest_rate),
        "interest_method": loan.terms.interest_method.value,
        "repayment_cycle": loan.terms.repayment_cycle.value,
        "term_cycles": loan.terms.term_cycles,
        "total_repayable": str(loan.total_repayable.amount),
        "cumulative_paid": str(loan.cumulative_paid.amount),
        "outstanding_balance": str(loan.outstanding_balance.amount),
        "fees_outstanding": str(loan.fees_outstanding.amount),
        "fees_paid": str(loan.fees_paid.amount),
        "penalties_paid": str(loan.penalties_paid.amount),
        "credit_balance": str(loan.credit_balance.amount),
        "disbursement_date": loan.disbursement_date.isoformat() if loan.disbursement_date else None,
        "maturity_date": loan.maturity_date.isoformat() if loan.maturity_date else None,
        "restructured_from": loan.restructured_from,
        "custom_fields": loan.custom_fields,
        "installments": [installment_response(row) for row in loan.installments],
        "status_history": [
            {"from": change.from_status.value, "to": change.to_status.value,
             "on": change.changed_on.isoformat(), "reason": change.reason}
            for change in loan.status_history
        ],
    }


def penalty_response(snapshot: PenaltySnapshot) -> Dict[str, Any]:
    return {
        "loan_id": snapshot.loan_id,
        "as_of": snapshot.as_of.isoformat(),
        "currency": snapshot.currency.code,
        "late_penalties": {str(seq): str(owed.amount) for seq, owed in sorted(snapshot.late_penalties.items())},
        "maturity_penalty": str(snapshot.maturity_penalty.amount),
        "total": str(snapshot.total.amount),
        "penalty_eligible": list(snapshot.penalty_eligible),
    }


def repayment_response(event: RepaymentEvent) -> Dict[str, Any]:
    return event.to_dict()
