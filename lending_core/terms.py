"""
Loan Terms Module

Immutable loan terms captured at disbursement: principal, rate, interest
method, repayment cycle, grace period, penalty and fee configuration.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .currency import Money, Currency, to_decimal
from .errors import InvalidTermError


class InterestMethod(Enum):
    """How interest is computed across the schedule"""
    FLAT = "flat"
    REDUCING_BALANCE_EQUAL_INSTALLMENTS = "reducing_balance_equal_installments"
    REDUCING_BALANCE_EQUAL_PRINCIPAL = "reducing_balance_equal_principal"
    INTEREST_ONLY = "interest_only"
    COMPOUND = "compound"


class RepaymentCycle(Enum):
    """Repayment cycle options"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"

    @property
    def cycles_per_year(self) -> int:
        return CYCLES_PER_YEAR[self]


CYCLES_PER_YEAR = {
    RepaymentCycle.DAILY: 365,
    RepaymentCycle.WEEKLY: 52,
    RepaymentCycle.BIWEEKLY: 26,
    RepaymentCycle.MONTHLY: 12,
    RepaymentCycle.QUARTERLY: 4,
    RepaymentCycle.ANNUALLY: 1,
}


class PenaltyType(Enum):
    FIXED = "fixed"            # rate is a currency amount
    PERCENTAGE = "percentage"  # rate is a fraction of the base amount


class AccrualFrequency(Enum):
    """How often a late penalty is charged again while the installment stays late"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class PenaltySpec:
    """Late or maturity penalty configuration"""
    penalty_type: PenaltyType = PenaltyType.PERCENTAGE
    rate: Decimal = Decimal('0')
    frequency: AccrualFrequency = AccrualFrequency.MONTHLY  # ignored for maturity penalties

    def __post_init__(self):
        object.__setattr__(self, 'rate', to_decimal(self.rate))

    @property
    def is_active(self) -> bool:
        return self.rate > 0


@dataclass(frozen=True)
class FeeSpec:
    """A loan fee: either a fixed amount or a percentage of the principal"""
    fee_type: str
    amount: Optional[Decimal] = None
    percentage: Optional[Decimal] = None

    def __post_init__(self):
        if self.amount is not None:
            object.__setattr__(self, 'amount', to_decimal(self.amount))
        if self.percentage is not None:
            object.__setattr__(self, 'percentage', to_decimal(self.percentage))

    def charge_for(self, principal: Money) -> Money:
        """Fee amount owed for a loan of the given principal"""
        if self.amount is not None:
            return Money(self.amount, principal.currency).quantize()
        return (principal * self.percentage).quantize()


@dataclass(frozen=True)
class LoanTerms:
    """Loan terms and conditions"""
    principal: Money
    annual_interest_rate: Decimal       # e.g. Decimal('0.24') for 24%
    interest_method: InterestMethod
    term_cycles: int                    # number of installments
    repayment_cycle: RepaymentCycle
    grace_period_days: int = 0
    late_penalty: PenaltySpec = field(default_factory=PenaltySpec)
    maturity_penalty: PenaltySpec = field(default_factory=PenaltySpec)
    fees: Tuple[FeeSpec, ...] = ()
    first_repayment_date: Optional[date] = None
    first_repayment_amount: Optional[Money] = None

    def __post_init__(self):
        object.__setattr__(self, 'annual_interest_rate', to_decimal(self.annual_interest_rate))
        object.__setattr__(self, 'fees', tuple(self.fees))

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def periodic_rate(self) -> Decimal:
        """Annual rate normalized to one repayment cycle"""
        return self.annual_interest_rate / Decimal(self.repayment_cycle.cycles_per_year)

    def validate(self) -> None:
        """
        Reject terms that cannot produce a schedule

        Raises:
            InvalidTermError: describing the first problem found
        """
        if not isinstance(self.term_cycles, int) or self.term_cycles < 1:
            raise InvalidTermError(f"Term must be at least one cycle, got {self.term_cycles}")
        if not self.principal.is_positive():
            raise InvalidTermError("Principal must be positive")
        if not self.principal.is_quantized():
            raise InvalidTermError(
                f"Principal {self.principal.amount} is finer than {self.currency.code} precision"
            )
        if self.annual_interest_rate < 0:
            raise InvalidTermError("Interest rate cannot be negative")
        if self.grace_period_days < 0:
            raise InvalidTermError("Grace period cannot be negative")
        for spec in (self.late_penalty, self.maturity_penalty):
            if spec.rate < 0:
                raise InvalidTermError("Penalty rate cannot be negative")
        for fee in self.fees:
            if (fee.amount is None) == (fee.percentage is None):
                raise InvalidTermError(f"Fee '{fee.fee_type}' needs exactly one of amount or percentage")
            value = fee.amount if fee.amount is not None else fee.percentage
            if value < 0:
                raise InvalidTermError(f"Fee '{fee.fee_type}' cannot be negative")
        if self.first_repayment_amount is not None:
            if self.first_repayment_amount.currency != self.currency:
                raise InvalidTermError("First repayment amount currency must match principal currency")
            if not self.first_repayment_amount.is_positive():
                raise InvalidTermError("First repayment amount must be positive")


def terms_to_dict(terms: LoanTerms) -> Dict[str, Any]:
    """Serialize terms for storage"""
    def penalty(spec: PenaltySpec) -> Dict[str, str]:
        return {'type': spec.penalty_type.value, 'rate': str(spec.rate), 'frequency': spec.frequency.value}

    first_amount = terms.first_repayment_amount
    return {
        'principal': str(terms.principal.amount),
        'currency': terms.currency.code,
        'annual_interest_rate': str(terms.annual_interest_rate),
        'interest_method': terms.interest_method.value,
        'term_cycles': terms.term_cycles,
        'repayment_cycle': terms.repayment_cycle.value,
        'grace_period_days': terms.grace_period_days,
        'late_penalty': penalty(terms.late_penalty),
        'maturity_penalty': penalty(terms.maturity_penalty),
        'fees': [
            {'fee_type': fee.fee_type,
             'amount': str(fee.amount) if fee.amount is not None else None,
             'percentage': str(fee.percentage) if fee.percentage is not None else None}
            for fee in terms.fees
        ],
        'first_repayment_date': terms.first_repayment_date.isoformat() if terms.first_repayment_date else None,
        'first_repayment_amount': str(first_amount.amount) if first_amount is not None else None,
    }


def terms_from_dict(data: Dict[str, Any]) -> LoanTerms:
    """Rebuild terms from their stored form"""
    currency = Currency[data['currency']]

    def penalty(raw: Dict[str, str]) -> PenaltySpec:
        return PenaltySpec(
            penalty_type=PenaltyType(raw['type']),
            rate=Decimal(raw['rate']),
            frequency=AccrualFrequency(raw['frequency']),
        )

    def optional_decimal(value: Optional[str]) -> Optional[Decimal]:
        return Decimal(value) if value is not None else None

    first_amount = data.get('first_repayment_amount')
    first_date = data.get('first_repayment_date')
    return LoanTerms(
        principal=Money(Decimal(data['principal']), currency),
        annual_interest_rate=Decimal(data['annual_interest_rate']),
        interest_method=InterestMethod(data['interest_method']),
        term_cycles=data['term_cycles'],
        repayment_cycle=RepaymentCycle(data['repayment_cycle']),
        grace_period_days=data['grace_period_days'],
        late_penalty=penalty(data['late_penalty']),
        maturity_penalty=penalty(data['maturity_penalty']),
        fees=tuple(
            FeeSpec(fee_type=fee['fee_type'],
                    amount=optional_decimal(fee.get('amount')),
                    percentage=optional_decimal(fee.get('percentage')))
            for fee in data.get('fees', [])
        ),
        first_repayment_date=date.fromisoformat(first_date) if first_date else None,
        first_repayment_amount=Money(Decimal(first_amount), currency) if first_amount is not None else None,
    )
