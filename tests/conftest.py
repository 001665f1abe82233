"""
Shared fixtures for the lending core test suite
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.currency import Money, Currency
from lending_core.events import EventDispatcher, RecordingSubscriber
from lending_core.loans import Loan, LoanStatus
from lending_core.manager import LoanManager
from lending_core.schedule import generate_schedule
from lending_core.storage import InMemoryStorage
from lending_core.terms import LoanTerms, InterestMethod, RepaymentCycle


def usd(value: str) -> Money:
    return Money(Decimal(value), Currency.USD)


def build_terms(principal="1200.00", rate="0.12", method=InterestMethod.REDUCING_BALANCE_EQUAL_PRINCIPAL,
                cycles=3, cycle=RepaymentCycle.MONTHLY, **kwargs) -> LoanTerms:
    return LoanTerms(
        principal=usd(principal),
        annual_interest_rate=Decimal(rate),
        interest_method=method,
        term_cycles=cycles,
        repayment_cycle=cycle,
        **kwargs
    )


@pytest.fixture
def make_terms():
    """Factory for USD terms; defaults to 1,200 at 12% over 3 monthly equal-principal cycles"""
    return build_terms


@pytest.fixture
def make_loan():
    """Factory for an in-memory loan that is already disbursed and open"""
    def factory(disbursed=date(2024, 1, 1), status=LoanStatus.OPEN, **term_kwargs) -> Loan:
        terms = build_terms(**term_kwargs)
        loan = Loan.new(borrower_id="borrower-1", terms=terms)
        loan.install_schedule(generate_schedule(terms, disbursed), disbursed)
        loan.charge_fees(disbursed)
        loan.disbursement_date = disbursed
        loan.status = status
        return loan
    return factory


@pytest.fixture
def recorder():
    return RecordingSubscriber()


@pytest.fixture
def dispatcher(recorder):
    dispatcher = EventDispatcher()
    dispatcher.subscribe_all(recorder)
    return dispatcher


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def manager(storage, dispatcher):
    return LoanManager(storage, dispatcher=dispatcher, default_threshold=2)
