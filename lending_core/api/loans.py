"""
Loan endpoints
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from .dependencies import LendingSystem, get_lending_system
from .schemas import (
    CreateLoanRequest, DisburseLoanRequest, EvaluateLoanRequest, RepaymentRequest,
    RestructureRequest, TransitionRequest, loan_response, penalty_response, repayment_response
)
from ..errors import InvalidTermError
from ..loans import LoanStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a loan application"""
    loan = system.loan_manager.create_loan(
        borrower_id=request.borrower_id,
        terms=request.terms.to_loan_terms(),
        custom_fields=request.custom_fields,
        loan_number=request.loan_number,
    )
    return loan_response(loan)


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details with its schedule"""
    return loan_response(system.loan_manager.get_loan(loan_id))


@router.post("/{loan_id}/disburse")
def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse a loan and open it"""
    loan = system.loan_manager.disburse_loan(loan_id, request.disbursement_date)
    return loan_response(loan)


@router.get("/{loan_id}/penalties")
def get_penalties(
    loan_id: str,
    as_of: Optional[date] = Query(None, description="Evaluation date, today when omitted"),
    system: LendingSystem = Depends(get_lending_system)
):
    """Preview penalties owed as of a date"""
    snapshot = system.loan_manager.preview_penalties(loan_id, as_of or date.today())
    return penalty_response(snapshot)


@router.post("/{loan_id}/evaluate")
def evaluate_loan(
    loan_id: str,
    request: EvaluateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Re-evaluate installment statuses and the default/close policies"""
    return loan_response(system.loan_manager.evaluate_loan(loan_id, request.as_of))


@router.post("/{loan_id}/repayments", status_code=status.HTTP_201_CREATED)
def apply_repayment(
    loan_id: str,
    request: RepaymentRequest,
    x_correlation_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Apply a repayment"""
    manager = system.loan_manager
    amount = request.amount.to_money()
    split = request.split.to_split(amount.currency) if request.split else None
    repayment = manager.apply_repayment(
        loan_id,
        amount,
        request.received_on,
        request.idempotency_key,
        split=split,
        correlation_id=x_correlation_id,
        **request.details()
    )
    loan = manager.get_loan(loan_id)
    return {
        "repayment": repayment_response(repayment),
        "loan": {
            "status": loan.status.value,
            "outstanding_balance": str(loan.outstanding_balance.amount),
            "credit_balance": str(loan.credit_balance.amount),
        },
    }


@router.get("/{loan_id}/repayments")
def get_repayments(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List a loan's repayments in application order"""
    repayments = system.loan_manager.get_repayments(loan_id)
    return {"repayments": [repayment_response(event) for event in repayments]}


@router.post("/{loan_id}/transitions")
def transition_loan(
    loan_id: str,
    request: TransitionRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Request an explicit status change"""
    try:
        target = LoanStatus(request.target)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown loan status '{request.target}'")
    loan = system.loan_manager.transition_loan(
        loan_id, target, reason=request.reason, occurred_on=request.occurred_on, actor=request.actor
    )
    return loan_response(loan)


@router.post("/{loan_id}/restructure")
def restructure_loan(
    loan_id: str,
    request: RestructureRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Replace an open loan with a new one carrying its outstanding balance"""
    overrides: Dict[str, Any] = {}
    if request.terms is None:
        if request.term_cycles is not None:
            overrides['term_cycles'] = request.term_cycles
        if request.annual_interest_rate is not None:
            try:
                overrides['annual_interest_rate'] = Decimal(request.annual_interest_rate)
            except ArithmeticError:
                raise InvalidTermError(f"'{request.annual_interest_rate}' is not a valid rate")

    old, new = system.loan_manager.restructure_loan(
        loan_id,
        request.restructure_date,
        new_terms=request.terms.to_loan_terms() if request.terms else None,
        reason=request.reason,
        actor=request.actor,
        **overrides
    )
    return {"restructured": loan_response(old), "loan": loan_response(new)}
