"""
Schedule preview endpoint
"""

from fastapi import APIRouter

from .schemas import SchedulePreviewRequest, installment_response
from ..schedule import generate_schedule, total_interest, total_repayable


router = APIRouter()


@router.post("/preview")
def preview_schedule(request: SchedulePreviewRequest):
    """Generate a schedule for terms without creating a loan"""
    terms = request.terms.to_loan_terms()
    installments = generate_schedule(terms, request.disbursement_date)
    return {
        "currency": terms.currency.code,
        "principal": str(terms.principal.amount),
        "total_interest": str(total_interest(installments, terms.currency).amount),
        "total_repayable": str(total_repayable(installments, terms.currency).amount),
        "maturity_date": installments[-1].due_date.isoformat(),
        "installments": [installment_response(row) for row in installments],
    }
