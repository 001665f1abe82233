"""
Bulk repayment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Header

from .dependencies import LendingSystem, get_lending_system
from .schemas import ImportRepaymentsRequest


router = APIRouter()


@router.post("/import")
def import_repayments(
    request: ImportRepaymentsRequest,
    x_correlation_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Import repayments from CSV; every row gets its own result"""
    report = system.importer.import_csv(request.csv_data, correlation_id=x_correlation_id)
    return report.to_dict()
