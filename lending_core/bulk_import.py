"""
Bulk Repayment Import

Imports repayments from CSV. Each row is an independent repayment: a bad row
is reported and skipped, and never undoes the rows applied before it. Rows
without a reference get a deterministic idempotency key, so re-uploading the
same file does not apply anything twice.
"""

import csv
import hashlib
import io
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, IO, List, Optional, Union

from .allocation import AllocationSplit, PaymentMethod
from .currency import Money, decimal_from_string
from .errors import DuplicateRepaymentError
from .logging_config import get_logger, log_action
from .manager import LoanManager


REQUIRED_COLUMNS = ("loan_id", "amount", "payment_date")
SPLIT_COLUMNS = {
    "fees": "fees_amount",
    "penalty": "penalty_amount",
    "interest": "interest_amount",
    "principal": "principal_amount",
}


@dataclass
class ImportRowResult:
    row_number: int             # 1-based data row, header excluded
    loan_id: str
    status: str                 # "applied", "duplicate" or "failed"
    idempotency_key: Optional[str] = None
    repayment_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'row_number': self.row_number,
            'loan_id': self.loan_id,
            'status': self.status,
            'idempotency_key': self.idempotency_key,
            'repayment_id': self.repayment_id,
            'error': self.error,
        }


@dataclass
class ImportReport:
    results: List[ImportRowResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def applied(self) -> int:
        return self._count("applied")

    @property
    def duplicates(self) -> int:
        return self._count("duplicate")

    @property
    def failed(self) -> int:
        return self._count("failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': len(self.results),
            'applied': self.applied,
            'duplicates': self.duplicates,
            'failed': self.failed,
            'results': [result.to_dict() for result in self.results],
        }


def _cell(row: Dict[str, Optional[str]], column: str) -> str:
    return (row.get(column) or "").strip()


def _parse_date(value: str, column: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"{column} must be a YYYY-MM-DD date, got '{value}'")


def derive_key(row_number: int, row: Dict[str, Optional[str]]) -> str:
    """Idempotency key from the row's content and position"""
    columns = sorted(column for column in row if column)
    content = "|".join([str(row_number)] + [_cell(row, column) for column in columns])
    return "import-" + hashlib.sha256(content.encode('utf-8')).hexdigest()[:32]


class RepaymentImporter:
    """Applies CSV repayment rows through a LoanManager"""

    def __init__(self, manager: LoanManager):
        self.manager = manager
        self.logger = get_logger("lending.import")

    def _parse_row(self, row_number: int, row: Dict[str, Optional[str]]) -> Dict[str, Any]:
        loan_id = _cell(row, "loan_id")
        if not loan_id:
            raise ValueError("loan_id is required")
        loan = self.manager.get_loan(loan_id)
        currency = loan.currency

        raw_amount = _cell(row, "amount")
        if not raw_amount:
            raise ValueError("amount is required")
        amount = Money(decimal_from_string(raw_amount), currency)

        split = None
        parts = {name: _cell(row, column) for name, column in SPLIT_COLUMNS.items()}
        if any(parts.values()):
            split = AllocationSplit(**{
                name: Money(decimal_from_string(value or "0"), currency) for name, value in parts.items()
            })

        details: Dict[str, Any] = {}
        method = _cell(row, "payment_method")
        if method:
            try:
                details['payment_method'] = PaymentMethod(method.lower())
            except ValueError:
                raise ValueError(f"Unknown payment method '{method}'")
        collection_date = _cell(row, "collection_date")
        if collection_date:
            details['collection_date'] = _parse_date(collection_date, "collection_date")
        for column in ("collector", "notes"):
            if _cell(row, column):
                details[column] = _cell(row, column)

        return {
            'loan_id': loan_id,
            'amount': amount,
            'received_on': _parse_date(_cell(row, "payment_date"), "payment_date"),
            'idempotency_key': _cell(row, "reference") or derive_key(row_number, row),
            'split': split,
            **details
        }

    def import_csv(self, source: Union[str, IO[str]], correlation_id: Optional[str] = None) -> ImportReport:
        """
        Import repayments from CSV text or an open text file

        Args:
            source: CSV content with a header row
            correlation_id: Request id carried into the logs

        Returns:
            ImportReport with one result per data row

        Raises:
            ValueError: the header lacks a required column (nothing is applied)
        """
        stream = io.StringIO(source) if isinstance(source, str) else source
        reader = csv.DictReader(stream)
        header = [name.strip() for name in (reader.fieldnames or [])]
        missing = [column for column in REQUIRED_COLUMNS if column not in header]
        if missing:
            raise ValueError(f"CSV is missing required columns: {', '.join(missing)}")
        reader.fieldnames = header

        report = ImportReport()
        for row_number, row in enumerate(reader, start=1):
            result = ImportRowResult(row_number=row_number, loan_id=_cell(row, "loan_id"), status="failed")
            try:
                request = self._parse_row(row_number, row)
                result.idempotency_key = request['idempotency_key']
                repayment = self.manager.apply_repayment(correlation_id=correlation_id, **request)
                result.status = "applied"
                result.repayment_id = repayment.id
            except DuplicateRepaymentError as error:
                result.status = "duplicate"
                result.error = str(error)
            except ValueError as error:
                # LendingError included; the row is reported and the import continues
                result.error = str(error)
            report.results.append(result)

        log_action(
            self.logger, "info" if not report.failed else "warning",
            f"Imported {report.applied} of {len(report.results)} repayment rows",
            action="repayment.imported", resource="repayment", correlation_id=correlation_id,
            extra={"applied": report.applied, "duplicates": report.duplicates, "failed": report.failed}
        )
        return report
