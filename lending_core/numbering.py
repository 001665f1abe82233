"""
Loan Number Generation

Human-readable loan numbers from a configurable format such as
"LN-{YYYY}-{MM}-{####}". Date tokens are filled from the creation date and the
hash token is a zero-padded counter. The counter restarts whenever the date
part of the number changes, so a format with {MM} numbers loans per month.
"""

import re
import threading
from datetime import date
from typing import Optional

from .storage import StorageInterface


_COUNTER = re.compile(r'\{(#+)\}')


class LoanNumberGenerator:
    """Allocates sequential loan numbers, persisting counters in storage"""

    def __init__(self, storage: StorageInterface, number_format: str = "LN-{YYYY}-{MM}-{####}",
                 table_name: str = "loan_number_sequences"):
        counters = _COUNTER.findall(number_format)
        if len(counters) != 1:
            raise ValueError(f"Loan number format needs exactly one {{#...}} counter: {number_format}")
        self.storage = storage
        self.number_format = number_format
        self.table_name = table_name
        self._width = len(counters[0])
        self._lock = threading.Lock()

    def _scope(self, on: date) -> str:
        """The format with date tokens filled in; counters are kept per scope"""
        return (self.number_format
                .replace("{YYYY}", f"{on.year:04d}")
                .replace("{YY}", f"{on.year % 100:02d}")
                .replace("{MM}", f"{on.month:02d}")
                .replace("{DD}", f"{on.day:02d}"))

    def peek(self, on: Optional[date] = None) -> int:
        """Last counter value issued in the scope of on (0 if none)"""
        record = self.storage.load(self.table_name, self._scope(on or date.today()))
        return record['value'] if record else 0

    def next_number(self, on: Optional[date] = None) -> str:
        """
        Allocate the next loan number

        Args:
            on: Date the loan is created (defaults to today)

        Returns:
            Formatted loan number, e.g. "LN-2024-01-0001"
        """
        scope = self._scope(on or date.today())
        # Lock order: storage transaction first, then the counter lock
        with self.storage.atomic(), self._lock:
            record = self.storage.load(self.table_name, scope)
            value = (record['value'] if record else 0) + 1
            self.storage.save(self.table_name, scope, {'scope': scope, 'value': value})
        return _COUNTER.sub(f"{value:0{self._width}d}", scope)
