"""
Repayment Ledger Module

Append-only store of RepaymentEvents. Each loan's events form their own
SHA-256 hash chain, so an edited or removed repayment is detectable.
There is no update or delete.
"""

from typing import Any, Dict, List, Optional

from .allocation import RepaymentEvent
from .errors import DuplicateRepaymentError
from .storage import StorageInterface


class RepaymentLedger:
    """
    Hash-chained, append-only repayment ledger
    """

    def __init__(self, storage: StorageInterface, table_name: str = "repayment_events"):
        self.storage = storage
        self.table_name = table_name

    def append(self, event: RepaymentEvent) -> RepaymentEvent:
        """
        Append a sealed repayment event

        Args:
            event: Event created with previous_hash = last_hash(event.loan_id)

        Returns:
            The stored event

        Raises:
            DuplicateRepaymentError: the loan already has an event with this key
            ValueError: the event does not extend the loan's chain or its hash is wrong
        """
        if self.find_by_key(event.loan_id, event.idempotency_key) is not None:
            raise DuplicateRepaymentError(event.loan_id, event.idempotency_key)

        expected_previous = self.last_hash(event.loan_id)
        if event.previous_hash != expected_previous:
            raise ValueError(
                f"Repayment {event.id} does not extend the chain of loan {event.loan_id}"
            )
        if not event.verify_hash():
            raise ValueError(f"Repayment {event.id} has an invalid hash")

        self.storage.save(self.table_name, event.id, event.to_dict())
        return event

    def events_for_loan(self, loan_id: str) -> List[RepaymentEvent]:
        """All repayments for a loan, in the order they were applied"""
        return [RepaymentEvent.from_dict(data)
                for data in self.storage.find(self.table_name, {'loan_id': loan_id})]

    def find_by_key(self, loan_id: str, idempotency_key: str) -> Optional[RepaymentEvent]:
        matches = self.storage.find(
            self.table_name, {'loan_id': loan_id, 'idempotency_key': idempotency_key}
        )
        return RepaymentEvent.from_dict(matches[0]) if matches else None

    def get_event(self, event_id: str) -> Optional[RepaymentEvent]:
        data = self.storage.load(self.table_name, event_id)
        return RepaymentEvent.from_dict(data) if data else None

    def last_hash(self, loan_id: str) -> str:
        """Hash of the loan's latest repayment, or "" before the first one"""
        events = self.storage.find(self.table_name, {'loan_id': loan_id})
        return events[-1]['current_hash'] if events else ""

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def verify_chain(self, loan_id: str) -> Dict[str, Any]:
        """
        Verify the integrity of one loan's repayment chain

        Returns:
            Dictionary with 'valid', 'total_events', 'hash_errors' and 'chain_breaks'
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = self.events_for_loan(loan_id)
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash,
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash,
                })
            previous_hash = event.current_hash

        return result
