"""
Loan Service Module

LoanManager ties the pure pieces together for persisted loans: it loads a loan
under its per-loan lock, runs the schedule, penalty, allocation and state
machine logic, writes the result atomically, and notifies subscribers once the
write has committed.
"""

from dataclasses import replace
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from .allocation import AllocationSplit, RepaymentEvent, apply_repayment as allocate_repayment
from .config import get_config
from .currency import Money
from .errors import InvalidTransitionError, LendingError
from .events import (
    EventDispatcher, EventPayload, get_global_dispatcher, schedule_generated_event,
    payment_applied_event, status_changed_event, loan_restructured_event
)
from .extensions import ExtensionSchema
from .ledger import RepaymentLedger
from .lifecycle import TransitionContext, transition, should_default, should_close, consecutive_missed_cycles
from .loans import Loan, LoanStatus, LoanRepository, LoanLockTable
from .logging_config import get_logger, log_action
from .numbering import LoanNumberGenerator
from .penalties import PenaltySnapshot, compute_penalties
from .schedule import generate_schedule
from .storage import StorageInterface
from .terms import LoanTerms


class LoanManager:
    """
    Manages loans from application through closure
    """

    def __init__(
        self,
        storage: StorageInterface,
        dispatcher: Optional[EventDispatcher] = None,
        default_threshold: Optional[int] = None,
        lock_table: Optional[LoanLockTable] = None,
        number_generator: Optional[LoanNumberGenerator] = None,
        extension_schema: Optional[ExtensionSchema] = None
    ):
        config = get_config()
        self.storage = storage
        self.repository = LoanRepository(storage)
        self.ledger = RepaymentLedger(storage)
        self.dispatcher = dispatcher or get_global_dispatcher()
        self.default_threshold = (default_threshold if default_threshold is not None
                                  else config.default_threshold_cycles)
        self.locks = lock_table or LoanLockTable(config.lock_shards)
        self.numbers = number_generator or LoanNumberGenerator(storage, config.loan_number_format)
        self.extension_schema = extension_schema
        self.logger = get_logger("lending.loans")

    def _publish(self, events: List[EventPayload]) -> None:
        for event in events:
            self.dispatcher.publish(event)

    def _transition(self, loan: Loan, target: LoanStatus, on: date, reason: str,
                    actor: Optional[str], events: List[EventPayload]) -> None:
        previous = loan.status
        transition(loan, target, TransitionContext(occurred_on=on, reason=reason, actor=actor))
        events.append(status_changed_event(loan, previous, target, reason))
        log_action(
            self.logger, "info", f"Loan {loan.loan_number} moved from {previous.value} to {target.value}",
            action="loan.status_changed", resource="loan", loan_id=loan.id,
            extra={"from": previous.value, "to": target.value, "reason": reason, "actor": actor}
        )

    def create_loan(
        self,
        borrower_id: str,
        terms: LoanTerms,
        custom_fields: Optional[Dict[str, Any]] = None,
        loan_number: Optional[str] = None,
        created_on: Optional[date] = None
    ) -> Loan:
        """
        Record a loan application in PROCESSING

        Args:
            borrower_id: Borrower identifier
            terms: Loan terms
            custom_fields: Extension values, validated against the extension schema
            loan_number: Explicit loan number; allocated from the number format when omitted
            created_on: Date used for the loan number (defaults to today)

        Returns:
            Created Loan

        Raises:
            InvalidTermError: terms are malformed
            InvalidExtensionError: custom fields fail validation
        """
        terms.validate()
        if self.extension_schema is not None:
            custom_fields = self.extension_schema.validate(custom_fields)

        loan = Loan.new(
            borrower_id=borrower_id,
            terms=terms,
            loan_number=loan_number or self.numbers.next_number(created_on),
            custom_fields=custom_fields,
        )
        self.repository.save(loan)

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} created",
            action="loan.created", resource="loan", loan_id=loan.id,
            extra={"borrower_id": borrower_id, "principal": terms.principal.to_string(),
                   "interest_method": terms.interest_method.value}
        )
        return loan

    def generate_schedule(self, loan_id: str, disbursement_date: date) -> Loan:
        """
        (Re)build the repayment schedule of a loan that has not been disbursed

        Raises:
            LoanNotFoundError: unknown loan
            InvalidTermError: the terms cannot produce a schedule
            LendingError: the loan is no longer in processing
        """
        with self.locks.lock_for(loan_id):
            loan = self.repository.require(loan_id)
            if loan.status != LoanStatus.PROCESSING:
                raise LendingError(
                    f"Schedule of loan {loan_id} is fixed once the loan is {loan.status.value}"
                )
            loan.install_schedule(generate_schedule(loan.terms, disbursement_date), disbursement_date)
            self.repository.save(loan)

        log_action(
            self.logger, "info", f"Schedule generated for loan {loan.loan_number}",
            action="loan.schedule_generated", resource="loan", loan_id=loan.id,
            extra={"installments": len(loan.installments),
                   "total_repayable": loan.total_repayable.to_string()}
        )
        self._publish([schedule_generated_event(loan)])
        return loan

    def disburse_loan(self, loan_id: str, disbursement_date: date,
                      actor: Optional[str] = None) -> Loan:
        """
        Disburse a loan: fix its schedule, charge its fees and open it

        The schedule is regenerated when it is missing or was built for a
        different disbursement date.

        Raises:
            LoanNotFoundError: unknown loan
            InvalidTransitionError: the loan is not in processing
        """
        events: List[EventPayload] = []
        with self.locks.lock_for(loan_id):
            with self.storage.atomic():
                loan = self.repository.require(loan_id)
                if loan.status != LoanStatus.PROCESSING:
                    raise InvalidTransitionError(loan.status.value, LoanStatus.OPEN.value)

                if not loan.has_schedule or loan.schedule_basis_date != disbursement_date:
                    loan.install_schedule(generate_schedule(loan.terms, disbursement_date), disbursement_date)
                    events.append(schedule_generated_event(loan))

                loan.charge_fees(disbursement_date)
                loan.disbursement_date = disbursement_date
                self._transition(loan, LoanStatus.OPEN, disbursement_date, "disbursed", actor, events)
                self.repository.save(loan)

        self._publish(events)
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """Get a loan or raise LoanNotFoundError"""
        return self.repository.require(loan_id)

    def find_loans(self, **filters: Any) -> List[Loan]:
        return self.repository.find(**filters)

    def preview_penalties(self, loan_id: str, as_of: date) -> PenaltySnapshot:
        """Penalties owed as of a date, without changing the loan"""
        return compute_penalties(self.repository.require(loan_id), as_of)

    def _reassess(self, loan: Loan, as_of: date, events: List[EventPayload]) -> None:
        """Refresh installment statuses and apply the close/default policies"""
        for row in loan.installments:
            row.refresh_status(as_of)

        if should_close(loan):
            self._transition(loan, LoanStatus.CLOSED, as_of, "fully repaid", None, events)
            return

        snapshot = compute_penalties(loan, as_of)
        if should_default(snapshot, loan, self.default_threshold):
            missed = consecutive_missed_cycles(snapshot)
            self._transition(loan, LoanStatus.DEFAULT, as_of,
                             f"{missed} consecutive missed cycles", None, events)

    def evaluate_loan(self, loan_id: str, as_of: date) -> Loan:
        """
        Re-evaluate a loan as of a date: mark overdue installments, close a
        settled loan and default one that has missed too many cycles
        """
        events: List[EventPayload] = []
        with self.locks.lock_for(loan_id):
            with self.storage.atomic():
                loan = self.repository.require(loan_id)
                if loan.is_payable:
                    self._reassess(loan, as_of, events)
                    self.repository.save(loan)

        self._publish(events)
        return loan

    def apply_repayment(
        self,
        loan_id: str,
        amount: Money,
        received_on: date,
        idempotency_key: str,
        split: Optional[AllocationSplit] = None,
        correlation_id: Optional[str] = None,
        **details: Any
    ) -> RepaymentEvent:
        """
        Apply a repayment to a stored loan

        Args:
            loan_id: Loan receiving the money
            amount: Amount tendered
            received_on: Date the money was received
            idempotency_key: Caller token; retrying with the same key is rejected
            split: Optional manual allocation split
            correlation_id: Request id carried into the logs
            **details: payment_method, collector, collection_date, notes

        Returns:
            The appended RepaymentEvent

        Raises:
            LoanNotFoundError: unknown loan
            InvalidAmountError: the amount or split cannot be applied
            DuplicateRepaymentError: the key was already applied to this loan
            LoanNotPayableError: the loan does not accept repayments
        """
        events: List[EventPayload] = []
        with self.locks.lock_for(loan_id):
            # Reads are stable under the loan lock; only the writes share a transaction
            loan = self.repository.require(loan_id)
            repayment = allocate_repayment(
                loan, amount, received_on, idempotency_key, split=split,
                previous_hash=self.ledger.last_hash(loan.id), **details
            )
            events.append(payment_applied_event(loan, repayment))
            self._reassess(loan, received_on, events)
            with self.storage.atomic():
                self.ledger.append(repayment)
                self.repository.save(loan)

        log_action(
            self.logger, "info", f"Repayment of {amount.to_string()} applied to loan {loan.loan_number}",
            action="repayment.applied", resource="loan", loan_id=loan.id,
            correlation_id=correlation_id,
            extra={"repayment_id": repayment.id, "idempotency_key": idempotency_key,
                   "allocation": repayment.allocation.to_dict(),
                   "outstanding_balance": loan.outstanding_balance.to_string()}
        )
        # Subscribers see PaymentApplied before any status change it caused
        self._publish(events)
        return repayment

    def transition_loan(self, loan_id: str, target: LoanStatus, reason: str = "",
                        occurred_on: Optional[date] = None, actor: Optional[str] = None) -> Loan:
        """
        Request an explicit status change

        Opening a loan goes through disbursement and restructuring through
        restructure_loan, since both do more than change the status.

        Raises:
            LoanNotFoundError: unknown loan
            InvalidTransitionError: the move is not allowed from the current status
        """
        occurred_on = occurred_on or date.today()
        if target == LoanStatus.OPEN:
            return self.disburse_loan(loan_id, occurred_on, actor=actor)
        if target == LoanStatus.RESTRUCTURED:
            return self.restructure_loan(loan_id, occurred_on, reason=reason, actor=actor)[0]

        events: List[EventPayload] = []
        with self.locks.lock_for(loan_id):
            with self.storage.atomic():
                loan = self.repository.require(loan_id)
                self._transition(loan, target, occurred_on, reason, actor, events)
                self.repository.save(loan)

        self._publish(events)
        return loan

    def restructure_loan(
        self,
        loan_id: str,
        restructure_date: date,
        new_terms: Optional[LoanTerms] = None,
        reason: str = "",
        actor: Optional[str] = None,
        **term_overrides: Any
    ) -> Tuple[Loan, Loan]:
        """
        Replace an open loan with a new one carrying what the borrower owes today

        The carried amount is the unpaid principal plus the interest, fees and
        penalties already due on the restructure date. Interest scheduled for
        later cycles has not been earned and is not carried.

        Args:
            loan_id: Loan to restructure (must be open)
            restructure_date: Date the new loan is disbursed
            new_terms: Complete terms for the new loan; derived from the old
                terms with the carried amount as principal when omitted
            reason: Recorded in both loans' status history
            actor: Who requested the restructure
            **term_overrides: LoanTerms fields to change on the derived terms,
                e.g. term_cycles=24 or annual_interest_rate=Decimal('0.18')

        Returns:
            (old loan, now restructured; new loan, open with a fresh schedule)
        """
        events: List[EventPayload] = []
        with self.locks.lock_for(loan_id):
            with self.storage.atomic():
                old = self.repository.require(loan_id)
                if old.status != LoanStatus.OPEN:
                    raise InvalidTransitionError(old.status.value, LoanStatus.RESTRUCTURED.value)

                if new_terms is None:
                    new_terms = replace(
                        old.terms,
                        principal=self.carried_balance(old, restructure_date),
                        fees=(),
                        first_repayment_date=None,
                        first_repayment_amount=None,
                        **term_overrides
                    )
                schedule = generate_schedule(new_terms, restructure_date)

                reason = reason or "restructured"
                self._transition(old, LoanStatus.RESTRUCTURED, restructure_date, reason, actor, events)

                new = Loan.new(
                    borrower_id=old.borrower_id,
                    terms=new_terms,
                    loan_number=self.numbers.next_number(restructure_date),
                    custom_fields=old.custom_fields,
                )
                new.restructured_from = old.id
                new.install_schedule(schedule, restructure_date)
                new.charge_fees(restructure_date)
                new.disbursement_date = restructure_date
                events.append(schedule_generated_event(new))
                self._transition(new, LoanStatus.OPEN, restructure_date,
                                 f"restructured from {old.loan_number}", actor, events)

                self.repository.save(old)
                self.repository.save(new)
                events.append(loan_restructured_event(old, new))

        log_action(
            self.logger, "info", f"Loan {old.loan_number} restructured into {new.loan_number}",
            action="loan.restructured", resource="loan", loan_id=old.id,
            extra={"new_loan_id": new.id, "carried_balance": new.terms.principal.to_string()}
        )
        self._publish(events)
        return old, new

    def carried_balance(self, loan: Loan, as_of: date) -> Money:
        """Amount a restructure moves into the replacement loan"""
        return (loan.principal_outstanding + loan.interest_due(as_of)
                + loan.fees_outstanding + compute_penalties(loan, as_of).total)

    def get_repayments(self, loan_id: str) -> List[RepaymentEvent]:
        """Repayment events of a loan in the order they were applied"""
        self.repository.require(loan_id)
        return self.ledger.events_for_loan(loan_id)
