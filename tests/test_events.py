"""
Tests for the Event System (Observer Pattern)

Tests the dispatcher and the domain event builders for the loan lifecycle.
"""

import pytest
from datetime import datetime, date
from decimal import Decimal
from unittest.mock import Mock

from lending_core.allocation import apply_repayment
from lending_core.currency import Money, Currency
from lending_core.events import (
    DomainEvent, EventPayload, EventDispatcher, RecordingSubscriber,
    get_global_dispatcher, set_global_dispatcher,
    schedule_generated_event, payment_applied_event, status_changed_event
)
from lending_core.loans import LoanStatus


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        """Test creating event payloads"""
        event = EventPayload(
            event_type=DomainEvent.PAYMENT_APPLIED,
            entity_type="loan",
            entity_id="loan-123",
            data={"amount": "100.00", "currency": "USD"}
        )

        assert event.event_type == DomainEvent.PAYMENT_APPLIED
        assert event.entity_id == "loan-123"
        assert event.data["amount"] == "100.00"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        """Test event payload to/from dict"""
        original = EventPayload(
            event_type=DomainEvent.STATUS_CHANGED,
            entity_type="loan",
            entity_id="loan-456",
            data={"from": "open", "to": "closed"}
        )

        event_dict = original.to_dict()
        assert event_dict['event_type'] == "loan.status_changed"

        restored = EventPayload.from_dict(event_dict)
        assert restored.event_type == original.event_type
        assert restored.entity_id == original.entity_id
        assert restored.data == original.data
        assert restored.timestamp == original.timestamp
        assert restored.event_id == original.event_id


class TestEventDispatcher:
    """Test the publish/subscribe dispatcher"""

    def make_event(self, event_type=DomainEvent.PAYMENT_APPLIED):
        return EventPayload(event_type=event_type, entity_type="loan", entity_id="loan-1", data={})

    def test_subscribe_and_publish(self):
        """Test handlers only receive their event type"""
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, handler)

        payment = self.make_event()
        dispatcher.publish(payment)
        dispatcher.publish(self.make_event(DomainEvent.STATUS_CHANGED))

        handler.assert_called_once_with(payment)

    def test_global_handler_receives_all_events(self):
        """Test subscribe_all sees every event in publish order"""
        dispatcher = EventDispatcher()
        recorder = RecordingSubscriber()
        dispatcher.subscribe_all(recorder)

        for event_type in DomainEvent:
            dispatcher.publish(self.make_event(event_type))

        assert [event.event_type for event in recorder.events] == list(DomainEvent)
        assert len(recorder.of_type(DomainEvent.STATUS_CHANGED)) == 1

    def test_unsubscribe(self):
        """Test unsubscribed handlers stop receiving events"""
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, handler)
        dispatcher.unsubscribe(DomainEvent.PAYMENT_APPLIED, handler)
        dispatcher.unsubscribe(DomainEvent.PAYMENT_APPLIED, handler)

        dispatcher.publish(self.make_event())
        handler.assert_not_called()

    def test_handler_exceptions_dont_break_publisher(self):
        """Test a failing subscriber does not stop delivery to the others"""
        dispatcher = EventDispatcher()
        failing = Mock(side_effect=RuntimeError("subscriber down"))
        healthy = Mock()
        dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, failing)
        dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, healthy)

        dispatcher.publish(self.make_event())

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_handler_counts_and_clear(self):
        """Test handler bookkeeping"""
        dispatcher = EventDispatcher()
        dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, Mock())
        dispatcher.subscribe(DomainEvent.STATUS_CHANGED, Mock())
        dispatcher.subscribe_all(Mock())

        assert dispatcher.get_handler_count(DomainEvent.PAYMENT_APPLIED) == 1
        assert dispatcher.get_handler_count() == 3

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0

    def test_global_dispatcher(self):
        """Test the process-wide dispatcher can be replaced"""
        original = get_global_dispatcher()
        assert get_global_dispatcher() is original

        custom = EventDispatcher()
        set_global_dispatcher(custom)
        try:
            assert get_global_dispatcher() is custom
        finally:
            set_global_dispatcher(original)


class TestDomainEventBuilders:
    """Test the loan lifecycle event payloads"""

    def test_schedule_generated(self, make_loan):
        """Test the schedule event summarizes the installments"""
        loan = make_loan()
        event = schedule_generated_event(loan)

        assert event.event_type == DomainEvent.SCHEDULE_GENERATED
        assert event.entity_id == loan.id
        assert event.data["installment_count"] == 3
        assert event.data["total_repayable"] == "1224.00"
        assert event.data["first_due_date"] == "2024-02-01"
        assert event.data["maturity_date"] == "2024-04-01"

    def test_payment_applied_carries_repayment(self, make_loan):
        """Test the payment event embeds the full repayment record"""
        loan = make_loan()
        repayment = apply_repayment(loan, Money(Decimal('100.00'), Currency.USD), date(2024, 1, 15), "key-1")
        event = payment_applied_event(loan, repayment)

        assert event.data["repayment"] == repayment.to_dict()
        assert event.data["outstanding_balance"] == "1124.00"

    def test_status_changed(self, make_loan):
        """Test the status event names both ends of the move"""
        loan = make_loan()
        event = status_changed_event(loan, LoanStatus.OPEN, LoanStatus.DEFAULT, "3 consecutive missed cycles")

        assert event.data["from"] == "open"
        assert event.data["to"] == "default"
        assert event.data["reason"] == "3 consecutive missed cycles"
