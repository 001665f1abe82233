"""
Event System Module

Publish/subscribe dispatcher through which the lending core notifies its
collaborators (reporting, accounting, notifications). Delivery is
fire-and-forget from the core's side: a failing subscriber is logged and
never interrupts the operation that published the event.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Events emitted by the loan lifecycle"""
    SCHEDULE_GENERATED = "loan.schedule_generated"
    PAYMENT_APPLIED = "loan.payment_applied"
    STATUS_CHANGED = "loan.status_changed"
    LOAN_RESTRUCTURED = "loan.restructured"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        timestamp = data['timestamp']
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else timestamp,
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("lending.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Subscribers own their delivery guarantees
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}"
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(handlers) for handlers in self._handlers.values()) + len(self._global_handlers)


class RecordingSubscriber:
    """Collects every published event in order; handy for collaborators and tests"""

    def __init__(self):
        self.events: List[EventPayload] = []

    def __call__(self, event: EventPayload) -> None:
        self.events.append(event)

    def of_type(self, event_type: DomainEvent) -> List[EventPayload]:
        return [event for event in self.events if event.event_type == event_type]


# Global event dispatcher instance
_global_dispatcher: Optional[EventDispatcher] = None


def get_global_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher instance"""
    global _global_dispatcher
    if _global_dispatcher is None:
        _global_dispatcher = EventDispatcher()
    return _global_dispatcher


def set_global_dispatcher(dispatcher: EventDispatcher) -> None:
    """Set a custom global event dispatcher"""
    global _global_dispatcher
    _global_dispatcher = dispatcher


def schedule_generated_event(loan) -> EventPayload:
    """ScheduleGenerated: the loan's installments were (re)built"""
    return EventPayload(
        event_type=DomainEvent.SCHEDULE_GENERATED,
        entity_type="loan",
        entity_id=loan.id,
        data={
            "loan_number": loan.loan_number,
            "installment_count": len(loan.installments),
            "total_repayable": str(loan.total_repayable.amount),
            "currency": loan.currency.code,
            "first_due_date": loan.installments[0].due_date.isoformat() if loan.installments else None,
            "maturity_date": loan.maturity_date.isoformat() if loan.maturity_date else None,
        }
    )


def payment_applied_event(loan, repayment) -> EventPayload:
    """PaymentApplied{event}: carries the full immutable repayment record"""
    return EventPayload(
        event_type=DomainEvent.PAYMENT_APPLIED,
        entity_type="loan",
        entity_id=loan.id,
        data={
            "repayment": repayment.to_dict(),
            "outstanding_balance": str(loan.outstanding_balance.amount),
            "cumulative_paid": str(loan.cumulative_paid.amount),
        }
    )


def status_changed_event(loan, from_status, to_status, reason: str = "") -> EventPayload:
    """StatusChanged{from, to}"""
    return EventPayload(
        event_type=DomainEvent.STATUS_CHANGED,
        entity_type="loan",
        entity_id=loan.id,
        data={
            "from": from_status.value,
            "to": to_status.value,
            "reason": reason,
            "loan_number": loan.loan_number,
        }
    )


def loan_restructured_event(old_loan, new_loan) -> EventPayload:
    return EventPayload(
        event_type=DomainEvent.LOAN_RESTRUCTURED,
        entity_type="loan",
        entity_id=old_loan.id,
        data={
            "new_loan_id": new_loan.id,
            "new_loan_number": new_loan.loan_number,
            "carried_balance": str(new_loan.terms.principal.amount),
        }
    )
