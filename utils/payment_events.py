"""
Payment Lifecycle Events
Structured events emitted by the order manager, callback processor and ledger.
Persisting them is left to subscribers (audit store, metrics, notifications).
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class PaymentEventType(Enum):
    """Lifecycle events observable from outside the payment core"""

    ORDER_CREATED = "order_created"
    ORDER_PENDING = "order_pending"
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_FAILED = "order_failed"
    ORDER_CANCELLED = "order_cancelled"

    LEDGER_APPLIED = "ledger_applied"

    CALLBACK_DUPLICATE = "callback_duplicate"
    CALLBACK_REJECTED = "callback_rejected"


@dataclass
class FinancialContext:
    """Money-related fields attached to an event"""
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    balance_before: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for key, value in self.__dict__.items():
            if value is not None:
                result[key] = str(value) if isinstance(value, Decimal) else value
        return result


@dataclass
class PaymentEvent:
    event_type: PaymentEventType
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    payment_method: Optional[str] = None
    status: Optional[str] = None
    financial_context: Optional[FinancialContext] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "payment_method": self.payment_method,
            "status": self.status,
            "financial_context": self.financial_context.to_dict() if self.financial_context else None,
            "metadata": self.metadata,
            "occurred_at": self.occurred_at.isoformat(),
        }


EventHandler = Callable[[PaymentEvent], None]


class PaymentEventEmitter:
    """
    Synchronous fan-out of payment events to subscribers

    A failing subscriber is logged and skipped; it never aborts the payment
    operation that emitted the event, which has already committed.
    """

    def __init__(self):
        self._handlers: List[EventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def emit(self, event: PaymentEvent) -> None:
        logger.info(
            f"📡 Payment event {event.event_type.value}: order={event.order_id} "
            f"user={event.user_id} status={event.status}"
        )
        with self._lock:
            handlers = list(self._handlers)

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"❌ Payment event handler failed for {event.event_type.value}")
