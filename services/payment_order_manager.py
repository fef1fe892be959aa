"""
Payment Order Manager - wallet top-up orchestration

Creates payment orders, hands them to the provider adapter for the chosen
payment method and persists the resulting state. Card payments settle
immediately (order COMPLETED and DEPOSIT applied in one transaction);
redirect payments return a payment URL and wait for the provider callback.
Storage calls run in worker threads so provider I/O and other requests
keep the event loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from config import Config
from models import PaymentOrder, PaymentOrderStatus
from services.payment_repository import PaymentRepository, SQLAlchemyPaymentRepository
from services.provider_adapter import (
    ProviderAdapter, ProviderInitiation, ProviderRegistry, build_default_registry,
)
from utils.exceptions import LedgerError, OrderNotFound, ProviderError, ValidationError
from utils.helpers import generate_order_id, parse_amount
from utils.optimistic_locking import OptimisticLockingError
from utils.payment_events import (
    PaymentEventEmitter, PaymentEvent, PaymentEventType, FinancialContext,
)

logger = logging.getLogger(__name__)

# Never persisted with the order
SENSITIVE_METADATA_KEYS = frozenset({"prime", "card_secret", "card_token", "card_key"})

MAX_DESCRIPTION_LENGTH = 255


@dataclass
class OrderResult:
    """Outcome of an order operation as returned to the client"""
    success: bool
    order_id: str
    status: PaymentOrderStatus
    amount: Decimal
    message: str = ""
    external_order_id: Optional[str] = None
    payment_url: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_order(cls, order: PaymentOrder, message: str = "", success: bool = None,
                   payment_url: str = None, error: str = None) -> "OrderResult":
        status = order.status_enum
        if success is None:
            success = status not in (PaymentOrderStatus.FAILED, PaymentOrderStatus.CANCELLED)
        if error is None and status is PaymentOrderStatus.FAILED:
            error = order.failure_reason
        return cls(
            success=success,
            order_id=order.id,
            status=status,
            amount=Decimal(order.amount),
            message=message,
            external_order_id=order.external_order_id,
            payment_url=payment_url,
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "orderId": self.order_id,
            "status": self.status.value,
            "amount": str(self.amount),
            "message": self.message,
        }
        if self.external_order_id is not None:
            result["externalOrderId"] = self.external_order_id
        if self.payment_url is not None:
            result["paymentUrl"] = self.payment_url
        if self.error is not None:
            result["error"] = self.error
        return result


_STORED_OUTCOME_MESSAGES = {
    PaymentOrderStatus.UNPAID: "Payment not started",
    PaymentOrderStatus.PENDING: "Waiting for payment",
    PaymentOrderStatus.COMPLETED: "Payment completed",
    PaymentOrderStatus.FAILED: "Payment failed",
    PaymentOrderStatus.CANCELLED: "Payment cancelled",
}


def stored_outcome(order: PaymentOrder) -> OrderResult:
    """Result describing an order's persisted state, without side effects"""
    return OrderResult.from_order(order, message=_STORED_OUTCOME_MESSAGES[order.status_enum])


def emit_order_event(emitter: PaymentEventEmitter, event_type: PaymentEventType,
                     order: PaymentOrder, **metadata) -> None:
    emitter.emit(PaymentEvent(
        event_type=event_type,
        user_id=order.user_id,
        order_id=order.id,
        payment_method=order.payment_method,
        status=order.status,
        financial_context=FinancialContext(amount=Decimal(order.amount), currency=order.currency),
        metadata={key: value for key, value in metadata.items() if value is not None},
    ))


class PaymentOrderManager:
    """Creates top-up orders and drives them through the provider's initiation step"""

    def __init__(
        self,
        repository: PaymentRepository = None,
        registry: ProviderRegistry = None,
        event_emitter: PaymentEventEmitter = None,
        currency: str = None,
    ):
        self.repository = repository or SQLAlchemyPaymentRepository()
        self.registry = registry or build_default_registry()
        self.event_emitter = event_emitter or PaymentEventEmitter()
        self.currency = currency or Config.DEFAULT_CURRENCY

    async def create_order(
        self,
        user_id: str,
        amount,
        description: str,
        payment_method,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OrderResult:
        """
        Create a top-up order and start the payment with its provider

        Args:
            user_id: Trusted id of the authenticated user
            amount: Positive decimal top-up amount
            description: Shown to the user by the provider
            payment_method: PaymentMethod or its value
            metadata: Provider inputs (card prime token, cardholder contact)

        Returns:
            OrderResult: COMPLETED/FAILED for cards, PENDING with payment_url for redirects

        Raises:
            ValidationError: invalid input, nothing persisted
            ProviderError: redirect provider unreachable; order stays UNPAID
            LedgerError: card charged but the deposit could not be applied
        """
        request_metadata = dict(metadata or {})
        value, clean_description, adapter = self._validate(
            user_id, amount, description, payment_method, request_metadata
        )

        order = PaymentOrder(
            id=generate_order_id(),
            user_id=user_id,
            amount=value,
            currency=self.currency,
            description=clean_description,
            payment_method=adapter.method.value,
            status=PaymentOrderStatus.UNPAID.value,
            version=0,
            request_metadata={
                key: item for key, item in request_metadata.items()
                if key not in SENSITIVE_METADATA_KEYS
            },
        )
        order = await asyncio.to_thread(self.repository.save_order, order)
        emit_order_event(self.event_emitter, PaymentEventType.ORDER_CREATED, order)
        logger.info(
            f"🚀 Created order {order.id} for user {user_id}: {value} {self.currency} via {adapter.method.value}"
        )

        try:
            initiation = await adapter.initiate(order, request_metadata)
        except ProviderError as e:
            if adapter.settles_on_initiate:
                return await asyncio.to_thread(self._fail, order, e.message, e.error_code)
            logger.error(f"❌ {adapter.provider_name} initiation failed for order {order.id}: {e}")
            raise

        if initiation.settled:
            return await asyncio.to_thread(self._settle, order, initiation)
        return await asyncio.to_thread(self._await_redirect, order, adapter, initiation)

    def get_order_status(self, order_id: str) -> OrderResult:
        order = self.repository.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return stored_outcome(order)

    def retry_settlement(self, order_id: str) -> OrderResult:
        """
        Finish an order whose provider capture is recorded but whose deposit
        was never applied (ledger failure after a successful charge)
        """
        order = self.repository.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.is_terminal:
            return stored_outcome(order)
        if order.provider_confirmed_at is None:
            raise ValidationError(
                f"Order {order_id} has no recorded provider confirmation",
                details={"order_id": order_id, "status": order.status},
            )
        return self._complete(order)

    # ------------------------------------------------------------------

    def _validate(self, user_id, amount, description, payment_method, request_metadata):
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required", details={"field": "user_id"})

        value = parse_amount(amount)
        if value <= 0:
            raise ValidationError(
                f"Amount must be greater than zero, got {value}", details={"field": "amount"}
            )

        clean_description = (description or "").strip()
        if not clean_description:
            raise ValidationError("Description is required", details={"field": "description"})
        if len(clean_description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"Description exceeds {MAX_DESCRIPTION_LENGTH} characters",
                details={"field": "description"},
            )

        adapter: ProviderAdapter = self.registry.get(payment_method)
        adapter.validate_request(value, request_metadata)
        return value, clean_description, adapter

    def _settle(self, order: PaymentOrder, initiation: ProviderInitiation) -> OrderResult:
        if not initiation.success:
            return self._fail(
                order,
                initiation.message or "Payment declined",
                error=initiation.error_code,
                external_order_id=initiation.external_order_id,
            )

        return self._complete(
            order,
            external_order_id=initiation.external_order_id,
            external_transaction_id=initiation.external_transaction_id,
        )

    def _complete(self, order: PaymentOrder, **provider_ids) -> OrderResult:
        provider_ids = {key: value for key, value in provider_ids.items() if value is not None}
        try:
            completion = self.repository.complete_order_with_deposit(order.id, order.version, **provider_ids)
        except LedgerError as e:
            logger.error(f"❌ Deposit for charged order {order.id} failed, order left open: {e}")
            if order.provider_confirmed_at is None:
                self.repository.record_provider_confirmation(order.id, order.version, **provider_ids)
            raise

        if completion is None:
            current = self.repository.get_order(order.id)
            return stored_outcome(current)

        completed, entry = completion
        self.repository.emit_ledger_applied(entry)
        emit_order_event(
            self.event_emitter, PaymentEventType.ORDER_CONFIRMED, completed,
            wallet_transaction_id=entry.id, external_order_id=completed.external_order_id,
        )
        logger.info(f"✅ Top-up {completed.id} completed: {completed.amount} {completed.currency}")
        return OrderResult.from_order(completed, message="Top-up successful", success=True)

    def _fail(self, order: PaymentOrder, reason: str, error: str = None,
              external_order_id: str = None) -> OrderResult:
        changes = {"failure_reason": reason}
        if external_order_id:
            changes["external_order_id"] = external_order_id
        try:
            failed = self.repository.transition_order(
                order.id, order.version, PaymentOrderStatus.FAILED, **changes
            )
        except OptimisticLockingError:
            return stored_outcome(self.repository.get_order(order.id))

        emit_order_event(self.event_emitter, PaymentEventType.ORDER_FAILED, failed, reason=reason)
        logger.warning(f"⚠️ Order {order.id} failed: {reason}")
        return OrderResult.from_order(failed, message=f"Payment failed: {reason}", success=False,
                                      error=error or reason)

    def _await_redirect(self, order: PaymentOrder, adapter: ProviderAdapter,
                        initiation: ProviderInitiation) -> OrderResult:
        pending = self.repository.transition_order(
            order.id,
            order.version,
            PaymentOrderStatus.PENDING,
            external_order_id=initiation.external_order_id,
        )
        emit_order_event(
            self.event_emitter, PaymentEventType.ORDER_PENDING, pending,
            external_order_id=pending.external_order_id,
        )
        logger.info(f"🔄 Order {order.id} waiting for {adapter.provider_name}: {initiation.payment_url}")
        return OrderResult.from_order(
            pending,
            message=initiation.message or "Redirect to the payment page",
            success=True,
            payment_url=initiation.payment_url,
        )
