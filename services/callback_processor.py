"""
Callback Processor - inbound provider confirmations and cancellations

Drives redirect-flow orders (LINE Pay, EasyCard) from PENDING to a terminal
state. Callbacks are delivered at least once and possibly concurrently:
terminal orders answer with their stored outcome, provider approval is
recorded before the deposit so redelivery never re-confirms with the
provider, and the COMPLETED transition commits with the DEPOSIT.

Repository work is synchronous SQLAlchemy with blocking retry backoff, so
it runs in worker threads via asyncio.to_thread to keep the event loop free.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional, Tuple

from models import PaymentMethod, PaymentOrder, PaymentOrderStatus
from services.payment_order_manager import OrderResult, emit_order_event, stored_outcome
from services.payment_repository import PaymentRepository, SQLAlchemyPaymentRepository
from services.provider_adapter import ProviderAdapter, ProviderRegistry, build_default_registry
from utils.exceptions import CallbackAmountMismatch, OrderNotFound, ValidationError
from utils.helpers import amounts_equal, parse_amount
from utils.optimistic_locking import OptimisticLockingError
from utils.payment_events import PaymentEventEmitter, PaymentEventType

logger = logging.getLogger(__name__)


class CallbackProcessor:
    """State machine for provider callbacks"""

    def __init__(
        self,
        repository: PaymentRepository = None,
        registry: ProviderRegistry = None,
        event_emitter: PaymentEventEmitter = None,
    ):
        self.repository = repository or SQLAlchemyPaymentRepository()
        self.registry = registry or build_default_registry()
        self.event_emitter = event_emitter or PaymentEventEmitter()

    async def confirm(
        self,
        order_id: str,
        external_transaction_id: str,
        amount,
        expected_method: Optional[PaymentMethod] = None,
    ) -> OrderResult:
        """
        Settle a redirect order after the provider reports success

        Args:
            expected_method: Payment method of the route that received the
                callback; orders of any other method are refused

        Raises:
            OrderNotFound: unknown order id
            ValidationError: card order, wrong payment method, missing or foreign transaction id
            CallbackAmountMismatch: amount differs from the stored order amount
            ProviderError: provider confirmation unreachable; order stays PENDING
            LedgerError: deposit failed; order stays open for redelivery
        """
        logger.info(f"📥 Confirm callback for order {order_id}: txn={external_transaction_id} amount={amount}")
        order, adapter, outcome = await asyncio.to_thread(
            self._check_confirm, order_id, external_transaction_id, amount, expected_method
        )
        if outcome is not None:
            return outcome
        external_transaction_id = str(external_transaction_id).strip()

        if order.provider_confirmed_at is None:
            confirmation = await adapter.confirm(order, external_transaction_id, Decimal(order.amount))
            if not confirmation.success:
                return await asyncio.to_thread(
                    self._decline, order, confirmation.message or "Declined by provider", "confirm"
                )
        else:
            logger.info(f"🔄 Order {order_id} already confirmed by provider, retrying deposit only")

        return await asyncio.to_thread(self._settle_confirmed, order, external_transaction_id)

    async def cancel(self, order_id: str, expected_method: Optional[PaymentMethod] = None) -> OrderResult:
        """User aborted at the provider: UNPAID/PENDING → CANCELLED, no ledger effect"""
        logger.info(f"📥 Cancel callback for order {order_id}")
        order, adapter, outcome = await asyncio.to_thread(
            self._check_abort, order_id, "cancel", expected_method
        )
        if outcome is not None:
            return outcome

        acknowledgement = await adapter.cancel(order)
        return await asyncio.to_thread(
            self._finish_cancel, order, acknowledgement.message or "Cancelled"
        )

    async def fail(self, order_id: str, reason: str, expected_method: Optional[PaymentMethod] = None) -> OrderResult:
        """Provider reported the payment as failed: UNPAID/PENDING → FAILED, no ledger effect"""
        logger.info(f"📥 Failure callback for order {order_id}: {reason}")
        order, _, outcome = await asyncio.to_thread(self._check_abort, order_id, "fail", expected_method)
        if outcome is not None:
            return outcome
        return await asyncio.to_thread(self._decline, order, reason or "Reported failed by provider", "fail")

    # ------------------------------------------------------------------

    def _check_confirm(self, order_id, external_transaction_id, amount,
                       expected_method) -> Tuple[PaymentOrder, Optional[ProviderAdapter], Optional[OrderResult]]:
        order = self._require_order(order_id, expected_method, "confirm")
        if order.is_terminal:
            return order, None, self._duplicate(order, "confirm")

        adapter = self._redirect_adapter(order, "confirm")

        if not external_transaction_id or not str(external_transaction_id).strip():
            self._reject(order, "missing external transaction id")
            raise ValidationError(
                "External transaction id is required", details={"field": "external_transaction_id"}
            )
        external_transaction_id = str(external_transaction_id).strip()

        received = parse_amount(amount)
        if not amounts_equal(received, order.amount):
            self._reject(order, "amount mismatch", received=str(received))
            raise CallbackAmountMismatch(order.id, Decimal(order.amount), received)

        try:
            adapter.validate_callback(order, external_transaction_id)
        except ValidationError as e:
            self._reject(order, e.message)
            raise
        return order, adapter, None

    def _check_abort(self, order_id, action, expected_method):
        order = self._require_order(order_id, expected_method, action)
        if order.is_terminal:
            return order, None, self._duplicate(order, action)

        adapter = self._redirect_adapter(order, action)

        if order.provider_confirmed_at is not None:
            self._reject(order, f"{action} after provider confirmation")
            raise ValidationError(
                f"Order {order_id} was already approved by the provider and cannot be closed by {action}",
                details={"order_id": order_id},
            )
        return order, adapter, None

    def _settle_confirmed(self, order: PaymentOrder, external_transaction_id: str) -> OrderResult:
        if order.provider_confirmed_at is None:
            try:
                order = self.repository.record_provider_confirmation(
                    order.id, order.version, external_transaction_id=external_transaction_id
                )
            except (OptimisticLockingError, ValidationError):
                order = self._require_order(order.id)
                if order.is_terminal:
                    return self._duplicate(order, "confirm")

        completion = self.repository.complete_order_with_deposit(
            order.id, order.version, external_transaction_id=external_transaction_id
        )
        if completion is None:
            return self._duplicate(self._require_order(order.id), "confirm")

        completed, entry = completion
        self.repository.emit_ledger_applied(entry)
        emit_order_event(
            self.event_emitter, PaymentEventType.ORDER_CONFIRMED, completed,
            wallet_transaction_id=entry.id, external_transaction_id=external_transaction_id,
        )
        logger.info(f"✅ Order {order.id} confirmed and credited: {completed.amount} {completed.currency}")
        return OrderResult.from_order(completed, message="Top-up successful", success=True)

    def _finish_cancel(self, order: PaymentOrder, reason: str) -> OrderResult:
        try:
            cancelled = self.repository.transition_order(
                order.id, order.version, PaymentOrderStatus.CANCELLED, failure_reason=reason
            )
        except OptimisticLockingError:
            return self._duplicate(self._require_order(order.id), "cancel")

        emit_order_event(self.event_emitter, PaymentEventType.ORDER_CANCELLED, cancelled)
        logger.info(f"🔄 Order {order.id} cancelled")
        return OrderResult.from_order(cancelled, message="Payment cancelled", success=False)

    def _require_order(self, order_id: str, expected_method: Optional[PaymentMethod] = None,
                       action: str = None) -> PaymentOrder:
        order = self.repository.get_order(order_id)
        if order is None:
            logger.warning(f"⚠️ Callback for unknown order {order_id}")
            raise OrderNotFound(order_id)
        if expected_method is None:
            return order

        expected = PaymentMethod(expected_method)
        if order.payment_method != expected.value:
            self._reject(order, f"{expected.value} {action} on a {order.payment_method} order")
            raise ValidationError(
                f"Order {order_id} was not paid with {expected.value}",
                error_code="PAYMENT_METHOD_MISMATCH",
                details={"order_id": order_id, "payment_method": order.payment_method},
            )
        return order

    def _redirect_adapter(self, order: PaymentOrder, action: str) -> ProviderAdapter:
        adapter = self.registry.get(order.payment_method)
        if adapter.settles_on_initiate:
            self._reject(order, f"{action} on a {order.payment_method} order")
            raise ValidationError(
                f"{order.payment_method} orders settle at checkout and take no {action} callback",
                details={"order_id": order.id, "payment_method": order.payment_method},
            )
        return adapter

    def _duplicate(self, order: PaymentOrder, action: str) -> OrderResult:
        logger.info(f"🔒 Duplicate {action} for order {order.id}: already {order.status}")
        emit_order_event(self.event_emitter, PaymentEventType.CALLBACK_DUPLICATE, order, action=action)
        return stored_outcome(order)

    def _reject(self, order: PaymentOrder, reason: str, **details) -> None:
        logger.warning(f"⚠️ Rejected callback for order {order.id}: {reason}")
        emit_order_event(
            self.event_emitter, PaymentEventType.CALLBACK_REJECTED, order, reason=reason, **details
        )

    def _decline(self, order: PaymentOrder, reason: str, action: str) -> OrderResult:
        try:
            failed = self.repository.transition_order(
                order.id, order.version, PaymentOrderStatus.FAILED, failure_reason=reason
            )
        except OptimisticLockingError:
            return self._duplicate(self._require_order(order.id), action)

        emit_order_event(self.event_emitter, PaymentEventType.ORDER_FAILED, failed, reason=reason)
        logger.warning(f"⚠️ Provider declined order {order.id}: {reason}")
        return OrderResult.from_order(failed, message=f"Payment failed: {reason}", success=False)
