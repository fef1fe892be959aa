"""
Payment Repository - typed storage interface for payment orders and wallets

The order manager and callback processor only talk to storage through
PaymentRepository. Order state changes are compare-and-swap updates keyed
on PaymentOrder.version; completing an order and crediting its deposit
commit in the same transaction.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from database import managed_session
from models import (
    PaymentOrder, PaymentOrderStatus, UserWallet, WalletTransaction, WalletTransactionType,
)
from services.wallet_ledger import WalletLedger
from utils.exceptions import OrderNotFound, ValidationError
from utils.optimistic_locking import OptimisticLockManager, with_optimistic_locking

logger = logging.getLogger(__name__)


# Allowed order state transitions; terminal states have no exits
ORDER_TRANSITIONS = {
    PaymentOrderStatus.UNPAID: frozenset({
        PaymentOrderStatus.PENDING,
        PaymentOrderStatus.COMPLETED,
        PaymentOrderStatus.FAILED,
        PaymentOrderStatus.CANCELLED,
    }),
    PaymentOrderStatus.PENDING: frozenset({
        PaymentOrderStatus.COMPLETED,
        PaymentOrderStatus.FAILED,
        PaymentOrderStatus.CANCELLED,
    }),
    PaymentOrderStatus.COMPLETED: frozenset(),
    PaymentOrderStatus.FAILED: frozenset(),
    PaymentOrderStatus.CANCELLED: frozenset(),
}

# Columns a transition may set alongside the status
_MUTABLE_ORDER_FIELDS = frozenset({
    "external_order_id",
    "external_transaction_id",
    "provider_confirmed_at",
    "failure_reason",
    "completed_at",
})


def validate_transition(order_id: str, current: PaymentOrderStatus, target: PaymentOrderStatus):
    if target not in ORDER_TRANSITIONS[current]:
        raise ValidationError(
            f"Order {order_id} cannot move from {current.value} to {target.value}",
            error_code="INVALID_STATE_TRANSITION",
            details={"order_id": order_id, "from": current.value, "to": target.value},
        )


class PaymentRepository(ABC):
    """Storage operations needed by the payment core"""

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[PaymentOrder]:
        pass

    @abstractmethod
    def save_order(self, order: PaymentOrder) -> PaymentOrder:
        """Insert a new order"""
        pass

    @abstractmethod
    def transition_order(
        self, order_id: str, expected_version: int, status: PaymentOrderStatus, **changes
    ) -> PaymentOrder:
        """
        Move an order to a non-COMPLETED status if it is still at expected_version

        Raises:
            OrderNotFound, ValidationError (illegal transition),
            OptimisticLockingError (order changed since it was read)
        """
        pass

    @abstractmethod
    def record_provider_confirmation(
        self, order_id: str, expected_version: int, **changes
    ) -> PaymentOrder:
        """Stamp provider_confirmed_at (and provider ids) without changing status"""
        pass

    @abstractmethod
    def complete_order_with_deposit(
        self, order_id: str, expected_version: int, **changes
    ) -> Optional[Tuple[PaymentOrder, WalletTransaction]]:
        """
        Atomically mark the order COMPLETED and credit its DEPOSIT

        Returns None when the order is no longer at expected_version (another
        writer settled or changed it); the caller reloads the order.
        """
        pass

    @abstractmethod
    def get_wallet(self, user_id: str) -> UserWallet:
        pass

    @abstractmethod
    def apply_delta(
        self,
        user_id: str,
        signed_amount: Decimal,
        transaction_type: WalletTransactionType,
        payment_order_id: Optional[str] = None,
        charging_session_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        pass

    def emit_ledger_applied(self, entry: WalletTransaction) -> None:
        """Hook for publishing a ledger entry committed inside an order unit"""


class SQLAlchemyPaymentRepository(PaymentRepository):
    """PaymentRepository over the SQLAlchemy models"""

    def __init__(self, session_factory: sessionmaker = None, ledger: WalletLedger = None):
        self.session_factory = session_factory
        self.ledger = ledger or WalletLedger(session_factory=session_factory)

        # Order completion retries on wallet contention with the ledger's policy
        self.max_retries = self.ledger.max_retries
        self.retry_delay = self.ledger.retry_delay
        self.backoff_factor = self.ledger.backoff_factor
        self.max_delay = self.ledger.max_delay

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> Optional[PaymentOrder]:
        with managed_session(self.session_factory) as session:
            return self._load_order(session, order_id)

    def save_order(self, order: PaymentOrder) -> PaymentOrder:
        now = datetime.now(timezone.utc)
        if order.status is None:
            order.status = PaymentOrderStatus.UNPAID.value
        if order.version is None:
            order.version = 0
        order.created_at = order.created_at or now
        order.updated_at = order.updated_at or now

        with managed_session(self.session_factory) as session:
            session.add(order)
            session.flush()
        logger.info(f"💾 Saved payment order {order.id} ({order.payment_method}, {order.amount} {order.currency})")
        return order

    def list_orders(self, status: Optional[PaymentOrderStatus] = None, user_id: Optional[str] = None) -> List[PaymentOrder]:
        with managed_session(self.session_factory) as session:
            stmt = select(PaymentOrder).order_by(PaymentOrder.created_at)
            if status is not None:
                stmt = stmt.where(PaymentOrder.status == PaymentOrderStatus(status).value)
            if user_id is not None:
                stmt = stmt.where(PaymentOrder.user_id == user_id)
            return list(session.scalars(stmt).all())

    def transition_order(
        self, order_id: str, expected_version: int, status: PaymentOrderStatus, **changes
    ) -> PaymentOrder:
        target = PaymentOrderStatus(status)
        if target is PaymentOrderStatus.COMPLETED:
            # COMPLETED only commits together with its DEPOSIT
            raise ValidationError(
                f"Order {order_id} can only complete through complete_order_with_deposit",
                error_code="INVALID_STATE_TRANSITION",
                details={"order_id": order_id, "to": target.value},
            )
        with managed_session(self.session_factory) as session:
            order = self._require_order(session, order_id)
            validate_transition(order_id, order.status_enum, target)
            self._versioned_order_update(session, order, expected_version, status=target.value, **changes)
            order = self._require_order(session, order_id)

        logger.info(f"🔄 Order {order_id} → {target.value} (v{order.version})")
        return order

    def record_provider_confirmation(
        self, order_id: str, expected_version: int, **changes
    ) -> PaymentOrder:
        changes.setdefault("provider_confirmed_at", datetime.now(timezone.utc))
        with managed_session(self.session_factory) as session:
            order = self._require_order(session, order_id)
            if order.is_terminal:
                raise ValidationError(
                    f"Order {order_id} is already {order.status}",
                    error_code="INVALID_STATE_TRANSITION",
                    details={"order_id": order_id, "status": order.status},
                )
            self._versioned_order_update(session, order, expected_version, **changes)
            order = self._require_order(session, order_id)

        logger.info(f"📥 Recorded provider confirmation for order {order_id}")
        return order

    @with_optimistic_locking(
        max_retries="max_retries",
        retry_delay="retry_delay",
        backoff_factor="backoff_factor",
        max_delay="max_delay",
    )
    def complete_order_with_deposit(
        self, order_id: str, expected_version: int, **changes
    ) -> Optional[Tuple[PaymentOrder, WalletTransaction]]:
        with managed_session(self.session_factory) as session:
            order = self._require_order(session, order_id)
            if order.version != expected_version or order.is_terminal:
                logger.info(
                    f"🔒 Order {order_id} moved on (v{order.version}, {order.status}); "
                    f"skipping completion for v{expected_version}"
                )
                return None

            validate_transition(order_id, order.status_enum, PaymentOrderStatus.COMPLETED)
            now = datetime.now(timezone.utc)
            changes.setdefault("completed_at", now)
            if order.provider_confirmed_at is None:
                changes.setdefault("provider_confirmed_at", now)

            self._versioned_order_update(
                session, order, expected_version, status=PaymentOrderStatus.COMPLETED.value, **changes
            )
            entry = self.ledger.apply_delta_in_session(
                session,
                order.user_id,
                order.amount,
                WalletTransactionType.DEPOSIT,
                payment_order_id=order.id,
                description=f"Top-up via {order.payment_method} ({order.id})",
            )
            order = self._require_order(session, order_id)

        logger.info(f"✅ Order {order_id} COMPLETED, deposit {entry.id} applied")
        return order, entry

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------

    def get_wallet(self, user_id: str) -> UserWallet:
        return self.ledger.get_or_create_wallet(user_id)

    def apply_delta(
        self,
        user_id: str,
        signed_amount: Decimal,
        transaction_type: WalletTransactionType,
        payment_order_id: Optional[str] = None,
        charging_session_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        return self.ledger.apply_delta(
            user_id,
            signed_amount,
            transaction_type,
            payment_order_id=payment_order_id,
            charging_session_id=charging_session_id,
            description=description,
        )

    def get_deposits_for_order(self, order_id: str) -> List[WalletTransaction]:
        with managed_session(self.session_factory) as session:
            stmt = select(WalletTransaction).where(
                WalletTransaction.payment_order_id == order_id,
                WalletTransaction.transaction_type == WalletTransactionType.DEPOSIT.value,
            )
            return list(session.scalars(stmt).all())

    def emit_ledger_applied(self, entry: WalletTransaction) -> None:
        self.ledger.emit_applied(entry)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _load_order(session: Session, order_id: str) -> Optional[PaymentOrder]:
        stmt = (
            select(PaymentOrder)
            .where(PaymentOrder.id == order_id)
            .execution_options(populate_existing=True)
        )
        return session.scalars(stmt).first()

    def _require_order(self, session: Session, order_id: str) -> PaymentOrder:
        order = self._load_order(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    @staticmethod
    def _versioned_order_update(
        session: Session, order: PaymentOrder, expected_version: int, **values: Any
    ) -> int:
        unknown = set(values) - _MUTABLE_ORDER_FIELDS - {"status"}
        if unknown:
            raise ValueError(f"Unsupported order fields: {sorted(unknown)}")

        updates: Dict[str, Any] = {key: value for key, value in values.items()}
        return OptimisticLockManager(session).versioned_update(
            PaymentOrder, order.id, updates, expected_version
        )
