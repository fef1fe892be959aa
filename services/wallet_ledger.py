"""
Wallet Ledger - atomic balance mutations with an append-only transaction log

Every balance change goes through apply_delta: read balance and version,
compute the new balance, compare-and-swap the wallet row on the observed
version and append a WalletTransaction carrying the observed before/after
pair. Conflicting writers retry with bounded exponential backoff.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from config import Config
from database import managed_session
from models import (
    UserWallet, WalletTransaction, WalletTransactionType, WalletStatus,
    LedgerDirection, CREDIT_ONLY_TYPES, DEBIT_ONLY_TYPES,
)
from utils.exceptions import (
    ValidationError, LedgerError, InsufficientFunds, WalletInactiveError,
)
from utils.helpers import generate_wallet_transaction_id, parse_amount
from utils.optimistic_locking import (
    OptimisticLockManager, OptimisticLockingError, with_optimistic_locking,
)
from utils.payment_events import (
    PaymentEventEmitter, PaymentEvent, PaymentEventType, FinancialContext,
)

logger = logging.getLogger(__name__)

TransactionTypeLike = Union[WalletTransactionType, str]


class WalletLedger:
    """Service owning wallet balances and the wallet transaction log"""

    def __init__(
        self,
        session_factory: sessionmaker = None,
        event_emitter: Optional[PaymentEventEmitter] = None,
        max_retries: int = None,
        retry_delay: float = None,
        backoff_factor: float = None,
        max_delay: float = None,
        initial_balance: Decimal = None,
        currency: str = None,
    ):
        self.session_factory = session_factory
        self.event_emitter = event_emitter or PaymentEventEmitter()
        self.max_retries = Config.LEDGER_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = Config.LEDGER_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.backoff_factor = Config.LEDGER_RETRY_BACKOFF_FACTOR if backoff_factor is None else backoff_factor
        self.max_delay = Config.LEDGER_RETRY_MAX_DELAY_SECONDS if max_delay is None else max_delay
        self.initial_balance = Config.WALLET_INITIAL_BALANCE if initial_balance is None else Decimal(initial_balance)
        self.currency = currency or Config.DEFAULT_CURRENCY

    # ------------------------------------------------------------------
    # Wallet access
    # ------------------------------------------------------------------

    def get_or_create_wallet(self, user_id: str) -> UserWallet:
        """Return the user's wallet, creating it with the configured starting balance"""
        with managed_session(self.session_factory) as session:
            wallet = self._load_wallet(session, user_id)
            if wallet is not None:
                return wallet

        try:
            with managed_session(self.session_factory) as session:
                return self._create_wallet(session, user_id)
        except OptimisticLockingError:
            # Lost the creation race; the other writer's row is the wallet
            logger.info(f"🔄 Wallet for user {user_id} created concurrently, reloading")
            with managed_session(self.session_factory) as session:
                wallet = self._load_wallet(session, user_id)
                if wallet is None:
                    raise LedgerError(f"Wallet for user {user_id} could not be created")
                return wallet

    def get_balance(self, user_id: str) -> Decimal:
        return self.get_or_create_wallet(user_id).balance

    def get_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        transaction_type: Optional[WalletTransactionType] = None,
    ) -> List[WalletTransaction]:
        """Newest first, optionally only one transaction type"""
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")

        with managed_session(self.session_factory) as session:
            stmt = (
                self._transactions_query(select(WalletTransaction), user_id, transaction_type)
                .order_by(WalletTransaction.wallet_version.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(session.scalars(stmt).all())

    def count_transactions(self, user_id: str, transaction_type: Optional[WalletTransactionType] = None) -> int:
        with managed_session(self.session_factory) as session:
            stmt = self._transactions_query(
                select(func.count()).select_from(WalletTransaction), user_id, transaction_type
            )
            return session.scalar(stmt)

    @staticmethod
    def _transactions_query(stmt, user_id: str, transaction_type: Optional[WalletTransactionType]):
        stmt = stmt.where(WalletTransaction.user_id == user_id)
        if transaction_type is not None:
            stmt = stmt.where(
                WalletTransaction.transaction_type == WalletTransactionType(transaction_type).value
            )
        return stmt

    def set_wallet_status(self, user_id: str, status: WalletStatus) -> UserWallet:
        """Suspend or reactivate a wallet; suspended wallets reject every mutation"""
        wallet = self.get_or_create_wallet(user_id)
        with managed_session(self.session_factory) as session:
            stmt = (
                select(UserWallet)
                .where(UserWallet.id == wallet.id)
                .execution_options(populate_existing=True)
            )
            wallet = session.scalars(stmt).one()
            wallet.status = WalletStatus(status).value
            wallet.updated_at = datetime.now(timezone.utc)
            session.flush()
        logger.info(f"🔒 Wallet for user {user_id} set to {wallet.status}")
        return wallet

    # ------------------------------------------------------------------
    # The mutation primitive
    # ------------------------------------------------------------------

    @with_optimistic_locking(
        max_retries="max_retries",
        retry_delay="retry_delay",
        backoff_factor="backoff_factor",
        max_delay="max_delay",
    )
    def apply_delta(
        self,
        user_id: str,
        signed_amount: Decimal,
        transaction_type: TransactionTypeLike,
        payment_order_id: Optional[str] = None,
        charging_session_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Apply one signed balance change in its own transaction

        Returns:
            The appended WalletTransaction

        Raises:
            ValidationError: zero amount, or sign disagrees with the type
            InsufficientFunds: a debit would take the balance below zero
            WalletInactiveError: wallet is suspended
            LedgerConflictError: version race lost on every retry
        """
        with managed_session(self.session_factory) as session:
            entry = self.apply_delta_in_session(
                session,
                user_id,
                signed_amount,
                transaction_type,
                payment_order_id=payment_order_id,
                charging_session_id=charging_session_id,
                description=description,
            )

        self.emit_applied(entry)
        return entry

    def apply_delta_in_session(
        self,
        session: Session,
        user_id: str,
        signed_amount: Decimal,
        transaction_type: TransactionTypeLike,
        payment_order_id: Optional[str] = None,
        charging_session_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Single attempt of apply_delta inside the caller's transaction

        The caller owns commit/rollback. A lost version race raises
        OptimisticLockingError and leaves the session needing a rollback.
        """
        tx_type = WalletTransactionType(transaction_type)
        amount = parse_amount(signed_amount)
        direction = self._direction_for(tx_type, amount)

        wallet = self._load_wallet(session, user_id)
        if wallet is None:
            wallet = self._create_wallet(session, user_id)

        if wallet.status != WalletStatus.ACTIVE.value:
            raise WalletInactiveError(
                f"Wallet for user {user_id} is {wallet.status}",
                details={"user_id": user_id, "status": wallet.status},
            )

        if payment_order_id is not None:
            self._reject_duplicate_order_entry(session, payment_order_id, tx_type)

        balance_before = wallet.balance
        balance_after = balance_before + amount
        if amount < 0 and balance_after < 0:
            logger.warning(
                f"⚠️ Insufficient funds for user {user_id}: balance {balance_before}, debit {-amount}"
            )
            raise InsufficientFunds(user_id, balance_before, -amount)

        new_version = OptimisticLockManager(session).versioned_update(
            UserWallet, wallet.id, {"balance": balance_after}, wallet.version
        )

        entry = WalletTransaction(
            id=generate_wallet_transaction_id(),
            user_id=user_id,
            wallet_id=wallet.id,
            transaction_type=tx_type.value,
            direction=direction.value,
            amount=abs(amount),
            balance_before=balance_before,
            balance_after=balance_after,
            wallet_version=new_version,
            payment_order_id=payment_order_id,
            charging_session_id=charging_session_id,
            description=description,
            created_at=datetime.now(timezone.utc),
        )
        session.add(entry)
        try:
            session.flush()
        except IntegrityError as e:
            # Another writer took this ledger position between our CAS and insert
            raise OptimisticLockingError(
                f"Ledger position {new_version} for wallet {wallet.id} already taken",
                entity="WalletTransaction",
                entity_id=wallet.id,
                expected_version=wallet.version,
            ) from e

        set_committed_value(wallet, "balance", balance_after)
        set_committed_value(wallet, "version", new_version)

        logger.info(
            f"✅ Ledger {tx_type.value} {direction.value} {abs(amount)} for user {user_id}: "
            f"{balance_before} → {balance_after} (v{new_version})"
        )
        return entry

    def emit_applied(self, entry: WalletTransaction) -> None:
        self.event_emitter.emit(PaymentEvent(
            event_type=PaymentEventType.LEDGER_APPLIED,
            user_id=entry.user_id,
            order_id=entry.payment_order_id,
            status=entry.transaction_type,
            financial_context=FinancialContext(
                amount=entry.signed_amount,
                currency=self.currency,
                balance_before=entry.balance_before,
                balance_after=entry.balance_after,
            ),
            metadata={
                "transaction_id": entry.id,
                "wallet_version": entry.wallet_version,
                "charging_session_id": entry.charging_session_id,
            },
        ))

    # ------------------------------------------------------------------
    # Named operations
    # ------------------------------------------------------------------

    def top_up(self, user_id: str, amount, description: Optional[str] = None) -> WalletTransaction:
        """Administrative credit"""
        value = self._positive(amount)
        return self.apply_delta(
            user_id, value, WalletTransactionType.ADJUSTMENT,
            description=description or f"Admin top-up {value} {self.currency}",
        )

    def deduct(self, user_id: str, amount, reason: str) -> WalletTransaction:
        """Administrative debit; a reason is mandatory"""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to deduct from a wallet")
        value = self._positive(amount)
        return self.apply_delta(
            user_id, -value, WalletTransactionType.ADJUSTMENT, description=reason.strip()
        )

    def withdraw(self, user_id: str, amount, description: Optional[str] = None) -> WalletTransaction:
        value = self._positive(amount)
        return self.apply_delta(
            user_id, -value, WalletTransactionType.WITHDRAWAL,
            description=description or f"Withdrawal {value} {self.currency}",
        )

    def pay_for_charging_session(
        self, user_id: str, amount, charging_session_id: str, description: Optional[str] = None
    ) -> WalletTransaction:
        if not charging_session_id:
            raise ValidationError("charging_session_id is required")
        value = self._positive(amount)
        return self.apply_delta(
            user_id, -value, WalletTransactionType.PAYMENT,
            charging_session_id=charging_session_id,
            description=description or f"Charging session {charging_session_id}",
        )

    def refund(
        self,
        user_id: str,
        amount,
        charging_session_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        value = self._positive(amount)
        return self.apply_delta(
            user_id, value, WalletTransactionType.REFUND,
            charging_session_id=charging_session_id,
            description=description or "Refund",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _positive(amount) -> Decimal:
        value = parse_amount(amount)
        if value <= 0:
            raise ValidationError(f"Amount must be greater than zero, got {value}")
        return value

    @staticmethod
    def _direction_for(tx_type: WalletTransactionType, amount: Decimal) -> LedgerDirection:
        if amount == 0:
            raise ValidationError("Ledger amount must be non-zero")

        direction = LedgerDirection.CREDIT if amount > 0 else LedgerDirection.DEBIT
        if tx_type in CREDIT_ONLY_TYPES and direction is not LedgerDirection.CREDIT:
            raise ValidationError(f"{tx_type.value} must be a credit, got {amount}")
        if tx_type in DEBIT_ONLY_TYPES and direction is not LedgerDirection.DEBIT:
            raise ValidationError(f"{tx_type.value} must be a debit, got {amount}")
        return direction

    @staticmethod
    def _load_wallet(session: Session, user_id: str) -> Optional[UserWallet]:
        stmt = (
            select(UserWallet)
            .where(UserWallet.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return session.scalars(stmt).first()

    def _create_wallet(self, session: Session, user_id: str) -> UserWallet:
        now = datetime.now(timezone.utc)
        wallet = UserWallet(
            user_id=user_id,
            balance=self.initial_balance,
            initial_balance=self.initial_balance,
            currency=self.currency,
            status=WalletStatus.ACTIVE.value,
            version=0,
            created_at=now,
            updated_at=now,
        )
        session.add(wallet)
        try:
            session.flush()
        except IntegrityError as e:
            raise OptimisticLockingError(
                f"Wallet for user {user_id} created concurrently",
                entity="UserWallet",
                entity_id=user_id,
            ) from e
        logger.info(f"✅ Created wallet for user {user_id} with balance {self.initial_balance} {self.currency}")
        return wallet

    @staticmethod
    def _reject_duplicate_order_entry(session: Session, payment_order_id: str, tx_type: WalletTransactionType):
        stmt = select(WalletTransaction.id).where(
            WalletTransaction.payment_order_id == payment_order_id,
            WalletTransaction.transaction_type == tx_type.value,
        )
        existing = session.scalars(stmt).first()
        if existing is not None:
            raise LedgerError(
                f"Order {payment_order_id} already has a {tx_type.value} ledger entry ({existing})",
                error_code="DUPLICATE_LEDGER_ENTRY",
                details={"payment_order_id": payment_order_id, "transaction_id": existing},
            )
