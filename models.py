"""
Charging Wallet Payment Platform - Database Schema
==================================================

Schema for the money-movement core of the EV-charging platform:
- Payment orders for wallet top-ups (TapPay credit card, LINE Pay, EasyCard)
- Per-user stored-value wallets
- Append-only wallet transaction ledger
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Integer, String, Numeric, DateTime, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class PaymentMethod(Enum):
    """Supported top-up payment methods"""
    CREDIT_CARD = "credit_card"
    LINE_PAY = "line_pay"
    EASY_CARD = "easy_card"


class PaymentOrderStatus(Enum):
    """Payment order lifecycle states"""
    UNPAID = "UNPAID"        # Persisted, provider not yet reached
    PENDING = "PENDING"      # Redirect issued, waiting for provider callback
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


TERMINAL_ORDER_STATUSES = frozenset({
    PaymentOrderStatus.COMPLETED,
    PaymentOrderStatus.FAILED,
    PaymentOrderStatus.CANCELLED,
})


class WalletTransactionType(Enum):
    """Types of wallet ledger entries"""
    DEPOSIT = "DEPOSIT"          # Top-up through a payment provider
    WITHDRAWAL = "WITHDRAWAL"
    PAYMENT = "PAYMENT"          # Charging session payment
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"    # Admin correction, either direction


class LedgerDirection(Enum):
    """Sign of a ledger entry"""
    CREDIT = "credit"
    DEBIT = "debit"


CREDIT_ONLY_TYPES = frozenset({WalletTransactionType.DEPOSIT, WalletTransactionType.REFUND})
DEBIT_ONLY_TYPES = frozenset({WalletTransactionType.WITHDRAWAL, WalletTransactionType.PAYMENT})


class WalletTransactionStatus(Enum):
    COMPLETED = "completed"


class WalletStatus(Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


def _enum_values(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# ============================================================================
# CORE ENTITIES
# ============================================================================

class UserWallet(Base):
    """Stored-value wallet, one per user"""
    __tablename__ = 'user_wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    initial_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WalletStatus.ACTIVE.value)

    # Compare-and-swap token, bumped by every applied ledger entry
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    transactions: Mapped[list["WalletTransaction"]] = relationship(
        "WalletTransaction", back_populates="wallet", order_by="WalletTransaction.wallet_version"
    )

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative'),
        CheckConstraint('initial_balance >= 0', name='ck_wallet_initial_balance_non_negative'),
        CheckConstraint(f"status IN ({_enum_values(WalletStatus)})", name='ck_wallet_status_valid'),
    )

    def __repr__(self):
        return f"<UserWallet user={self.user_id} balance={self.balance} v{self.version}>"


class PaymentOrder(Base):
    """Wallet top-up order tracked across a payment provider round trip"""
    __tablename__ = 'payment_orders'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentOrderStatus.UNPAID.value)

    # Provider-side identifiers, assigned by initiate / confirm
    external_order_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    provider_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payment_order_amount_positive'),
        CheckConstraint(f"status IN ({_enum_values(PaymentOrderStatus)})", name='ck_payment_order_status_valid'),
        CheckConstraint(f"payment_method IN ({_enum_values(PaymentMethod)})", name='ck_payment_order_method_valid'),
        Index('ix_payment_orders_user_status', 'user_id', 'status'),
    )

    @property
    def status_enum(self) -> PaymentOrderStatus:
        return PaymentOrderStatus(self.status)

    @property
    def method_enum(self) -> PaymentMethod:
        return PaymentMethod(self.payment_method)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum.is_terminal

    def __repr__(self):
        return f"<PaymentOrder {self.id} {self.payment_method} {self.amount} {self.status}>"


class WalletTransaction(Base):
    """Append-only wallet ledger entry"""
    __tablename__ = 'wallet_transactions'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    wallet_id: Mapped[int] = mapped_column(Integer, ForeignKey('user_wallets.id'), nullable=False, index=True)

    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    # Position in the wallet's ledger; equals the wallet version this entry produced
    wallet_version: Mapped[int] = mapped_column(Integer, nullable=False)

    payment_order_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey('payment_orders.id'), nullable=True, index=True)
    charging_session_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WalletTransactionStatus.COMPLETED.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    wallet: Mapped["UserWallet"] = relationship("UserWallet", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint('wallet_id', 'wallet_version', name='uq_wallet_transaction_sequence'),
        # IDEMPOTENCY: one ledger entry of each type per payment order
        UniqueConstraint('payment_order_id', 'transaction_type', name='uq_wallet_transaction_order_type'),
        CheckConstraint('amount > 0', name='ck_wallet_transaction_amount_positive'),
        CheckConstraint(f"transaction_type IN ({_enum_values(WalletTransactionType)})", name='ck_wallet_transaction_type_valid'),
        CheckConstraint(f"direction IN ({_enum_values(LedgerDirection)})", name='ck_wallet_transaction_direction_valid'),
        Index('ix_wallet_transactions_user_created', 'user_id', 'created_at'),
    )

    @property
    def type_enum(self) -> WalletTransactionType:
        return WalletTransactionType(self.transaction_type)

    @property
    def signed_amount(self) -> Decimal:
        if self.direction == LedgerDirection.DEBIT.value:
            return -self.amount
        return self.amount

    def __repr__(self):
        return (
            f"<WalletTransaction {self.id} {self.transaction_type} {self.direction} {self.amount} "
            f"{self.balance_before}->{self.balance_after}>"
        )
