#!/usr/bin/env python3
"""
Wallet Reconciliation Service
Verifies the wallet ledger against stored balances and completed top-up orders
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import managed_session
from models import (
    PaymentOrder, PaymentOrderStatus, UserWallet, WalletTransaction, WalletTransactionType,
)

logger = logging.getLogger(__name__)


@dataclass
class LedgerChainBreak:
    """A ledger row that does not continue the wallet's balance chain"""

    transaction_id: str
    wallet_version: int
    reason: str
    expected_balance_before: Decimal
    balance_before: Decimal
    balance_after: Decimal


@dataclass
class WalletReconciliationReport:
    user_id: str
    stored_balance: Decimal
    initial_balance: Decimal
    ledger_balance: Decimal
    transaction_count: int
    chain_breaks: List[LedgerChainBreak] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def discrepancy(self) -> Decimal:
        return self.stored_balance - self.ledger_balance

    @property
    def consistent(self) -> bool:
        return self.discrepancy == 0 and not self.chain_breaks


@dataclass
class OrderDepositDiscrepancy:
    order_id: str
    amount: Decimal
    deposit_count: int
    deposit_total: Decimal
    reason: str


class WalletReconciliationService:
    """Read-only consistency checks over wallets, ledger rows and orders"""

    def __init__(self, session_factory: sessionmaker = None):
        self.session_factory = session_factory

    def reconcile_wallet(self, user_id: str) -> Optional[WalletReconciliationReport]:
        """
        Recompute a wallet balance from its ledger

        Returns None when the user has no wallet yet.
        """
        with managed_session(self.session_factory) as session:
            wallet = session.scalars(
                select(UserWallet).where(UserWallet.user_id == user_id)
            ).first()
            if wallet is None:
                return None

            entries = list(session.scalars(
                select(WalletTransaction)
                .where(WalletTransaction.wallet_id == wallet.id)
                .order_by(WalletTransaction.wallet_version)
            ).all())

        report = self._build_report(wallet, entries)
        if report.consistent:
            logger.info(f"✅ Wallet {user_id} reconciled: {report.stored_balance} over {report.transaction_count} entries")
        else:
            logger.error(
                f"❌ Wallet {user_id} out of balance: stored {report.stored_balance}, "
                f"ledger {report.ledger_balance}, {len(report.chain_breaks)} chain breaks"
            )
        return report

    def reconcile_all(self) -> List[WalletReconciliationReport]:
        with managed_session(self.session_factory) as session:
            user_ids = list(session.scalars(select(UserWallet.user_id).order_by(UserWallet.id)).all())

        reports = [self.reconcile_wallet(user_id) for user_id in user_ids]
        reports = [report for report in reports if report is not None]
        inconsistent = sum(1 for report in reports if not report.consistent)
        logger.info(f"📊 Reconciled {len(reports)} wallets, {inconsistent} inconsistent")
        return reports

    def verify_completed_orders(self) -> List[OrderDepositDiscrepancy]:
        """COMPLETED orders that lack exactly one DEPOSIT of the order amount"""
        with managed_session(self.session_factory) as session:
            orders = list(session.scalars(
                select(PaymentOrder).where(PaymentOrder.status == PaymentOrderStatus.COMPLETED.value)
            ).all())
            deposits = list(session.scalars(
                select(WalletTransaction).where(
                    WalletTransaction.transaction_type == WalletTransactionType.DEPOSIT.value,
                    WalletTransaction.payment_order_id.is_not(None),
                )
            ).all())

        by_order: Dict[str, List[WalletTransaction]] = {}
        for deposit in deposits:
            by_order.setdefault(deposit.payment_order_id, []).append(deposit)

        problems = []
        for order in orders:
            linked = by_order.get(order.id, [])
            total = sum((Decimal(entry.amount) for entry in linked), Decimal("0"))
            if len(linked) != 1:
                reason = "missing deposit" if not linked else "multiple deposits"
            elif total != Decimal(order.amount):
                reason = "deposit amount differs from order amount"
            else:
                continue
            problems.append(OrderDepositDiscrepancy(
                order_id=order.id,
                amount=Decimal(order.amount),
                deposit_count=len(linked),
                deposit_total=total,
                reason=reason,
            ))

        if problems:
            logger.error(f"❌ {len(problems)} completed orders without a matching deposit")
        return problems

    def find_stranded_confirmations(self) -> List[str]:
        """Orders approved by the provider but never completed (deposit failed)"""
        with managed_session(self.session_factory) as session:
            stmt = select(PaymentOrder.id).where(
                PaymentOrder.provider_confirmed_at.is_not(None),
                PaymentOrder.status.in_([
                    PaymentOrderStatus.UNPAID.value,
                    PaymentOrderStatus.PENDING.value,
                ]),
            )
            order_ids = list(session.scalars(stmt).all())

        if order_ids:
            logger.warning(f"⚠️ {len(order_ids)} provider-confirmed orders awaiting settlement")
        return order_ids

    @staticmethod
    def _build_report(wallet: UserWallet, entries: List[WalletTransaction]) -> WalletReconciliationReport:
        initial = Decimal(wallet.initial_balance)
        running = initial
        breaks = []

        for entry in entries:
            before = Decimal(entry.balance_before)
            after = Decimal(entry.balance_after)
            if before != running:
                breaks.append(LedgerChainBreak(
                    transaction_id=entry.id,
                    wallet_version=entry.wallet_version,
                    reason="balance_before does not continue the previous balance_after",
                    expected_balance_before=running,
                    balance_before=before,
                    balance_after=after,
                ))
            if after != before + entry.signed_amount:
                breaks.append(LedgerChainBreak(
                    transaction_id=entry.id,
                    wallet_version=entry.wallet_version,
                    reason="balance_after != balance_before + signed amount",
                    expected_balance_before=running,
                    balance_before=before,
                    balance_after=after,
                ))
            running = after

        ledger_balance = initial + sum((entry.signed_amount for entry in entries), Decimal("0"))
        return WalletReconciliationReport(
            user_id=wallet.user_id,
            stored_balance=Decimal(wallet.balance),
            initial_balance=initial,
            ledger_balance=ledger_balance,
            transaction_count=len(entries),
            chain_breaks=breaks,
        )
