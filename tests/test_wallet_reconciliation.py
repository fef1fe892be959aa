"""
Reconciliation tests: the ledger must explain every stored balance and
every completed order must carry exactly one deposit
"""

from decimal import Decimal

import pytest
from sqlalchemy import update

from models import PaymentMethod, PaymentOrder, PaymentOrderStatus, UserWallet, WalletStatus, WalletTransaction
from services.wallet_reconciliation import WalletReconciliationService
from utils.exceptions import WalletInactiveError

CARD_METADATA = {"prime": "prime_test_token"}


@pytest.fixture
def reconciliation(session_factory):
    return WalletReconciliationService(session_factory)


class TestWalletReconciliation:

    def test_consistent_after_mixed_activity(self, ledger, reconciliation):
        ledger.top_up("user-1", "500")
        ledger.pay_for_charging_session("user-1", "120", charging_session_id="CS-1")
        ledger.refund("user-1", "20", charging_session_id="CS-1")

        report = reconciliation.reconcile_wallet("user-1")

        assert report.consistent
        assert report.stored_balance == Decimal("400.00")
        assert report.ledger_balance == Decimal("400.00")
        assert report.transaction_count == 3

    def test_no_wallet(self, reconciliation):
        assert reconciliation.reconcile_wallet("nobody") is None

    def test_tampered_balance_detected(self, ledger, reconciliation, session_factory):
        ledger.top_up("user-1", "500")
        with session_factory() as session:
            session.execute(update(UserWallet).where(UserWallet.user_id == "user-1").values(balance=Decimal("900")))
            session.commit()

        report = reconciliation.reconcile_wallet("user-1")

        assert not report.consistent
        assert report.discrepancy == Decimal("400.00")

    def test_broken_chain_detected(self, ledger, reconciliation, session_factory):
        ledger.top_up("user-1", "500")
        second = ledger.withdraw("user-1", "100")
        with session_factory() as session:
            session.execute(
                update(WalletTransaction)
                .where(WalletTransaction.id == second.id)
                .values(balance_before=Decimal("450"))
            )
            session.commit()

        report = reconciliation.reconcile_wallet("user-1")

        assert not report.consistent
        assert {item.transaction_id for item in report.chain_breaks} == {second.id}

    def test_reconcile_all(self, ledger, reconciliation):
        ledger.top_up("user-1", "100")
        ledger.top_up("user-2", "200")

        reports = reconciliation.reconcile_all()

        assert [report.user_id for report in reports] == ["user-1", "user-2"]
        assert all(report.consistent for report in reports)


class TestOrderDeposits:

    @pytest.mark.asyncio
    async def test_completed_orders_match_deposits(self, manager, reconciliation):
        await manager.create_order("user-1", "1000", "Wallet top-up", PaymentMethod.CREDIT_CARD, CARD_METADATA)

        assert reconciliation.verify_completed_orders() == []

    def test_completed_order_without_deposit_flagged(self, make_order, repository, reconciliation, session_factory):
        order = make_order(method=PaymentMethod.LINE_PAY, status=PaymentOrderStatus.PENDING)
        with session_factory() as session:
            session.execute(
                update(PaymentOrder)
                .where(PaymentOrder.id == order.id)
                .values(status=PaymentOrderStatus.COMPLETED.value)
            )
            session.commit()

        [problem] = reconciliation.verify_completed_orders()

        assert problem.order_id == order.id
        assert problem.reason == "missing deposit"
        assert problem.deposit_count == 0

    @pytest.mark.asyncio
    async def test_stranded_confirmation_listed(self, manager, ledger, reconciliation):
        ledger.set_wallet_status("user-1", WalletStatus.SUSPENDED)
        with pytest.raises(WalletInactiveError):
            await manager.create_order("user-1", "1000", "Wallet top-up", PaymentMethod.CREDIT_CARD, CARD_METADATA)

        stranded = reconciliation.find_stranded_confirmations()

        assert len(stranded) == 1
        ledger.set_wallet_status("user-1", WalletStatus.ACTIVE)
        manager.retry_settlement(stranded[0])
        assert reconciliation.find_stranded_confirmations() == []
