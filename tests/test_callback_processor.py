"""
Callback processor tests: at-least-once delivery, amount checks and
cancellation of redirect orders
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import patch

import pytest

from models import PaymentMethod, PaymentOrderStatus, UserWallet, WalletStatus
from utils.exceptions import (
    CallbackAmountMismatch, OrderNotFound, ProviderError, ValidationError, WalletInactiveError,
)
from utils.optimistic_locking import OptimisticLockManager, OptimisticLockingError
from utils.payment_events import PaymentEventType

CARD_METADATA = {"prime": "prime_test_token"}


@pytest.fixture
def pending_order(manager):
    result = asyncio.run(
        manager.create_order("user-1", Decimal("500"), "Wallet top-up", PaymentMethod.LINE_PAY)
    )
    return manager.repository.get_order(result.order_id)


def _txn(order):
    return f"TXN_{order.id}"


class TestConfirm:

    @pytest.mark.asyncio
    async def test_confirm_completes_and_credits(self, processor, repository, ledger, linepay_adapter, pending_order, recorder):
        result = await processor.confirm(pending_order.id, _txn(pending_order), Decimal("500"))

        assert result.success is True
        assert result.status is PaymentOrderStatus.COMPLETED
        assert ledger.get_balance("user-1") == Decimal("500.00")
        assert linepay_adapter.confirmations == [(pending_order.id, _txn(pending_order), Decimal("500.00"))]

        order = repository.get_order(pending_order.id)
        assert order.status == PaymentOrderStatus.COMPLETED.value
        assert order.external_transaction_id == _txn(pending_order)
        assert order.provider_confirmed_at is not None
        assert order.completed_at is not None
        assert len(repository.get_deposits_for_order(order.id)) == 1
        assert PaymentEventType.ORDER_CONFIRMED in recorder.types()

    @pytest.mark.asyncio
    async def test_redelivered_confirm_is_a_noop(self, processor, repository, ledger, linepay_adapter, pending_order, recorder):
        await processor.confirm(pending_order.id, _txn(pending_order), "500")

        again = await processor.confirm(pending_order.id, _txn(pending_order), "500")

        assert again.success is True
        assert again.status is PaymentOrderStatus.COMPLETED
        assert again.message == "Payment completed"
        assert ledger.get_balance("user-1") == Decimal("500.00")
        assert len(repository.get_deposits_for_order(pending_order.id)) == 1
        assert len(linepay_adapter.confirmations) == 1
        assert len(recorder.of_type(PaymentEventType.CALLBACK_DUPLICATE)) == 1

    @pytest.mark.asyncio
    async def test_amount_mismatch_rejected(self, processor, repository, ledger, linepay_adapter, pending_order, recorder):
        with pytest.raises(CallbackAmountMismatch) as exc_info:
            await processor.confirm(pending_order.id, _txn(pending_order), "499")

        assert exc_info.value.expected == Decimal("500.00")
        assert exc_info.value.received == Decimal("499.00")
        assert repository.get_order(pending_order.id).status == PaymentOrderStatus.PENDING.value
        assert linepay_adapter.confirmations == []
        assert ledger.get_balance("user-1") == Decimal("0.00")
        assert len(recorder.of_type(PaymentEventType.CALLBACK_REJECTED)) == 1

    @pytest.mark.asyncio
    async def test_equivalent_amount_representation_accepted(self, processor, pending_order):
        result = await processor.confirm(pending_order.id, _txn(pending_order), "500.00")

        assert result.status is PaymentOrderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_transaction_id_rejected(self, processor, repository, pending_order):
        with pytest.raises(ValidationError):
            await processor.confirm(pending_order.id, "  ", "500")

        assert repository.get_order(pending_order.id).status == PaymentOrderStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_foreign_transaction_id_rejected(self, processor, linepay_adapter, pending_order):
        with pytest.raises(ValidationError):
            await processor.confirm(pending_order.id, "TXN_someone_else", "500")

        assert linepay_adapter.confirmations == []

    @pytest.mark.asyncio
    async def test_unknown_order(self, processor):
        with pytest.raises(OrderNotFound):
            await processor.confirm("ORDER_0_missing", "TXN_1", "500")

    @pytest.mark.asyncio
    async def test_provider_decline_fails_order(self, processor, repository, ledger, linepay_adapter, pending_order, recorder):
        linepay_adapter.confirm_success = False

        result = await processor.confirm(pending_order.id, _txn(pending_order), "500")

        assert result.success is False
        assert result.status is PaymentOrderStatus.FAILED
        order = repository.get_order(pending_order.id)
        assert order.failure_reason == "Payment rejected by provider"
        assert ledger.get_balance("user-1") == Decimal("0.00")
        assert PaymentEventType.ORDER_FAILED in recorder.types()

    @pytest.mark.asyncio
    async def test_provider_unreachable_leaves_order_pending(self, processor, repository, linepay_adapter, pending_order):
        linepay_adapter.confirm_error = ProviderError("timeout", provider="FakeLinePay")

        with pytest.raises(ProviderError):
            await processor.confirm(pending_order.id, _txn(pending_order), "500")

        order = repository.get_order(pending_order.id)
        assert order.status == PaymentOrderStatus.PENDING.value
        assert order.provider_confirmed_at is None

        linepay_adapter.confirm_error = None
        result = await processor.confirm(pending_order.id, _txn(pending_order), "500")
        assert result.status is PaymentOrderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_redelivery_after_ledger_failure_skips_provider(self, processor, repository, ledger, linepay_adapter, pending_order):
        ledger.set_wallet_status("user-1", WalletStatus.SUSPENDED)

        with pytest.raises(WalletInactiveError):
            await processor.confirm(pending_order.id, _txn(pending_order), "500")

        order = repository.get_order(pending_order.id)
        assert order.status == PaymentOrderStatus.PENDING.value
        assert order.provider_confirmed_at is not None
        assert repository.get_deposits_for_order(order.id) == []

        ledger.set_wallet_status("user-1", WalletStatus.ACTIVE)
        result = await processor.confirm(pending_order.id, _txn(pending_order), "500")

        assert result.status is PaymentOrderStatus.COMPLETED
        assert len(linepay_adapter.confirmations) == 1
        assert ledger.get_balance("user-1") == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_completed_card_order_answers_stored_outcome(self, processor, manager, ledger):
        created = await manager.create_order(
            "user-1", "1000", "Wallet top-up", PaymentMethod.CREDIT_CARD, CARD_METADATA
        )

        again = await processor.confirm(created.order_id, "ANY", "1000")
        assert again.status is PaymentOrderStatus.COMPLETED
        assert ledger.get_balance("user-1") == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_open_card_order_rejects_confirm(self, processor, make_order):
        order = make_order(method=PaymentMethod.CREDIT_CARD, amount="1000")

        with pytest.raises(ValidationError):
            await processor.confirm(order.id, "ANY", "1000")

    @pytest.mark.asyncio
    async def test_easycard_confirm_is_local(self, processor, make_order, ledger):
        order = make_order(method=PaymentMethod.EASY_CARD, amount="300",
                           status=PaymentOrderStatus.PENDING, external_order_id="EC_1")

        result = await processor.confirm(order.id, "EC_1", "300")

        assert result.status is PaymentOrderStatus.COMPLETED
        assert ledger.get_balance("user-1") == Decimal("300.00")

    def test_concurrent_redelivery_credits_once(self, processor, repository, ledger, pending_order):
        def deliver(_):
            return asyncio.run(processor.confirm(pending_order.id, _txn(pending_order), "500"))

        with ThreadPoolExecutor(max_workers=4) as executor:
            results = list(executor.map(deliver, range(4)))

        assert all(result.success for result in results)
        assert repository.get_order(pending_order.id).status == PaymentOrderStatus.COMPLETED.value
        assert len(repository.get_deposits_for_order(pending_order.id)) == 1
        assert ledger.get_balance("user-1") == Decimal("500.00")


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_pending_order(self, processor, repository, ledger, linepay_adapter, pending_order, recorder):
        result = await processor.cancel(pending_order.id)

        assert result.success is False
        assert result.status is PaymentOrderStatus.CANCELLED
        assert linepay_adapter.cancellations == [pending_order.id]
        order = repository.get_order(pending_order.id)
        assert order.status == PaymentOrderStatus.CANCELLED.value
        assert order.failure_reason == "Payment cancelled by user"
        assert ledger.get_balance("user-1") == Decimal("0.00")
        assert PaymentEventType.ORDER_CANCELLED in recorder.types()

    @pytest.mark.asyncio
    async def test_confirm_after_cancel_is_refused(self, processor, repository, ledger, linepay_adapter, pending_order):
        await processor.cancel(pending_order.id)

        result = await processor.confirm(pending_order.id, _txn(pending_order), "500")

        assert result.status is PaymentOrderStatus.CANCELLED
        assert result.success is False
        assert linepay_adapter.confirmations == []
        assert repository.get_deposits_for_order(pending_order.id) == []
        assert ledger.get_balance("user-1") == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_cancel_after_completion_keeps_completed(self, processor, repository, pending_order):
        await processor.confirm(pending_order.id, _txn(pending_order), "500")

        result = await processor.cancel(pending_order.id)

        assert result.status is PaymentOrderStatus.COMPLETED
        assert repository.get_order(pending_order.id).status == PaymentOrderStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_cancel_after_provider_approval_refused(self, processor, repository, ledger, pending_order):
        ledger.set_wallet_status("user-1", WalletStatus.SUSPENDED)
        with pytest.raises(WalletInactiveError):
            await processor.confirm(pending_order.id, _txn(pending_order), "500")

        with pytest.raises(ValidationError):
            await processor.cancel(pending_order.id)

        assert repository.get_order(pending_order.id).status == PaymentOrderStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_card_order_cannot_be_cancelled(self, processor, make_order):
        order = make_order(method=PaymentMethod.CREDIT_CARD, amount="1000")

        with pytest.raises(ValidationError):
            await processor.cancel(order.id)


class TestPaymentMethodGuard:

    @pytest.fixture
    def easycard_order(self, make_order):
        return make_order(method=PaymentMethod.EASY_CARD, amount="300",
                          status=PaymentOrderStatus.PENDING, external_order_id="EC_1")

    @pytest.mark.asyncio
    async def test_confirm_for_another_method_rejected(self, processor, repository, ledger, easycard_order, recorder):
        with pytest.raises(ValidationError) as exc_info:
            await processor.confirm(easycard_order.id, "EC_1", "300", expected_method=PaymentMethod.LINE_PAY)

        assert exc_info.value.error_code == "PAYMENT_METHOD_MISMATCH"
        assert repository.get_order(easycard_order.id).status == PaymentOrderStatus.PENDING.value
        assert ledger.get_balance("user-1") == Decimal("0.00")
        assert len(recorder.of_type(PaymentEventType.CALLBACK_REJECTED)) == 1

    @pytest.mark.asyncio
    async def test_cancel_for_another_method_rejected(self, processor, repository, easycard_order):
        with pytest.raises(ValidationError):
            await processor.cancel(easycard_order.id, expected_method=PaymentMethod.LINE_PAY)

        assert repository.get_order(easycard_order.id).status == PaymentOrderStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_matching_method_accepted(self, processor, easycard_order):
        result = await processor.confirm(easycard_order.id, "EC_1", "300", expected_method=PaymentMethod.EASY_CARD)

        assert result.status is PaymentOrderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_easycard_foreign_transaction_id_rejected(self, processor, repository, ledger, easycard_order):
        with pytest.raises(ValidationError):
            await processor.confirm(easycard_order.id, "EC_someone_else", "300")

        order = repository.get_order(easycard_order.id)
        assert order.status == PaymentOrderStatus.PENDING.value
        assert order.provider_confirmed_at is None
        assert ledger.get_balance("user-1") == Decimal("0.00")


class TestFail:

    @pytest.mark.asyncio
    async def test_reported_failure_fails_order(self, processor, repository, ledger, pending_order, recorder):
        result = await processor.fail(pending_order.id, "EasyCard reported FAILED")

        assert result.success is False
        assert result.status is PaymentOrderStatus.FAILED
        order = repository.get_order(pending_order.id)
        assert order.status == PaymentOrderStatus.FAILED.value
        assert order.failure_reason == "EasyCard reported FAILED"
        assert ledger.get_balance("user-1") == Decimal("0.00")
        assert PaymentEventType.ORDER_FAILED in recorder.types()

    @pytest.mark.asyncio
    async def test_failure_after_completion_keeps_completed(self, processor, repository, pending_order):
        await processor.confirm(pending_order.id, _txn(pending_order), "500")

        result = await processor.fail(pending_order.id, "late failure")

        assert result.status is PaymentOrderStatus.COMPLETED
        assert repository.get_order(pending_order.id).status == PaymentOrderStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_failure_after_provider_approval_refused(self, processor, repository, ledger, pending_order):
        ledger.set_wallet_status("user-1", WalletStatus.SUSPENDED)
        with pytest.raises(WalletInactiveError):
            await processor.confirm(pending_order.id, _txn(pending_order), "500")

        with pytest.raises(ValidationError):
            await processor.fail(pending_order.id, "late failure")

        assert repository.get_order(pending_order.id).status == PaymentOrderStatus.PENDING.value


class TestEventLoop:

    @pytest.mark.asyncio
    async def test_redelivered_confirms_on_one_loop_credit_once(self, processor, repository, ledger, pending_order):
        results = await asyncio.gather(*[
            processor.confirm(pending_order.id, _txn(pending_order), "500") for _ in range(4)
        ])

        assert all(result.success for result in results)
        assert all(result.status is PaymentOrderStatus.COMPLETED for result in results)
        assert len(repository.get_deposits_for_order(pending_order.id)) == 1
        assert ledger.get_balance("user-1") == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_loop_keeps_running_during_ledger_retries(self, processor, repository, pending_order):
        repository.retry_delay = 0.2
        repository.max_delay = 0.2
        original = OptimisticLockManager.versioned_update
        conflicts = []

        def conflicting(self, model_class, *args, **kwargs):
            if model_class is UserWallet and len(conflicts) < 3:
                conflicts.append(model_class)
                raise OptimisticLockingError("simulated concurrent writer")
            return original(self, model_class, *args, **kwargs)

        gaps = []
        stop = asyncio.Event()

        async def heartbeat():
            last = time.monotonic()
            while not stop.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        ticker = asyncio.create_task(heartbeat())
        with patch.object(OptimisticLockManager, "versioned_update", conflicting):
            result = await processor.confirm(pending_order.id, _txn(pending_order), "500")
        stop.set()
        await ticker

        assert len(conflicts) == 3
        assert result.status is PaymentOrderStatus.COMPLETED
        assert len(gaps) > 10
        assert max(gaps) < 0.1
