"""
Shared fixtures for the payment service test suite

Every test gets its own file-backed SQLite database so worker threads in
the concurrency tests see the same data through separate connections.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from decimal import Decimal

import pytest

from database import build_engine, build_session_factory, create_tables
from models import PaymentMethod, PaymentOrder, PaymentOrderStatus
from services.callback_processor import CallbackProcessor
from services.easycard_service import EasyCardAdapter
from services.payment_order_manager import PaymentOrderManager
from services.payment_repository import SQLAlchemyPaymentRepository
from services.provider_adapter import (
    CreditCardAdapter, RedirectAdapter, ProviderRegistry,
    ProviderInitiation, ProviderConfirmation,
)
from services.wallet_ledger import WalletLedger
from utils.exceptions import ProviderError
from utils.helpers import generate_order_id
from utils.payment_events import PaymentEventEmitter

EASYCARD_TEST_SECRET = "easycard-test-secret"


class EventRecorder:
    """Subscriber that keeps every emitted event"""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def types(self):
        return [event.event_type for event in self.events]

    def of_type(self, event_type):
        return [event for event in self.events if event.event_type == event_type]


class FakeCardAdapter(CreditCardAdapter):
    """Card gateway double; outcome is one of success, decline, error"""

    provider_name = "FakeCard"

    def __init__(self):
        super().__init__(timeout=1)
        self.outcome = "success"
        self.charges = []

    async def initiate(self, order, request_metadata=None):
        self.charges.append((order.id, dict(request_metadata or {})))
        if self.outcome == "error":
            raise ProviderError("card gateway unreachable", provider=self.provider_name,
                                error_code="PROVIDER_NETWORK_ERROR")
        if self.outcome == "decline":
            return ProviderInitiation(
                settled=True,
                success=False,
                external_order_id=f"REC_{order.id}",
                message="Card declined",
                error_code="FAKE_DECLINED",
            )
        return ProviderInitiation(
            settled=True,
            success=True,
            external_order_id=f"REC_{order.id}",
            external_transaction_id=f"BANK_{order.id}",
            message="Payment successful",
        )


class FakeRedirectAdapter(RedirectAdapter):
    """Redirect provider double issuing TXN_<order id> references"""

    def __init__(self, method=PaymentMethod.LINE_PAY, provider_name="FakeLinePay"):
        super().__init__(timeout=1)
        self.method = method
        self.provider_name = provider_name
        self.initiate_error = None
        self.confirm_error = None
        self.confirm_success = True
        self.initiations = []
        self.confirmations = []
        self.cancellations = []

    async def initiate(self, order, request_metadata=None):
        self.initiations.append(order.id)
        if self.initiate_error is not None:
            raise self.initiate_error
        return ProviderInitiation(
            settled=False,
            external_order_id=f"TXN_{order.id}",
            payment_url=f"https://pay.example.test/{order.id}",
        )

    async def confirm(self, order, external_transaction_id, amount):
        self.confirmations.append((order.id, external_transaction_id, amount))
        if self.confirm_error is not None:
            raise self.confirm_error
        if not self.confirm_success:
            return ProviderConfirmation(
                success=False,
                external_transaction_id=external_transaction_id,
                message="Payment rejected by provider",
                error_code="FAKE_DECLINED",
            )
        return ProviderConfirmation(success=True, external_transaction_id=external_transaction_id)

    async def cancel(self, order):
        self.cancellations.append(order.id)
        return await super().cancel(order)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'payments.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def event_emitter(recorder):
    emitter = PaymentEventEmitter()
    emitter.subscribe(recorder)
    return emitter


@pytest.fixture
def ledger(session_factory, event_emitter):
    return WalletLedger(
        session_factory=session_factory,
        event_emitter=event_emitter,
        max_retries=20,
        retry_delay=0.001,
        backoff_factor=2.0,
        max_delay=0.02,
        initial_balance=Decimal("0"),
        currency="TWD",
    )


@pytest.fixture
def repository(session_factory, ledger):
    return SQLAlchemyPaymentRepository(session_factory=session_factory, ledger=ledger)


@pytest.fixture
def card_adapter():
    return FakeCardAdapter()


@pytest.fixture
def linepay_adapter():
    return FakeRedirectAdapter(PaymentMethod.LINE_PAY, "FakeLinePay")


@pytest.fixture
def easycard_adapter():
    return EasyCardAdapter(
        api_url="https://easycard.example.test/payments",
        merchant_id="MERCHANT_TEST",
        api_key=EASYCARD_TEST_SECRET,
        success_url="https://app.example.test/success",
        cancel_url="https://app.example.test/cancel",
        callback_url="https://api.example.test/api/payment/easycard-callback",
        timeout=1,
    )


@pytest.fixture
def registry(card_adapter, linepay_adapter, easycard_adapter):
    return ProviderRegistry([card_adapter, linepay_adapter, easycard_adapter])


@pytest.fixture
def manager(repository, registry, event_emitter):
    return PaymentOrderManager(repository, registry, event_emitter, currency="TWD")


@pytest.fixture
def processor(repository, registry, event_emitter):
    return CallbackProcessor(repository, registry, event_emitter)


@pytest.fixture
def make_order(repository):
    """Persist an order directly, bypassing provider initiation"""

    def _make_order(user_id="user-1", amount="500", method=PaymentMethod.LINE_PAY,
                    status=PaymentOrderStatus.UNPAID, external_order_id=None):
        order = repository.save_order(PaymentOrder(
            id=generate_order_id(),
            user_id=user_id,
            amount=Decimal(amount),
            currency="TWD",
            description="Wallet top-up",
            payment_method=method.value,
            status=PaymentOrderStatus.UNPAID.value,
            version=0,
            request_metadata={},
        ))
        if status is not PaymentOrderStatus.UNPAID:
            changes = {}
            if external_order_id is not None:
                changes["external_order_id"] = external_order_id
            order = repository.transition_order(order.id, order.version, status, **changes)
        return order

    return _make_order
