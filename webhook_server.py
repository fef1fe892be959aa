"""
FastAPI Webhook Server for the charging wallet payment service
Top-up order endpoints, provider return/callback endpoints, wallet queries and
admin wallet adjustments. Handlers that only touch the database are plain
`def` so FastAPI runs them in its threadpool.
"""
from fastapi import FastAPI, Request, HTTPException, Query, Header
from fastapi.responses import JSONResponse, RedirectResponse
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urlencode
import asyncio
import hmac
import json
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from config import Config, setup_logging
from database import create_tables
from models import PaymentMethod, WalletTransactionType
from services.callback_processor import CallbackProcessor
from services.payment_order_manager import OrderResult, PaymentOrderManager
from services.payment_repository import SQLAlchemyPaymentRepository
from services.provider_adapter import build_default_registry
from services.wallet_ledger import WalletLedger
from utils.exceptions import (
    PaymentError, ValidationError, OrderNotFound, ProviderError,
    LedgerError, InsufficientFunds,
)
from utils.payment_events import PaymentEventEmitter

logger = logging.getLogger(__name__)

EASYCARD_SIGNATURE_HEADER = "X-EasyCard-Signature"
EASYCARD_SUCCESS_STATUS = "SUCCESS"
EASYCARD_FAILURE_STATUSES = frozenset({"FAILED", "FAILURE", "DECLINED", "ERROR", "EXPIRED"})
EASYCARD_CANCEL_STATUSES = frozenset({"CANCELLED", "CANCELED", "CANCEL"})


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal
    description: str
    payment_method: str = Field(default=PaymentMethod.CREDIT_CARD.value, alias="paymentMethod")
    metadata: Optional[Dict[str, Any]] = None


class EasyCardCallback(BaseModel):
    order_id: str
    transaction_id: Optional[str] = None
    amount: Decimal
    status: str


class WalletAdjustmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    amount: Decimal
    reason: Optional[str] = None
    note: Optional[str] = None


def status_code_for(error: PaymentError) -> int:
    """HTTP status for a payment-core exception"""
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, OrderNotFound):
        return 404
    if isinstance(error, InsufficientFunds):
        return 409
    if isinstance(error, ProviderError):
        return 502
    if isinstance(error, LedgerError):
        return 503
    return 500


def _wallet_payload(wallet) -> Dict[str, Any]:
    return {
        "userId": wallet.user_id,
        "balance": str(wallet.balance),
        "currency": wallet.currency,
        "status": wallet.status,
    }


def _transaction_payload(entry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.transaction_type,
        "direction": entry.direction,
        "amount": str(entry.amount),
        "balanceBefore": str(entry.balance_before),
        "balanceAfter": str(entry.balance_after),
        "paymentOrderId": entry.payment_order_id,
        "chargingSessionId": entry.charging_session_id,
        "description": entry.description,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


def _adjustment_payload(entry, message: str) -> Dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "userId": entry.user_id,
        "amount": str(entry.amount),
        "newBalance": str(entry.balance_after),
        "transaction": _transaction_payload(entry),
    }


def _linepay_response(result: OrderResult, redirect_url: str):
    """Send the user back to the frontend when configured, JSON otherwise"""
    if not redirect_url:
        return result.to_dict()

    params = {
        "status": "success" if result.success else "error",
        "message": result.message,
        "provider": "linepay_direct",
        "orderId": result.order_id,
    }
    if result.success:
        params["amount"] = str(result.amount)
    return RedirectResponse(f"{redirect_url}?{urlencode(params)}", status_code=302)


def create_app(
    order_manager: PaymentOrderManager = None,
    callback_processor: CallbackProcessor = None,
    ledger: WalletLedger = None,
    linepay_redirect_url: str = None,
    admin_api_key: str = None,
    initialize_database: bool = True,
) -> FastAPI:
    """Build the app; services are created from Config unless injected"""
    if order_manager is None or callback_processor is None or ledger is None:
        events = PaymentEventEmitter()
        ledger = ledger or WalletLedger(event_emitter=events)
        repository = SQLAlchemyPaymentRepository(ledger=ledger)
        registry = build_default_registry()
        order_manager = order_manager or PaymentOrderManager(repository, registry, events)
        callback_processor = callback_processor or CallbackProcessor(repository, registry, events)

    if linepay_redirect_url is None:
        linepay_redirect_url = Config.LINE_PAY_FRONTEND_REDIRECT_URL
    if admin_api_key is None:
        admin_api_key = Config.ADMIN_API_KEY

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        Config.log_environment_config()
        if initialize_database:
            create_tables()
        logger.info("✅ Payment webhook server ready")
        yield
        logger.info("🔄 Payment webhook server shutting down...")

    app = FastAPI(
        title="Charging Wallet Payment Server",
        description="Wallet top-up orders, provider callbacks and wallet queries",
        lifespan=lifespan,
    )
    app.state.order_manager = order_manager
    app.state.callback_processor = callback_processor
    app.state.ledger = ledger

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path} failed: {exc.error_code} {exc.message}")
        else:
            logger.warning(f"⚠️ {request.method} {request.url.path} rejected: {exc.error_code} {exc.message}")
        return JSONResponse(
            status_code=status_code,
            content={"success": False, **exc.to_dict()},
        )

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "charging-wallet-payments"}

    @app.post("/api/payments/orders")
    async def create_order(
        body: CreateOrderRequest,
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ):
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing authenticated user")

        result = await order_manager.create_order(
            user_id=x_user_id,
            amount=body.amount,
            description=body.description,
            payment_method=body.payment_method,
            metadata=body.metadata,
        )
        return result.to_dict()

    @app.get("/api/payments/orders/{order_id}")
    def get_order(order_id: str, x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")):
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing authenticated user")

        order = order_manager.repository.get_order(order_id)
        if order is None or order.user_id != x_user_id:
            raise OrderNotFound(order_id)
        return order_manager.get_order_status(order_id).to_dict()

    @app.get("/api/payment/linepay-confirm")
    async def linepay_confirm(
        transaction_id: str = Query(..., alias="transactionId"),
        order_id: str = Query(..., alias="orderId"),
    ):
        logger.info(f"📥 LINE Pay confirm redirect: order={order_id} transactionId={transaction_id}")
        order = await asyncio.to_thread(callback_processor.repository.get_order, order_id)
        if order is None:
            raise OrderNotFound(order_id)

        # LINE Pay's redirect carries no amount; confirm the amount we asked for
        result = await callback_processor.confirm(
            order_id, transaction_id, order.amount, expected_method=PaymentMethod.LINE_PAY
        )
        return _linepay_response(result, linepay_redirect_url)

    @app.get("/api/payment/linepay-cancel")
    async def linepay_cancel(order_id: str = Query(..., alias="orderId")):
        logger.info(f"📥 LINE Pay cancel redirect: order={order_id}")
        result = await callback_processor.cancel(order_id, expected_method=PaymentMethod.LINE_PAY)
        return _linepay_response(result, linepay_redirect_url)

    @app.post("/api/payment/easycard-callback")
    async def easycard_callback(request: Request):
        raw_body = await request.body()
        signature = request.headers.get(EASYCARD_SIGNATURE_HEADER, "")

        adapter = callback_processor.registry.get(PaymentMethod.EASY_CARD)
        if not adapter.verify_callback(raw_body, signature):
            logger.warning("🔒 EasyCard callback with invalid signature rejected")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            callback = EasyCardCallback.model_validate(json.loads(raw_body))
        except (ValueError, PydanticValidationError) as e:
            raise ValidationError(f"Malformed EasyCard callback: {e}") from e

        status = callback.status.strip().upper()
        logger.info(f"📥 EasyCard callback: order={callback.order_id} status={status}")
        if status == EASYCARD_SUCCESS_STATUS:
            result = await callback_processor.confirm(
                callback.order_id, callback.transaction_id, callback.amount,
                expected_method=PaymentMethod.EASY_CARD,
            )
        elif status in EASYCARD_FAILURE_STATUSES:
            result = await callback_processor.fail(
                callback.order_id, f"EasyCard reported {status}", expected_method=PaymentMethod.EASY_CARD
            )
        elif status in EASYCARD_CANCEL_STATUSES:
            result = await callback_processor.cancel(callback.order_id, expected_method=PaymentMethod.EASY_CARD)
        else:
            raise ValidationError(
                f"Unknown EasyCard status {callback.status}",
                details={"order_id": callback.order_id, "status": callback.status},
            )
        return result.to_dict()

    @app.get("/api/wallet/{user_id}")
    def get_wallet(user_id: str):
        return _wallet_payload(ledger.get_or_create_wallet(user_id))

    @app.get("/api/wallet/{user_id}/transactions")
    def get_wallet_transactions(
        user_id: str,
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
    ):
        entries = ledger.get_transactions(user_id, limit=limit, offset=offset)
        return {
            "userId": user_id,
            "transactions": [_transaction_payload(entry) for entry in entries],
            "limit": limit,
            "offset": offset,
        }

    @app.get("/api/wallet/{user_id}/topups")
    def get_wallet_topups(
        user_id: str,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        entries = ledger.get_transactions(
            user_id, limit=limit, offset=offset, transaction_type=WalletTransactionType.DEPOSIT
        )
        return {
            "userId": user_id,
            "topups": [_transaction_payload(entry) for entry in entries],
            "total": ledger.count_transactions(user_id, WalletTransactionType.DEPOSIT),
            "limit": limit,
            "offset": offset,
        }

    def require_admin(x_admin_key: Optional[str]):
        if not admin_api_key:
            raise HTTPException(status_code=403, detail="Admin wallet routes are disabled")
        if not x_admin_key or not hmac.compare_digest(x_admin_key, admin_api_key):
            logger.warning("🔒 Wallet adjustment with invalid admin key rejected")
            raise HTTPException(status_code=401, detail="Invalid admin key")

    @app.post("/api/wallet/topup")
    def admin_top_up(
        body: WalletAdjustmentRequest,
        x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
    ):
        require_admin(x_admin_key)
        entry = ledger.top_up(body.user_id, body.amount, description=body.note)
        logger.info(f"💰 Admin top-up for user {body.user_id}: {entry.amount}, balance {entry.balance_after}")
        return _adjustment_payload(entry, "Top-up successful")

    @app.post("/api/wallet/deduct")
    def admin_deduct(
        body: WalletAdjustmentRequest,
        x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
    ):
        require_admin(x_admin_key)
        reason = (body.reason or "").strip()
        if reason and body.note:
            reason = f"{reason} - {body.note}"
        entry = ledger.deduct(body.user_id, body.amount, reason)
        logger.info(f"💰 Admin deduction for user {body.user_id}: {entry.amount}, balance {entry.balance_after}")
        return _adjustment_payload(entry, "Deduction successful")

    return app


app = create_app()
