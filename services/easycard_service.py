"""
EasyCard (優游付) redirect payment adapter
"""

import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from config import Config
from models import PaymentMethod, PaymentOrder
from services.provider_adapter import RedirectAdapter, ProviderInitiation, ProviderConfirmation
from utils.exceptions import ProviderError

logger = logging.getLogger(__name__)


def verify_callback_signature(payload: Union[str, bytes], signature: str, secret: str) -> bool:
    """
    Check the HMAC-SHA256 hex signature EasyCard sends with its callbacks

    Accepts both bare hex and "sha256=<hex>" forms.
    """
    if not signature or not secret:
        return False

    body = payload if isinstance(payload, bytes) else payload.encode()
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    provided = signature[len("sha256="):] if signature.startswith("sha256=") else signature
    return hmac.compare_digest(provided.strip().lower(), expected)


class EasyCardAdapter(RedirectAdapter):

    method = PaymentMethod.EASY_CARD
    provider_name = "EasyCard"

    def __init__(self, api_url: str = None, merchant_id: str = None, api_key: str = None,
                 success_url: str = None, cancel_url: str = None, callback_url: str = None,
                 timeout: int = None):
        super().__init__(timeout)
        self.api_url = api_url or Config.EASYCARD_API_URL
        self.merchant_id = merchant_id if merchant_id is not None else Config.EASYCARD_MERCHANT_ID
        self.api_key = api_key if api_key is not None else Config.EASYCARD_API_KEY
        self.success_url = success_url or Config.EASYCARD_SUCCESS_URL
        self.cancel_url = cancel_url or Config.EASYCARD_CANCEL_URL
        self.callback_url = callback_url or Config.EASYCARD_CALLBACK_URL

    def verify_callback(self, payload: Union[str, bytes], signature: str) -> bool:
        return verify_callback_signature(payload, signature, self.api_key)

    def build_payload(self, order: PaymentOrder, request_metadata: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "merchant_id": self.merchant_id,
            "order_id": order.id,
            "amount": self._provider_amount(Decimal(order.amount)),
            "currency": order.currency,
            "description": order.description,
            "customer_name": request_metadata.get("name") or "Customer",
            "customer_email": request_metadata.get("email", ""),
            "customer_phone": request_metadata.get("phone", ""),
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "callback_url": self.callback_url,
        }

    async def initiate(
        self, order: PaymentOrder, request_metadata: Optional[Dict[str, Any]] = None
    ) -> ProviderInitiation:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        logger.info(f"📡 EasyCard create payment for order {order.id}: {order.amount} {order.currency}")
        response = await self._post_json(self.api_url, self.build_payload(order, request_metadata or {}), headers)

        payment_url = response.get("payment_url")
        if not response.get("success") or not payment_url:
            message = response.get("message") or "EasyCard payment creation failed"
            logger.error(f"❌ EasyCard rejected order {order.id}: {message}")
            raise ProviderError(
                f"EasyCard payment creation failed: {message}",
                provider=self.provider_name,
                error_code="EASYCARD_REJECTED",
            )

        external_id = response.get("transaction_id") or response.get("payment_id") or order.id
        logger.info(f"✅ EasyCard payment created for order {order.id}: {external_id}")
        return ProviderInitiation(
            settled=False,
            external_order_id=str(external_id),
            payment_url=payment_url,
            message="Redirect to EasyCard to complete payment",
            raw_response=response,
        )

    async def confirm(
        self, order: PaymentOrder, external_transaction_id: str, amount: Decimal
    ) -> ProviderConfirmation:
        # EasyCard captures before notifying; the signed callback is the confirmation
        logger.info(f"✅ EasyCard payment {external_transaction_id} accepted for order {order.id}")
        return ProviderConfirmation(
            success=True,
            external_transaction_id=str(external_transaction_id),
            message="Payment captured by EasyCard",
        )
