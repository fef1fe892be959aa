"""
LINE Pay v3 direct integration (redirect flow)

Request API reserves the payment and returns a paymentUrl the user is sent
to; after approval LINE Pay redirects the user back to our confirm URL with
transactionId and orderId, and Confirm API captures the money.
"""

import base64
import hashlib
import hmac
import json
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from config import Config
from models import PaymentMethod, PaymentOrder
from services.provider_adapter import RedirectAdapter, ProviderInitiation, ProviderConfirmation
from utils.exceptions import ProviderError

logger = logging.getLogger(__name__)

LINE_PAY_SUCCESS_CODE = "0000"
REQUEST_URI = "/v3/payments/request"
CONFIRM_URI = "/v3/payments/requests/{transaction_id}/confirm"


def generate_signature(channel_secret: str, uri: str, body: str, nonce: str) -> str:
    """Base64(HMAC-SHA256(secret, secret + uri + body + nonce))"""
    message = f"{channel_secret}{uri}{body}{nonce}"
    digest = hmac.new(channel_secret.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class LinePayAdapter(RedirectAdapter):

    method = PaymentMethod.LINE_PAY
    provider_name = "LINE Pay"

    def __init__(self, api_url: str = None, channel_id: str = None, channel_secret: str = None,
                 confirm_url: str = None, cancel_url: str = None, timeout: int = None):
        super().__init__(timeout)
        self.api_url = (api_url or Config.LINE_PAY_API_URL).rstrip("/")
        self.channel_id = channel_id if channel_id is not None else Config.LINE_PAY_CHANNEL_ID
        self.channel_secret = channel_secret if channel_secret is not None else Config.LINE_PAY_CHANNEL_SECRET
        self.confirm_url = confirm_url or Config.LINE_PAY_CONFIRM_URL
        self.cancel_url = cancel_url or Config.LINE_PAY_CANCEL_URL

    def auth_headers(self, uri: str, body: str, nonce: str = None) -> Dict[str, str]:
        nonce = nonce or str(uuid.uuid4())
        return {
            "Content-Type": "application/json",
            "X-LINE-ChannelId": self.channel_id,
            "X-LINE-Authorization-Nonce": nonce,
            "X-LINE-Authorization": generate_signature(self.channel_secret, uri, body, nonce),
        }

    def build_request_body(self, order: PaymentOrder) -> Dict[str, Any]:
        amount = self._provider_amount(Decimal(order.amount))
        return {
            "amount": amount,
            "currency": order.currency,
            "orderId": order.id,
            "packages": [
                {
                    "id": f"package_{order.id}",
                    "amount": amount,
                    "name": order.description,
                    "products": [
                        {"name": order.description, "quantity": 1, "price": amount},
                    ],
                }
            ],
            "redirectUrls": {
                "confirmUrl": self.confirm_url,
                "cancelUrl": self.cancel_url,
            },
        }

    async def _signed_post(self, uri: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = json.dumps(payload, separators=(",", ":"))
        return await self._post_json(
            f"{self.api_url}{uri}", payload, self.auth_headers(uri, body), body=body
        )

    async def initiate(
        self, order: PaymentOrder, request_metadata: Optional[Dict[str, Any]] = None
    ) -> ProviderInitiation:
        logger.info(f"📡 LINE Pay request for order {order.id}: {order.amount} {order.currency}")
        response = await self._signed_post(REQUEST_URI, self.build_request_body(order))

        return_code = response.get("returnCode")
        if return_code != LINE_PAY_SUCCESS_CODE:
            message = response.get("returnMessage") or "LINE Pay request rejected"
            logger.error(f"❌ LINE Pay request failed for order {order.id}: {return_code} {message}")
            raise ProviderError(
                f"LINE Pay request failed: {message}",
                provider=self.provider_name,
                error_code=f"LINEPAY_{return_code}",
                details={"returnCode": return_code},
            )

        info = response.get("info") or {}
        transaction_id = info.get("transactionId")
        payment_url = (info.get("paymentUrl") or {}).get("web")
        if not transaction_id or not payment_url:
            raise ProviderError(
                "LINE Pay response is missing transactionId or paymentUrl",
                provider=self.provider_name,
                error_code="PROVIDER_BAD_RESPONSE",
            )

        logger.info(f"✅ LINE Pay request accepted for order {order.id}: transactionId={transaction_id}")
        return ProviderInitiation(
            settled=False,
            external_order_id=str(transaction_id),
            payment_url=payment_url,
            message="Redirect to LINE Pay to complete payment",
            raw_response=response,
        )

    async def confirm(
        self, order: PaymentOrder, external_transaction_id: str, amount: Decimal
    ) -> ProviderConfirmation:
        uri = CONFIRM_URI.format(transaction_id=external_transaction_id)
        payload = {"amount": self._provider_amount(Decimal(amount)), "currency": order.currency}

        logger.info(f"📡 LINE Pay confirm for order {order.id}: transactionId={external_transaction_id}")
        response = await self._signed_post(uri, payload)

        return_code = response.get("returnCode")
        if return_code == LINE_PAY_SUCCESS_CODE:
            logger.info(f"✅ LINE Pay confirmed order {order.id}")
            return ProviderConfirmation(
                success=True,
                external_transaction_id=str(external_transaction_id),
                message=response.get("returnMessage") or "Success.",
                raw_response=response,
            )

        message = response.get("returnMessage") or "LINE Pay confirmation declined"
        logger.warning(f"⚠️ LINE Pay declined confirmation for order {order.id}: {return_code} {message}")
        return ProviderConfirmation(
            success=False,
            external_transaction_id=str(external_transaction_id),
            message=message,
            error_code=f"LINEPAY_{return_code}",
            raw_response=response,
        )
