"""
TapPay Pay-by-Prime adapter for credit card top-ups
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from config import Config
from models import PaymentOrder
from services.provider_adapter import CreditCardAdapter, ProviderInitiation

logger = logging.getLogger(__name__)

TAPPAY_SUCCESS_STATUS = 0


class TapPayAdapter(CreditCardAdapter):
    """Charges a card once using the prime token issued to the frontend"""

    provider_name = "TapPay"

    def __init__(self, api_url: str = None, partner_key: str = None, merchant_id: str = None,
                 timeout: int = None):
        super().__init__(timeout)
        self.api_url = api_url or Config.TAPPAY_API_URL
        self.partner_key = partner_key if partner_key is not None else Config.TAPPAY_PARTNER_KEY
        self.merchant_id = merchant_id if merchant_id is not None else Config.TAPPAY_MERCHANT_ID

    def build_payload(self, order: PaymentOrder, request_metadata: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "partner_key": self.partner_key,
            "merchant_id": self.merchant_id,
            "prime": request_metadata.get("prime"),
            "amount": self._provider_amount(Decimal(order.amount)),
            "currency": order.currency,
            "details": order.description,
            "order_number": order.id,
            "cardholder": {
                "phone_number": request_metadata.get("phone", ""),
                "name": request_metadata.get("name", ""),
                "email": request_metadata.get("email", ""),
            },
            "remember": False,
        }

    async def initiate(
        self, order: PaymentOrder, request_metadata: Optional[Dict[str, Any]] = None
    ) -> ProviderInitiation:
        payload = self.build_payload(order, request_metadata or {})
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.partner_key,
        }

        logger.info(f"📡 TapPay charge for order {order.id}: {order.amount} {order.currency}")
        response = await self._post_json(self.api_url, payload, headers)

        status = response.get("status")
        if status == TAPPAY_SUCCESS_STATUS:
            rec_trade_id = response.get("rec_trade_id")
            logger.info(f"✅ TapPay charge succeeded for order {order.id}: rec_trade_id={rec_trade_id}")
            return ProviderInitiation(
                settled=True,
                success=True,
                external_order_id=rec_trade_id,
                external_transaction_id=response.get("bank_transaction_id") or rec_trade_id,
                message=response.get("msg") or "Payment successful",
                raw_response=response,
            )

        message = response.get("msg") or "Card payment declined"
        logger.warning(f"⚠️ TapPay declined order {order.id}: status={status} msg={message}")
        return ProviderInitiation(
            settled=True,
            success=False,
            external_order_id=response.get("rec_trade_id"),
            message=message,
            error_code=f"TAPPAY_{status}",
            raw_response=response,
        )
