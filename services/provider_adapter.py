"""
Payment Provider Adapters
Provider-specific request/response shapes behind a common
{validate_request, initiate, confirm, cancel} interface
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from models import PaymentMethod, PaymentOrder
from utils.exceptions import ProviderError, ProviderOperationNotSupported, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class ProviderInitiation:
    """
    Outcome of starting a payment with a provider

    settled=True means the provider already captured or declined the money
    (credit card); settled=False means the user still has to complete the
    payment at payment_url.
    """
    settled: bool
    success: bool = True
    external_order_id: Optional[str] = None
    external_transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    message: str = ""
    error_code: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderConfirmation:
    success: bool
    external_transaction_id: Optional[str] = None
    message: str = ""
    error_code: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderCancellation:
    acknowledged: bool = True
    message: str = ""


class ProviderAdapter(ABC):
    """Base class for payment provider integrations"""

    method: PaymentMethod = None
    provider_name: str = "provider"
    # True when initiate captures or declines the money itself
    settles_on_initiate: bool = False
    # TWD providers only accept whole-dollar amounts
    integer_amounts: bool = True

    def __init__(self, timeout: int = None):
        self.timeout = timeout or Config.PROVIDER_TIMEOUT_SECONDS

    def validate_request(self, amount: Decimal, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Reject requests the provider would refuse, before anything is persisted"""
        if self.integer_amounts and amount != amount.to_integral_value():
            raise ValidationError(
                f"{self.provider_name} only accepts whole amounts, got {amount}",
                details={"provider": self.provider_name, "amount": str(amount)},
            )

    @abstractmethod
    async def initiate(
        self, order: PaymentOrder, request_metadata: Optional[Dict[str, Any]] = None
    ) -> ProviderInitiation:
        pass

    @abstractmethod
    async def confirm(
        self, order: PaymentOrder, external_transaction_id: str, amount: Decimal
    ) -> ProviderConfirmation:
        pass

    @abstractmethod
    async def cancel(self, order: PaymentOrder) -> ProviderCancellation:
        pass

    def _provider_amount(self, amount: Decimal):
        if self.integer_amounts:
            return int(amount)
        return str(amount)

    async def _post_json(self, url: str, payload: Dict[str, Any], headers: Dict[str, str],
                         body: Optional[str] = None) -> Dict[str, Any]:
        """
        POST a JSON body and return the decoded response

        Raises:
            ProviderError: network failure, timeout, non-2xx status or a body
            that is not a JSON object
        """
        data = body if body is not None else json.dumps(payload)
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, data=data, headers=headers) as response:
                    text = await response.text()
                    status = response.status
        except asyncio.TimeoutError as e:
            logger.error(f"❌ {self.provider_name} timed out after {self.timeout}s: {url}")
            raise ProviderError(
                f"{self.provider_name} request timed out", provider=self.provider_name,
                error_code="PROVIDER_TIMEOUT",
            ) from e
        except aiohttp.ClientError as e:
            logger.error(f"❌ {self.provider_name} network error: {type(e).__name__}: {e}")
            raise ProviderError(
                f"{self.provider_name} unreachable: {e}", provider=self.provider_name,
                error_code="PROVIDER_NETWORK_ERROR",
            ) from e

        if status < 200 or status >= 300:
            logger.error(f"❌ {self.provider_name} HTTP {status}: {text[:500]}")
            raise ProviderError(
                f"{self.provider_name} returned HTTP {status}", provider=self.provider_name,
                error_code="PROVIDER_HTTP_ERROR", details={"status": status},
            )

        try:
            decoded = json.loads(text)
        except ValueError as e:
            raise ProviderError(
                f"{self.provider_name} returned invalid JSON", provider=self.provider_name,
                error_code="PROVIDER_BAD_RESPONSE",
            ) from e

        if not isinstance(decoded, dict):
            raise ProviderError(
                f"{self.provider_name} returned an unexpected payload", provider=self.provider_name,
                error_code="PROVIDER_BAD_RESPONSE",
            )
        return decoded


class CreditCardAdapter(ProviderAdapter):
    """Synchronous capture: initiate charges the card once and settles immediately"""

    method = PaymentMethod.CREDIT_CARD
    settles_on_initiate = True

    def validate_request(self, amount: Decimal, metadata: Optional[Dict[str, Any]] = None) -> None:
        super().validate_request(amount, metadata)
        if not (metadata or {}).get("prime"):
            raise ValidationError(
                "Card payment requires a prime token", details={"field": "prime"}
            )

    async def confirm(
        self, order: PaymentOrder, external_transaction_id: str, amount: Decimal
    ) -> ProviderConfirmation:
        raise ProviderOperationNotSupported(
            f"{self.provider_name} payments settle at initiation and take no confirmation",
            provider=self.provider_name,
        )

    async def cancel(self, order: PaymentOrder) -> ProviderCancellation:
        raise ProviderOperationNotSupported(
            f"{self.provider_name} payments cannot be cancelled once charged",
            provider=self.provider_name,
        )


class RedirectAdapter(ProviderAdapter):
    """Asynchronous flow: initiate returns a payment URL, a later callback settles"""

    def validate_callback(self, order: PaymentOrder, external_transaction_id: str) -> None:
        """Reject a callback whose provider reference contradicts what initiate stored"""
        # The provider echoes the reference its initiate call issued
        stored = order.external_transaction_id or order.external_order_id
        if stored and str(stored) != str(external_transaction_id):
            raise ValidationError(
                f"Transaction id {external_transaction_id} does not match order {order.id}",
                details={"order_id": order.id, "external_transaction_id": external_transaction_id},
            )

    async def cancel(self, order: PaymentOrder) -> ProviderCancellation:
        # The user aborted at the provider; nothing was captured
        logger.info(f"🔄 {self.provider_name} cancellation acknowledged for order {order.id}")
        return ProviderCancellation(acknowledged=True, message="Payment cancelled by user")


class ProviderRegistry:
    """Adapters keyed by PaymentMethod"""

    def __init__(self, adapters: Optional[List[ProviderAdapter]] = None):
        self._adapters: Dict[PaymentMethod, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        if not isinstance(adapter.method, PaymentMethod):
            raise ValueError(f"{type(adapter).__name__} does not declare a PaymentMethod")
        self._adapters[adapter.method] = adapter
        logger.debug(f"🔧 Registered {adapter.provider_name} for {adapter.method.value}")

    def get(self, method) -> ProviderAdapter:
        try:
            key = method if isinstance(method, PaymentMethod) else PaymentMethod(method)
        except ValueError as e:
            raise ValidationError(
                f"Unknown payment method: {method}", details={"payment_method": str(method)}
            ) from e

        adapter = self._adapters.get(key)
        if adapter is None:
            raise ValidationError(
                f"Payment method {key.value} is not available",
                details={"payment_method": key.value},
            )
        return adapter

    @property
    def methods(self) -> List[PaymentMethod]:
        return list(self._adapters)


def build_default_registry() -> ProviderRegistry:
    """Registry with every provider configured through Config"""
    from services.tappay_service import TapPayAdapter
    from services.linepay_service import LinePayAdapter
    from services.easycard_service import EasyCardAdapter

    return ProviderRegistry([TapPayAdapter(), LinePayAdapter(), EasyCardAdapter()])
