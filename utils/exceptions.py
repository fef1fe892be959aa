"""
Payment Exceptions
Error taxonomy shared by the order manager, callback processor and wallet ledger
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base class for payment and ledger failures"""

    error_code = "PAYMENT_ERROR"

    def __init__(self, message: str, error_code: str = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PaymentError):
    """Input or callback payload rejected before any side effect"""

    error_code = "VALIDATION_ERROR"


class CallbackAmountMismatch(ValidationError):
    """Provider reported an amount different from the stored order amount"""

    error_code = "CALLBACK_AMOUNT_MISMATCH"

    def __init__(self, order_id: str, expected: Decimal, received: Decimal):
        super().__init__(
            f"Callback amount {received} does not match order {order_id} amount {expected}",
            details={"order_id": order_id, "expected": str(expected), "received": str(received)},
        )
        self.order_id = order_id
        self.expected = expected
        self.received = received


class OrderNotFound(PaymentError):

    error_code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        super().__init__(f"Payment order {order_id} not found", details={"order_id": order_id})
        self.order_id = order_id


class ProviderError(PaymentError):
    """Payment provider unreachable, timed out, or answered with garbage"""

    error_code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider: str = None, error_code: str = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code, details)
        self.provider = provider


class ProviderOperationNotSupported(ProviderError):

    error_code = "PROVIDER_OPERATION_NOT_SUPPORTED"


class LedgerError(PaymentError):
    """Wallet ledger mutation could not be applied"""

    error_code = "LEDGER_ERROR"


class InsufficientFunds(LedgerError):

    error_code = "INSUFFICIENT_FUNDS"

    def __init__(self, user_id: str, balance: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient balance for user {user_id}: balance {balance}, requested {requested}",
            details={"user_id": user_id, "balance": str(balance), "requested": str(requested)},
        )
        self.user_id = user_id
        self.balance = balance
        self.requested = requested


class LedgerConflictError(LedgerError):
    """Balance update kept losing the version race after all retries"""

    error_code = "LEDGER_CONFLICT"


class WalletInactiveError(LedgerError):

    error_code = "WALLET_INACTIVE"
