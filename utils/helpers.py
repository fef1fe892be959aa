import uuid
import time
import secrets
import string
import logging
from decimal import Decimal, InvalidOperation
from typing import Union

from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Money is stored as NUMERIC(14, 2)
MONEY_PRECISION = Decimal("0.01")
MAX_MONEY_AMOUNT = Decimal("999999999999.99")

_ORDER_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_order_id() -> str:
    """Internal payment order id, e.g. ORDER_1718000000000_k3j9x0a2b"""
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(9))
    return f"ORDER_{millis}_{suffix}"


def generate_wallet_transaction_id() -> str:
    return f"WTX_{uuid.uuid4().hex.upper()}"


def parse_amount(value: Union[str, int, float, Decimal], field: str = "amount") -> Decimal:
    """
    Convert an inbound monetary value to an exact Decimal

    Floats go through str() so 0.1 stays 0.1. Values must be finite and have
    at most two decimal places; sign is not checked here.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required", details={"field": field})

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} is not a valid decimal: {value!r}", details={"field": field}) from e

    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", details={"field": field})

    if abs(amount) > MAX_MONEY_AMOUNT:
        raise ValidationError(f"{field} is out of range: {amount}", details={"field": field})

    if amount != amount.quantize(MONEY_PRECISION):
        raise ValidationError(
            f"{field} has more than two decimal places: {amount}", details={"field": field}
        )

    return amount.quantize(MONEY_PRECISION)


def amounts_equal(left: Decimal, right: Decimal) -> bool:
    return Decimal(left).quantize(MONEY_PRECISION) == Decimal(right).quantize(MONEY_PRECISION)


def format_amount(amount: Decimal, currency: str) -> str:
    return f"{Decimal(amount):,.2f} {currency}"
