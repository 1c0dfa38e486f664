# currency.py
from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import structlog

from .errors import ValidationError
from .helpers import round2, round_unit, to_decimal, to_iso
from .model.db import ExchangeRate
from .model.exchangerate import ExchangeRateStore

log = structlog.get_logger(__name__)

BASE_CURRENCY = "USD"
SECONDARY_CURRENCY = "KES"
RATE_PAIR = f"{BASE_CURRENCY}_{SECONDARY_CURRENCY}"
DEFAULT_RATE = Decimal("130.00")

# sanity bounds for manually entered KES per USD
RATE_MIN = Decimal("50")
RATE_MAX = Decimal("500")
RATE_SOURCES = ("manual", "api", "bank", "central_bank")

# buyer-facing channel -> gateway channel + settlement currency
CHANNELS: Dict[str, Dict[str, str]] = {
    "mpesa": {"gateway": "MPESA", "currency": SECONDARY_CURRENCY},
    "card": {"gateway": "CREDITCARD", "currency": BASE_CURRENCY},
    "bank": {"gateway": "BANK", "currency": BASE_CURRENCY},
}
DEFAULT_CHANNEL = {"gateway": "ALL", "currency": BASE_CURRENCY}


def channel_info(channel: Optional[str]) -> Dict[str, str]:
    return CHANNELS.get((channel or "").strip().lower(), DEFAULT_CHANNEL)


def requires_secondary(channel: Optional[str]) -> bool:
    return channel_info(channel)["currency"] == SECONDARY_CURRENCY


class CurrencyConverter:
    """
    Reads the active rate on every call: admins may change it at any time
    and a checkout must use the latest value.
    """

    def __init__(self, rates: ExchangeRateStore) -> None:
        self.rates = rates

    async def active_rate(self) -> Decimal:
        row = await self.rates.get_active(RATE_PAIR)
        if row is None:
            return DEFAULT_RATE
        return Decimal(str(row.rate))

    async def convert(
        self, amount: Decimal, channel: Optional[str]
    ) -> Tuple[Decimal, str]:
        if not requires_secondary(channel):
            return round2(amount), BASE_CURRENCY
        rate = await self.active_rate()
        converted = round_unit(Decimal(str(amount)) * rate)
        log.info("currency_converted", amount=str(amount), rate=str(rate),
                 converted=str(converted), currency=SECONDARY_CURRENCY)
        return converted, SECONDARY_CURRENCY


# ----------------------------
# Exchange-rate administration
# ----------------------------
def validate_rate(value: Any) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("Valid exchange rate is required", "rate")
    rate = to_decimal(value)
    if rate is None or rate <= 0:
        raise ValidationError(
            "Invalid exchange rate. Please enter a positive number "
            "greater than 0.", "rate",
        )
    if rate < RATE_MIN or rate > RATE_MAX:
        raise ValidationError(
            f"Exchange rate {rate:.2f} seems unusual. Current market rate is "
            f"typically between 125-135 KES per USD. Please verify your "
            f"input.", "rate",
        )
    return rate


def normalize_source(source: Any) -> str:
    return source if source in RATE_SOURCES else "manual"


def rate_payload(row: Optional[ExchangeRate]) -> Dict[str, Any]:
    if row is None:
        return {
            "rate": float(DEFAULT_RATE),
            "source": "default",
            "lastUpdated": None,
            "currency": RATE_PAIR,
        }
    return {
        "id": row.id,
        "rate": float(row.rate),
        "source": row.source,
        "lastUpdated": to_iso(row.updated_at),
        "updatedBy": row.updated_by,
        "currency": row.currency,
    }
