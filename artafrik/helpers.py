import hmac
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

CENT = Decimal("0.01")
UNIT = Decimal("1")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def to_decimal(value: Any) -> Optional[Decimal]:
    # bool is an int subclass; True must never turn into a price of 1
    if value is None or isinstance(value, bool):
        return None
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return d


def round2(value: Decimal | int | float) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def round_unit(value: Decimal | int | float) -> Decimal:
    return Decimal(str(value)).quantize(UNIT, rounding=ROUND_HALF_UP)


def json_number(value: Decimal) -> int | float:
    # httpx/orjson cannot serialise Decimal
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
