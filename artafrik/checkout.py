# checkout.py
"""
Order submission: validate cart + shipping before any side effect,
persist a PENDING order, then hand it to the gateway.
"""
from __future__ import annotations
import random
import re
import string
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog

from .config import Settings
from .currency import CurrencyConverter, channel_info, requires_secondary
from .errors import GatewayError, PersistenceError, ValidationError
from .gateway import PaymentAdapter
from .helpers import json_number, round2, to_decimal
from .model.orders import OrderStore

log = structlog.get_logger(__name__)

SHIPPING_COST = Decimal("25.00")
TAX_RATE = Decimal("0.08")
PAYMENT_METHOD = "pesapal"
STORE_NAME = "ArtAfrik"
MAX_TEXT = 100

_PHONE_STRIP = re.compile(r"[\s\-\(\)]")
_KENYAN_MOBILE = (
    re.compile(r"^254[71]\d{8}$"),
    re.compile(r"^0[71]\d{8}$"),
    re.compile(r"^\+254[71]\d{8}$"),
)


@dataclass(frozen=True)
class CartLine:
    listing_id: str
    title: str
    price: Decimal
    quantity: int


@dataclass(frozen=True)
class ShippingInfo:
    name: str
    email: str
    address: str
    city: str
    country: str
    phone: str = ""


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class CheckoutRequest:
    lines: List[CartLine]
    shipping: ShippingInfo
    channel: str
    phone: str


# ----------------------------
# Validation
# ----------------------------
def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def validate_cart_item(item: Any, position: int) -> CartLine:
    prefix = f"Cart item {position}: "
    if not isinstance(item, dict):
        raise ValidationError(prefix + "Cart item missing ID", "cartItems")
    listing = item.get("artListing") if isinstance(
        item.get("artListing"), dict) else {}

    listing_id = _text(item.get("artListingId") or item.get("id"))
    if not listing_id:
        raise ValidationError(prefix + "Cart item missing ID", "cartItems")

    quantity = to_decimal(item.get("quantity"))
    if (quantity is None or quantity < 1
            or quantity != quantity.to_integral_value()):
        raise ValidationError(
            prefix + f"Invalid quantity for item {listing_id}", "cartItems"
        )

    raw_price = item.get("price")
    if raw_price is None:
        raw_price = listing.get("price")
    price = to_decimal(raw_price)
    if price is None or price < 0:
        raise ValidationError(
            prefix + f"Invalid price for item {listing_id}", "cartItems"
        )

    title = _text(item.get("title") or listing.get("title")) or "Artwork"
    return CartLine(
        listing_id=listing_id,
        title=title,
        price=price,
        quantity=int(quantity),
    )


def validate_cart(items: Any) -> List[CartLine]:
    if not isinstance(items, list) or not items:
        raise ValidationError("Cart is empty or invalid", "cartItems")
    return [validate_cart_item(it, i) for i, it in enumerate(items, 1)]


def validate_shipping(info: Any) -> ShippingInfo:
    if not isinstance(info, dict):
        raise ValidationError("Shipping information is required",
                              "shippingInfo")
    name = _text(info.get("name"))
    email = _text(info.get("email")).lower()
    address = _text(info.get("address"))
    city = _text(info.get("city"))
    country = _text(info.get("country"))

    errors = []
    if len(name) < 2:
        errors.append("Valid name is required")
    if "@" not in email:
        errors.append("Valid email is required")
    if len(address) < 5:
        errors.append("Valid address is required")
    if len(city) < 2:
        errors.append("Valid city is required")
    if len(country) < 2:
        errors.append("Valid country is required")
    if errors:
        raise ValidationError("; ".join(errors), "shippingInfo")

    return ShippingInfo(name=name, email=email, address=address, city=city,
                        country=country, phone=_text(info.get("phone")))


def validate_phone(phone: str) -> str:
    if not phone:
        raise ValidationError(
            "Phone number is required for M-Pesa payments", "phoneNumber"
        )
    clean = _PHONE_STRIP.sub("", phone)
    if not any(p.match(clean) for p in _KENYAN_MOBILE):
        raise ValidationError(
            "Please enter a valid Kenyan phone number (e.g., 254712345678)",
            "phoneNumber",
        )
    return clean


def parse_checkout(body: Any) -> CheckoutRequest:
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body")
    lines = validate_cart(body.get("cartItems"))
    shipping = validate_shipping(body.get("shippingInfo"))
    channel = _text(body.get("paymentMethod")).lower()
    phone = _text(body.get("phoneNumber")) or shipping.phone
    if requires_secondary(channel):
        phone = validate_phone(phone)
    return CheckoutRequest(lines=lines, shipping=shipping, channel=channel,
                           phone=phone)


# ----------------------------
# Totals & payload
# ----------------------------
def compute_totals(lines: Sequence[CartLine]) -> Totals:
    subtotal = sum(
        (round2(ln.price * ln.quantity) for ln in lines), Decimal("0")
    )
    subtotal = round2(subtotal)
    shipping_cost = round2(SHIPPING_COST)
    tax = round2(subtotal * TAX_RATE)
    return Totals(
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        tax=tax,
        total=round2(subtotal + shipping_cost + tax),
    )


def new_order_number(now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(
        random.choices(string.ascii_uppercase + string.digits, k=9)
    )
    return f"ORD-{now_ms}-{suffix}"


def split_name(name: str) -> tuple[str, str]:
    parts = name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def country_code(country: str, default: str) -> str:
    c = country.strip()
    if len(c) == 2 and c.isalpha():
        return c.upper()
    return default


def _line_item(name: str, price: Decimal, quantity: int) -> Dict[str, Any]:
    name = name[:MAX_TEXT]
    unit_cost = round2(price)
    quantity = max(1, quantity)
    return {
        "name": name,
        "unit_cost": json_number(unit_cost),
        "quantity": quantity,
        "details": name,
        "sub_total": json_number(round2(unit_cost * quantity)),
    }


def build_line_items(
    lines: Sequence[CartLine], totals: Totals
) -> List[Dict[str, Any]]:
    items = [_line_item(ln.title, ln.price, ln.quantity) for ln in lines]
    items.append(_line_item("Shipping", totals.shipping_cost, 1))
    items.append(_line_item("Tax", totals.tax, 1))
    return items


def build_payload(
    *,
    order_id: str,
    amount: Decimal,
    currency: str,
    req: CheckoutRequest,
    totals: Totals,
    callback_url: str,
    notification_id: str,
    default_country: str,
) -> Dict[str, Any]:
    first_name, last_name = split_name(req.shipping.name)
    description = f"{STORE_NAME} Order - {len(req.lines)} item(s)"
    return {
        "id": order_id,
        "currency": currency,
        "amount": json_number(amount),
        "description": description[:MAX_TEXT],
        "callback_url": callback_url,
        "notification_id": notification_id,
        "billing_address": {
            "email_address": req.shipping.email,
            "first_name": first_name,
            "last_name": last_name,
            "phone_number": req.phone,
            "country_code": country_code(req.shipping.country,
                                         default_country),
        },
        "line_items": build_line_items(req.lines, totals),
    }


# ----------------------------
# Submission
# ----------------------------
class OrderSubmission:

    def __init__(
        self,
        *,
        orders: OrderStore,
        adapter: PaymentAdapter,
        converter: CurrencyConverter,
        settings: Settings,
    ) -> None:
        self.orders = orders
        self.adapter = adapter
        self.converter = converter
        self.settings = settings

    async def submit(self, req: CheckoutRequest) -> Dict[str, Any]:
        totals = compute_totals(req.lines)
        log.info("checkout_totals", subtotal=str(totals.subtotal),
                 shipping=str(totals.shipping_cost), tax=str(totals.tax),
                 total=str(totals.total), channel=req.channel or "all")

        # persisted before the gateway is contacted so failures stay
        # auditable
        order = await self.orders.create_order(
            order_id=uuid.uuid4().hex,
            order_number=new_order_number(),
            subtotal=totals.subtotal,
            shipping_cost=totals.shipping_cost,
            tax=totals.tax,
            total=totals.total,
            shipping={
                "name": req.shipping.name,
                "email": req.shipping.email,
                "phone": req.phone,
                "address": req.shipping.address,
                "city": req.shipping.city,
                "country": req.shipping.country,
            },
            items=[
                {"listing_id": ln.listing_id, "title": ln.title,
                 "price": round2(ln.price), "quantity": ln.quantity}
                for ln in req.lines
            ],
            payment_method=PAYMENT_METHOD,
        )
        log.info("order_created", order_id=order.id,
                 order_number=order.order_number, items=len(req.lines))

        result = {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "paymentMethod": PAYMENT_METHOD,
        }

        if not self.adapter.configured:
            log.warning("checkout_development_mode", order_id=order.id)
            return {**result, "isDevelopment": True, "redirectUrl": None}

        await self.adapter.access_token()
        notification_id = await self.adapter.notification_id()

        amount, currency = await self.converter.convert(
            totals.total, req.channel
        )
        payload = build_payload(
            order_id=order.id,
            amount=amount,
            currency=currency,
            req=req,
            totals=totals,
            callback_url=self.settings.callback_url(order.id),
            notification_id=notification_id,
            default_country=self.settings.pesapal_country_code,
        )

        log.info("order_submitting", order_id=order.id, amount=str(amount),
                 currency=currency,
                 channel=channel_info(req.channel)["gateway"],
                 line_items=len(payload["line_items"]))
        try:
            submitted = await self.adapter.submit_order(payload)
        except GatewayError as e:
            raise GatewayError(f"PesaPal error: {e.message}") from e

        tracking_id = submitted["order_tracking_id"]
        try:
            await self.orders.set_tracking_id(order, tracking_id)
        except PersistenceError as e:
            # the gateway-side transaction exists; still redirect the buyer
            log.error("tracking_id_not_saved", order_id=order.id,
                      tracking_id=tracking_id, error=e.message)

        log.info("order_submitted", order_id=order.id,
                 tracking_id=tracking_id)
        return {
            **result,
            "isDevelopment": False,
            "pesapalOrderId": tracking_id,
            "redirectUrl": submitted["redirect_url"],
            "amount": json_number(amount),
            "currency": currency,
        }
