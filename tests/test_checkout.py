import re
from decimal import Decimal

import pytest

from artafrik.checkout import (
    CartLine, OrderSubmission, build_line_items, build_payload,
    compute_totals, country_code, new_order_number, parse_checkout,
    split_name, validate_cart, validate_phone, validate_shipping,
)
from artafrik.currency import CurrencyConverter
from artafrik.errors import GatewayError, ValidationError
from artafrik.model.db import ORD_PENDING, PAY_PENDING

from .conftest import make_settings

SHIPPING = {
    "name": "Amina Wanjiru Otieno",
    "email": "  Amina@Example.com ",
    "address": "12 Moi Avenue",
    "city": "Nairobi",
    "country": "ke",
    "phone": "0712 345 678",
}


def body(**overrides):
    b = {
        "cartItems": [{"artListingId": "art-1", "title": "Savannah at Dusk",
                       "price": 50.00, "quantity": 2}],
        "shippingInfo": dict(SHIPPING),
        "paymentMethod": "card",
        "phoneNumber": "254712345678",
    }
    b.update(overrides)
    return b


# ----------------------------
# Validation
# ----------------------------
@pytest.mark.parametrize("items", [None, [], "cart", {"id": "x"}])
def test_empty_or_malformed_cart(items):
    with pytest.raises(ValidationError, match="Cart is empty or invalid") \
            as exc:
        validate_cart(items)
    assert exc.value.field == "cartItems"


@pytest.mark.parametrize("item, message", [
    ({"price": 10, "quantity": 1}, "Cart item 2: Cart item missing ID"),
    ({"id": "a2", "price": 10, "quantity": 0},
     "Cart item 2: Invalid quantity for item a2"),
    ({"id": "a2", "price": 10, "quantity": 1.5},
     "Invalid quantity for item a2"),
    ({"id": "a2", "price": 10, "quantity": True},
     "Invalid quantity for item a2"),
    ({"id": "a2", "price": -1, "quantity": 1},
     "Cart item 2: Invalid price for item a2"),
    ({"id": "a2", "price": "free", "quantity": 1},
     "Invalid price for item a2"),
    ({"id": "a2", "quantity": 1}, "Invalid price for item a2"),
])
def test_invalid_cart_item_names_position_and_id(item, message):
    good = {"id": "a1", "price": 10, "quantity": 1}
    with pytest.raises(ValidationError) as exc:
        validate_cart([good, item])
    assert message in exc.value.message


def test_cart_item_falls_back_to_listing():
    [line] = validate_cart([{
        "id": "a1",
        "quantity": "3",
        "artListing": {"price": "19.99", "title": "Baobab"},
    }])
    assert line == CartLine(listing_id="a1", title="Baobab",
                            price=Decimal("19.99"), quantity=3)

    [line] = validate_cart([{"id": "a1", "price": 0, "quantity": 1}])
    assert line.title == "Artwork"


def test_shipping_errors_are_reported_together():
    with pytest.raises(ValidationError) as exc:
        validate_shipping({"name": "A", "email": "nope", "address": "12 Road",
                           "city": "Nai", "country": "K"})
    assert exc.value.field == "shippingInfo"
    assert exc.value.message == (
        "Valid name is required; Valid email is required; "
        "Valid country is required"
    )


def test_shipping_is_trimmed_and_email_lowercased():
    info = validate_shipping(SHIPPING)
    assert info.email == "amina@example.com"
    assert info.name == "Amina Wanjiru Otieno"


def test_shipping_required():
    with pytest.raises(ValidationError, match="Shipping information"):
        validate_shipping(None)


@pytest.mark.parametrize("phone, clean", [
    ("254712345678", "254712345678"),
    ("+254 112 345 678", "+254112345678"),
    ("(0712) 345-678", "0712345678"),
])
def test_kenyan_phone_numbers(phone, clean):
    assert validate_phone(phone) == clean


@pytest.mark.parametrize("phone", ["", "12345", "255712345678",
                                   "0812345678"])
def test_invalid_phone_numbers(phone):
    with pytest.raises(ValidationError) as exc:
        validate_phone(phone)
    assert exc.value.field == "phoneNumber"


def test_phone_only_checked_for_mpesa():
    req = parse_checkout(body(phoneNumber="not a phone"))
    assert req.phone == "not a phone"

    with pytest.raises(ValidationError):
        parse_checkout(body(paymentMethod="mpesa", phoneNumber="12"))

    # falls back to the shipping phone
    req = parse_checkout(body(paymentMethod="MPESA", phoneNumber=""))
    assert req.channel == "mpesa"
    assert req.phone == "0712345678"


# ----------------------------
# Totals & payload
# ----------------------------
def test_totals():
    lines = validate_cart(body()["cartItems"])
    t = compute_totals(lines)
    assert (t.subtotal, t.shipping_cost, t.tax, t.total) == (
        Decimal("100.00"), Decimal("25.00"), Decimal("8.00"),
        Decimal("133.00"),
    )


def test_totals_round_half_up():
    lines = [CartLine("a", "A", Decimal("19.99"), 3),
             CartLine("b", "B", Decimal("0.05"), 1)]
    t = compute_totals(lines)
    assert t.subtotal == Decimal("60.02")
    # 4.8016
    assert t.tax == Decimal("4.80")
    assert t.total == Decimal("89.82")


def test_line_items_include_shipping_and_tax():
    lines = validate_cart(body()["cartItems"])
    items = build_line_items(lines, compute_totals(lines))
    assert [i["name"] for i in items] == [
        "Savannah at Dusk", "Shipping", "Tax"
    ]
    assert items[0] == {
        "name": "Savannah at Dusk",
        "unit_cost": 50,
        "quantity": 2,
        "details": "Savannah at Dusk",
        "sub_total": 100,
    }
    assert items[2]["unit_cost"] == 8


def test_long_titles_are_truncated():
    lines = [CartLine("a", "x" * 250, Decimal("1.50"), 1)]
    [item, _, _] = build_line_items(lines, compute_totals(lines))
    assert len(item["name"]) == 100
    assert item["unit_cost"] == 1.5


def test_payload_billing_address():
    req = parse_checkout(body())
    totals = compute_totals(req.lines)
    payload = build_payload(
        order_id="o1", amount=Decimal("133.00"), currency="USD", req=req,
        totals=totals, callback_url="https://cb", notification_id="ipn-1",
        default_country="KE",
    )
    assert payload["amount"] == 133
    assert payload["description"] == "ArtAfrik Order - 1 item(s)"
    assert payload["billing_address"] == {
        "email_address": "amina@example.com",
        "first_name": "Amina",
        "last_name": "Wanjiru Otieno",
        "phone_number": "254712345678",
        "country_code": "KE",
    }


def test_name_and_country_helpers():
    assert split_name("Cher") == ("Cher", "")
    assert split_name("") == ("", "")
    assert country_code("ug", "KE") == "UG"
    assert country_code("Kenya", "KE") == "KE"


def test_order_number_format():
    assert re.fullmatch(r"ORD-1700000000123-[A-Z0-9]{9}",
                        new_order_number(1_700_000_000_123))


# ----------------------------
# Submission
# ----------------------------
def submission(orders, rates, adapter, **settings):
    return OrderSubmission(
        orders=orders,
        adapter=adapter,
        converter=CurrencyConverter(rates),
        settings=make_settings(**settings),
    )


async def test_submit_order_end_to_end(orders, rates, adapter, pesapal):
    result = await submission(orders, rates, adapter).submit(
        parse_checkout(body())
    )

    assert result["isDevelopment"] is False
    assert result["pesapalOrderId"] == "trk-1"
    assert result["redirectUrl"] == "https://pay.test/iframe?trk=trk-1"
    assert (result["amount"], result["currency"]) == (133, "USD")
    assert result["paymentMethod"] == "pesapal"

    sent = pesapal.sent_json("Transactions/SubmitOrderRequest")
    assert sent["id"] == result["orderId"]
    assert (sent["amount"], sent["currency"]) == (133, "USD")
    assert sent["notification_id"] == "ipn-1"
    assert sent["callback_url"] == (
        "https://shop.test/checkout/success?orderId="
        f"{result['orderId']}&method=pesapal"
    )
    assert len(sent["line_items"]) == 3
    # one token serves the IPN lookup and the submission
    assert len(pesapal.calls("Auth/RequestToken")) == 1
    req = pesapal.calls("Transactions/SubmitOrderRequest")[0]
    assert req.headers["authorization"] == "Bearer tok-1"

    order = await orders.get(result["orderId"])
    assert order.order_number == result["orderNumber"]
    assert order.tracking_id == "trk-1"
    assert (order.payment_status, order.order_status) == (
        PAY_PENDING, ORD_PENDING
    )
    assert order.total == Decimal("133.00")
    assert [(i.listing_id, i.quantity) for i in order.items] == [
        ("art-1", 2)
    ]


async def test_mpesa_amount_is_converted(orders, rates, adapter, pesapal):
    result = await submission(orders, rates, adapter).submit(
        parse_checkout(body(paymentMethod="mpesa"))
    )
    assert (result["amount"], result["currency"]) == (17290, "KES")

    sent = pesapal.sent_json("Transactions/SubmitOrderRequest")
    assert (sent["amount"], sent["currency"]) == (17290, "KES")
    # line items stay in the base currency
    assert sent["line_items"][0]["unit_cost"] == 50

    order = await orders.get(result["orderId"])
    assert order.currency == "USD"
    assert order.total == Decimal("133.00")


async def test_development_mode_without_credentials(orders, rates, pesapal,
                                                    http):
    adapter = pesapal.adapter(http=http, consumer_key="", consumer_secret="")
    result = await submission(orders, rates, adapter).submit(
        parse_checkout(body())
    )
    assert result["isDevelopment"] is True
    assert result["redirectUrl"] is None
    assert pesapal.requests == []
    assert await orders.get(result["orderId"]) is not None


async def test_gateway_error_keeps_pending_order(orders, rates, adapter,
                                                 pesapal):
    pesapal.routes["Transactions/SubmitOrderRequest"] = (
        200, {"error": {"code": "invalid_currency",
                        "message": "Currency not supported"}, "status": "500"}
    )
    with pytest.raises(GatewayError,
                       match="PesaPal error: Currency not supported"):
        await submission(orders, rates, adapter).submit(
            parse_checkout(body())
        )

    [order] = await orders.list_recent()
    assert order.tracking_id is None
    assert order.payment_status == PAY_PENDING


async def test_incomplete_submit_reply_is_an_error(orders, rates, adapter,
                                                   pesapal):
    pesapal.routes["Transactions/SubmitOrderRequest"] = (
        200, {"order_tracking_id": "trk-1"}
    )
    with pytest.raises(GatewayError, match="Invalid response from PesaPal"):
        await submission(orders, rates, adapter).submit(
            parse_checkout(body())
        )
