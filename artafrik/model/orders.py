# model/orders.py
from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select

from .db import Order, OrderItem, PAY_PENDING, ORD_PENDING
from .store import GatedStore
from ..helpers import now_ts, to_iso


class OrderStore(GatedStore):

    async def create_order(
        self,
        *,
        order_id: str,
        order_number: str,
        subtotal: Decimal,
        shipping_cost: Decimal,
        tax: Decimal,
        total: Decimal,
        shipping: Dict[str, str],
        items: Sequence[Dict[str, Any]],
        currency: str = "USD",
        payment_method: str = "pesapal",
    ) -> Order:
        ts = now_ts()
        order = Order(
            id=order_id,
            order_number=order_number,
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            tax=tax,
            total=total,
            currency=currency,
            payment_method=payment_method,
            payment_status=PAY_PENDING,
            order_status=ORD_PENDING,
            shipping_name=shipping["name"],
            shipping_email=shipping["email"],
            shipping_phone=shipping.get("phone", ""),
            shipping_address=shipping["address"],
            shipping_city=shipping["city"],
            shipping_country=shipping["country"],
            created_at=ts,
            updated_at=ts,
        )
        order.items = [
            OrderItem(
                position=pos,
                listing_id=it["listing_id"],
                title=it["title"],
                price=it["price"],
                quantity=it["quantity"],
            )
            for pos, it in enumerate(items)
        ]
        async with self.transaction("create_order") as db:
            db.add(order)
        return order

    async def _first(self, op: str, stmt) -> Optional[Order]:
        async with self.transaction(op) as db:
            result = await db.execute(stmt.limit(1))
            return result.scalars().first()

    async def get(self, order_id: str) -> Optional[Order]:
        return await self._first(
            "get_order", select(Order).where(Order.id == order_id)
        )

    async def find_by_tracking_id(self, tracking_id: str) -> Optional[Order]:
        return await self._first(
            "find_by_tracking_id",
            select(Order).where(Order.tracking_id == tracking_id),
        )

    async def find_by_order_number(self, number: str) -> Optional[Order]:
        return await self._first(
            "find_by_order_number",
            select(Order).where(Order.order_number == number),
        )

    async def find_by_order_number_containing(
        self, fragment: str
    ) -> Optional[Order]:
        return await self._first(
            "find_by_order_number_containing",
            select(Order)
            .where(Order.order_number.contains(fragment, autoescape=True))
            .order_by(Order.created_at.desc()),
        )

    async def set_tracking_id(self, order: Order, tracking_id: str) -> None:
        async with self.transaction("set_tracking_id") as db:
            order.tracking_id = tracking_id
            order.updated_at = now_ts()
            db.add(order)

    async def save_status(
        self,
        order: Order,
        *,
        payment_status: str,
        order_status: str,
        notes: Optional[str],
        transaction_id: Optional[str],
        payment_method: Optional[str],
        tracking_id: Optional[str] = None,
    ) -> Order:
        # the pair is always written together
        async with self.transaction("save_status") as db:
            order.payment_status = payment_status
            order.order_status = order_status
            order.notes = notes
            order.transaction_id = transaction_id
            if payment_method:
                order.payment_method = payment_method
            # recovers from a tracking id lost after submission
            if tracking_id and not order.tracking_id:
                order.tracking_id = tracking_id
            order.updated_at = now_ts()
            db.add(order)
        return order

    async def list_recent(self, limit: int = 200) -> List[Order]:
        async with self.transaction("list_orders") as db:
            result = await db.execute(
                select(Order)
                .order_by(Order.created_at.desc())
                .limit(max(1, min(limit, 500)))
            )
            return list(result.scalars().all())


def serialize_order(o: Order, *, with_items: bool = True) -> Dict[str, Any]:
    out = {
        "id": o.id,
        "orderNumber": o.order_number,
        "subtotal": float(o.subtotal),
        "shippingCost": float(o.shipping_cost),
        "tax": float(o.tax),
        "total": float(o.total),
        "currency": o.currency,
        "paymentMethod": o.payment_method,
        "pesapalOrderId": o.tracking_id,
        "pesapalTransactionId": o.transaction_id,
        "paymentStatus": o.payment_status,
        "status": o.order_status,
        "shippingName": o.shipping_name,
        "shippingEmail": o.shipping_email,
        "shippingPhone": o.shipping_phone,
        "shippingAddress": o.shipping_address,
        "shippingCity": o.shipping_city,
        "shippingCountry": o.shipping_country,
        "createdAt": to_iso(o.created_at),
        "updatedAt": to_iso(o.updated_at),
    }
    if with_items:
        out["items"] = [
            {
                "artListingId": it.listing_id,
                "title": it.title,
                "price": float(it.price),
                "quantity": it.quantity,
            }
            for it in o.items
        ]
    return out
