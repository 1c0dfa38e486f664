# reconcile.py
"""
Applies gateway payment-status reports (IPN push or status poll) to
stored orders.

Both paths go through apply_notification(): one mapping table, one
audit-note format, one fresh-transition rule.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import (
    Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple
)

import structlog

from .errors import NotFoundError, ValidationError
from .gateway import Notification, PaymentAdapter, status_notification
from .helpers import now_ts, to_iso
from .model.db import (
    Order,
    ORD_CANCELLED, ORD_CONFIRMED, ORD_PENDING, ORD_REFUNDED,
    PAY_COMPLETED, PAY_FAILED, PAY_PENDING, PAY_REFUNDED,
)
from .model.orders import OrderStore

log = structlog.get_logger(__name__)


# ----------------------------
# Status mapping
# ----------------------------
@dataclass(frozen=True)
class StatusPair:
    payment_status: str
    order_status: str


_COMPLETED = StatusPair(PAY_COMPLETED, ORD_CONFIRMED)
_PENDING = StatusPair(PAY_PENDING, ORD_PENDING)
_FAILED = StatusPair(PAY_FAILED, ORD_CANCELLED)
_REFUNDED = StatusPair(PAY_REFUNDED, ORD_REFUNDED)

STATUS_TABLE: Dict[str, StatusPair] = {
    "COMPLETED": _COMPLETED,
    "PAID": _COMPLETED,
    "POSTED": _COMPLETED,
    "PENDING": _PENDING,
    "PROCESSING": _PENDING,
    "IN_PROGRESS": _PENDING,
    "FAILED": _FAILED,
    "INVALID": _FAILED,
    "DECLINED": _FAILED,
    "CANCELLED": _FAILED,
    "VOIDED": _FAILED,
    "REFUNDED": _REFUNDED,
    "REFUND": _REFUNDED,
}
DEFAULT_STATUS = _PENDING

# a late PENDING report must not undo these
SETTLED = frozenset({PAY_COMPLETED, PAY_FAILED, PAY_REFUNDED})


def map_status(status: Optional[str]) -> StatusPair:
    if not isinstance(status, str):
        return DEFAULT_STATUS
    return STATUS_TABLE.get(status.upper(), DEFAULT_STATUS)


# ----------------------------
# Order lookup
# ----------------------------
Strategy = Callable[[OrderStore, str, str], Awaitable[Optional[Order]]]

MIN_ID_LENGTH = 10
MIN_SUFFIX_LENGTH = 6


async def by_tracking_id(store: OrderStore, tracking_id: str,
                         reference: str) -> Optional[Order]:
    if not tracking_id:
        return None
    return await store.find_by_tracking_id(tracking_id)


async def by_order_number(store: OrderStore, tracking_id: str,
                          reference: str) -> Optional[Order]:
    if not reference:
        return None
    return await store.find_by_order_number(reference)


async def by_order_id(store: OrderStore, tracking_id: str,
                      reference: str) -> Optional[Order]:
    # too short to be one of our ids
    if len(reference) < MIN_ID_LENGTH:
        return None
    return await store.get(reference)


async def by_reference_suffix(store: OrderStore, tracking_id: str,
                              reference: str) -> Optional[Order]:
    """Loose fallback for mangled references: last dash-separated part
    contained in an order number."""
    suffix = reference.split("-")[-1]
    if len(suffix) < MIN_SUFFIX_LENGTH:
        return None
    return await store.find_by_order_number_containing(suffix)


LOOKUP_STRATEGIES: Tuple[Strategy, ...] = (
    by_tracking_id,
    by_order_number,
    by_order_id,
    by_reference_suffix,
)


async def find_order(
    store: OrderStore,
    tracking_id: str,
    reference: str,
    strategies: Sequence[Strategy] = LOOKUP_STRATEGIES,
) -> Optional[Order]:
    for strategy in strategies:
        order = await strategy(store, tracking_id, reference)
        if order is not None:
            log.info("order_matched", strategy=strategy.__name__,
                     order_number=order.order_number)
            return order
    return None


# ----------------------------
# Applying an update
# ----------------------------
class PaymentHooks:
    """Side effects owned by other parts of the shop (confirmation mail,
    inventory). Called once per fresh transition."""

    async def on_completed(self, order: Order) -> None:
        log.info("payment_completed", order_number=order.order_number)

    async def on_failed(self, order: Order) -> None:
        log.info("payment_failed", order_number=order.order_number)


@dataclass
class ReconcileResult:
    order: Order
    previous_payment_status: str
    payment_status: str
    order_status: str
    fresh_transition: bool
    ignored: bool = False

    def as_response(self) -> Dict[str, Any]:
        return {
            "orderId": self.order.id,
            "orderNumber": self.order.order_number,
            "paymentStatus": self.payment_status,
            "orderStatus": self.order_status,
            "freshTransition": self.fresh_transition,
        }


def _na(value: Optional[str]) -> str:
    return value if value else "N/A"


def audit_line(n: Notification, source: str, ignored: bool = False) -> str:
    line = (
        f"[PesaPal {source} {to_iso(now_ts())}] "
        f"status={_na(n.status)} method={_na(n.payment_method)} "
        f"amount={_na(n.amount)} {_na(n.currency)} "
        f"type={_na(n.notification_type)}"
    )
    if ignored:
        line += " ignored"
    return line


async def apply_notification(
    store: OrderStore,
    order: Order,
    n: Notification,
    *,
    source: str = "IPN",
    hooks: Optional[PaymentHooks] = None,
) -> ReconcileResult:
    mapped = map_status(n.status)
    previous = order.payment_status

    ignored = mapped == DEFAULT_STATUS and previous in SETTLED
    if ignored:
        log.warning("stale_status_ignored", order_number=order.order_number,
                    current=previous, reported=n.status)
        target = StatusPair(order.payment_status, order.order_status)
    else:
        target = mapped

    line = audit_line(n, source, ignored)
    notes = f"{order.notes}\n{line}" if order.notes else line

    order = await store.save_status(
        order,
        payment_status=target.payment_status,
        order_status=target.order_status,
        notes=notes,
        transaction_id=order.transaction_id or n.tracking_id,
        payment_method=n.payment_method,
        tracking_id=n.tracking_id,
    )
    fresh = target.payment_status != previous
    log.info("order_status_updated", order_number=order.order_number,
             reported=n.status, payment_status=target.payment_status,
             order_status=target.order_status, previous=previous,
             fresh_transition=fresh, source=source)

    result = ReconcileResult(
        order=order,
        previous_payment_status=previous,
        payment_status=target.payment_status,
        order_status=target.order_status,
        fresh_transition=fresh,
        ignored=ignored,
    )
    if fresh and hooks is not None:
        await _run_hooks(hooks, result)
    return result


async def _run_hooks(hooks: PaymentHooks, result: ReconcileResult) -> None:
    if result.payment_status == PAY_COMPLETED:
        hook = hooks.on_completed
    elif result.payment_status == PAY_FAILED:
        hook = hooks.on_failed
    else:
        return
    try:
        await hook(result.order)
    except Exception as e:
        # the status is already stored; a redelivery would not re-fire
        log.error("payment_hook_failed", hook=hook.__name__,
                  order_number=result.order.order_number, error=str(e),
                  exc_info=True)


# ----------------------------
# Entry points
# ----------------------------
@dataclass
class StatusCheck:
    order: Order
    result: Optional[ReconcileResult]
    gateway_status: Optional[str]
    polled: bool


class Reconciler:

    def __init__(
        self,
        store: OrderStore,
        adapter: PaymentAdapter,
        hooks: Optional[PaymentHooks] = None,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.hooks = hooks or PaymentHooks()

    async def handle_notification(
        self, fields: Mapping[str, Any], headers: Mapping[str, str]
    ) -> ReconcileResult:
        n = self.adapter.parse_notification(fields)
        self.adapter.verify_notification(n, headers)
        log.info("ipn_received", tracking_id=n.tracking_id,
                 reference=n.merchant_reference, status=n.status,
                 notification_type=n.notification_type)

        order = await find_order(self.store, n.tracking_id,
                                 n.merchant_reference)
        if order is None:
            log.error("ipn_order_not_found", tracking_id=n.tracking_id,
                      reference=n.merchant_reference)
            raise NotFoundError("Order not found")

        if not n.status and self.adapter.configured:
            # v3 IPNs only announce a change; the status has to be fetched
            n = await self._fetch_status(n)

        return await apply_notification(self.store, order, n,
                                        source="IPN", hooks=self.hooks)

    async def _fetch_status(self, n: Notification) -> Notification:
        data = await self.adapter.transaction_status(n.tracking_id)
        fetched = status_notification(n.tracking_id, data,
                                      n.merchant_reference)
        return replace(
            fetched,
            merchant_reference=n.merchant_reference,
            notification_type=n.notification_type
            or fetched.notification_type,
        )

    async def poll_status(
        self, order_id: str, tracking_id: Optional[str] = None
    ) -> StatusCheck:
        order = await self.store.get(order_id)
        if order is None:
            raise NotFoundError("Order not found")

        stored = order.tracking_id
        if stored:
            if tracking_id and tracking_id != stored:
                log.warning("poll_tracking_id_ignored",
                            order_number=order.order_number,
                            given=tracking_id, stored=stored)
            tracking_id = stored
        if not self.adapter.configured or not tracking_id:
            return StatusCheck(order=order, result=None,
                               gateway_status=None, polled=False)

        data = await self.adapter.transaction_status(tracking_id)
        if not stored:
            # unverified caller-supplied id: the gateway must tie it to us
            reference = data.get("merchant_reference")
            if reference not in (order.id, order.order_number):
                log.warning("poll_tracking_id_rejected",
                            order_number=order.order_number,
                            given=tracking_id, reference=reference)
                raise ValidationError(
                    "Tracking ID does not belong to this order", "trackingId"
                )
        n = status_notification(tracking_id, data, order.order_number)
        result = await apply_notification(self.store, order, n,
                                          source="poll", hooks=self.hooks)
        return StatusCheck(order=result.order, result=result,
                           gateway_status=n.status, polled=True)
