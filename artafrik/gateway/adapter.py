from __future__ import annotations
import base64
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, TypedDict

from .client import PesapalClient
from .ipn import WebhookRegistrar
from .tokens import TokenCache
from ..errors import ValidationError

SIGNATURE_HEADER = "x-pesapal-signature"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class SubmitResult(TypedDict):
    redirect_url: str
    order_tracking_id: str


@dataclass(frozen=True)
class Notification:
    tracking_id: str
    merchant_reference: str
    notification_type: Optional[str] = None
    status: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None


class PaymentAdapter(ABC):
    @property
    @abstractmethod
    def configured(self) -> bool: ...

    @abstractmethod
    async def access_token(self) -> str: ...

    @abstractmethod
    async def notification_id(self) -> str: ...

    @abstractmethod
    async def submit_order(self, payload: dict) -> SubmitResult: ...

    @abstractmethod
    async def transaction_status(self, tracking_id: str) -> dict: ...

    # raises ValidationError when the notification is not authentic
    @abstractmethod
    def verify_notification(
        self, n: Notification, headers: Mapping[str, str]
    ) -> None: ...

    @abstractmethod
    def parse_notification(self, fields: Mapping[str, Any]) -> Notification:
        ...


# ----------------------------
# Pesapal implementation
# ----------------------------
def _first(fields: Mapping[str, Any], *names: str) -> Optional[str]:
    for name in names:
        v = fields.get(name)
        if v is not None and str(v) != "":
            return str(v)
    return None


def sign_notification(secret: str, tracking_id: str, reference: str) -> str:
    mac = hmac.new(
        secret.encode(),
        f"{tracking_id}{reference}".encode(),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(mac).decode()


class PesapalAdapter(PaymentAdapter):

    def __init__(
        self,
        client: PesapalClient,
        tokens: TokenCache,
        webhooks: WebhookRegistrar,
        *,
        verify_signatures: bool = False,
    ) -> None:
        self.client = client
        self.tokens = tokens
        self.webhooks = webhooks
        self.verify_signatures = verify_signatures

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def access_token(self) -> str:
        return (await self.tokens.get_token()).value

    async def notification_id(self) -> str:
        return await self.webhooks.get_webhook_id()

    async def submit_order(self, payload: dict) -> SubmitResult:
        token = await self.access_token()
        data = await self.client.submit_order(token, payload)
        return {
            "redirect_url": data["redirect_url"],
            "order_tracking_id": data["order_tracking_id"],
        }

    async def transaction_status(self, tracking_id: str) -> dict:
        token = await self.access_token()
        return await self.client.transaction_status(token, tracking_id)

    def verify_notification(
        self, n: Notification, headers: Mapping[str, str]
    ) -> None:
        if not self.verify_signatures:
            return
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign_notification(
            self.client.consumer_secret, n.tracking_id, n.merchant_reference
        )
        if not sig or not hmac.compare_digest(expected, sig):
            raise ValidationError("Invalid signature")

    def parse_notification(self, fields: Mapping[str, Any]) -> Notification:
        # legacy pesapal_* names and the v3 Order* names
        tracking_id = _first(fields, "pesapal_transaction_tracking_id",
                             "OrderTrackingId", "orderTrackingId")
        reference = _first(fields, "pesapal_merchant_reference",
                           "OrderMerchantReference", "orderMerchantReference")
        if not tracking_id or not reference:
            raise ValidationError("Missing required fields")
        return Notification(
            tracking_id=tracking_id,
            merchant_reference=reference,
            notification_type=_first(fields, "pesapal_notification_type",
                                     "OrderNotificationType",
                                     "orderNotificationType"),
            status=_first(fields, "status", "payment_status_description",
                          "payment_status"),
            payment_method=_first(fields, "payment_method"),
            amount=_first(fields, "transaction_amount", "amount"),
            currency=_first(fields, "currency"),
        )


def status_notification(
    tracking_id: str, data: Dict[str, Any], reference: str
) -> Notification:
    """Shape a GetTransactionStatus reply like an inbound notification so
    both reconciliation paths share one update routine."""
    return Notification(
        tracking_id=tracking_id,
        merchant_reference=_first(data, "merchant_reference") or reference,
        notification_type="POLL",
        status=_first(data, "payment_status_description", "payment_status"),
        payment_method=_first(data, "payment_method"),
        amount=_first(data, "amount"),
        currency=_first(data, "currency"),
    )
