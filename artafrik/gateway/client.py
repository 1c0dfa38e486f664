# gateway/client.py
"""
Raw Pesapal v3 REST calls. Each call translates transport failures into
the error class of the step being performed so callers can tell which
external call failed:

    Auth/RequestToken                    -> AuthError
    URLSetup/GetIPNList, RegisterIPN     -> WebhookError
    Transactions/SubmitOrderRequest      -> GatewayError
    Transactions/GetTransactionStatus    -> GatewayError

Pesapal sometimes answers HTTP 200 with an `error` object in the body,
so a 2xx status alone is never taken as success.
"""
from __future__ import annotations
import json
from typing import Any, Dict, List, Optional, Type

import httpx
import structlog

from ..errors import AuthError, GatewayError, ShopError, WebhookError

log = structlog.get_logger(__name__)


def parse_json(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except ValueError:
        return None


def error_message(data: Any, text: str = "") -> Optional[str]:
    """Best human-readable error the gateway gave us, if any."""
    if isinstance(data, dict):
        for k in ("error_description", "message"):
            if isinstance(data.get(k), str) and data[k]:
                return data[k]
        err = data.get("error")
        if isinstance(err, str) and err:
            return err
        if isinstance(err, dict):
            msg = err.get("message") or err.get("code")
            if msg:
                return str(msg)
        return None
    if data is None and text:
        return text[:300]
    return None


def _has_error(data: Any) -> bool:
    return isinstance(data, dict) and bool(data.get("error"))


def ipn_entries(data: Any) -> List[Dict[str, Any]]:
    # GetIPNList has been seen as a bare list and wrapped in either key
    if isinstance(data, dict):
        data = data.get("ipn_list") or data.get("ipns") or []
    if not isinstance(data, list):
        return []
    return [e for e in data if isinstance(e, dict)]


class PesapalClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret

    @property
    def configured(self) -> bool:
        return bool(self.consumer_key and self.consumer_secret)

    async def _call(
        self,
        method: str,
        path: str,
        *,
        step: str,
        error_cls: Type[ShopError],
        token: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return await self.http.request(
                method,
                f"{self.base_url}/{path}",
                headers=headers,
                json=body,
                params=params,
            )
        except httpx.HTTPError as e:
            log.error("gateway_network_error", step=step, error=str(e),
                      error_type=type(e).__name__)
            raise error_cls(f"Network error during {step}") from e

    # ----------------------------
    # Auth
    # ----------------------------
    async def request_token(self) -> Dict[str, Any]:
        if not self.configured:
            raise AuthError("PesaPal credentials not configured")

        log.info("token_requested", base_url=self.base_url)
        r = await self._call(
            "POST", "Auth/RequestToken",
            step="token request", error_cls=AuthError,
            body={
                "consumer_key": self.consumer_key,
                "consumer_secret": self.consumer_secret,
            },
        )
        if r.is_error:
            log.error("token_request_failed", status=r.status_code,
                      body=r.text[:300])
            raise AuthError(f"Token request failed: {r.status_code}")

        data = parse_json(r.text)
        if not isinstance(data, dict):
            raise AuthError("Invalid JSON in token response")
        if not data.get("token"):
            log.error("token_missing", error=error_message(data))
            raise AuthError("No token in PesaPal response")
        return data

    # ----------------------------
    # IPN
    # ----------------------------
    async def list_ipns(self, token: str) -> List[Dict[str, Any]]:
        r = await self._call(
            "GET", "URLSetup/GetIPNList",
            step="IPN list", error_cls=WebhookError, token=token,
        )
        if r.is_error:
            # not fatal: caller falls through to registration
            log.warning("ipn_list_failed", status=r.status_code,
                        body=r.text[:300])
            return []
        data = parse_json(r.text)
        if data is None:
            log.warning("ipn_list_unparseable", body=r.text[:300])
        return ipn_entries(data)

    async def register_ipn(self, token: str, url: str) -> str:
        r = await self._call(
            "POST", "URLSetup/RegisterIPN",
            step="IPN registration", error_cls=WebhookError, token=token,
            body={
                "url": url,
                "ipn_notification_type": "POST",
                "ipn_trigger": "POST",
            },
        )
        data = parse_json(r.text)
        if r.is_error or _has_error(data):
            log.error("ipn_registration_failed", status=r.status_code,
                      body=r.text[:300])
            raise WebhookError("Failed to register IPN URL", detail=r.text)
        if not isinstance(data, dict):
            raise WebhookError("Invalid IPN registration response",
                               detail=r.text)
        if not data.get("ipn_id"):
            raise WebhookError("No IPN ID in registration response",
                               detail=r.text)
        return str(data["ipn_id"])

    # ----------------------------
    # Transactions
    # ----------------------------
    async def submit_order(
        self, token: str, payload: Dict[str, Any]
    ) -> Dict[str, str]:
        r = await self._call(
            "POST", "Transactions/SubmitOrderRequest",
            step="order submission", error_cls=GatewayError,
            token=token, body=payload,
        )
        data = parse_json(r.text)
        if r.is_error or _has_error(data):
            log.error("order_submit_failed", status=r.status_code,
                      body=r.text[:300])
            raise GatewayError(
                error_message(data, r.text) or "Order submission failed"
            )
        if not isinstance(data, dict):
            raise GatewayError("Invalid JSON in response")
        if not data.get("redirect_url") or not data.get("order_tracking_id"):
            log.error("order_submit_incomplete", body=r.text[:300])
            raise GatewayError("Invalid response from PesaPal")
        return {
            "redirect_url": str(data["redirect_url"]),
            "order_tracking_id": str(data["order_tracking_id"]),
        }

    async def transaction_status(
        self, token: str, tracking_id: str
    ) -> Dict[str, Any]:
        r = await self._call(
            "GET", "Transactions/GetTransactionStatus",
            step="status query", error_cls=GatewayError, token=token,
            params={"orderTrackingId": tracking_id},
        )
        data = parse_json(r.text)
        if r.is_error:
            log.error("status_query_failed", status=r.status_code,
                      body=r.text[:300])
            raise GatewayError(
                error_message(data, r.text) or "Status query failed"
            )
        if not isinstance(data, dict):
            # unknown status maps to (PENDING, PENDING)
            log.warning("status_unparseable", body=r.text[:300])
            return {}
        return data
