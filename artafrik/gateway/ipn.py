# gateway/ipn.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

import structlog

from .client import PesapalClient
from .tokens import TokenCache
from ..errors import WebhookError

log = structlog.get_logger(__name__)

# local cache window only; the registration itself may never expire
IPN_CACHE_SECONDS = 24 * 3600


def normalize_url(url: str) -> str:
    u = (url or "").strip().rstrip("/")
    if u.startswith("http://"):
        u = "https://" + u[len("http://"):]
    return u


def find_registration(
    entries: List[Dict[str, Any]], url: str
) -> Optional[str]:
    want = normalize_url(url)
    for entry in entries:
        if normalize_url(str(entry.get("url") or "")) == want:
            ipn_id = entry.get("ipn_id")
            if ipn_id:
                return str(ipn_id)
    return None


class WebhookRegistrar:
    """
    Pesapal has no register-or-get call, so we build one from
    list + register, tolerating a concurrent registration winning the race
    (the gateway then answers with a "duplicate" error).
    """

    def __init__(
        self,
        client: PesapalClient,
        tokens: TokenCache,
        cache,
        ipn_url: str,
        *,
        ttl_seconds: float = IPN_CACHE_SECONDS,
    ) -> None:
        self.client = client
        self.tokens = tokens
        self.cache = cache
        self.ipn_url = ipn_url
        self.ttl = ttl_seconds

    @property
    def cache_key(self) -> str:
        return f"pesapal:ipn:{normalize_url(self.ipn_url)}"

    async def get_webhook_id(self) -> str:
        cached = await self.cache.get(self.cache_key)
        if cached:
            return cached

        token = (await self.tokens.get_token()).value

        log.info("ipn_lookup", url=self.ipn_url)
        ipn_id = find_registration(
            await self.client.list_ipns(token), self.ipn_url
        )
        if ipn_id:
            log.info("ipn_found", ipn_id=ipn_id)
        else:
            ipn_id = await self._register(token)

        await self.cache.set(self.cache_key, ipn_id, self.ttl)
        return ipn_id

    async def _register(self, token: str) -> str:
        log.info("ipn_registering", url=self.ipn_url)
        try:
            ipn_id = await self.client.register_ipn(token, self.ipn_url)
        except WebhookError as e:
            if "duplicate" not in e.detail.lower():
                raise
            # someone registered it between our list and register calls
            existing = find_registration(
                await self.client.list_ipns(token), self.ipn_url
            )
            if existing is None:
                raise WebhookError("Failed to register IPN URL",
                                   detail=e.detail) from e
            log.info("ipn_duplicate_resolved", ipn_id=existing)
            return existing
        log.info("ipn_registered", ipn_id=ipn_id)
        return ipn_id
