# gateway/__init__.py
import time
from typing import Callable

import httpx

from .adapter import (
    Notification, PaymentAdapter, PesapalAdapter, SubmitResult,
    status_notification,
)
from .client import PesapalClient
from .ipn import WebhookRegistrar
from .tokens import Token, TokenCache


def new_adapter(
    http: httpx.AsyncClient,
    *,
    base_url: str,
    consumer_key: str,
    consumer_secret: str,
    ipn_url: str,
    cache,
    verify_signatures: bool = False,
    clock: Callable[[], float] = time.time,
) -> PesapalAdapter:
    client = PesapalClient(
        http,
        base_url=base_url,
        consumer_key=consumer_key,
        consumer_secret=consumer_secret,
    )
    tokens = TokenCache(client, cache, clock=clock)
    webhooks = WebhookRegistrar(client, tokens, cache, ipn_url)
    return PesapalAdapter(client, tokens, webhooks,
                          verify_signatures=verify_signatures)


__all__ = [
    "Notification", "PaymentAdapter", "PesapalAdapter", "PesapalClient",
    "SubmitResult", "Token", "TokenCache", "WebhookRegistrar",
    "new_adapter", "status_notification",
]
