# gateway/tokens.py
from __future__ import annotations
import json
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from .client import PesapalClient
from ..helpers import to_iso

log = structlog.get_logger(__name__)

# Pesapal tokens live 60 minutes; stop using them 5 minutes early
TOKEN_TTL_SECONDS = 55 * 60
TOKEN_CACHE_KEY = "pesapal:token"


@dataclass(frozen=True)
class Token:
    value: str
    expires_at: float


def _load(raw: Optional[str]) -> Optional[Token]:
    if not raw:
        return None
    try:
        d = json.loads(raw)
        return Token(value=d["token"], expires_at=float(d["expires_at"]))
    except (ValueError, KeyError, TypeError):
        return None


class TokenCache:
    """
    get_token() returns the cached bearer token while now < expires_at,
    otherwise exchanges the consumer key/secret for a new one. No retry:
    AuthError is terminal for the current request.
    """

    def __init__(
        self,
        client: PesapalClient,
        cache,
        *,
        ttl_seconds: float = TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.cache = cache
        self.ttl = ttl_seconds
        self.clock = clock

    async def get_token(self) -> Token:
        now = self.clock()
        token = _load(await self.cache.get(TOKEN_CACHE_KEY))
        if token is not None and now < token.expires_at:
            return token

        data = await self.client.request_token()
        token = Token(value=str(data["token"]), expires_at=now + self.ttl)
        await self.cache.set(
            TOKEN_CACHE_KEY,
            json.dumps({"token": token.value, "expires_at": token.expires_at}),
            self.ttl,
        )
        log.info("token_acquired", expires_at=to_iso(token.expires_at))
        return token
