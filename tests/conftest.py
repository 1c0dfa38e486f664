import json
import os
import tempfile
from decimal import Decimal
from typing import Any, Callable, Dict, List

import httpx
import pytest

# the server module reads its environment at import time
_TMP = tempfile.mkdtemp(prefix="artafrik-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/server.db"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["APP_URL"] = "https://shop.test"
os.environ["LOG_LEVEL"] = "WARNING"
for _name in ("PESAPAL_CONSUMER_KEY", "PESAPAL_CONSUMER_SECRET",
              "PESAPAL_VERIFY_IPN"):
    os.environ.pop(_name, None)

from artafrik.config import Settings  # noqa: E402
from artafrik.gateway import new_adapter  # noqa: E402
from artafrik.infra.sql import make_database  # noqa: E402
from artafrik.model.cache import MemoryCache  # noqa: E402
from artafrik.model.db import Base  # noqa: E402
from artafrik.model.exchangerate import ExchangeRateStore  # noqa: E402
from artafrik.model.orders import OrderStore  # noqa: E402

GATEWAY_URL = "https://gateway.test/v3/api"
IPN_URL = "https://shop.test/api/pesapal/ipn"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class PesapalStub:
    """
    Stand-in for the Pesapal v3 API. Each route maps to either a
    (status, body) pair or a callable(request) -> httpx.Response.
    Every request is recorded.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, Any] = {
            "Auth/RequestToken": (200, {"token": "tok-1", "status": "200"}),
            "URLSetup/GetIPNList": (200, []),
            "URLSetup/RegisterIPN": (200, {"ipn_id": "ipn-1",
                                           "url": IPN_URL}),
            "Transactions/SubmitOrderRequest": (200, {
                "order_tracking_id": "trk-1",
                "merchant_reference": "ref",
                "redirect_url": "https://pay.test/iframe?trk=trk-1",
                "status": "200",
            }),
            "Transactions/GetTransactionStatus": (200, {
                "payment_status_description": "Completed",
                "payment_method": "Visa",
                "amount": 133,
                "currency": "USD",
            }),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.split("/v3/api/", 1)[1]
        reply = self.routes[path]
        if callable(reply):
            return reply(request)
        status, body = reply
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path)]

    def sent_json(self, path: str, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.calls(path)[index].content)

    def http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def adapter(
        self,
        *,
        http: httpx.AsyncClient = None,
        consumer_key: str = "key",
        consumer_secret: str = "secret",
        clock: Callable[[], float] = None,
        verify_signatures: bool = False,
    ):
        clock = clock or FakeClock()
        return new_adapter(
            http or self.http(),
            base_url=GATEWAY_URL,
            consumer_key=consumer_key,
            consumer_secret=consumer_secret,
            ipn_url=IPN_URL,
            cache=MemoryCache(clock=clock),
            verify_signatures=verify_signatures,
            clock=clock,
        )


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        app_url="https://shop.test",
        pesapal_environment="sandbox",
        pesapal_consumer_key="key",
        pesapal_consumer_secret="secret",
        pesapal_timeout=15.0,
        pesapal_verify_ipn=False,
        pesapal_country_code="KE",
        cache_backend="memory",
        redis_url="redis://127.0.0.1:6379",
        session_secret="test-secret",
        admin_username="admin",
        admin_password="supasecret",
        log_level="WARNING",
        log_format="console",
    )
    values.update(overrides)
    return Settings(**values)


async def make_order(orders: OrderStore, **overrides):
    values = dict(
        order_id="0" * 24 + "deadbeef",
        order_number="ORD-1700000000000-ABCDEF123",
        subtotal=Decimal("100.00"),
        shipping_cost=Decimal("25.00"),
        tax=Decimal("8.00"),
        total=Decimal("133.00"),
        shipping={
            "name": "Amina Otieno",
            "email": "amina@example.com",
            "phone": "254712345678",
            "address": "12 Moi Avenue",
            "city": "Nairobi",
            "country": "Kenya",
        },
        items=[{"listing_id": "art-1", "title": "Savannah at Dusk",
                "price": Decimal("50.00"), "quantity": 2}],
    )
    values.update(overrides)
    return await orders.create_order(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pesapal():
    return PesapalStub()


@pytest.fixture
async def http(pesapal):
    client = pesapal.http()
    yield client
    await client.aclose()


@pytest.fixture
def adapter(pesapal, http, clock):
    return pesapal.adapter(http=http, clock=clock)


@pytest.fixture
async def database(tmp_path):
    db = make_database(f"sqlite:///{tmp_path}/test.db")
    await db.create_all(Base.metadata)
    yield db
    await db.dispose()


@pytest.fixture
async def session(database):
    async with database.sessions() as s:
        yield s


@pytest.fixture
def orders(session, database):
    return OrderStore(db=session, gated=database.gated)


@pytest.fixture
def rates(session, database):
    return ExchangeRateStore(db=session, gated=database.gated)
