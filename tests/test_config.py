import pytest

from artafrik.config import (
    PESAPAL_LIVE_URL, PESAPAL_SANDBOX_URL, load_settings,
)
from artafrik.infra.sql import make_database, normalize_async_url
from artafrik.model.cache import MemoryCache, RedisCache, new_cache

from .conftest import FakeClock, make_settings


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("APP_URL", "https://art.example/")
    monkeypatch.setenv("PESAPAL_ENVIRONMENT", "LIVE")
    monkeypatch.setenv("PESAPAL_CONSUMER_KEY", " key ")
    monkeypatch.setenv("PESAPAL_CONSUMER_SECRET", "secret")
    monkeypatch.setenv("PESAPAL_VERIFY_IPN", "true")
    monkeypatch.setenv("PESAPAL_COUNTRY_CODE", "ug")

    s = load_settings()
    assert s.app_url == "https://art.example"
    assert s.pesapal_base_url == PESAPAL_LIVE_URL
    assert s.pesapal_consumer_key == "key"
    assert s.pesapal_configured
    assert s.pesapal_verify_ipn is True
    assert s.pesapal_country_code == "UG"
    assert s.ipn_url == "https://art.example/api/pesapal/ipn"
    assert s.callback_url("abc") == (
        "https://art.example/checkout/success?orderId=abc&method=pesapal"
    )


def test_unknown_environment_is_sandbox(monkeypatch):
    monkeypatch.setenv("PESAPAL_ENVIRONMENT", "production")
    assert load_settings().pesapal_base_url == PESAPAL_SANDBOX_URL


def test_both_credentials_required():
    assert not make_settings(pesapal_consumer_secret="").pesapal_configured
    assert not make_settings(pesapal_consumer_key="").pesapal_configured


@pytest.mark.parametrize("url, expected", [
    ("sqlite:///./shop.db", "sqlite+aiosqlite:///./shop.db"),
    ("postgres://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
    ("postgresql://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
    ("postgresql+asyncpg://db/shop", "postgresql+asyncpg://db/shop"),
])
def test_normalize_async_url(url, expected):
    assert normalize_async_url(url) == expected


async def test_memory_cache_expiry():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set("k", "v", 10)
    clock.advance(9.5)
    assert await cache.get("k") == "v"
    clock.advance(0.5)
    assert await cache.get("k") is None

    await cache.set("k", "v", 10)
    await cache.delete("k")
    assert await cache.get("k") is None


def test_cache_factory():
    assert isinstance(new_cache(), MemoryCache)
    with pytest.raises(RuntimeError):
        new_cache(backend="redis")
    assert isinstance(new_cache(backend="redis", r=object()), RedisCache)


async def test_sqlite_connections_get_pragmas(database):
    async with database.engine.connect() as conn:
        fk = await conn.exec_driver_sql("PRAGMA foreign_keys")
        assert fk.scalar() == 1
        mode = await conn.exec_driver_sql("PRAGMA journal_mode")
        assert mode.scalar().lower() == "wal"


async def test_gate_limit_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("DB_GATE_LIMIT", "2")
    db = make_database(f"sqlite:///{tmp_path}/gate.db")
    try:
        async with db.gated():
            async with db.gated():
                assert db.gate.locked()
        assert not db.gate.locked()
    finally:
        await db.dispose()
