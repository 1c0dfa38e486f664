# model/exchangerate.py
from __future__ import annotations
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .db import ExchangeRate
from .store import GatedStore
from ..errors import PersistenceError
from ..helpers import now_ts

log = structlog.get_logger(__name__)


def _active(pair: str):
    return (
        select(ExchangeRate)
        .where(ExchangeRate.currency == pair,
               ExchangeRate.is_active.is_(True))
        .limit(1)
    )


class ExchangeRateStore(GatedStore):
    """
    One active row per currency pair, enforced by the
    (currency, is_active) unique constraint. Updates always upsert that
    row in place; inactive history rows are never written.
    """

    async def get_active(self, pair: str) -> Optional[ExchangeRate]:
        async with self.transaction("get_exchange_rate") as db:
            result = await db.execute(_active(pair))
            return result.scalars().first()

    async def upsert_active(
        self, pair: str, *, rate: Decimal, source: str, actor: Optional[str]
    ) -> ExchangeRate:
        try:
            async with self.gated():
                async with self.db.begin():
                    result = await self.db.execute(_active(pair))
                    row = result.scalars().first()
                    if row is None:
                        row = ExchangeRate(currency=pair, is_active=True)
                        self.db.add(row)
                    row.rate = rate
                    row.source = source
                    row.updated_by = actor
                    row.updated_at = now_ts()
        except IntegrityError as e:
            # a concurrent admin inserted the active row first
            log.warning("exchange_rate_conflict", pair=pair, error=str(e))
            raise PersistenceError(
                "A database conflict occurred. Another admin may have just "
                "updated the rate. Please try again."
            ) from e
        except SQLAlchemyError as e:
            log.error("db_error", op="upsert_exchange_rate", error=str(e))
            raise PersistenceError(
                "Database error during upsert_exchange_rate"
            ) from e

        log.info("exchange_rate_updated", pair=pair, rate=str(rate),
                 source=source, actor=actor)
        return row
