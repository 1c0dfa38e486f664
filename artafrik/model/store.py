from __future__ import annotations
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import PersistenceError
from ..infra.sql import Gated

log = structlog.get_logger(__name__)


class GatedStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    @asynccontextmanager
    async def transaction(self, op: str):
        """One gated DB transaction; storage failures become
        PersistenceError so callers never see driver exceptions."""
        try:
            async with self.gated():
                async with self.db.begin():
                    yield self.db
        except SQLAlchemyError as e:
            log.error("db_error", op=op, error=str(e))
            raise PersistenceError(f"Database error during {op}") from e
