from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, TypeVar, Union

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from authgate.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Params = Optional[Union[Sequence[Any], Mapping[str, Any]]]
Row = Dict[str, Any]


class Queryable(Protocol):
    async def query(self, sql: str, params: Params = None) -> List[Row]: ...


class Database(Queryable, Protocol):
    """Relational store contract: plain queries plus scoped transactions.

    ``transaction(fn)`` hands ``fn`` a :class:`Queryable` bound to a single
    connection; the transaction commits when ``fn`` returns and rolls back if
    it raises.
    """

    async def transaction(self, fn: Callable[[Queryable], Awaitable[T]]) -> T: ...

    async def close(self) -> None: ...


def _preview(sql: str) -> str:
    flat = " ".join(sql.split())
    return flat[:100] + ("..." if len(flat) > 100 else "")


class _ConnectionQueryable:
    def __init__(self, conn) -> None:
        self._conn = conn

    async def query(self, sql: str, params: Params = None) -> List[Row]:
        start = time.perf_counter()
        async with self._conn.cursor() as cur:
            await cur.execute(sql, params)
            rows = await cur.fetchall() if cur.description else []
        logger.debug(
            "db_query_executed",
            query=_preview(sql),
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            rows=len(rows),
        )
        return rows


class PostgresDatabase:
    """Async Postgres access through a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 20,
        statement_timeout_seconds: float = 30.0,
        application_name: str = "authgate",
    ) -> None:
        self.dsn = dsn
        timeout_ms = int(statement_timeout_seconds * 1000)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            open=False,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "application_name": application_name,
                "options": f"-c statement_timeout={timeout_ms}",
            },
        )
        self._opened = False

    async def _ensure_open(self) -> None:
        if not self._opened:
            await self.pool.open()
            self._opened = True
            logger.info("db_pool_opened", min_size=self.pool.min_size, max_size=self.pool.max_size)

    async def query(self, sql: str, params: Params = None) -> List[Row]:
        await self._ensure_open()
        try:
            # Pool context commits on clean exit and rolls back on error
            async with self.pool.connection() as conn:
                return await _ConnectionQueryable(conn).query(sql, params)
        except Exception as exc:
            logger.error(
                "db_query_failed",
                query=_preview(sql),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    async def transaction(self, fn: Callable[[Queryable], Awaitable[T]]) -> T:
        await self._ensure_open()
        async with self.pool.connection() as conn:
            try:
                async with conn.transaction():
                    result = await fn(_ConnectionQueryable(conn))
            except Exception as exc:
                logger.error(
                    "db_transaction_rolled_back",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        logger.debug("db_transaction_committed")
        return result

    async def close(self) -> None:
        if self._opened:
            await self.pool.close()
            self._opened = False
            logger.info("db_pool_closed")


__all__ = ["Database", "PostgresDatabase", "Queryable", "Row"]
