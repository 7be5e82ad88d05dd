"""
Uniform query contract for the results store: query(sql, params) -> rows.
"""

import time
import asyncio
from typing import Any, AsyncIterator, Optional
from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from dashboard.exceptions import QueryError
from dashboard.metrics.queries import track_query, track_query_failure
from dashboard.util import row_to_dict, sql_preview

STORE_EXCEPTIONS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


async def run_query(
    session: AsyncSession,
    sql: str,
    params: Optional[dict] = None,
    label: str = "query",
) -> list[dict]:
    """
    Execute a parameterized read and return plain dict rows.

    Any store failure is logged with its context and re-raised as QueryError,
    which the app turns into a generic 500. Nothing is retried.
    """
    params = params or {}
    started_at = time.monotonic()
    try:
        result = await session.execute(text(sql), params)
        rows = [row_to_dict(row) for row in result.mappings().all()]
    except STORE_EXCEPTIONS as exc:
        elapsed = time.monotonic() - started_at
        track_query_failure(label)
        logger.error(
            f"Query failed after {elapsed * 1000:.0f}ms: {label=} {params=} "
            f"sql={sql_preview(sql)!r} error={exc}"
        )
        raise QueryError(label, exc) from exc
    elapsed = time.monotonic() - started_at
    track_query(label, elapsed)
    logger.debug(f"Query {label} returned {len(rows)} rows in {elapsed * 1000:.0f}ms")
    return rows


async def stream_query(
    session: AsyncSession,
    sql: str,
    params: Optional[dict] = None,
    label: str = "stream",
) -> AsyncIterator[dict[str, Any]]:
    """
    Server-side cursor variant of run_query for large exports.
    """
    params = params or {}
    try:
        result = await session.stream(text(sql), params)
        async for row in result.mappings():
            yield row_to_dict(row)
    except STORE_EXCEPTIONS as exc:
        track_query_failure(label)
        logger.error(
            f"Streaming query failed: {label=} {params=} sql={sql_preview(sql)!r} error={exc}"
        )
        raise QueryError(label, exc) from exc
