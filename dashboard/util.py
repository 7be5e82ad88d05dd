"""
Utility/helper functions.
"""

import datetime
import orjson as json
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping
from fastapi import Request
from dashboard.config import settings
from dashboard.constants import (
    ENV_QUERY_PARAMS,
    SQL_LOG_PREVIEW,
    SCIWORLD_ENV,
    SCIWORLD_SCORE_MIN,
    SCIWORLD_SCORE_MAX,
)
from dashboard.exceptions import MissingParameterError
from dashboard.metrics.queries import track_cache_lookup


def now_str() -> str:
    """
    Return current (UTC) timestamp as string.
    """
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def sql_preview(sql: str, limit: int = SQL_LOG_PREVIEW) -> str:
    """
    Collapse whitespace and truncate SQL text for logging.
    """
    flat = " ".join(sql.split())
    if len(flat) > limit:
        return flat[:limit] + "..."
    return flat


def jsonable(value: Any) -> Any:
    """
    Coerce driver types orjson doesn't know about (numeric columns come back as Decimal).
    """
    if isinstance(value, Decimal):
        return float(value)
    return value


def row_to_dict(row: Mapping[str, Any]) -> dict:
    return {key: jsonable(value) for key, value in row.items()}


def extract_path(blob: Any, *path: str) -> Any:
    """
    Walk a key path through a semi-structured `extra` blob, None on any mismatch.

    Accepts an already-decoded dict or a JSON string; missing keys, non-JSON
    strings and non-object intermediates all degrade to None.
    """
    current = blob
    if isinstance(current, (str, bytes)):
        try:
            current = json.loads(current)
        except json.JSONDecodeError:
            return None
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def normalized_score_sql(score: str = "score", env_name: str = "env_name") -> str:
    """
    SQL expression rescaling the sciworld environment into 0..1 before cross-env averages.

    Expects the query to bind :sciworld_env (see normalized_score_params).
    """
    span = SCIWORLD_SCORE_MAX - SCIWORLD_SCORE_MIN
    return (
        f"CASE WHEN {env_name} = :sciworld_env "
        f"THEN ({score} - ({SCIWORLD_SCORE_MIN})) / {span} "
        f"ELSE {score} END"
    )


def normalized_score_params() -> dict:
    return {"sciworld_env": SCIWORLD_ENV}


def get_env_param(request: Request) -> str:
    """
    Pull the environment name from any of the accepted query parameter spellings.

    The first non-empty spelling wins even if it is only whitespace, so
    `?env=%20&ENV=SAT` is a missing env rather than SAT.
    """
    for name in ENV_QUERY_PARAMS:
        value = request.query_params.get(name)
        if value:
            value = value.strip()
            if not value:
                break
            return value
    raise MissingParameterError("env")


async def cached(
    key: str,
    producer: Callable[[], Awaitable[Any]],
    use_cache: bool = True,
) -> Any:
    """
    Read-through response cache; redis failures fall through to the producer.
    """
    ttl = settings.cache_ttl
    if use_cache and ttl > 0:
        value = await settings.redis_client.get_json(key)
        track_cache_lookup(key, value is not None)
        if value is not None:
            return value
    value = await producer()
    if ttl > 0:
        await settings.redis_client.set_json(key, value, ttl)
    return value
