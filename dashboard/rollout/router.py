"""
Rollout feeds: recent activity, daily volumes, and raw per-model exports.
"""

import re
import orjson as json
from typing import Optional
from loguru import logger
from fastapi import APIRouter, Depends, Query, Request
from starlette.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from dashboard.database import get_db_session, get_session
from dashboard.exceptions import MissingParameterError, QueryError
from dashboard.query import run_query, stream_query
from dashboard.util import cached, extract_path, normalized_score_sql, normalized_score_params
from dashboard.constants import (
    RESULTS_TABLE,
    ACTIVITY_LIMIT,
    DAILY_ROLLOUTS_WINDOW,
    DAILY_ROLLOUTS_TOP_MODELS,
    RESULTS_OVER_TIME_WINDOW,
)

router = APIRouter()

UNSAFE_FILENAME_RE = re.compile(r"[^\w.-]", re.ASCII)

ACTIVITY_SQL = f"""
SELECT ingested_at, hotkey, uid, model, env_name, score, success
  FROM {RESULTS_TABLE}
 ORDER BY ingested_at DESC
 LIMIT :limit
"""

# Busiest models are ranked over all time, their volumes shown for the window.
DAILY_ROLLOUTS_BY_MODEL_SQL = f"""
SELECT
  DATE_TRUNC('day', ingested_at)::date AS day,
  model,
  COUNT(*) AS daily_rollouts
FROM {RESULTS_TABLE}
WHERE ingested_at > NOW() - CAST(:window AS INTERVAL)
  AND model IN (
    SELECT model
      FROM {RESULTS_TABLE}
     GROUP BY model
     ORDER BY COUNT(*) DESC
     LIMIT :limit
  )
GROUP BY day, model
ORDER BY day DESC, daily_rollouts DESC
"""

RESULTS_OVER_TIME_SQL = f"""
SELECT
  DATE_TRUNC('day', ingested_at) AS period,
  COUNT(*) AS total_rollouts,
  AVG({normalized_score_sql()}) AS average_score
FROM {RESULTS_TABLE}
WHERE ingested_at > NOW() - CAST(:window AS INTERVAL)
GROUP BY period
ORDER BY period ASC
"""

ROLLOUTS_BY_MODEL_SQL = f"""
SELECT
  ingested_at,
  uid,
  hotkey,
  model,
  revision,
  env_name,
  score,
  latency_seconds,
  extra,
  raw_data
FROM {RESULTS_TABLE}
WHERE model = :model
ORDER BY ingested_at DESC
"""


def rollout_payload(row: dict) -> dict:
    """
    One line of the NDJSON export; jsonb columns are decoded when the driver hands back text.
    """
    return {
        "ingested_at": row["ingested_at"],
        "uid": row["uid"],
        "hotkey": row["hotkey"],
        "model": row["model"],
        "revision": row["revision"],
        "env_name": row["env_name"],
        "score": row["score"],
        "latency_seconds": row["latency_seconds"],
        "rollout_data": extract_path(row["extra"]),
        "raw_data": extract_path(row["raw_data"]),
    }


def export_filename(model: str) -> str:
    return f"rollouts_{UNSAFE_FILENAME_RE.sub('_', model)}.jsonl"


async def _stream_rollouts(model: str):
    """
    Streaming results helper, owns its own session since it outlives the request handler.

    Once the first line is sent the status is already 200, so a store failure
    mid-export is logged and the body simply ends at the last complete line.
    """
    count = 0
    try:
        async with get_session() as session:
            async for row in stream_query(
                session, ROLLOUTS_BY_MODEL_SQL, {"model": model}, label="rollouts by model"
            ):
                count += 1
                yield json.dumps(rollout_payload(row)) + b"\n"
    except QueryError:
        logger.warning(f"Rollout export for {model=} ended early after {count} rows")
        return
    logger.info(f"Streamed {count} rollouts for {model=}")


@router.get("/activity")
async def activity(session: AsyncSession = Depends(get_db_session)):
    rows = await run_query(session, ACTIVITY_SQL, {"limit": ACTIVITY_LIMIT}, label="activity")
    logger.info(f"Activity query returned {len(rows)} rows")
    return rows


@router.get("/daily-rollouts-by-model")
async def daily_rollouts_by_model(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    async def _produce():
        rows = await run_query(
            session,
            DAILY_ROLLOUTS_BY_MODEL_SQL,
            {"window": DAILY_ROLLOUTS_WINDOW, "limit": DAILY_ROLLOUTS_TOP_MODELS},
            label="daily rollouts by model",
        )
        logger.info(f"Daily rollouts by model returned {len(rows)} rows")
        return rows

    return await cached("rollout:daily_by_model", _produce, use_cache=request is not None)


@router.get("/results-over-time")
async def results_over_time(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    """
    Daily rollout volume and average (normalized) score.
    """

    async def _produce():
        rows = await run_query(
            session,
            RESULTS_OVER_TIME_SQL,
            {"window": RESULTS_OVER_TIME_WINDOW, **normalized_score_params()},
            label="results over time",
        )
        logger.info(f"Results over time returned {len(rows)} rows")
        return rows

    return await cached("rollout:results_over_time", _produce, use_cache=request is not None)


@router.get("/rollouts/model")
async def rollouts_by_model(
    model: Optional[str] = None,
    model_name: Optional[str] = Query(None, alias="modelName"),
):
    """
    Download every rollout for a model as newline-delimited JSON.

    A store failure part way through truncates the body at the last complete
    line; the 200 status has already been sent by then.
    """
    model = (model_name or "").strip() or (model or "").strip()
    if not model:
        raise MissingParameterError("model")
    return StreamingResponse(
        _stream_rollouts(model),
        media_type="application/x-ndjson",
        headers={
            "Content-Disposition": f'attachment; filename="{export_filename(model)}"',
            "Cache-Control": "no-store",
        },
    )
