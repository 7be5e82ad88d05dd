"""
Leaderboard queries: all-time top miners, the live per-environment board, and
enrichment of live (uid, model) pairs with their aggregate stats.
"""

import math
from typing import Any, Optional
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession
from dashboard.constants import (
    RESULTS_TABLE,
    LEADERBOARD_LIMIT,
    LIVE_WINDOW,
    LIVE_SCORING_WINDOW,
)
from dashboard.exceptions import InvalidPayloadError
from dashboard.query import run_query
from dashboard.util import normalized_score_sql, normalized_score_params

UID_MIN = -(2**31)
UID_MAX = 2**31 - 1

LEADERBOARD_SQL = f"""
SELECT
  hotkey,
  MAX(uid) AS last_seen_uid,
  model,
  (
    ARRAY_AGG(extra -> 'miner_chute' ->> 'chute_id' ORDER BY ingested_at DESC)
    FILTER (WHERE extra -> 'miner_chute' ->> 'chute_id' IS NOT NULL)
  )[1] AS chute_id,
  COUNT(*) AS total_rollouts,
  AVG({normalized_score_sql()}) AS average_score,
  (SUM(CASE WHEN success THEN 1 ELSE 0 END)::float / COUNT(*)) * 100 AS success_rate_percent,
  AVG(latency_seconds) AS avg_latency
FROM {RESULTS_TABLE}
GROUP BY hotkey, model
ORDER BY average_score DESC NULLS LAST, total_rollouts DESC
LIMIT :limit
"""

# Miners seen in the environment over the short live window, scored over the longer one.
LIVE_ENV_LEADERBOARD_SQL = f"""
WITH live_miners AS (
  SELECT DISTINCT hotkey
    FROM {RESULTS_TABLE}
   WHERE env_name = :env
     AND ingested_at > NOW() - CAST(:live_window AS INTERVAL)
)
SELECT
  ar.hotkey,
  MAX(ar.uid) AS last_seen_uid,
  ar.model,
  ar.revision,
  COUNT(*) AS total_rollouts,
  AVG(ar.score) * 100 AS average_score,
  (SUM(CASE WHEN ar.success THEN 1 ELSE 0 END)::float / COUNT(*)) * 100 AS success_rate_percent,
  AVG(ar.latency_seconds) AS avg_latency
FROM {RESULTS_TABLE} ar
WHERE ar.env_name = :env
  AND ar.hotkey IN (SELECT hotkey FROM live_miners)
  AND ar.ingested_at > NOW() - CAST(:scoring_window AS INTERVAL)
GROUP BY ar.hotkey, ar.model, ar.revision
ORDER BY average_score DESC NULLS LAST, total_rollouts DESC
"""

ENRICHMENT_SQL = """
WITH
  input(item_index, uid, model) AS (
    VALUES
      {values}
  ),
  norm_input AS (
    SELECT DISTINCT lower(trim(model)) AS lmodel
      FROM input
  ),
  model_agg AS (
    SELECT
      lower(trim(ar.model)) AS lmodel,
      (ARRAY_AGG(ar.hotkey ORDER BY ar.ingested_at DESC))[1] AS hotkey,
      COUNT(*) AS total_rollouts,
      AVG({normalized_score}) * 100 AS overall_avg_score,
      (SUM(CASE WHEN ar.success THEN 1 ELSE 0 END)::float / COUNT(*)) * 100 AS success_rate_percent,
      AVG(ar.latency_seconds) AS avg_latency,
      MAX(ar.ingested_at) AS last_rollout_at,
      (
        ARRAY_AGG(ar.extra -> 'miner_chute' ->> 'chute_id' ORDER BY ar.ingested_at DESC)
        FILTER (WHERE ar.extra -> 'miner_chute' ->> 'chute_id' IS NOT NULL)
      )[1] AS chute_id
    FROM {table} ar
    JOIN norm_input ni
      ON lower(trim(ar.model)) = ni.lmodel
    GROUP BY lower(trim(ar.model))
  )
SELECT
  i.uid,
  i.model,
  ma.hotkey,
  ma.total_rollouts,
  ma.overall_avg_score,
  ma.success_rate_percent,
  ma.avg_latency,
  ma.last_rollout_at,
  ma.chute_id
FROM input i
LEFT JOIN model_agg ma
  ON lower(trim(i.model)) = ma.lmodel
ORDER BY i.item_index ASC
"""


def coerce_uid(value: Any) -> Optional[int]:
    """
    Accept ints, integral floats and numeric strings; anything else is not a uid.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        value = int(value)
    # uids are bound as postgres INTEGER
    if isinstance(value, int) and UID_MIN <= value <= UID_MAX:
        return value
    return None


def parse_enrichment_items(payload: Any) -> list[tuple[int, str]]:
    """
    Pull valid (uid, model) pairs out of an enrichment request body.

    The body itself must be an object with an `items` array; individual items
    that are malformed are dropped rather than rejected.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
        raise InvalidPayloadError("Invalid payload: expected { items: Array<{uid, model}> }")
    pairs = []
    for item in payload["items"]:
        if not isinstance(item, dict):
            continue
        uid = coerce_uid(item.get("uid"))
        model = item.get("model")
        if uid is None or not isinstance(model, str) or not model.strip():
            continue
        pairs.append((uid, model.strip()))
    return pairs


def build_enrichment_query(pairs: list[tuple[int, str]]) -> tuple[str, dict]:
    values = []
    params = normalized_score_params()
    for idx, (uid, model) in enumerate(pairs):
        values.append(f"({idx}, CAST(:uid_{idx} AS INTEGER), CAST(:model_{idx} AS TEXT))")
        params[f"uid_{idx}"] = uid
        params[f"model_{idx}"] = model
    sql = ENRICHMENT_SQL.format(
        values=",\n      ".join(values),
        normalized_score=normalized_score_sql(score="ar.score", env_name="ar.env_name"),
        table=RESULTS_TABLE,
    )
    return sql, params


async def get_leaderboard(session: AsyncSession, limit: int = LEADERBOARD_LIMIT) -> list[dict]:
    rows = await run_query(
        session,
        LEADERBOARD_SQL,
        {"limit": limit, **normalized_score_params()},
        label="leaderboard",
    )
    logger.info(f"Leaderboard query returned {len(rows)} rows")
    return rows


async def get_live_env_leaderboard(session: AsyncSession, env: str) -> list[dict]:
    """
    Live leaderboard for one environment; names are stored uppercase.
    """
    env = env.upper()
    rows = await run_query(
        session,
        LIVE_ENV_LEADERBOARD_SQL,
        {
            "env": env,
            "live_window": LIVE_WINDOW,
            "scoring_window": LIVE_SCORING_WINDOW,
        },
        label="live environment leaderboard",
    )
    logger.info(f"Live environment leaderboard for {env=} returned {len(rows)} rows")
    return rows


async def enrich_live_items(session: AsyncSession, pairs: list[tuple[int, str]]) -> list[dict]:
    if not pairs:
        logger.info("No valid items to enrich")
        return []
    sql, params = build_enrichment_query(pairs)
    rows = await run_query(session, sql, params, label="live enrichment")
    logger.info(f"Live enrichment processed {len(pairs)} items, returned {len(rows)} rows")
    return rows
