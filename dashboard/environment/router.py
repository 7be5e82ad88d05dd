"""
Per-environment charts and environment-level aggregates.
"""

from loguru import logger
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from dashboard.database import get_db_session
from dashboard.query import run_query
from dashboard.util import get_env_param, cached
from dashboard.constants import (
    RESULTS_TABLE,
    DISTRIBUTION_WINDOW,
    DISTRIBUTION_MIN_ROLLOUTS,
    LATENCY_WINDOW,
    LATENCY_TOP_MINERS,
    TOP_MINERS_LIMIT,
    TOP_MINERS_TREND_WINDOW,
)

router = APIRouter()

SCORE_DISTRIBUTION_SQL = f"""
WITH miner_scores AS (
  SELECT hotkey, AVG(score) AS avg_score
    FROM {RESULTS_TABLE}
   WHERE env_name = :env
     AND ingested_at > NOW() - CAST(:window AS INTERVAL)
   GROUP BY hotkey
  HAVING COUNT(*) > :min_rollouts
)
SELECT
  width_bucket(avg_score, 0.0, 1.0, 10) AS score_bucket,
  COUNT(*) AS number_of_miners
FROM miner_scores
GROUP BY score_bucket
ORDER BY score_bucket ASC
"""

LATENCY_DISTRIBUTION_SQL = f"""
WITH top_miners AS (
  SELECT hotkey
    FROM {RESULTS_TABLE}
   WHERE env_name = :env
     AND ingested_at > NOW() - CAST(:window AS INTERVAL)
   GROUP BY hotkey
   ORDER BY COUNT(*) DESC, hotkey ASC
   LIMIT :limit
)
SELECT hotkey, latency_seconds
  FROM {RESULTS_TABLE}
 WHERE hotkey IN (SELECT hotkey FROM top_miners)
   AND env_name = :env
   AND ingested_at > NOW() - CAST(:window AS INTERVAL)
"""

TOP_MINERS_SQL = f"""
WITH top_miners AS (
  SELECT hotkey
    FROM {RESULTS_TABLE}
   WHERE env_name = :env
     AND ingested_at > NOW() - CAST(:selection_window AS INTERVAL)
   GROUP BY hotkey
  HAVING COUNT(*) > :min_rollouts
   ORDER BY AVG(score) DESC NULLS LAST, COUNT(*) DESC
   LIMIT :limit
)
SELECT
  DATE_TRUNC('day', ar.ingested_at)::date AS period,
  ar.hotkey,
  AVG(ar.score) AS average_score
FROM {RESULTS_TABLE} ar
WHERE ar.hotkey IN (SELECT hotkey FROM top_miners)
  AND ar.env_name = :env
  AND ar.ingested_at > NOW() - CAST(:trend_window AS INTERVAL)
GROUP BY period, ar.hotkey
ORDER BY period ASC, ar.hotkey ASC
"""

PERFORMANCE_BY_ENV_SQL = f"""
SELECT
  env_name,
  COUNT(*) AS total_rollouts,
  AVG(score) AS average_score,
  (SUM(CASE WHEN success THEN 1 ELSE 0 END)::float / COUNT(*)) * 100 AS success_rate_percent
FROM {RESULTS_TABLE}
GROUP BY env_name
ORDER BY average_score DESC NULLS LAST
"""

ENVIRONMENT_STATS_SQL = f"""
SELECT
  env_name,
  COUNT(*) AS total_rollouts,
  AVG(score) * 100 AS success_rate
FROM {RESULTS_TABLE}
GROUP BY env_name
ORDER BY total_rollouts DESC
"""


@router.get("/score-distribution-by-env")
async def score_distribution_by_env(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
):
    """
    Histogram (ten buckets over 0..1) of per-miner average scores in one environment.
    """
    env = get_env_param(request)
    rows = await run_query(
        session,
        SCORE_DISTRIBUTION_SQL,
        {
            "env": env,
            "window": DISTRIBUTION_WINDOW,
            "min_rollouts": DISTRIBUTION_MIN_ROLLOUTS,
        },
        label="score distribution by environment",
    )
    logger.info(f"Score distribution for {env=} returned {len(rows)} rows")
    return rows


@router.get("/latency-distribution-by-env")
async def latency_distribution_by_env(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
):
    """
    Raw latency samples for the busiest miners in one environment.
    """
    env = get_env_param(request)
    rows = await run_query(
        session,
        LATENCY_DISTRIBUTION_SQL,
        {"env": env, "window": LATENCY_WINDOW, "limit": LATENCY_TOP_MINERS},
        label="latency distribution by environment",
    )
    logger.info(f"Latency distribution for {env=} returned {len(rows)} rows")
    return rows


@router.get("/top-miners-by-env")
async def top_miners_by_env(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
):
    env = get_env_param(request)
    rows = await run_query(
        session,
        TOP_MINERS_SQL,
        {
            "env": env,
            "selection_window": DISTRIBUTION_WINDOW,
            "trend_window": TOP_MINERS_TREND_WINDOW,
            "min_rollouts": DISTRIBUTION_MIN_ROLLOUTS,
            "limit": TOP_MINERS_LIMIT,
        },
        label="top miners by environment",
    )
    logger.info(f"Top miners for {env=} returned {len(rows)} rows")
    return rows


@router.get("/performance-by-env")
async def performance_by_env(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    async def _produce():
        rows = await run_query(
            session, PERFORMANCE_BY_ENV_SQL, label="performance by environment"
        )
        logger.info(f"Performance by environment returned {len(rows)} rows")
        return rows

    return await cached("environment:performance", _produce, use_cache=request is not None)


@router.get("/environment-stats")
async def environment_stats(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    async def _produce():
        rows = await run_query(session, ENVIRONMENT_STATS_SQL, label="environment statistics")
        logger.info(f"Environment stats returned {len(rows)} rows")
        return rows

    return await cached("environment:stats", _produce, use_cache=request is not None)
