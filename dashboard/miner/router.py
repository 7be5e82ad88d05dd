"""
Miner deployment/market endpoints (GPU share, efficiency, cost).
"""

from loguru import logger
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from dashboard.database import get_db_session
from dashboard.query import run_query
from dashboard.util import cached, normalized_score_sql, normalized_score_params
from dashboard.constants import (
    RESULTS_TABLE,
    MARKET_WINDOW,
    EFFICIENCY_MIN_ROLLOUTS,
    COST_MIN_ROLLOUTS,
    ADVANCED_INSIGHTS_LIMIT,
)

router = APIRouter()

# Prices are free-form jsonb; anything that is not a plain decimal is treated as missing.
NUMERIC_PRICE_PATTERN = r"^[-+]?[0-9]+(\.[0-9]*)?([eE][-+]?[0-9][0-9]?)?$"


def usd_price_sql(leg: str) -> str:
    """
    USD price per million tokens for one leg ("input" or "output"), NULL unless numeric.
    """
    price = (
        "trim(extra -> 'miner_chute' -> 'current_estimated_price' "
        f"-> 'per_million_tokens' -> '{leg}' ->> 'usd')"
    )
    return f"(CASE WHEN {price} ~ '{NUMERIC_PRICE_PATTERN}' THEN {price}::double precision END)"


# Mean of the input and output USD price per million tokens.
TOKEN_COST_SQL = f"({usd_price_sql('input')} + {usd_price_sql('output')}) / 2.0"

GPU_MARKET_SHARE_SQL = f"""
WITH latest_miner_config AS (
  SELECT DISTINCT ON (hotkey)
    hotkey,
    extra -> 'miner_chute' -> 'node_selector' ->> 'supported_gpus' AS gpus
  FROM {RESULTS_TABLE}
  WHERE ingested_at > NOW() - CAST(:window AS INTERVAL)
    AND extra -> 'miner_chute' -> 'node_selector' ->> 'supported_gpus' IS NOT NULL
  ORDER BY hotkey, ingested_at DESC
)
SELECT gpus, COUNT(*)::int AS miner_count
  FROM latest_miner_config
 GROUP BY gpus
 ORDER BY miner_count DESC, gpus ASC
"""

MINER_EFFICIENCY_SQL = f"""
SELECT
  hotkey,
  model,
  AVG({normalized_score_sql()}) AS avg_score,
  AVG(latency_seconds) AS avg_latency
FROM {RESULTS_TABLE}
WHERE ingested_at > NOW() - CAST(:window AS INTERVAL)
GROUP BY hotkey, model
HAVING COUNT(*) > :min_rollouts
"""

MINER_EFFICIENCY_COST_SQL = f"""
SELECT
  hotkey,
  model,
  AVG({normalized_score_sql()})::double precision AS avg_score,
  AVG({TOKEN_COST_SQL})::double precision AS avg_token_cost_usd
FROM {RESULTS_TABLE}
WHERE ingested_at > NOW() - CAST(:window AS INTERVAL)
  AND {usd_price_sql('input')} IS NOT NULL
  AND {usd_price_sql('output')} IS NOT NULL
GROUP BY hotkey, model
HAVING COUNT(*) > :min_rollouts
   AND AVG({TOKEN_COST_SQL}) > 0
ORDER BY hotkey ASC
"""

ADVANCED_INSIGHTS_SQL = f"""
SELECT
  hotkey,
  model,
  (
    ARRAY_AGG(extra -> 'miner_chute' ->> 'chute_id' ORDER BY ingested_at DESC)
    FILTER (WHERE extra -> 'miner_chute' ->> 'chute_id' IS NOT NULL)
  )[1] AS chute_id,
  MAX(extra -> 'miner_chute' ->> 'template') AS template,
  MAX(extra -> 'miner_chute' -> 'node_selector' ->> 'supported_gpus') AS gpus,
  AVG({TOKEN_COST_SQL}) AS cost_per_hour,
  AVG({normalized_score_sql()}) AS score
FROM {RESULTS_TABLE}
WHERE ingested_at > NOW() - CAST(:window AS INTERVAL)
GROUP BY hotkey, model
ORDER BY score DESC NULLS LAST
LIMIT :limit
"""


@router.get("/gpu-market-share")
async def gpu_market_share(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    """
    Active miners per GPU configuration, from each hotkey's latest deployment.

    The `gpus` value is passed through exactly as stored (a JSON-encoded list).
    """

    async def _produce():
        rows = await run_query(
            session, GPU_MARKET_SHARE_SQL, {"window": MARKET_WINDOW}, label="GPU market share"
        )
        logger.info(f"GPU market share returned {len(rows)} rows")
        return rows

    return await cached("miner:gpu_market_share", _produce, use_cache=request is not None)


@router.get("/miner-efficiency")
async def miner_efficiency(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    async def _produce():
        rows = await run_query(
            session,
            MINER_EFFICIENCY_SQL,
            {
                "window": MARKET_WINDOW,
                "min_rollouts": EFFICIENCY_MIN_ROLLOUTS,
                **normalized_score_params(),
            },
            label="miner efficiency",
        )
        logger.info(f"Miner efficiency returned {len(rows)} rows")
        return rows

    return await cached("miner:efficiency", _produce, use_cache=request is not None)


@router.get("/miner-efficiency-cost")
async def miner_efficiency_cost(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    """
    Average score against average token price, for miners publishing prices.
    """

    async def _produce():
        rows = await run_query(
            session,
            MINER_EFFICIENCY_COST_SQL,
            {
                "window": MARKET_WINDOW,
                "min_rollouts": COST_MIN_ROLLOUTS,
                **normalized_score_params(),
            },
            label="miner efficiency cost",
        )
        logger.info(f"Miner efficiency cost returned {len(rows)} rows")
        return rows

    return await cached("miner:efficiency_cost", _produce, use_cache=request is not None)


@router.get("/advanced-insights")
async def advanced_insights(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    async def _produce():
        rows = await run_query(
            session,
            ADVANCED_INSIGHTS_SQL,
            {
                "window": MARKET_WINDOW,
                "limit": ADVANCED_INSIGHTS_LIMIT,
                **normalized_score_params(),
            },
            label="advanced insights",
        )
        logger.info(f"Advanced insights returned {len(rows)} rows")
        return rows

    return await cached("miner:advanced_insights", _produce, use_cache=request is not None)
