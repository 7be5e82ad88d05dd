"""
Router for misc. stuff, e.g. validator summary proxy and the subnet performance trend.
"""

import math
import asyncio
import aiohttp
from typing import Any, Optional
from loguru import logger
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from dashboard.config import settings
from dashboard.database import get_db_session
from dashboard.exceptions import UpstreamError
from dashboard.query import run_query
from dashboard.util import cached, extract_path, normalized_score_sql, normalized_score_params
from dashboard.constants import RESULTS_TABLE, PERFORMANCE_TREND_WINDOW

router = APIRouter()

UPSTREAM_TIMEOUT = aiohttp.ClientTimeout(connect=10.0, total=30.0)

# Checked in order, the first present one is the miner's weight.
WEIGHT_KEYS = ("weight", "total_weight", "score")

PERFORMANCE_TREND_SQL = f"""
SELECT
  DATE_TRUNC('day', ingested_at) AS timestamp,
  AVG({normalized_score_sql()}) AS score
FROM {RESULTS_TABLE}
WHERE hotkey = :hotkey
  AND ingested_at >= NOW() - CAST(:window AS INTERVAL)
  AND score IS NOT NULL
GROUP BY DATE_TRUNC('day', ingested_at)
ORDER BY timestamp ASC
"""


async def fetch_json(url: str, label: str) -> Any:
    """
    GET a JSON document from an external service, any failure is an UpstreamError.
    """
    try:
        async with aiohttp.ClientSession(timeout=UPSTREAM_TIMEOUT) as session:
            async with session.get(url, headers={"Accept": "application/json"}) as response:
                if response.status != 200:
                    raise UpstreamError(
                        f"Failed to fetch {label}: upstream returned {response.status}"
                    )
                return await response.json(content_type=None)
    except UpstreamError:
        logger.error(f"Upstream {label} request was not successful: {url=}")
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        logger.error(f"Upstream {label} request failed: {url=} error={exc}")
        raise UpstreamError(f"Failed to fetch {label}", exc) from exc


def parse_weight(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        weight = float(value)
    except (TypeError, ValueError):
        return None
    return weight if math.isfinite(weight) else None


def pick_top_miner(weights: Any) -> Optional[str]:
    """
    Hotkey with the highest weight in the latest weights document.

    Each miner's weight is the first present of weight, total_weight, score.
    Ties keep the first miner in document order.
    """
    miners = extract_path(weights, "data", "miners")
    if not isinstance(miners, dict):
        return None
    top_hotkey, top_weight = None, -math.inf
    for hotkey, miner in miners.items():
        if not isinstance(miner, dict):
            continue
        present = [miner[key] for key in WEIGHT_KEYS if miner.get(key) is not None]
        weight = parse_weight(present[0]) if present else None
        if weight is not None and weight > top_weight:
            top_hotkey, top_weight = hotkey, weight
    return top_hotkey


@router.get("/validator-summary")
async def validator_summary(request: Request = None):
    """
    Read-through proxy of the latest validator summary.
    """

    async def _produce():
        return await fetch_json(settings.summary_url, "validator summary")

    return await cached("misc:validator_summary", _produce, use_cache=request is not None)


@router.get("/subnet/performance-trend")
async def subnet_performance_trend(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    """
    Daily normalized score of the miner currently holding the highest weight.
    """

    async def _produce():
        weights = await fetch_json(settings.weights_url, "latest weights")
        hotkey = pick_top_miner(weights)
        if not hotkey:
            logger.warning("No miner with a usable weight in the latest weights document")
            return {"hotkey": None, "data": []}
        rows = await run_query(
            session,
            PERFORMANCE_TREND_SQL,
            {"hotkey": hotkey, "window": PERFORMANCE_TREND_WINDOW, **normalized_score_params()},
            label="subnet performance trend",
        )
        logger.info(f"Performance trend for top miner {hotkey=} returned {len(rows)} points")
        return {"hotkey": hotkey, "data": rows}

    return await cached("misc:performance_trend", _produce, use_cache=request is not None)
