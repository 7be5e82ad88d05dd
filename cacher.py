"""
Cache warmer to avoid hammering the results store on the heavy dashboard endpoints.
"""

import time
import asyncio
from loguru import logger
from dashboard.config import settings
from dashboard.database import get_session, engine


async def warm_up_overview():
    """
    Keep the subnet overview and environment list warm, these run the pivot.
    """
    from dashboard.overview.router import subnet_overview, list_environments

    logger.info("Warming up subnet overview endpoints...")
    async with get_session() as session:
        rows = await subnet_overview(session=session, request=None)
        logger.success(f"Warmed up subnet overview, {len(rows)} rows")
    async with get_session() as session:
        env_names = await list_environments(session=session, request=None)
        logger.success(f"Warmed up environments, {len(env_names)} environments")


async def warm_up_charts():
    """
    Keep the all-time/7 day chart endpoints warm.
    """
    from dashboard.leaderboard.router import leaderboard
    from dashboard.environment.router import performance_by_env, environment_stats
    from dashboard.miner.router import (
        gpu_market_share,
        miner_efficiency,
        miner_efficiency_cost,
        advanced_insights,
    )
    from dashboard.rollout.router import daily_rollouts_by_model, results_over_time

    for endpoint in (
        leaderboard,
        performance_by_env,
        environment_stats,
        gpu_market_share,
        miner_efficiency,
        miner_efficiency_cost,
        advanced_insights,
        daily_rollouts_by_model,
        results_over_time,
    ):
        async with get_session() as session:
            rows = await endpoint(session=session, request=None)
        logger.success(f"Warmed up {endpoint.__name__}, {len(rows)} rows")


async def warm_up_upstream():
    """
    External weights/summary documents, last since they depend on other services.
    """
    from dashboard.misc.router import validator_summary, subnet_performance_trend

    await validator_summary(request=None)
    logger.success("Warmed up validator summary")
    async with get_session() as session:
        trend = await subnet_performance_trend(session=session, request=None)
    logger.success(f"Warmed up performance trend for hotkey={trend['hotkey']}")


async def main():
    """
    Warm up all heavy cache endpoints.
    """
    if settings.cache_ttl <= 0:
        logger.warning("CACHE_TTL is 0, response cache disabled, nothing to warm up")
        return
    started_at = time.time()
    try:
        await warm_up_overview()
        await warm_up_charts()
        await warm_up_upstream()
    finally:
        await engine.dispose()
    logger.success(f"Cache warm-up finished in {int(time.time() - started_at)} seconds")


if __name__ == "__main__":
    asyncio.run(main())
