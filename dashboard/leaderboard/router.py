"""
Leaderboard routes.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from dashboard.database import get_db_session
from dashboard.exceptions import MissingParameterError, InvalidPayloadError
from dashboard.util import cached
from dashboard.leaderboard.util import (
    get_leaderboard,
    get_live_env_leaderboard,
    parse_enrichment_items,
    enrich_live_items,
)

router = APIRouter()


@router.get("/leaderboard")
async def leaderboard(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    """
    All-time top miners by average (normalized) score.
    """

    async def _produce():
        return await get_leaderboard(session)

    return await cached("leaderboard:top", _produce, use_cache=request is not None)


@router.get("/live-env-leaderboard")
@router.get("/live-env-leaderboard/")
async def live_env_leaderboard_missing_env():
    raise MissingParameterError("env", location="path")


@router.get("/live-env-leaderboard/{env}")
async def live_env_leaderboard(
    env: str,
    session: AsyncSession = Depends(get_db_session),
):
    env = env.strip()
    if not env:
        raise MissingParameterError("env", location="path")
    return await get_live_env_leaderboard(session, env)


@router.post("/live-enrichment")
async def live_enrichment(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
):
    """
    Attach aggregate stats to each live (uid, model) pair, matching models
    case- and whitespace-insensitively.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise InvalidPayloadError("Invalid payload: request body is not valid JSON")
    pairs = parse_enrichment_items(payload)
    return await enrich_live_items(session, pairs)
