"""
Subnet overview and environment discovery endpoints.
"""

from loguru import logger
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from dashboard.config import settings
from dashboard.database import get_db_session
from dashboard.util import cached
from dashboard.overview.util import get_subnet_overview, discover_environments

router = APIRouter()


@router.get("/subnet-overview")
async def subnet_overview(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    """
    One row per (hotkey, model, revision) with a score column per active environment.
    """

    async def _produce():
        return await get_subnet_overview(session, settings.overview_window)

    return await cached("overview:subnet", _produce, use_cache=request is not None)


@router.get("/environments")
async def list_environments(
    session: AsyncSession = Depends(get_db_session),
    request: Request = None,
):
    """
    Environment names seen in the overview window, sorted.
    """

    async def _produce():
        env_names = await discover_environments(session, settings.overview_window)
        logger.info(f"Environments query returned {len(env_names)} environments")
        return env_names

    return await cached("overview:environments", _produce, use_cache=request is not None)
