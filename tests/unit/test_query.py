"""
Unit tests for the results-store query contract.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import ProgrammingError

from dashboard.exceptions import QueryError
from dashboard.query import run_query
from fixtures.results import query_result


@pytest.mark.asyncio
async def test_run_query_returns_plain_dicts(mock_session):
    mock_session.execute = AsyncMock(
        return_value=query_result([{"env_name": "SAT", "average_score": Decimal("0.75")}])
    )
    rows = await run_query(mock_session, "SELECT 1", {"env": "SAT"}, label="test")
    assert rows == [{"env_name": "SAT", "average_score": 0.75}]
    assert isinstance(rows[0]["average_score"], float)
    statement, params = mock_session.execute.await_args.args
    assert str(statement) == "SELECT 1"
    assert params == {"env": "SAT"}


@pytest.mark.asyncio
async def test_run_query_defaults_params(mock_session):
    await run_query(mock_session, "SELECT 1")
    assert mock_session.execute.await_args.args[1] == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ProgrammingError("SELECT", {}, Exception("syntax error")),
        ConnectionRefusedError("connection refused"),
        asyncio.TimeoutError(),
    ],
)
async def test_run_query_wraps_store_failures(mock_session, error):
    mock_session.execute = AsyncMock(side_effect=error)
    with pytest.raises(QueryError) as exc_info:
        await run_query(mock_session, "SELECT 1", label="leaderboard")
    assert exc_info.value.status_code == 500
    assert exc_info.value.detail == "Failed to fetch leaderboard data"
    assert exc_info.value.cause is error


@pytest.mark.asyncio
async def test_run_query_does_not_retry(mock_session):
    mock_session.execute = AsyncMock(side_effect=ConnectionResetError("reset"))
    with pytest.raises(QueryError):
        await run_query(mock_session, "SELECT 1")
    assert mock_session.execute.await_count == 1
