"""
Unit tests for dashboard/leaderboard/util module.
"""

import math
from unittest.mock import AsyncMock

import pytest

from dashboard.constants import LIVE_WINDOW, LIVE_SCORING_WINDOW
from dashboard.exceptions import InvalidPayloadError
from dashboard.leaderboard.util import (
    coerce_uid,
    parse_enrichment_items,
    build_enrichment_query,
    enrich_live_items,
    get_live_env_leaderboard,
    get_leaderboard,
)
from fixtures.results import query_result


@pytest.mark.parametrize(
    "value,expected",
    [
        (1, 1),
        (7.0, 7),
        ("42", 42),
        (" 3 ", 3),
        (0, 0),
        (1.5, None),
        (math.inf, None),
        (math.nan, None),
        ("nan", None),
        ("abc", None),
        ("", None),
        (None, None),
        (True, None),
        ([1], None),
        ({"uid": 1}, None),
        (2**31 - 1, 2**31 - 1),
        (-(2**31), -(2**31)),
        (2**31, None),
        (3000000000, None),
        ("3000000000", None),
        (1e20, None),
    ],
)
def test_coerce_uid(value, expected):
    assert coerce_uid(value) == expected


@pytest.mark.parametrize(
    "payload",
    [None, [], "items", {"items": None}, {"items": {"uid": 1}}, {"other": []}],
)
def test_parse_enrichment_requires_items_array(payload):
    with pytest.raises(InvalidPayloadError) as exc_info:
        parse_enrichment_items(payload)
    assert exc_info.value.status_code == 400


def test_parse_enrichment_drops_malformed_items():
    pairs = parse_enrichment_items(
        {
            "items": [
                {"uid": 1, "model": "  GPT-X  "},
                None,
                "not-an-object",
                {"uid": "x", "model": "m"},
                {"uid": 2, "model": "   "},
                {"uid": 3},
                {"uid": 4, "model": 12},
                {"model": "m"},
                {"uid": 3000000000, "model": "m1"},
                {"uid": 5.0, "model": "org/Model-5"},
            ]
        }
    )
    assert pairs == [(1, "GPT-X"), (5, "org/Model-5")]


def test_parse_enrichment_empty_items():
    assert parse_enrichment_items({"items": []}) == []


def test_enrichment_query_binds_inputs_and_keeps_order():
    pairs = [(1, "GPT-X"), (2, "'; DROP TABLE affine_results; --")]
    sql, params = build_enrichment_query(pairs)
    assert "DROP TABLE" not in sql
    assert params["uid_0"] == 1
    assert params["model_0"] == "GPT-X"
    assert params["model_1"] == pairs[1][1]
    assert params["sciworld_env"] == "agentgym:sciworld"
    assert "(0, CAST(:uid_0 AS INTEGER), CAST(:model_0 AS TEXT))" in sql
    assert "(1, CAST(:uid_1 AS INTEGER), CAST(:model_1 AS TEXT))" in sql
    assert "lower(trim(i.model)) = ma.lmodel" in sql
    assert sql.rstrip().endswith("ORDER BY i.item_index ASC")


@pytest.mark.asyncio
async def test_enrich_live_items_empty_skips_store(mock_session):
    assert await enrich_live_items(mock_session, []) == []
    mock_session.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_enrich_live_items_matches_case_insensitively(mock_session):
    stored = {
        "uid": 1,
        "model": "GPT-X",
        "hotkey": "5Fhk",
        "total_rollouts": 300,
        "overall_avg_score": 71.5,
        "success_rate_percent": 98.0,
        "avg_latency": 2.0,
        "last_rollout_at": None,
        "chute_id": "chute-1",
    }
    mock_session.execute = AsyncMock(return_value=query_result([stored]))
    pairs = parse_enrichment_items({"items": [{"uid": 1, "model": "  GPT-X  "}]})
    rows = await enrich_live_items(mock_session, pairs)
    assert len(rows) == 1
    assert rows[0]["uid"] == 1
    params = mock_session.execute.await_args.args[1]
    assert params["model_0"] == "GPT-X"


@pytest.mark.asyncio
async def test_live_env_leaderboard_uppercases_env(mock_session):
    await get_live_env_leaderboard(mock_session, "sat")
    params = mock_session.execute.await_args.args[1]
    assert params["env"] == "SAT"
    assert params["live_window"] == LIVE_WINDOW
    assert params["scoring_window"] == LIVE_SCORING_WINDOW
    assert LIVE_WINDOW < LIVE_SCORING_WINDOW


@pytest.mark.asyncio
async def test_leaderboard_limit(mock_session):
    await get_leaderboard(mock_session)
    params = mock_session.execute.await_args.args[1]
    assert params["limit"] == 20
