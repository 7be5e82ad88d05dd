"""
Unit tests for the weights parsing, price guards and rollout export helpers.
"""

import json
import re
from datetime import datetime, timezone

import pytest

from dashboard.misc.router import parse_weight, pick_top_miner
from dashboard.miner.router import (
    NUMERIC_PRICE_PATTERN,
    TOKEN_COST_SQL,
    MINER_EFFICIENCY_COST_SQL,
    ADVANCED_INSIGHTS_SQL,
    usd_price_sql,
)
from dashboard.rollout.router import export_filename, rollout_payload


@pytest.mark.parametrize(
    "value,expected",
    [
        (0.5, 0.5),
        (3, 3.0),
        ("0.25", 0.25),
        ("abc", None),
        (None, None),
        (True, None),
        (float("inf"), None),
        ("nan", None),
        ({}, None),
    ],
)
def test_parse_weight(value, expected):
    assert parse_weight(value) == expected


def test_pick_top_miner_by_weight():
    weights = {
        "data": {
            "miners": {
                "hk1": {"weight": 0.1},
                "hk2": {"total_weight": 0.9},
                "hk3": {"score": "0.5"},
                "hk4": None,
                "hk5": {"weight": "not-a-number"},
            }
        }
    }
    assert pick_top_miner(weights) == "hk2"


def test_pick_top_miner_prefers_weight_over_score():
    weights = {"data": {"miners": {"hk1": {"weight": 0.2, "score": 99}, "hk2": {"weight": 0.3}}}}
    assert pick_top_miner(weights) == "hk2"


def test_pick_top_miner_first_wins_ties():
    weights = {"data": {"miners": {"hk1": {"weight": 0.5}, "hk2": {"weight": 0.5}}}}
    assert pick_top_miner(weights) == "hk1"


def test_pick_top_miner_accepts_json_text():
    assert pick_top_miner(json.dumps({"data": {"miners": {"hk1": {"weight": 1}}}})) == "hk1"


@pytest.mark.parametrize(
    "weights",
    [None, {}, {"data": None}, {"data": {"miners": []}}, {"data": {"miners": {"hk1": {}}}}],
)
def test_pick_top_miner_nothing_usable(weights):
    assert pick_top_miner(weights) is None


def test_export_filename():
    assert export_filename("org/Model v1.5") == "rollouts_org_Model_v1.5.jsonl"
    assert export_filename('a"b') == "rollouts_a_b.jsonl"
    assert export_filename("Qwen-模型") == "rollouts_Qwen-__.jsonl"
    assert export_filename("café") == "rollouts_caf_.jsonl"


def test_rollout_payload_decodes_jsonb_text():
    row = {
        "ingested_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "uid": 7,
        "hotkey": "hk",
        "model": "m",
        "revision": None,
        "env_name": "SAT",
        "score": 1.0,
        "latency_seconds": 2.5,
        "extra": '{"miner_chute": {"chute_id": "c1"}}',
        "raw_data": {"prompt": "p"},
    }
    payload = rollout_payload(row)
    assert payload["rollout_data"] == {"miner_chute": {"chute_id": "c1"}}
    assert payload["raw_data"] == {"prompt": "p"}
    assert "extra" not in payload
    assert payload["ingested_at"] == row["ingested_at"]


@pytest.mark.parametrize(
    "price,numeric",
    [
        ("0.5", True),
        ("12", True),
        ("-1.25", True),
        ("3.", True),
        ("1e-3", True),
        ("n/a", False),
        ("", False),
        ("0.5 USD", False),
        ("1e999", False),
        ("Infinity", False),
        ("NaN", False),
    ],
)
def test_numeric_price_pattern(price, numeric):
    assert (re.match(NUMERIC_PRICE_PATTERN, price) is not None) is numeric


def test_price_casts_are_guarded():
    for leg in ("input", "output"):
        sql = usd_price_sql(leg)
        assert f"-> '{leg}' ->> 'usd'" in sql
        assert sql.startswith("(CASE WHEN ")
        assert sql.index(f"~ '{NUMERIC_PRICE_PATTERN}'") < sql.index("::double precision")
    assert TOKEN_COST_SQL.count("::double precision") == TOKEN_COST_SQL.count("THEN trim(") == 2
    for statement in (MINER_EFFICIENCY_COST_SQL, ADVANCED_INSIGHTS_SQL):
        assert TOKEN_COST_SQL in statement
        remainder = statement.replace(TOKEN_COST_SQL, "")
        for leg in ("input", "output"):
            remainder = remainder.replace(usd_price_sql(leg), "")
        assert "'usd'" not in remainder
