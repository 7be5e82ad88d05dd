"""
Subnet overview: environment discovery, per-environment pivot and miner eligibility.

One row per (hotkey, model, revision) active in the overview window, with a
score column for every environment seen in that same window. The column set
is data, not schema: it is rediscovered on every call and clients must not
assume a fixed set of keys.
"""

import re
from decimal import Decimal
from datetime import timedelta
from dataclasses import dataclass
from typing import Iterable, Optional
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession
from dashboard.config import settings
from dashboard.constants import (
    RESULTS_TABLE,
    ELIGIBILITY_MIN_ROLLOUTS,
    ELIGIBILITY_LEADER_FRACTION,
)
from dashboard.exceptions import QueryError
from dashboard.query import run_query, STORE_EXCEPTIONS
from dashboard.util import normalized_score_sql, normalized_score_params

SAFE_ALIAS_RE = re.compile(r"[a-z0-9_]+")
UNSAFE_ALIAS_CHARS_RE = re.compile(r"[^a-z0-9_]")

# Keys every overview row carries regardless of environments.
FIXED_COLUMNS = (
    "hotkey",
    "model",
    "rev",
    "uid",
    "eligible",
    "overall_avg_score",
    "success_rate_percent",
    "avg_latency",
    "total_rollouts",
    "last_rollout_at",
    "chute_id",
)

DISCOVER_ENVIRONMENTS_SQL = f"""
SELECT DISTINCT env_name
  FROM {RESULTS_TABLE}
 WHERE ingested_at > NOW() - CAST(:window AS INTERVAL)
   AND env_name IS NOT NULL
 ORDER BY env_name ASC
"""

OVERVIEW_SQL = """
WITH
  base_metrics AS (
    SELECT
      hotkey,
      model,
      revision,
      env_name,
      COUNT(*) AS rollouts,
      AVG(score) AS avg_score,
      AVG(latency_seconds) AS avg_latency,
      (SUM(CASE WHEN success THEN 1 ELSE 0 END)::float / COUNT(*)) * 100 AS success_rate_percent
    FROM {table}
    WHERE ingested_at > NOW() - CAST(:window AS INTERVAL)
    GROUP BY hotkey, model, revision, env_name
  ),
  overall_metrics AS (
    SELECT
      hotkey,
      model,
      revision,
      MAX(uid) AS uid,
      COUNT(*) AS total_rollouts,
      AVG({normalized_score}) AS overall_avg_score,
      (SUM(CASE WHEN success THEN 1 ELSE 0 END)::float / COUNT(*)) * 100 AS success_rate_percent,
      AVG(latency_seconds) AS avg_latency,
      MAX(ingested_at) AS last_rollout_at,
      (
        ARRAY_AGG(extra -> 'miner_chute' ->> 'chute_id' ORDER BY ingested_at DESC)
        FILTER (WHERE extra -> 'miner_chute' ->> 'chute_id' IS NOT NULL)
      )[1] AS chute_id
    FROM {table}
    WHERE ingested_at > NOW() - CAST(:window AS INTERVAL)
    GROUP BY hotkey, model, revision
  )
SELECT
  om.hotkey,
  om.model,
  om.revision AS rev,
  om.uid,
  {env_columns}om.overall_avg_score * 100 AS overall_avg_score,
  om.success_rate_percent,
  om.avg_latency,
  om.total_rollouts,
  om.last_rollout_at,
  om.chute_id
FROM overall_metrics om
LEFT JOIN base_metrics b
  ON b.hotkey = om.hotkey
 AND b.model = om.model
 AND b.revision IS NOT DISTINCT FROM om.revision
GROUP BY
  om.hotkey,
  om.model,
  om.revision,
  om.uid,
  om.overall_avg_score,
  om.success_rate_percent,
  om.avg_latency,
  om.total_rollouts,
  om.last_rollout_at,
  om.chute_id
ORDER BY
  om.overall_avg_score DESC NULLS LAST,
  om.total_rollouts DESC,
  om.hotkey ASC,
  om.model ASC
"""


def env_alias(env_name: str) -> str:
    """
    Column name for an environment: lowercase, anything outside [a-z0-9_] becomes "_".
    """
    return UNSAFE_ALIAS_CHARS_RE.sub("_", str(env_name).lower())


def is_safe_alias(alias: str) -> bool:
    return bool(alias) and SAFE_ALIAS_RE.fullmatch(alias) is not None


@dataclass(frozen=True)
class EnvironmentColumn:
    """
    One discovered environment and where it lands in the query and the response.
    """

    env_name: str
    alias: str
    index: int

    @property
    def param(self) -> str:
        return f"env_name_{self.index}"

    @property
    def score_key(self) -> str:
        return f"env_score_{self.index}"

    @property
    def rollouts_key(self) -> str:
        return f"env_rollouts_{self.index}"


def build_environment_columns(env_names: Iterable[str]) -> list[EnvironmentColumn]:
    """
    Validate discovered environment names into pivot columns.

    Colliding aliases are kept (the later environment overwrites the earlier
    one in the response) but logged, as are aliases shadowing a fixed column.
    """
    columns = []
    seen = {}
    for env_name in env_names:
        alias = env_alias(env_name)
        if not is_safe_alias(alias):
            logger.warning(f"Skipping environment with unusable column alias: {env_name=}")
            continue
        if alias in seen:
            logger.warning(
                f"Environment column collision: {env_name=} and {seen[alias]!r} "
                f"both map to {alias=}"
            )
        elif alias in FIXED_COLUMNS:
            logger.warning(f"Environment column {alias=} shadows a fixed overview column")
        seen.setdefault(alias, env_name)
        columns.append(EnvironmentColumn(env_name=env_name, alias=alias, index=len(columns)))
    return columns


def build_overview_query(
    columns: list[EnvironmentColumn], window: timedelta
) -> tuple[str, dict]:
    """
    Render the pivot statement; environment names only ever travel as bound parameters.
    """
    pieces = []
    params = {"window": window, **normalized_score_params()}
    for column in columns:
        params[column.param] = column.env_name
        match = f"b.env_name = :{column.param}"
        pieces.append(f"MAX(CASE WHEN {match} THEN b.avg_score * 100 END) AS {column.score_key}")
        pieces.append(f"MAX(CASE WHEN {match} THEN b.rollouts END) AS {column.rollouts_key}")
    env_columns = "".join(f"{piece},\n  " for piece in pieces)
    sql = OVERVIEW_SQL.format(
        table=RESULTS_TABLE,
        normalized_score=normalized_score_sql(),
        env_columns=env_columns,
    )
    return sql, params


@dataclass(frozen=True)
class EligibilityRule:
    """
    A miner is eligible when, in every environment it attempted, its rollout count
    reaches min_rollouts + leader_fraction * (the busiest miner's count there).
    """

    min_rollouts: int = ELIGIBILITY_MIN_ROLLOUTS
    leader_fraction: float = ELIGIBILITY_LEADER_FRACTION

    def threshold(self, max_rollouts: int) -> Decimal:
        # Exact, like the numeric comparison postgres would do.
        fraction = Decimal(str(self.leader_fraction))
        return Decimal(self.min_rollouts) + fraction * Decimal(max_rollouts)

    def is_eligible(self, attempted: dict[int, int], maximums: dict[int, int]) -> bool:
        return all(count >= self.threshold(maximums[key]) for key, count in attempted.items())


DEFAULT_RULE = EligibilityRule()


def environment_maximums(rows: list[dict], columns: list[EnvironmentColumn]) -> dict[int, int]:
    maximums = {}
    for row in rows:
        for column in columns:
            count = row.get(column.rollouts_key)
            if count is not None:
                maximums[column.index] = max(maximums.get(column.index, 0), count)
    return maximums


def pivot_overview_rows(
    rows: list[dict],
    columns: list[EnvironmentColumn],
    rule: EligibilityRule = DEFAULT_RULE,
) -> list[dict]:
    """
    Shape raw pivot rows into SubnetOverviewRow dicts and attach eligibility.
    """
    maximums = environment_maximums(rows, columns)
    overview = []
    for row in rows:
        attempted = {
            column.index: row[column.rollouts_key]
            for column in columns
            if row.get(column.rollouts_key) is not None
        }
        item = {
            "hotkey": row["hotkey"],
            "model": row["model"],
            "rev": row["rev"],
            "uid": row["uid"],
        }
        for column in columns:
            item[column.alias] = row.get(column.score_key)
        item.update(
            {
                "eligible": rule.is_eligible(attempted, maximums),
                "overall_avg_score": row["overall_avg_score"],
                "success_rate_percent": row["success_rate_percent"],
                "avg_latency": row["avg_latency"],
                "total_rollouts": row["total_rollouts"],
                "last_rollout_at": row["last_rollout_at"],
                "chute_id": row["chute_id"],
            }
        )
        overview.append(item)
    return overview


async def discover_environments(session: AsyncSession, window: timedelta) -> list[str]:
    rows = await run_query(
        session, DISCOVER_ENVIRONMENTS_SQL, {"window": window}, label="environments"
    )
    return [row["env_name"] for row in rows]


async def get_subnet_overview(
    session: AsyncSession,
    window: Optional[timedelta] = None,
    rule: EligibilityRule = DEFAULT_RULE,
) -> list[dict]:
    """
    Discover environments, then pivot and judge eligibility over the same window.

    Both statements run in one REPEATABLE READ transaction, so they share a
    snapshot and NOW(): the discovered environments are exactly the ones the
    pivot sees.
    """
    window = window or settings.overview_window
    try:
        await session.connection(execution_options={"isolation_level": "REPEATABLE READ"})
    except STORE_EXCEPTIONS as exc:
        logger.error(f"Unable to acquire a connection for the subnet overview: {exc}")
        raise QueryError("subnet overview", exc) from exc
    env_names = await discover_environments(session, window)
    columns = build_environment_columns(env_names)
    sql, params = build_overview_query(columns, window)
    rows = await run_query(session, sql, params, label="subnet overview")
    overview = pivot_overview_rows(rows, columns, rule)
    logger.info(
        f"Subnet overview returned {len(overview)} rows for {len(env_names)} environments: "
        f"{', '.join(env_names)}"
    )
    return overview
