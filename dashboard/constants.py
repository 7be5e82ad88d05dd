from datetime import timedelta

# The append-only results table written by the validators.
RESULTS_TABLE = "public.affine_results"

# Eligibility: rollouts in every attempted environment must reach
# ELIGIBILITY_MIN_ROLLOUTS + ELIGIBILITY_LEADER_FRACTION * (busiest miner's rollouts there).
ELIGIBILITY_MIN_ROLLOUTS = 150
ELIGIBILITY_LEADER_FRACTION = 0.01

# The one environment not scored on 0..1, rescaled before averaging across environments.
SCIWORLD_ENV = "agentgym:sciworld"
SCIWORLD_SCORE_MIN = -100.0
SCIWORLD_SCORE_MAX = 100.0

# "Live" miners for the per-environment leaderboard, and the window their scores cover.
# NOTE: 3h41m24s is what the dashboard has always used; kept distinct from the 24h window.
LIVE_WINDOW = timedelta(hours=3, minutes=41, seconds=24)
LIVE_SCORING_WINDOW = timedelta(hours=24)

# Per-environment charts.
DISTRIBUTION_WINDOW = timedelta(days=14)
DISTRIBUTION_MIN_ROLLOUTS = 20
LATENCY_WINDOW = timedelta(days=7)
LATENCY_TOP_MINERS = 10
TOP_MINERS_LIMIT = 5
TOP_MINERS_TREND_WINDOW = timedelta(days=30)

# Market/efficiency charts.
MARKET_WINDOW = timedelta(days=7)
EFFICIENCY_MIN_ROLLOUTS = 50
COST_MIN_ROLLOUTS = 20
ADVANCED_INSIGHTS_LIMIT = 200

# Misc feeds.
LEADERBOARD_LIMIT = 20
ACTIVITY_LIMIT = 10
DAILY_ROLLOUTS_WINDOW = timedelta(days=7)
DAILY_ROLLOUTS_TOP_MODELS = 5
RESULTS_OVER_TIME_WINDOW = timedelta(days=30)
PERFORMANCE_TREND_WINDOW = timedelta(days=30)

# Query parameter names accepted for the environment on env-scoped endpoints.
ENV_QUERY_PARAMS = ("env", "ENV", "e")

# Truncation for SQL text in error logs.
SQL_LOG_PREVIEW = 200
