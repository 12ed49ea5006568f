"""
Public rules of the race arena.

These values define matchmaking, timing and prize distribution.
Changing them changes payouts and MUST be publicly announced.
"""

# Arena tiers and their entry-fee multiplier over ENTRY_FEE_LAMPORTS
ARENA_FEE_MULTIPLIERS = {
    "bronze": 1,
    "silver": 2,
    "gold": 5,
}
DEFAULT_ARENA = "bronze"

# Matchmaking
MIN_PLAYERS = 2  # quorum that starts the waiting timer
MAX_PLAYERS = 4
WAITING_TIME_S = 15.0  # grace window, restarted on every joiner
COUNTDOWN_TIME_S = 3.0
RACE_DURATION_S = 60.0

# Prize share per rank, keyed by participant count (basis points of the bank)
PRIZE_DISTRIBUTION_BPS = {
    2: (9000, 0),
    3: (7500, 1500, 0),
    4: (6500, 2000, 500, 0),
}

# Retained by the treasury (basis points of the bank)
HOUSE_EDGE_BPS = 1000

BPS_DENOMINATOR = 10_000

# Lamports per native token (9 decimals)
TOKEN_DECIMALS = 9

DEFAULT_RPC_URL = "https://rpc.gorbagana.wtf"
DEFAULT_FRONTEND_URL = "http://localhost:3000"
RACE_RESULTS_TABLE = "race_results"
