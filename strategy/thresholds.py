"""Configurable constants for the settlement rules."""

# Trades opened per user form repeating blocks of this length
CYCLE_LENGTH = 5

# The first WINS_PER_CYCLE positions of each block win, the rest lose
WINS_PER_CYCLE = 3

# Payout on a win is amount * fraction, fraction drawn from [PAYOUT_MIN, PAYOUT_MAX)
PAYOUT_MIN = 0.70
PAYOUT_MAX = 0.90

# Seconds between open and automatic settlement
TRADE_DURATION_SECONDS = 30.0

# Width of the cosmetic jitter applied to the exit price when no newer quote exists
PRICE_PERTURBATION = 0.01
