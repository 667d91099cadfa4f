"""Payout arithmetic for settled trades."""
import random

from strategy.thresholds import PAYOUT_MIN, PAYOUT_MAX


def draw_payout_fraction(
    rng: random.Random | None = None,
    low: float = PAYOUT_MIN,
    high: float = PAYOUT_MAX,
) -> float:
    """Uniform draw from [low, high)."""
    rng = rng or random
    fraction = low + rng.random() * (high - low)
    # float rounding can land exactly on the upper bound
    return fraction if fraction < high else low


def settle_profit(
    amount: float,
    is_win: bool,
    rng: random.Random | None = None,
    low: float = PAYOUT_MIN,
    high: float = PAYOUT_MAX,
) -> float:
    """Signed result of a trade: a fraction of the stake on a win, the whole stake on a loss."""
    if not is_win:
        return -amount
    return amount * draw_payout_fraction(rng, low, high)
