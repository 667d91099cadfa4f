"""Simulated quote feed: random-walk prices for the catalogue's pairs.

Stands in for a live price source. The settlement engine only needs
``latest_price(pair)``; ticks are also pushed to an optional queue for
anything rendering charts.
"""
import asyncio
import logging
import random
from collections import deque
from typing import Optional

from feeds.instruments import InstrumentCatalog
from shared.schemas import PriceTick

logger = logging.getLogger(__name__)

# Ticks kept per pair
HISTORY_WINDOW = 50

# Max relative move per tick, matching the demo chart volatility
VOLATILITY = 0.002


class SimulatedQuoteFeed:
    """Random-walk quotes keyed by pair symbol."""

    def __init__(
        self,
        catalog: InstrumentCatalog,
        interval: float = 1.0,
        out_queue: Optional[asyncio.Queue] = None,
        rng: Optional[random.Random] = None,
    ):
        self.catalog = catalog
        self.interval = interval
        self.out_queue = out_queue
        self._rng = rng or random.Random()
        self._price_history: dict[str, deque] = {
            p.symbol: deque([p.price], maxlen=HISTORY_WINDOW) for p in catalog.all()
        }
        self._running = False

    def step(self) -> list[PriceTick]:
        """Advance every pair by one random-walk tick."""
        ticks = []
        for symbol, history in self._price_history.items():
            price = history[-1]
            change = (self._rng.random() - 0.5) * VOLATILITY
            price = max(price * (1 + change), 1e-9)
            history.append(price)
            ticks.append(PriceTick(pair=symbol, price=price))
        return ticks

    async def start(self):
        """Emit ticks every ``interval`` seconds until stopped."""
        self._running = True
        logger.info(
            "Simulated quote feed starting",
            extra={"pairs": list(self._price_history), "interval": self.interval},
        )
        while self._running:
            for tick in self.step():
                if self.out_queue is not None:
                    if self.out_queue.full():
                        self.out_queue.get_nowait()
                    self.out_queue.put_nowait(tick)
            await asyncio.sleep(self.interval)

    def stop(self):
        self._running = False

    def update_price(self, pair: str, price: float):
        """Record an externally observed quote."""
        instrument = self.catalog.resolve_instrument(pair)
        if instrument is None:
            return
        self._price_history.setdefault(
            instrument.symbol, deque(maxlen=HISTORY_WINDOW)
        ).append(price)

    def latest_price(self, pair: str) -> Optional[float]:
        """Get the most recent price for a pair."""
        instrument = self.catalog.resolve_instrument(pair)
        if instrument is None:
            return None
        history = self._price_history.get(instrument.symbol, deque())
        return history[-1] if history else None
