"""Catalogue of tradable currency pairs."""
import logging
from typing import Optional

from shared.schemas import CurrencyPair

logger = logging.getLogger(__name__)

DEFAULT_PAIRS = [
    CurrencyPair(symbol="EUR/USD", name="Euro / US Dollar", price=1.0875),
    CurrencyPair(symbol="GBP/USD", name="British Pound / US Dollar", price=1.2634),
    CurrencyPair(symbol="USD/JPY", name="US Dollar / Japanese Yen", price=148.75),
    CurrencyPair(symbol="AUD/USD", name="Australian Dollar / US Dollar", price=0.6687),
    CurrencyPair(symbol="USD/CHF", name="US Dollar / Swiss Franc", price=0.8934),
    CurrencyPair(symbol="USD/CAD", name="US Dollar / Canadian Dollar", price=1.3542),
]


def _normalize(symbol: str) -> str:
    return symbol.strip().upper()


class InstrumentCatalog:
    """Resolves pair symbols to known instruments."""

    def __init__(self, pairs: list[CurrencyPair] | None = None):
        self._pairs: dict[str, CurrencyPair] = {}
        for p in pairs if pairs is not None else DEFAULT_PAIRS:
            self._pairs[_normalize(p.symbol)] = p

    @classmethod
    def from_symbols(cls, symbols: list[str]) -> "InstrumentCatalog":
        """Restrict the default catalogue to ``symbols``; unknown ones get a 1.0 base price."""
        known = {_normalize(p.symbol): p for p in DEFAULT_PAIRS}
        pairs = []
        for s in symbols:
            pair = known.get(_normalize(s))
            if pair is None:
                logger.warning("Unknown pair configured, using base price 1.0", extra={"pair": s})
                pair = CurrencyPair(symbol=_normalize(s), price=1.0)
            pairs.append(pair)
        return cls(pairs)

    def resolve_instrument(self, pair: str) -> Optional[CurrencyPair]:
        return self._pairs.get(_normalize(pair))

    def exists(self, pair: str) -> bool:
        return self.resolve_instrument(pair) is not None

    def all(self) -> list[CurrencyPair]:
        return list(self._pairs.values())
