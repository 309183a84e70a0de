"""
In-memory TTL cache for daily closing quotes.

A closing price for a past day does not change, so one lookup per
(asset, currency, day) per TTL is enough no matter how many insights ask.
"""

import time
from datetime import date
from typing import Callable, Dict, Optional, Tuple

import structlog

from verdict.models.resolution import PriceQuote

logger = structlog.get_logger(__name__)

CacheKey = Tuple[str, str, date]


class QuoteCache:
    def __init__(self, ttl_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[float, PriceQuote]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(asset: str, currency: str, day: date) -> CacheKey:
        return (asset.upper(), currency.upper(), day)

    def get(self, asset: str, currency: str, day: date) -> Optional[PriceQuote]:
        key = self.key(asset, currency, day)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        stored_at, quote = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return quote

    def _prune(self, now: float) -> None:
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]

    def put(self, quote: PriceQuote) -> None:
        if self.ttl_seconds <= 0:
            return
        self._prune(self._clock())
        key = self.key(quote.asset, quote.currency, quote.as_of)
        self._entries[key] = (self._clock(), quote)
        logger.debug("quote_cached", asset=quote.asset, currency=quote.currency,
                     as_of=quote.as_of.isoformat(), source=quote.source)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, float]:
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "ttl_seconds": self.ttl_seconds,
        }
