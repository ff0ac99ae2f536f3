"""Price oracle interface and an in-memory implementation."""
import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Iterable, Optional, Set

from .exceptions import PriceOracleError


class PriceOracle(ABC):
    """Async source of current token prices keyed by token id."""

    @abstractmethod
    async def get_price(self, token_id: str) -> Optional[Decimal]:
        """Return the current price, or None if the token is unknown."""
        pass

    @abstractmethod
    async def get_prices(self, token_ids: Iterable[str]) -> Dict[str, Decimal]:
        """Return prices for as many of the given tokens as are available."""
        pass


class StaticPriceOracle(PriceOracle):
    """Settable prices for tests and demos.

    ``fail_batch`` makes get_prices raise so callers exercise their per-token
    fallback; ``failing`` lists token ids whose lookups raise; ``delay`` stalls
    every call.
    """

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self.prices: Dict[str, Decimal] = dict(prices or {})
        self.fail_batch = False
        self.failing: Set[str] = set()
        self.delay: float = 0.0
        self.calls = 0

    def set_price(self, token_id: str, price: Decimal) -> None:
        self.prices[token_id] = Decimal(price)

    async def get_price(self, token_id: str) -> Optional[Decimal]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if token_id in self.failing:
            raise PriceOracleError(f"Price lookup failed for {token_id}")
        return self.prices.get(token_id)

    async def get_prices(self, token_ids: Iterable[str]) -> Dict[str, Decimal]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_batch:
            raise PriceOracleError("Batch price lookup failed")
        return {t: self.prices[t] for t in token_ids if t in self.prices and t not in self.failing}
