import asyncio
import json
import random
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Tuple

import aiohttp

from .exceptions import PriceOracleError
from .logging_setup import logger
from .price_oracle import PriceOracle


class CoinGeckoRateLimitError(PriceOracleError):
    """Raised when rate limit is hit and backoff is exhausted."""
    pass


class CoinGeckoPriceOracle(PriceOracle):
    """Async CoinGecko price oracle using aiohttp with non-blocking backoff.

    Features:
    - Batched lookups via ``/coins/markets?vs_currency=usd&ids=a,b,c``.
    - Per-token cache (default 30 seconds).
    - Optional ``x-cg-demo-api-key`` header.
    - Jittered exponential backoff for 429 responses, honouring Retry-After.

    Usage:
        async with CoinGeckoPriceOracle(api_key=...) as oracle:
            price = await oracle.get_price("contentos")
    """

    def __init__(self, *, base_url: str = "https://api.coingecko.com/api/v3", api_key: Optional[str] = None, vs_currency: str = "usd", timeout: int = 10, cache_seconds: float = 30.0, max_retries: int = 5, max_backoff_seconds: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.vs_currency = vs_currency
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.session: Optional[aiohttp.ClientSession] = None
        self._cache: Dict[str, Tuple[Decimal, float]] = {}

    @classmethod
    def from_config(cls, config) -> "CoinGeckoPriceOracle":
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            vs_currency=config.vs_currency,
            timeout=config.timeout,
            cache_seconds=config.cache_seconds,
            max_retries=config.max_retries,
            max_backoff_seconds=config.max_backoff_seconds,
        )

    async def __aenter__(self):
        self.session = aiohttp.ClientSession(headers=self._headers())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff."""
        delay = base * (2 ** attempt)
        delay = min(delay, max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _retry_after(headers) -> Optional[float]:
        if "Retry-After" in headers:
            try:
                return float(headers["Retry-After"])
            except (ValueError, TypeError):
                return None
        return None

    async def _request(self, path: str, params: Optional[dict] = None, attempt: int = 0):
        """GET with rate-limit backoff and retry."""
        if not self.session:
            self.session = aiohttp.ClientSession(headers=self._headers())

        url = f"{self.base_url}{path if path.startswith('/') else '/' + path}"
        try:
            async with self.session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                if resp.status == 429:
                    if attempt >= self.max_retries:
                        raise CoinGeckoRateLimitError("Rate limited and max backoff attempts exceeded")
                    delay = self._retry_after(resp.headers)
                    if delay is None:
                        delay = self._jittered_backoff(attempt, base=1.0, max_backoff=self.max_backoff_seconds)
                    logger.warning(f"CoinGecko rate limited | attempt={attempt + 1} backoff={delay:.2f}s")
                    await asyncio.sleep(min(delay, self.max_backoff_seconds))
                    return await self._request(path, params=params, attempt=attempt + 1)

                if not (200 <= resp.status < 300):
                    text = await resp.text()
                    raise PriceOracleError(f"{resp.status}: {text}")

                text = await resp.text()
                if not text:
                    return None
                try:
                    return json.loads(text)
                except ValueError as e:
                    raise PriceOracleError(f"Invalid JSON response: {text[:200]!r}") from e

        except asyncio.TimeoutError as e:
            raise PriceOracleError(f"Request timeout: {e}")
        except aiohttp.ClientError as e:
            raise PriceOracleError(f"Request failed: {e}")

    def _cached(self, token_id: str) -> Optional[Decimal]:
        entry = self._cache.get(token_id)
        if entry is None:
            return None
        price, fetched_at = entry
        if time.monotonic() - fetched_at < self.cache_seconds:
            return price
        return None

    def clear_cache(self) -> None:
        self._cache.clear()

    async def get_prices(self, token_ids: Iterable[str]) -> Dict[str, Decimal]:
        """Fetch current prices for several tokens in one request."""
        prices: Dict[str, Decimal] = {}
        missing: List[str] = []
        for token_id in dict.fromkeys(token_ids):
            cached = self._cached(token_id)
            if cached is not None:
                prices[token_id] = cached
            else:
                missing.append(token_id)

        if not missing:
            return prices

        logger.debug(f"Fetching prices | ids={','.join(missing)}")
        data = await self._request(
            "/coins/markets",
            params={"vs_currency": self.vs_currency, "ids": ",".join(missing)},
        )
        if data is None:
            return prices
        if not isinstance(data, list):
            raise PriceOracleError(f"Unexpected markets response: {type(data).__name__}")
        now = time.monotonic()
        for row in data:
            if not isinstance(row, dict):
                raise PriceOracleError(f"Unexpected markets row: {row!r}")
            token_id = row.get("id")
            raw = row.get("current_price")
            if token_id is None or raw is None:
                continue
            try:
                price = Decimal(str(raw))
            except InvalidOperation as e:
                raise PriceOracleError(f"Invalid price for {token_id}: {raw!r}") from e
            self._cache[token_id] = (price, now)
            prices[token_id] = price
        return prices

    async def get_price(self, token_id: str) -> Optional[Decimal]:
        prices = await self.get_prices([token_id])
        return prices.get(token_id)
