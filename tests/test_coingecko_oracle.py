from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from signal_trading.coingecko_oracle import CoinGeckoPriceOracle, CoinGeckoRateLimitError
from signal_trading.config import OracleConfig
from signal_trading.exceptions import PriceOracleError


class FakeResponse:
    def __init__(self, status, text="", headers=None):
        self.status = status
        self._text = text
        self.headers = headers or {}

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def fake_session(*responses):
    session = MagicMock()
    session.get = MagicMock(side_effect=list(responses))
    return session


@pytest.mark.asyncio
async def test_jittered_backoff_increases_with_attempt():
    """Verify backoff increases exponentially with attempt."""
    backoff_0 = CoinGeckoPriceOracle._jittered_backoff(0, base=1.0, max_backoff=60.0)
    backoff_3 = CoinGeckoPriceOracle._jittered_backoff(3, base=1.0, max_backoff=60.0)
    assert backoff_3 > backoff_0


@pytest.mark.asyncio
async def test_jittered_backoff_respects_max():
    """Verify backoff is capped at max_backoff."""
    backoff = CoinGeckoPriceOracle._jittered_backoff(10, base=1.0, max_backoff=5.0)
    assert backoff <= 5.0 + 5.0 * 0.25


@pytest.mark.asyncio
async def test_retry_after_header():
    assert CoinGeckoPriceOracle._retry_after({"Retry-After": "2"}) == 2.0
    assert CoinGeckoPriceOracle._retry_after({"Retry-After": "soon"}) is None
    assert CoinGeckoPriceOracle._retry_after({}) is None


@pytest.mark.asyncio
async def test_api_key_header():
    assert "x-cg-demo-api-key" not in CoinGeckoPriceOracle()._headers()
    assert CoinGeckoPriceOracle(api_key="k")._headers()["x-cg-demo-api-key"] == "k"


@pytest.mark.asyncio
async def test_from_config():
    oracle = CoinGeckoPriceOracle.from_config(OracleConfig(base_url="http://localhost/api/", cache_seconds=5))
    assert oracle.base_url == "http://localhost/api"
    assert oracle.cache_seconds == 5


@pytest.mark.asyncio
async def test_context_manager_initializes_session():
    """Verify async context manager sets up and closes the session."""
    oracle = CoinGeckoPriceOracle()
    assert oracle.session is None
    async with oracle:
        session = oracle.session
        assert session is not None
    assert session.closed
    assert oracle.session is None


@pytest.mark.asyncio
async def test_get_prices_parses_markets_and_caches():
    oracle = CoinGeckoPriceOracle()
    rows = [
        {"id": "contentos", "current_price": 0.0061},
        {"id": "bitcoin", "current_price": 65000.5},
        {"id": "ghost", "current_price": None},
    ]
    with patch.object(oracle, "_request", new=AsyncMock(return_value=rows)) as request:
        prices = await oracle.get_prices(["contentos", "bitcoin", "ghost"])
        assert prices == {"contentos": Decimal("0.0061"), "bitcoin": Decimal("65000.5")}
        request.assert_awaited_once_with(
            "/coins/markets", params={"vs_currency": "usd", "ids": "contentos,bitcoin,ghost"}
        )

        # cached tokens are not requested again
        assert await oracle.get_price("contentos") == Decimal("0.0061")
        assert request.await_count == 1

        oracle.clear_cache()
        await oracle.get_price("contentos")
        assert request.await_count == 2


@pytest.mark.asyncio
async def test_get_price_unknown_token_returns_none():
    oracle = CoinGeckoPriceOracle()
    with patch.object(oracle, "_request", new=AsyncMock(return_value=[])):
        assert await oracle.get_price("nothing") is None


@pytest.mark.asyncio
async def test_request_retries_after_429():
    oracle = CoinGeckoPriceOracle(max_retries=2)
    oracle.session = fake_session(
        FakeResponse(429, headers={"Retry-After": "0"}),
        FakeResponse(200, '[{"id": "contentos", "current_price": 0.5}]'),
    )
    with patch("signal_trading.coingecko_oracle.asyncio.sleep", new=AsyncMock()) as sleep:
        data = await oracle._request("/coins/markets", params={"ids": "contentos"})
    assert data == [{"id": "contentos", "current_price": 0.5}]
    assert oracle.session.get.call_count == 2
    sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_request_gives_up_after_max_retries():
    oracle = CoinGeckoPriceOracle(max_retries=1)
    oracle.session = fake_session(FakeResponse(429), FakeResponse(429))
    with patch("signal_trading.coingecko_oracle.asyncio.sleep", new=AsyncMock()):
        with pytest.raises(CoinGeckoRateLimitError):
            await oracle._request("/coins/markets")


@pytest.mark.asyncio
async def test_request_error_status_raises():
    oracle = CoinGeckoPriceOracle()
    oracle.session = fake_session(FakeResponse(500, "boom"))
    with pytest.raises(PriceOracleError, match="500"):
        await oracle._request("/coins/markets")


@pytest.mark.asyncio
async def test_non_json_body_raises_oracle_error():
    oracle = CoinGeckoPriceOracle()
    oracle.session = fake_session(FakeResponse(200, "<html>bad gateway</html>"))
    with pytest.raises(PriceOracleError, match="Invalid JSON"):
        await oracle.get_prices(["contentos"])


@pytest.mark.asyncio
async def test_unexpected_response_shape_raises_oracle_error():
    oracle = CoinGeckoPriceOracle()
    oracle.session = fake_session(
        FakeResponse(200, '{"status": {"error_code": 10002}}'),
        FakeResponse(200, '["contentos"]'),
        FakeResponse(200, '[{"id": "contentos", "current_price": "n/a"}]'),
    )
    with pytest.raises(PriceOracleError, match="Unexpected markets response"):
        await oracle.get_prices(["contentos"])
    with pytest.raises(PriceOracleError, match="Unexpected markets row"):
        await oracle.get_prices(["contentos"])
    with pytest.raises(PriceOracleError, match="Invalid price"):
        await oracle.get_prices(["contentos"])
    assert oracle._cached("contentos") is None
